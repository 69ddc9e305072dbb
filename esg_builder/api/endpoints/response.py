from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ... import schemas
from ...crud import crud_response
from ...database import get_db_session

router = APIRouter()


@router.post(
    "/surveys/{survey_id}/responses", response_model=schemas.ResponseDetail, status_code=201
)
async def submit_response_item(
    survey_id: int, submission: schemas.ResponseSubmit, db: AsyncSession = Depends(get_db_session)
):
    return await crud_response.submit_response(db, survey_id, submission)


@router.get("/surveys/{survey_id}/responses", response_model=List[schemas.ResponseDetail])
async def read_survey_responses(survey_id: int, db: AsyncSession = Depends(get_db_session)):
    return await crud_response.list_responses(db, survey_id)


@router.get("/surveys/{survey_id}/responses/check", response_model=schemas.ResponseStatus)
async def check_respondent_response(
    survey_id: int,
    respondent_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db_session),
):
    return await crud_response.respondent_status(db, survey_id, respondent_id.strip())


@router.get("/responses/{response_id}", response_model=schemas.ResponseDetail)
async def read_response_item(response_id: int, db: AsyncSession = Depends(get_db_session)):
    return await crud_response.get_response(db, response_id)
