from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ... import schemas
from ...crud import crud_survey
from ...database import get_db_session

router = APIRouter()


@router.post("/", response_model=schemas.SurveyResponse, status_code=201)
async def create_survey_item(survey_in: schemas.SurveyCreate, db: AsyncSession = Depends(get_db_session)):
    return await crud_survey.create_survey(db, survey_in)


@router.get("/", response_model=List[schemas.SurveyListItem])
async def read_all_surveys(include_inactive: bool = False, db: AsyncSession = Depends(get_db_session)):
    return await crud_survey.list_surveys(db, include_inactive)


@router.post("/preview", response_model=schemas.SelectionPreview)
async def preview_survey_selection(
    selection_in: schemas.SurveySelectionIn, db: AsyncSession = Depends(get_db_session)
):
    return await crud_survey.preview_selection(db, selection_in)


@router.get("/{survey_id}", response_model=schemas.SurveyResponse)
async def read_survey_item(survey_id: int, db: AsyncSession = Depends(get_db_session)):
    return await crud_survey.get_survey(db, survey_id)


@router.put("/{survey_id}", response_model=schemas.SurveyResponse)
async def update_survey_item(
    survey_id: int, survey_in: schemas.SurveyUpdate, db: AsyncSession = Depends(get_db_session)
):
    return await crud_survey.update_survey(db, survey_id, survey_in)


@router.patch("/{survey_id}/publish", response_model=schemas.SurveyResponse)
async def publish_survey_item(
    survey_id: int, publish: schemas.PublishRequest, db: AsyncSession = Depends(get_db_session)
):
    return await crud_survey.set_published(db, survey_id, publish.is_published)


@router.delete("/{survey_id}", response_model=schemas.SurveyResponse)
async def delete_survey_item(survey_id: int, db: AsyncSession = Depends(get_db_session)):
    return await crud_survey.delete_survey(db, survey_id)
