from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ... import schemas
from ...core.assembler import SurveySelection
from ...crud import crud_question
from ...database import get_db_session

router = APIRouter()


def selection_query(
    question_ids: List[int] = Query(default=[]),
    variable_ids: List[int] = Query(default=[]),
    lever_ids: List[int] = Query(default=[]),
    pillar_ids: List[int] = Query(default=[]),
) -> SurveySelection:
    return SurveySelection(
        question_ids=question_ids,
        variable_ids=variable_ids,
        lever_ids=lever_ids,
        pillar_ids=pillar_ids,
    )


@router.get("/questions", response_model=List[schemas.VariableQuestionResponse])
async def list_questions(
    variable_id: Optional[int] = None,
    selection: SurveySelection = Depends(selection_query),
    db: AsyncSession = Depends(get_db_session),
):
    return await crud_question.list_questions(db, variable_id=variable_id, selection=selection)


@router.get("/questions/count")
async def count_questions(
    selection: SurveySelection = Depends(selection_query),
    db: AsyncSession = Depends(get_db_session),
):
    return {"count": await crud_question.count_questions(db, selection)}


@router.post("/questions/bulk", response_model=schemas.BulkImportResponse, status_code=201)
async def bulk_create_questions(
    bulk_in: schemas.BulkImportRequest, db: AsyncSession = Depends(get_db_session)
):
    created, errors = await crud_question.bulk_create_questions(db, bulk_in.records)
    return schemas.BulkImportResponse(
        created=len(created), question_ids=[q.id for q in created], errors=errors
    )


@router.post("/questions", response_model=schemas.VariableQuestionResponse, status_code=201)
async def create_question(
    question_in: schemas.VariableQuestionCreate, db: AsyncSession = Depends(get_db_session)
):
    return await crud_question.create_question(db, question_in)


@router.get("/questions/{question_id}", response_model=schemas.VariableQuestionResponse)
async def get_question(question_id: int, db: AsyncSession = Depends(get_db_session)):
    return await crud_question.get_question(db, question_id)


@router.put("/questions/{question_id}", response_model=schemas.VariableQuestionResponse)
async def update_question(
    question_id: int,
    question_in: schemas.VariableQuestionUpdate,
    db: AsyncSession = Depends(get_db_session),
):
    return await crud_question.update_question(db, question_id, question_in)


@router.delete("/questions/{question_id}", response_model=schemas.VariableQuestionResponse)
async def delete_question(question_id: int, db: AsyncSession = Depends(get_db_session)):
    return await crud_question.delete_question(db, question_id)
