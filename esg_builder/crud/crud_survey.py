import logging
from typing import List, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..core.assembler import SurveySelection, freeze_selection, resolve_selection
from ..errors import NotFound
from ..models import Answer, Response, Survey, SurveyQuestion
from ..schemas import SurveyCreate, SurveySelectionIn, SurveyUpdate

logger = logging.getLogger(__name__)

_METADATA_FIELDS = (
    "title",
    "description",
    "category",
    "start_date",
    "end_date",
    "allow_anonymous",
    "max_responses",
)


def to_selection(selection_in: Optional[SurveySelectionIn]) -> SurveySelection:
    if selection_in is None:
        return SurveySelection()
    return SurveySelection(**selection_in.model_dump())


async def get_survey(db: AsyncSession, survey_id: int) -> Survey:
    """Survey with its frozen questions, always re-read from the database."""
    result = await db.execute(
        select(Survey)
        .options(selectinload(Survey.questions))
        .where(Survey.id == survey_id)
        .execution_options(populate_existing=True)
    )
    survey = result.scalar_one_or_none()
    if survey is None:
        raise NotFound("Survey", survey_id)
    return survey


async def create_survey(db: AsyncSession, survey_in: SurveyCreate) -> Survey:
    selection = to_selection(survey_in.selection)
    survey = Survey(
        **{name: getattr(survey_in, name) for name in _METADATA_FIELDS},
        selection=selection.to_dict(),
    )
    db.add(survey)
    await db.flush()  # ID für die eingefrorenen Fragen
    await freeze_selection(db, survey.id, selection)
    await db.commit()
    logger.info("Created survey %s (%s)", survey.id, survey.title)
    return await get_survey(db, survey.id)


async def _delete_responses(db: AsyncSession, survey_id: int) -> int:
    response_ids = select(Response.id).where(Response.survey_id == survey_id)
    await db.execute(delete(Answer).where(Answer.response_id.in_(response_ids)))
    result = await db.execute(delete(Response).where(Response.survey_id == survey_id))
    return result.rowcount or 0


async def update_survey(db: AsyncSession, survey_id: int, survey_in: SurveyUpdate) -> Survey:
    survey = await get_survey(db, survey_id)
    for name in _METADATA_FIELDS:
        setattr(survey, name, getattr(survey_in, name))

    if survey_in.selection is not None:
        selection = to_selection(survey_in.selection)
        response_count = await db.scalar(
            select(func.count(Response.id)).where(Response.survey_id == survey_id)
        )
        if response_count:
            logger.warning(
                "Survey %s has %d responses; they are deleted because the question set changes",
                survey_id,
                response_count,
            )
            await _delete_responses(db, survey_id)
        await db.execute(delete(SurveyQuestion).where(SurveyQuestion.survey_id == survey_id))
        survey.selection = selection.to_dict()
        await db.flush()
        await freeze_selection(db, survey_id, selection)

    await db.commit()
    logger.info("Updated survey %s", survey_id)
    return await get_survey(db, survey_id)


async def set_published(db: AsyncSession, survey_id: int, is_published: bool) -> Survey:
    survey = await get_survey(db, survey_id)
    survey.is_published = is_published
    await db.commit()
    logger.info("Survey %s %s", survey_id, "published" if is_published else "unpublished")
    return survey


async def delete_survey(db: AsyncSession, survey_id: int) -> Survey:
    """Soft delete: the survey stops accepting responses and leaves the listing."""
    survey = await get_survey(db, survey_id)
    survey.is_active = False
    survey.is_published = False
    await db.commit()
    logger.info("Soft deleted survey %s", survey_id)
    return survey


async def list_surveys(db: AsyncSession, include_inactive: bool = False) -> List[dict]:
    question_counts = (
        select(SurveyQuestion.survey_id, func.count(SurveyQuestion.id).label("n"))
        .group_by(SurveyQuestion.survey_id)
        .subquery()
    )
    response_counts = (
        select(
            Response.survey_id,
            func.count(Response.id).label("n"),
            func.sum(case((Response.completed_at.is_not(None), 1), else_=0)).label("done"),
        )
        .group_by(Response.survey_id)
        .subquery()
    )
    stmt = (
        select(Survey, question_counts.c.n, response_counts.c.n, response_counts.c.done)
        .outerjoin(question_counts, question_counts.c.survey_id == Survey.id)
        .outerjoin(response_counts, response_counts.c.survey_id == Survey.id)
        .order_by(Survey.updated_at.desc(), Survey.id.desc())
    )
    if not include_inactive:
        stmt = stmt.where(Survey.is_active.is_(True))
    result = await db.execute(stmt)
    return [
        {
            "id": survey.id,
            "title": survey.title,
            "description": survey.description,
            "category": survey.category,
            "is_published": survey.is_published,
            "is_active": survey.is_active,
            "question_count": questions or 0,
            "response_count": responses or 0,
            "completed_response_count": int(done or 0),
            "updated_at": survey.updated_at,
        }
        for survey, questions, responses, done in result.all()
    ]


async def preview_selection(db: AsyncSession, selection_in: SurveySelectionIn) -> dict:
    selection = to_selection(selection_in)
    questions = await resolve_selection(db, selection)
    return {
        "kind": selection.kind,
        "question_ids": [q.id for q in questions],
        "count": len(questions),
    }
