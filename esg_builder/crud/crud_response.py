import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..core.scoring import response_total, score_answer
from ..errors import ConcurrentModification, NotFound, SubmissionRejected
from ..models import Answer, Response, Survey
from ..schemas import ResponseSubmit
from .crud_survey import get_survey

logger = logging.getLogger(__name__)


def _as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo; they are stored as UTC.
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=timezone.utc)


def _is_blank(value) -> bool:
    return value is None or value == "" or value == []


def check_open(survey: Survey, now: Optional[datetime] = None) -> None:
    now = now or datetime.now(timezone.utc)
    if not survey.is_active:
        raise SubmissionRejected(f"Survey {survey.id} is no longer active")
    if not survey.is_published:
        raise SubmissionRejected(f"Survey {survey.id} is not published")
    start, end = _as_utc(survey.start_date), _as_utc(survey.end_date)
    if start is not None and start > now:
        raise SubmissionRejected(f"Survey {survey.id} has not started yet")
    if end is not None and end < now:
        raise SubmissionRejected(f"Survey {survey.id} has ended")


async def get_response(db: AsyncSession, response_id: int) -> Response:
    result = await db.execute(
        select(Response)
        .options(selectinload(Response.answers))
        .where(Response.id == response_id)
        .execution_options(populate_existing=True)
    )
    response = result.scalar_one_or_none()
    if response is None:
        raise NotFound("Response", response_id)
    return response


async def list_responses(db: AsyncSession, survey_id: int) -> List[Response]:
    await get_survey(db, survey_id)
    result = await db.execute(
        select(Response)
        .options(selectinload(Response.answers))
        .where(Response.survey_id == survey_id)
        .order_by(Response.created_at.desc(), Response.id.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _existing_response(
    db: AsyncSession, survey_id: int, respondent_id: str
) -> Optional[Response]:
    result = await db.execute(
        select(Response).where(
            Response.survey_id == survey_id, Response.respondent_id == respondent_id
        )
    )
    return result.scalar_one_or_none()


async def submit_response(db: AsyncSession, survey_id: int, submission: ResponseSubmit) -> Response:
    """Store a draft or final response, scoring every answer on the way in.

    A respondent has at most one response per survey; submitting again
    replaces its answers until it is completed. Anonymous submissions
    always create a new response.
    """
    survey = await get_survey(db, survey_id)
    check_open(survey)

    respondent_id = submission.respondent_id
    if respondent_id is None and not survey.allow_anonymous:
        raise SubmissionRejected(f"Survey {survey_id} does not accept anonymous responses")

    response = None
    if respondent_id is not None:
        response = await _existing_response(db, survey_id, respondent_id)
        if response is not None and response.completed_at is not None:
            logger.warning("Respondent %s resubmitted completed survey %s", respondent_id, survey_id)
            raise SubmissionRejected(
                f"Respondent {respondent_id} has already completed survey {survey_id}"
            )

    if not submission.is_draft and survey.max_responses is not None:
        completed = await db.scalar(
            select(func.count(Response.id)).where(
                Response.survey_id == survey_id, Response.completed_at.is_not(None)
            )
        )
        if completed >= survey.max_responses:
            raise SubmissionRejected(
                f"Survey {survey_id} has reached its limit of {survey.max_responses} responses"
            )

    questions = {q.id: q for q in survey.questions}
    unknown = set(submission.answers) - set(questions)
    if unknown:
        logger.debug("Ignoring answers to unknown survey questions %s", sorted(unknown))

    if not submission.is_draft:
        missing = [
            q.id
            for q in survey.questions
            if q.required and _is_blank(submission.answers.get(q.id))
        ]
        if missing:
            raise SubmissionRejected(f"Required questions {missing} are not answered")

    try:
        if response is None:
            response = Response(survey_id=survey_id, respondent_id=respondent_id)
            db.add(response)
            await db.flush()
        else:
            await db.execute(delete(Answer).where(Answer.response_id == response.id))

        answers = []
        for question in survey.questions:
            value = submission.answers.get(question.id)
            if _is_blank(value):
                continue
            answers.append(
                Answer(
                    response_id=response.id,
                    survey_question_id=question.id,
                    value=value,
                    evidence=submission.evidences.get(question.id),
                    score=score_answer(question.type, question.options, value),
                )
            )
        db.add_all(answers)

        if submission.is_draft:
            response.completed_at = None
            response.score = None
        else:
            response.completed_at = datetime.now(timezone.utc)
            response.score = response_total(
                (answer.score, questions[answer.survey_question_id].weight) for answer in answers
            )
        await db.commit()
    except IntegrityError as exc:
        # the unique (survey, respondent) constraint caught a parallel submission
        await db.rollback()
        logger.warning(
            "Concurrent submission from %s to survey %s rejected", respondent_id, survey_id
        )
        raise ConcurrentModification(
            f"Another submission from respondent {respondent_id} to survey {survey_id} "
            "was stored at the same time; submit again"
        ) from exc
    logger.info(
        "Stored %s response %s for survey %s with %d answers",
        "draft" if submission.is_draft else "final",
        response.id,
        survey_id,
        len(answers),
    )
    return await get_response(db, response.id)


async def respondent_status(db: AsyncSession, survey_id: int, respondent_id: str) -> dict:
    # Lets a respondent resume a draft: answers keyed by survey question id.
    await get_survey(db, survey_id)
    result = await db.execute(
        select(Response)
        .options(selectinload(Response.answers))
        .where(Response.survey_id == survey_id, Response.respondent_id == respondent_id)
        .execution_options(populate_existing=True)
    )
    response = result.scalar_one_or_none()
    if response is None:
        return {"has_response": False}
    return {
        "has_response": True,
        "is_completed": response.completed_at is not None,
        "answers": {
            a.survey_question_id: a.value for a in response.answers if not _is_blank(a.value)
        },
        "evidences": {a.survey_question_id: a.evidence for a in response.answers if a.evidence},
        "score": response.score,
        "completed_at": response.completed_at,
        "updated_at": response.updated_at,
    }
