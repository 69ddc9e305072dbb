import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.assembler import SurveySelection, resolve_selection
from ..core.hierarchy import get_variable
from ..errors import NotFound, ValidationFailed
from ..models import SELECT_TYPES, QuestionType, Variable, VariableQuestion
from ..schemas import (
    QuestionImportRecord,
    VariableQuestionCreate,
    VariableQuestionUpdate,
)

logger = logging.getLogger(__name__)

_NULLABLE_FIELDS = {"group_id", "evidence_description"}


def _dump_options(options) -> Optional[List[Dict[str, Any]]]:
    if options is None:
        return None
    return [option.model_dump() for option in options]


async def get_question(db: AsyncSession, question_id: int) -> VariableQuestion:
    question = await db.get(VariableQuestion, question_id)
    if question is None:
        raise NotFound("VariableQuestion", question_id)
    return question


async def list_questions(
    db: AsyncSession,
    variable_id: Optional[int] = None,
    selection: Optional[SurveySelection] = None,
) -> List[VariableQuestion]:
    """Questions of one variable, or the active questions a selection resolves to."""
    if selection is not None and selection.kind != "empty":
        return await resolve_selection(db, selection)
    stmt = select(VariableQuestion).order_by(VariableQuestion.variable_id, VariableQuestion.order)
    if variable_id is not None:
        await get_variable(db, variable_id)
        stmt = stmt.where(VariableQuestion.variable_id == variable_id)
    else:
        stmt = stmt.where(VariableQuestion.is_active.is_(True))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def create_question(db: AsyncSession, question_in: VariableQuestionCreate) -> VariableQuestion:
    await get_variable(db, question_in.variable_id)
    data = question_in.model_dump(exclude={"options"})
    data["type"] = question_in.type.value
    question = VariableQuestion(**data, options=_dump_options(question_in.options))
    db.add(question)
    await db.commit()
    logger.info("Created question %s on variable %s", question.id, question.variable_id)
    return question


async def update_question(
    db: AsyncSession, question_id: int, question_in: VariableQuestionUpdate
) -> VariableQuestion:
    question = await get_question(db, question_id)
    changes = {
        key: value
        for key, value in question_in.model_dump(exclude_unset=True, exclude={"options"}).items()
        if value is not None or key in _NULLABLE_FIELDS
    }
    if "type" in changes:
        changes["type"] = QuestionType(changes["type"]).value
    if "options" in question_in.model_fields_set:
        changes["options"] = _dump_options(question_in.options)

    new_type = changes.get("type", question.type)
    new_options = changes.get("options", question.options)
    if new_type in SELECT_TYPES and not new_options:
        raise ValidationFailed(f"options are required for {new_type} questions")
    if new_type == QuestionType.TEXT.value:
        changes["options"] = None

    for key, value in changes.items():
        setattr(question, key, value)
    await db.commit()
    return question


async def delete_question(db: AsyncSession, question_id: int) -> VariableQuestion:
    """Soft delete; frozen survey copies and recorded answers are untouched."""
    question = await get_question(db, question_id)
    question.is_active = False
    await db.commit()
    logger.info("Soft deleted question %s", question_id)
    return question


def _row_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def validate_record(record: QuestionImportRecord) -> Tuple[Optional[VariableQuestionCreate], Optional[str]]:
    if not record.text or not record.type:
        return None, "Missing question text or type"
    if record.type not in {t.value for t in QuestionType}:
        return None, f'Invalid type "{record.type}"'
    if record.variable_id is None:
        return None, "Missing variable_id"
    try:
        return VariableQuestionCreate.model_validate(record.model_dump()), None
    except ValidationError as exc:
        return None, _row_error(exc)


async def bulk_create_questions(
    db: AsyncSession, records: List[QuestionImportRecord]
) -> Tuple[List[VariableQuestion], List[str]]:
    """Insert every valid row; invalid rows are reported as ``Row N: reason``.

    Rows are numbered as in a spreadsheet with one header line, so the
    first record is row 2.
    """
    variable_ids = {r.variable_id for r in records if r.variable_id is not None}
    known = set()
    if variable_ids:
        result = await db.execute(select(Variable.id).where(Variable.id.in_(variable_ids)))
        known = set(result.scalars().all())

    created: List[VariableQuestion] = []
    errors: List[str] = []
    for index, record in enumerate(records):
        row = index + 2
        question_in, error = validate_record(record)
        if error is None and question_in.variable_id not in known:
            error = f"Variable {question_in.variable_id} not found"
        if error is not None:
            errors.append(f"Row {row}: {error}")
            continue
        data = question_in.model_dump(exclude={"options"})
        data["type"] = question_in.type.value
        created.append(VariableQuestion(**data, options=_dump_options(question_in.options)))

    if created:
        db.add_all(created)
        await db.commit()
    logger.info("Bulk import: %d questions created, %d rows rejected", len(created), len(errors))
    return created, errors


async def count_questions(db: AsyncSession, selection: SurveySelection) -> int:
    return len(await resolve_selection(db, selection))
