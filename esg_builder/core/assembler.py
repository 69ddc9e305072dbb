"""Resolve a survey selection to questions and freeze them into a survey."""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound
from ..models import Lever, Pillar, SurveyQuestion, Variable, VariableQuestion
from .traversal import load_forest, load_subtree

logger = logging.getLogger(__name__)


@dataclass
class SurveySelection:
    # First non-empty list wins, in this order.
    question_ids: List[int] = field(default_factory=list)
    variable_ids: List[int] = field(default_factory=list)
    lever_ids: List[int] = field(default_factory=list)
    pillar_ids: List[int] = field(default_factory=list)

    @property
    def kind(self) -> str:
        for name in ("question_ids", "variable_ids", "lever_ids", "pillar_ids"):
            if getattr(self, name):
                return name
        return "empty"

    def to_dict(self) -> Dict[str, List[int]]:
        return {
            "question_ids": list(self.question_ids),
            "variable_ids": list(self.variable_ids),
            "lever_ids": list(self.lever_ids),
            "pillar_ids": list(self.pillar_ids),
        }


def _unique(ids: Iterable[int]) -> List[int]:
    seen = set()
    ordered = []
    for item in ids:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


async def _require_all(session: AsyncSession, model, ids: List[int], label: str) -> List:
    result = await session.execute(select(model).where(model.id.in_(ids)))
    found = {row.id: row for row in result.scalars().all()}
    for item in ids:
        if item not in found:
            raise NotFound(label, item)
    return [found[item] for item in ids]


async def _variables_under_roots(session: AsyncSession, roots: List[Variable]) -> List[Variable]:
    """Variables of every subtree under ``roots`` in tree order, each once."""
    ordered: List[Variable] = []
    seen = set()
    for root in roots:
        if root.id in seen:
            continue
        tree = await load_subtree(session, root)
        for node_id in tree.preorder():
            if node_id not in seen:
                seen.add(node_id)
                ordered.append(tree.nodes[node_id])
    return ordered


async def _variables_under_levers(session: AsyncSession, lever_ids: List[int]) -> List[Variable]:
    result = await session.execute(
        select(Variable).where(Variable.lever_id.in_(lever_ids), Variable.parent_id.is_(None))
    )
    roots = result.scalars().all()
    ordered: List[Variable] = []
    for lever_id in lever_ids:
        lever_roots = [r for r in roots if r.lever_id == lever_id]
        tree = await load_forest(session, lever_roots)
        ordered.extend(tree.nodes[node_id] for node_id in tree.preorder())
    return ordered


async def _questions_of(session: AsyncSession, variables: List[Variable]) -> List[VariableQuestion]:
    active = [v for v in variables if v.is_active]
    if not active:
        return []
    result = await session.execute(
        select(VariableQuestion).where(
            VariableQuestion.variable_id.in_([v.id for v in active]),
            VariableQuestion.is_active.is_(True),
        )
    )
    by_variable: Dict[int, List[VariableQuestion]] = {v.id: [] for v in active}
    for question in result.scalars().all():
        by_variable[question.variable_id].append(question)
    ordered = []
    for variable in active:
        ordered.extend(sorted(by_variable[variable.id], key=lambda q: (q.order, q.id)))
    return ordered


async def resolve_selection(
    session: AsyncSession, selection: SurveySelection
) -> List[VariableQuestion]:
    """Active questions of active variables within the closure of ``selection``."""
    kind = selection.kind
    if kind == "question_ids":
        ids = _unique(selection.question_ids)
        questions = await _require_all(session, VariableQuestion, ids, "VariableQuestion")
        owners = await _require_all(
            session, Variable, _unique(q.variable_id for q in questions), "Variable"
        )
        active_owner = {v.id for v in owners if v.is_active}
        return [q for q in questions if q.is_active and q.variable_id in active_owner]

    if kind == "variable_ids":
        roots = await _require_all(session, Variable, _unique(selection.variable_ids), "Variable")
        variables = await _variables_under_roots(session, roots)
    elif kind == "lever_ids":
        lever_ids = _unique(selection.lever_ids)
        await _require_all(session, Lever, lever_ids, "Lever")
        variables = await _variables_under_levers(session, lever_ids)
    elif kind == "pillar_ids":
        pillar_ids = _unique(selection.pillar_ids)
        await _require_all(session, Pillar, pillar_ids, "Pillar")
        result = await session.execute(
            select(Lever).where(Lever.pillar_id.in_(pillar_ids)).order_by(Lever.pillar_id, Lever.name)
        )
        levers = sorted(result.scalars().all(), key=lambda l: pillar_ids.index(l.pillar_id))
        variables = await _variables_under_levers(session, [l.id for l in levers])
    else:
        return []

    return await _questions_of(session, variables)


def freeze_question(question: VariableQuestion, survey_id: int, order: int) -> SurveyQuestion:
    return SurveyQuestion(
        survey_id=survey_id,
        variable_question_id=question.id,
        text=question.text,
        type=question.type,
        options=[dict(option) for option in question.options] if question.options else None,
        required=question.required,
        weight=question.weightage,
        order=order,
        group_id=question.group_id,
        is_group_lead=question.is_group_lead,
        requires_evidence=question.requires_evidence,
        evidence_description=question.evidence_description,
    )


async def freeze_selection(
    session: AsyncSession, survey_id: int, selection: SurveySelection
) -> List[SurveyQuestion]:
    """Resolve ``selection`` and store copies of its questions on the survey. No commit."""
    questions = await resolve_selection(session, selection)
    frozen = [freeze_question(q, survey_id, index + 1) for index, q in enumerate(questions)]
    session.add_all(frozen)
    await session.flush()
    logger.info(
        "Froze %d questions into survey %s from %s selection",
        len(frozen),
        survey_id,
        selection.kind,
    )
    return frozen
