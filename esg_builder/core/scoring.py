"""Answer scoring and score aggregation over the variable tree."""

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound
from ..models import (
    AggregationType,
    Answer,
    Lever,
    Pillar,
    QuestionType,
    Response,
    SurveyQuestion,
    Variable,
    VariableQuestion,
)
from .traversal import load_forest

logger = logging.getLogger(__name__)


def _option_score(option: Dict[str, Any]) -> float:
    try:
        return float(option.get("absoluteScore") or 0)
    except (TypeError, ValueError):
        return 0.0


def selected_values(value: Any) -> List[str]:
    """Multi-select answers arrive as a list or a comma separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = value
    else:
        items = [value]
    selected = []
    for item in items:
        text = str(item).strip()
        if text and text not in selected:
            selected.append(text)
    return selected


def score_answer(question_type: str, options: Optional[Sequence[Dict[str, Any]]], value: Any) -> float:
    """Score one answer against the question's options.

    single_select: absoluteScore of the matching option, 0 without a match.
    multi_select: sum of absoluteScore over matching selected options.
    text: always 0.
    """
    if question_type == QuestionType.TEXT.value or not options:
        return 0.0
    by_text = {}
    for option in options:
        by_text.setdefault(str(option.get("text", "")).strip(), option)

    if question_type == QuestionType.SINGLE_SELECT.value:
        option = by_text.get(str(value).strip()) if value is not None else None
        return _option_score(option) if option else 0.0
    if question_type == QuestionType.MULTI_SELECT.value:
        return sum(
            _option_score(by_text[v]) for v in selected_values(value) if v in by_text
        )
    return 0.0


def aggregate(aggregation_type: Optional[str], contributions: List[Tuple[float, float]]) -> float:
    """Combine ``(weighted_score, weight)`` pairs with a node's aggregation rule.

    SUM returns Σ weighted_score, AVERAGE and WEIGHTED_AVERAGE divide that by
    Σ weight, MAX and MIN pick the largest / smallest weighted contribution.
    Unknown types fall back to SUM. No weight at all gives 0.
    """
    total_weight = sum(weight for _, weight in contributions)
    if total_weight == 0:
        return 0.0
    score = sum(weighted for weighted, _ in contributions)
    if aggregation_type in (AggregationType.AVERAGE.value, AggregationType.WEIGHTED_AVERAGE.value):
        return score / total_weight
    if aggregation_type == AggregationType.MAX.value:
        return max(weighted for weighted, _ in contributions)
    if aggregation_type == AggregationType.MIN.value:
        return min(weighted for weighted, _ in contributions)
    return score


async def _get_response(session: AsyncSession, response_id: int) -> Response:
    response = await session.get(Response, response_id)
    if response is None:
        raise NotFound("Response", response_id)
    return response


async def answer_scores(
    session: AsyncSession, response_id: int, question_ids: Iterable[int]
) -> Dict[int, float]:
    """Answer score per VariableQuestion id for one response (unscored answers omitted)."""
    question_ids = list(question_ids)
    if not question_ids:
        return {}
    result = await session.execute(
        select(SurveyQuestion.variable_question_id, Answer.score)
        .join(Answer, Answer.survey_question_id == SurveyQuestion.id)
        .where(
            Answer.response_id == response_id,
            SurveyQuestion.variable_question_id.in_(question_ids),
        )
    )
    return {vq_id: score for vq_id, score in result.all() if score is not None}


async def _score_forest(session: AsyncSession, roots: List[Variable], response_id: int):
    tree = await load_forest(session, roots)
    result = await session.execute(
        select(VariableQuestion).where(VariableQuestion.variable_id.in_(list(tree.nodes)))
    )
    questions: Dict[int, List[VariableQuestion]] = {node_id: [] for node_id in tree.nodes}
    for question in result.scalars().all():
        questions[question.variable_id].append(question)
    answered = await answer_scores(
        session, response_id, [q.id for qs in questions.values() for q in qs]
    )

    scores: Dict[int, float] = {}
    for node_id in tree.postorder():
        node = tree.nodes[node_id]
        contributions = []
        for question in questions[node_id]:
            if question.id in answered:
                contributions.append((answered[question.id] * question.weightage, question.weightage))
        for child_id in tree.children[node_id]:
            child = tree.nodes[child_id]
            # child weight counts even when the child scored 0
            contributions.append((scores[child_id] * child.weightage, child.weightage))
        scores[node_id] = aggregate(node.aggregation_type, contributions)
    return tree, scores


async def compute_forest_scores(
    session: AsyncSession, roots: List[Variable], response_id: int
) -> Dict[int, float]:
    """Score of every variable in the forest under ``roots``, computed bottom-up."""
    _, scores = await _score_forest(session, roots, response_id)
    return scores


async def compute_subtree_scores(
    session: AsyncSession, variable_id: int, response_id: int
) -> Dict[int, float]:
    variable = await session.get(Variable, variable_id)
    if variable is None:
        raise NotFound("Variable", variable_id)
    await _get_response(session, response_id)
    return await compute_forest_scores(session, [variable], response_id)


async def compute_score(session: AsyncSession, variable_id: int, response_id: int) -> float:
    scores = await compute_subtree_scores(session, variable_id, response_id)
    return scores[variable_id]


def _weighted_average(pairs: List[Tuple[float, float]]) -> float:
    total_weight = sum(weight for _, weight in pairs)
    if total_weight == 0:
        return 0.0
    return sum(score * weight for score, weight in pairs) / total_weight


async def _lever_scores(
    session: AsyncSession, lever_ids: List[int], response_id: int
) -> Dict[int, float]:
    result = await session.execute(
        select(Variable).where(
            Variable.lever_id.in_(lever_ids),
            Variable.parent_id.is_(None),
            Variable.is_active.is_(True),
        )
    )
    roots = result.scalars().all()
    scores = await compute_forest_scores(session, roots, response_id)
    lever_scores = {}
    for lever_id in lever_ids:
        lever_roots = [r for r in roots if r.lever_id == lever_id]
        lever_scores[lever_id] = _weighted_average([(scores[r.id], r.weightage) for r in lever_roots])
    return lever_scores


async def compute_lever_score(session: AsyncSession, lever_id: int, response_id: int) -> float:
    """Weighted average of the lever's active root variables."""
    if await session.get(Lever, lever_id) is None:
        raise NotFound("Lever", lever_id)
    await _get_response(session, response_id)
    return (await _lever_scores(session, [lever_id], response_id))[lever_id]


async def compute_pillar_score(session: AsyncSession, pillar_id: int, response_id: int) -> float:
    """Weighted average of the pillar's active levers."""
    if await session.get(Pillar, pillar_id) is None:
        raise NotFound("Pillar", pillar_id)
    await _get_response(session, response_id)
    result = await session.execute(
        select(Lever).where(Lever.pillar_id == pillar_id, Lever.is_active.is_(True))
    )
    levers = result.scalars().all()
    if not levers:
        return 0.0
    lever_scores = await _lever_scores(session, [l.id for l in levers], response_id)
    return _weighted_average([(lever_scores[l.id], l.weightage) for l in levers])


def response_total(scored: Iterable[Tuple[Optional[float], float]]) -> float:
    """Response aggregate: Σ answer score × survey question weight."""
    return sum(score * weight for score, weight in scored if score is not None)


async def recalculate_response_scores(session: AsyncSession, response_ids: List[int]) -> None:
    """Refresh the stored aggregate of completed responses after answers changed."""
    if not response_ids:
        return
    result = await session.execute(
        select(Answer.response_id, Answer.score, SurveyQuestion.weight)
        .join(SurveyQuestion, SurveyQuestion.id == Answer.survey_question_id)
        .where(Answer.response_id.in_(response_ids))
    )
    per_response: Dict[int, List[Tuple[Optional[float], float]]] = {rid: [] for rid in response_ids}
    for response_id, score, weight in result.all():
        per_response[response_id].append((score, weight))

    responses = await session.execute(select(Response).where(Response.id.in_(response_ids)))
    for response in responses.scalars().all():
        if response.completed_at is not None:
            response.score = response_total(per_response[response.id])
    await session.flush()
    logger.info("Recalculated scores of %d responses", len(response_ids))


def _nest_scores(tree, scores: Dict[int, float]) -> List[Dict[str, Any]]:
    built: Dict[int, Dict[str, Any]] = {}
    for node_id in tree.postorder():
        node = tree.nodes[node_id]
        built[node_id] = {
            "variable_id": node.id,
            "name": node.name,
            "path": node.path,
            "aggregation_type": node.aggregation_type,
            "weightage": node.weightage,
            "score": scores[node_id],
            "children": [built.pop(c) for c in tree.children[node_id]],
        }
    return [built[root_id] for root_id in tree.root_ids]


async def score_variable_tree(
    session: AsyncSession, variable_id: int, response_id: int
) -> Dict[str, Any]:
    """Nested per-node scores for the subtree under ``variable_id``."""
    variable = await session.get(Variable, variable_id)
    if variable is None:
        raise NotFound("Variable", variable_id)
    await _get_response(session, response_id)
    tree, scores = await _score_forest(session, [variable], response_id)
    return _nest_scores(tree, scores)[0]


async def lever_score_breakdown(
    session: AsyncSession, lever_id: int, response_id: int
) -> List[Dict[str, Any]]:
    """Nested scores for each active root variable of a lever."""
    if await session.get(Lever, lever_id) is None:
        raise NotFound("Lever", lever_id)
    await _get_response(session, response_id)
    result = await session.execute(
        select(Variable).where(
            Variable.lever_id == lever_id,
            Variable.parent_id.is_(None),
            Variable.is_active.is_(True),
        )
    )
    tree, scores = await _score_forest(session, result.scalars().all(), response_id)
    return _nest_scores(tree, scores)
