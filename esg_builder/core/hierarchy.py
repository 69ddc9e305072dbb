"""Structural operations on the variable tree.

Every mutation first resolves which lever forests it touches and locks
them with ``atomic_mutation``. Under the lock it re-reads the rows it
depends on, validates, and only then writes, so the whole multi-row
change commits or rolls back as one unit against current data.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, distinct, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..errors import (
    CircularReference,
    ConcurrentModification,
    DestructiveOperationPending,
    InactiveAncestor,
    InvalidOwnership,
    NotFound,
    ValidationFailed,
)
from ..models import (
    AggregationType,
    Answer,
    Lever,
    Pillar,
    SurveyQuestion,
    Variable,
    VariableQuestion,
)
from . import paths
from .locks import atomic_mutation
from .traversal import load_ancestors, load_forest, load_subtree, root_lever_id

logger = logging.getLogger(__name__)


async def get_variable(session: AsyncSession, variable_id: int) -> Variable:
    variable = await session.get(Variable, variable_id)
    if variable is None:
        raise NotFound("Variable", variable_id)
    return variable


async def get_lever(session: AsyncSession, lever_id: int) -> Lever:
    lever = await session.get(Lever, lever_id)
    if lever is None:
        raise NotFound("Lever", lever_id)
    return lever


async def _reload(session: AsyncSession, variable_id: int) -> Variable:
    variable = await session.get(Variable, variable_id, populate_existing=True)
    if variable is None:
        raise NotFound("Variable", variable_id)
    return variable


async def _confirm_forest(
    session: AsyncSession, variable: Variable, locked: List[Optional[int]]
) -> None:
    # The lever was resolved before the lock was taken; a concurrent move may
    # have carried the variable into a forest we do not hold.
    if await root_lever_id(session, variable) not in locked:
        raise ConcurrentModification(
            f"Variable {variable.id} was moved to another lever by a concurrent request"
        )


def _check_single_owner(parent_id: Optional[int], lever_id: Optional[int], what: str) -> None:
    if (parent_id is None) == (lever_id is None):
        raise InvalidOwnership(
            f"{what} requires exactly one of parent_id or lever_id "
            f"(got parent_id={parent_id}, lever_id={lever_id})"
        )


async def _questions_by_variable(
    session: AsyncSession, variable_ids: List[int]
) -> Dict[int, List[VariableQuestion]]:
    grouped: Dict[int, List[VariableQuestion]] = {vid: [] for vid in variable_ids}
    if not variable_ids:
        return grouped
    result = await session.execute(
        select(VariableQuestion)
        .where(VariableQuestion.variable_id.in_(variable_ids))
        .order_by(VariableQuestion.order, VariableQuestion.id)
    )
    for question in result.scalars().all():
        grouped[question.variable_id].append(question)
    return grouped


# --- Create -----------------------------------------------------------------


async def create_variable(
    session: AsyncSession,
    name: str,
    description: Optional[str] = None,
    weightage: float = 1.0,
    parent_id: Optional[int] = None,
    lever_id: Optional[int] = None,
    aggregation_type: Optional[str] = None,
    order: Optional[int] = None,
) -> Variable:
    _check_single_owner(parent_id, lever_id, "Creating a variable")

    if parent_id is not None:
        forest = await root_lever_id(session, await get_variable(session, parent_id))
    else:
        await get_lever(session, lever_id)
        forest = lever_id

    async with atomic_mutation(session, [forest], "create variable"):
        if parent_id is not None:
            parent = await _reload(session, parent_id)
            await _confirm_forest(session, parent, [forest])
            path = paths.build_path(parent.path, name)
            level = paths.child_level(parent.level)
        else:
            path = paths.build_path(None, name)
            level = 0

        variable = Variable(
            name=name,
            description=description,
            weightage=1.0 if weightage is None else weightage,
            parent_id=parent_id,
            lever_id=lever_id,
            level=level,
            path=path,
            aggregation_type=aggregation_type or AggregationType.SUM.value,
            order=order or 0,
        )
        session.add(variable)
        await session.flush()
    logger.info("Created variable %s at %r (level %d)", variable.id, variable.path, level)
    return variable


# --- Move -------------------------------------------------------------------


async def descendant_ids(session: AsyncSession, variable_id: int) -> List[int]:
    variable = await get_variable(session, variable_id)
    tree = await load_subtree(session, variable)
    return tree.descendant_ids()


async def can_move_variable(session: AsyncSession, variable_id: int, new_parent_id: int) -> bool:
    if variable_id == new_parent_id:
        return False
    return new_parent_id not in set(await descendant_ids(session, variable_id))


async def move_variable(
    session: AsyncSession,
    variable_id: int,
    new_parent_id: Optional[int] = None,
    new_lever_id: Optional[int] = None,
) -> Variable:
    _check_single_owner(new_parent_id, new_lever_id, "Moving a variable")
    forests = [await root_lever_id(session, await get_variable(session, variable_id))]
    if new_parent_id is not None:
        forests.append(await root_lever_id(session, await get_variable(session, new_parent_id)))
    else:
        await get_lever(session, new_lever_id)
        forests.append(new_lever_id)

    async with atomic_mutation(session, forests, "move variable"):
        variable = await _reload(session, variable_id)
        await _confirm_forest(session, variable, forests)
        parent_path, parent_level = None, None
        if new_parent_id is not None:
            if not await can_move_variable(session, variable_id, new_parent_id):
                logger.warning("Rejected move of %s under %s: cycle", variable_id, new_parent_id)
                raise CircularReference(
                    f"Cannot move variable {variable_id} under {new_parent_id}: "
                    "the target is the variable itself or one of its descendants"
                )
            new_parent = await _reload(session, new_parent_id)
            await _confirm_forest(session, new_parent, forests)
            parent_path, parent_level = new_parent.path, new_parent.level

        variable.parent_id = new_parent_id
        variable.lever_id = None if new_parent_id is not None else new_lever_id
        await session.flush()
        await paths.recompute_subtree(session, variable, parent_path, parent_level)
    logger.info(
        "Moved variable %s to parent=%s lever=%s, now %r",
        variable_id,
        new_parent_id,
        new_lever_id,
        variable.path,
    )
    return variable


# --- Clone ------------------------------------------------------------------


async def clone_variable_tree(
    session: AsyncSession,
    source_id: int,
    target_lever_id: Optional[int] = None,
    target_parent_id: Optional[int] = None,
) -> Variable:
    """Deep-copy a variable, its descendants and all their questions."""
    _check_single_owner(target_parent_id, target_lever_id, "Cloning a variable")
    forests = [await root_lever_id(session, await get_variable(session, source_id))]
    if target_parent_id is not None:
        forests.append(
            await root_lever_id(session, await get_variable(session, target_parent_id))
        )
    else:
        await get_lever(session, target_lever_id)
        forests.append(target_lever_id)

    clones: Dict[int, Variable] = {}
    async with atomic_mutation(session, forests, "clone variable tree"):
        source = await _reload(session, source_id)
        await _confirm_forest(session, source, forests)
        if target_parent_id is not None:
            target_parent = await _reload(session, target_parent_id)
            await _confirm_forest(session, target_parent, forests)
            base_path, base_level = target_parent.path, target_parent.level
        else:
            base_path, base_level = None, None

        # Snapshot the source before writing anything, so cloning under its
        # own descendant cannot pick up the copies.
        tree = await load_subtree(session, source)
        order = list(tree.preorder())
        questions = await _questions_by_variable(session, order)

        for node_id in order:
            node = tree.nodes[node_id]
            if node_id == source.id:
                name = f"{node.name}{settings.clone_suffix}"
                parent = None
                clone_parent_id = target_parent_id
                clone_lever_id = target_lever_id
                parent_path, parent_level = base_path, base_level
            else:
                name = node.name
                parent = clones[node.parent_id]
                clone_parent_id = parent.id
                clone_lever_id = None
                parent_path, parent_level = parent.path, parent.level

            clone = Variable(
                name=name,
                description=node.description,
                weightage=node.weightage,
                parent_id=clone_parent_id,
                lever_id=clone_lever_id,
                level=paths.child_level(parent_level),
                path=paths.build_path(parent_path, name),
                aggregation_type=node.aggregation_type,
                order=node.order,
                is_active=node.is_active,
            )
            session.add(clone)
            await session.flush()  # id needed by children
            clones[node_id] = clone

            session.add_all(
                [
                    VariableQuestion(
                        variable_id=clone.id,
                        text=q.text,
                        type=q.type,
                        options=q.options,
                        required=q.required,
                        weightage=q.weightage,
                        order=q.order,
                        group_id=q.group_id,
                        is_group_lead=q.is_group_lead,
                        requires_evidence=q.requires_evidence,
                        evidence_description=q.evidence_description,
                        is_active=q.is_active,
                    )
                    for q in questions[node_id]
                ]
            )
        await session.flush()

    root_clone = clones[source.id]
    logger.info(
        "Cloned variable %s (%d nodes, %d questions) as %s",
        source_id,
        len(clones),
        sum(len(q) for q in questions.values()),
        root_clone.id,
    )
    return root_clone


# --- Update / toggle ----------------------------------------------------------


async def update_variable(
    session: AsyncSession,
    variable_id: int,
    changes: Dict[str, Any],
    expected_version: Optional[int] = None,
) -> Variable:
    allowed = {"name", "description", "weightage", "aggregation_type", "order"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationFailed(
            f"Fields {sorted(unknown)} cannot be changed here; use move to change ownership"
        )

    forest = await root_lever_id(session, await get_variable(session, variable_id))
    async with atomic_mutation(session, [forest], "update variable"):
        variable = await _reload(session, variable_id)
        await _confirm_forest(session, variable, [forest])
        if expected_version is not None and expected_version != variable.version:
            raise ConcurrentModification(
                f"Variable {variable_id} is at version {variable.version}, "
                f"update was based on version {expected_version}"
            )

        renamed = "name" in changes and changes["name"] != variable.name
        for key, value in changes.items():
            setattr(variable, key, value)
        await session.flush()
        if renamed:
            await paths.recompute_from_parent(session, variable)
    return variable


async def repair_lever_paths(session: AsyncSession, lever_id: int) -> int:
    """Recovery path: rewrite path/level over the lever's whole forest."""
    await get_lever(session, lever_id)
    async with atomic_mutation(session, [lever_id], "repair lever paths"):
        changed = await paths.repair_lever_forest(session, lever_id)
    return changed


async def assert_chain_active(session: AsyncSession, variable: Variable) -> None:
    ancestors = await load_ancestors(session, variable)
    for ancestor in ancestors:
        if not ancestor.is_active:
            raise InactiveAncestor(
                f"Cannot activate variable {variable.id}: ancestor variable "
                f"{ancestor.id} ({ancestor.name}) is inactive"
            )
    root = ancestors[0] if ancestors else variable
    if root.lever_id is None:
        return
    lever = await get_lever(session, root.lever_id)
    if not lever.is_active:
        raise InactiveAncestor(
            f"Cannot activate variable {variable.id}: lever {lever.id} ({lever.name}) is inactive"
        )
    pillar = await session.get(Pillar, lever.pillar_id)
    if pillar is not None and not pillar.is_active:
        raise InactiveAncestor(
            f"Cannot activate variable {variable.id}: pillar {pillar.id} ({pillar.name}) is inactive"
        )


async def set_variable_active(session: AsyncSession, variable_id: int, is_active: bool) -> Variable:
    forest = await root_lever_id(session, await get_variable(session, variable_id))

    if is_active:
        async with atomic_mutation(session, [forest], "activate variable"):
            variable = await _reload(session, variable_id)
            await _confirm_forest(session, variable, [forest])
            await assert_chain_active(session, variable)
            variable.is_active = True
        logger.info("Activated variable %s", variable_id)
        return variable

    async with atomic_mutation(session, [forest], "deactivate variable"):
        variable = await _reload(session, variable_id)
        await _confirm_forest(session, variable, [forest])
        deactivated = await _deactivate_subtree(session, variable)
    logger.info("Deactivated variable %s and %d descendants", variable_id, deactivated - 1)
    return variable


async def _deactivate_subtree(session: AsyncSession, variable: Variable) -> int:
    tree = await load_subtree(session, variable)
    for node in tree.nodes.values():
        node.is_active = False
    return len(tree)


async def deactivate_forests(session: AsyncSession, lever_ids: List[int]) -> int:
    """Deactivate every variable under the given levers. No commit."""
    if not lever_ids:
        return 0
    result = await session.execute(
        select(Variable)
        .where(Variable.lever_id.in_(lever_ids), Variable.parent_id.is_(None))
        .execution_options(populate_existing=True)
    )
    tree = await load_forest(session, result.scalars().all())
    count = 0
    for node in tree.nodes.values():
        if node.is_active:
            node.is_active = False
            count += 1
    return count


# --- Delete -----------------------------------------------------------------


@dataclass
class DeletionResult:
    variable_id: int
    kind: str  # "hard_delete"
    deleted_questions: int = 0
    deleted_answers: int = 0
    affected_responses: int = 0
    children_reassigned: List[int] = field(default_factory=list)


async def _affected_response_ids(session: AsyncSession, question_ids: List[int]) -> List[int]:
    if not question_ids:
        return []
    result = await session.execute(
        select(distinct(Answer.response_id))
        .join(SurveyQuestion, SurveyQuestion.id == Answer.survey_question_id)
        .where(SurveyQuestion.variable_question_id.in_(question_ids))
    )
    return list(result.scalars().all())


async def preview_deletion(session: AsyncSession, variable_id: int) -> Dict[str, Any]:
    """Everything a forced delete of ``variable_id`` would destroy or move."""
    variable = await get_variable(session, variable_id)
    questions = (await _questions_by_variable(session, [variable.id]))[variable.id]

    result = await session.execute(
        select(Variable)
        .where(Variable.parent_id == variable.id)
        .order_by(Variable.order, Variable.name)
    )
    children = result.scalars().all()
    child_question_counts = {}
    if children:
        counts = await session.execute(
            select(VariableQuestion.variable_id, func.count(VariableQuestion.id))
            .where(VariableQuestion.variable_id.in_([c.id for c in children]))
            .group_by(VariableQuestion.variable_id)
        )
        child_question_counts = dict(counts.all())

    affected = await _affected_response_ids(session, [q.id for q in questions])
    return {
        "variable": {
            "id": variable.id,
            "name": variable.name,
            "level": variable.level,
            "path": variable.path,
        },
        "questions_to_delete": [
            {"id": q.id, "text": q.text, "type": q.type, "required": q.required}
            for q in questions
        ],
        "children_to_reassign": [
            {
                "id": c.id,
                "name": c.name,
                "is_active": c.is_active,
                "question_count": child_question_counts.get(c.id, 0),
            }
            for c in children
        ],
        "reassign_to": {"parent_id": variable.parent_id, "lever_id": variable.lever_id},
        "affected_response_count": len(affected),
        "total_questions": len(questions),
        "total_children": len(children),
    }


async def delete_variable(
    session: AsyncSession, variable_id: int, force: bool = False
) -> DeletionResult:
    """Two-phase delete.

    Without ``force`` an empty leaf is removed at once; anything else is
    deactivated together with its descendants, the same as toggling it
    off, and ``DestructiveOperationPending`` is raised carrying the
    preview. With ``force`` the questions and the answers that reference
    them are removed and the direct children move up to the deleted
    variable's own owner. Children keep their active flag.
    """
    forest = await root_lever_id(session, await get_variable(session, variable_id))

    outcome = DeletionResult(variable_id=variable_id, kind="hard_delete")
    pending = None
    async with atomic_mutation(session, [forest], "delete variable"):
        variable = await _reload(session, variable_id)
        await _confirm_forest(session, variable, [forest])
        preview = await preview_deletion(session, variable_id)
        is_empty = preview["total_questions"] == 0 and preview["total_children"] == 0
        if not force and not is_empty:
            await _deactivate_subtree(session, variable)
            pending = preview
        else:
            await _hard_delete(session, variable, preview, outcome)

    if pending is not None:
        logger.info(
            "Variable %s deactivated; forced delete would remove %d questions and move %d children",
            variable_id,
            pending["total_questions"],
            pending["total_children"],
        )
        raise DestructiveOperationPending(
            f"Variable {variable_id} has {pending['total_questions']} questions and "
            f"{pending['total_children']} children; repeat with force=true to delete",
            pending,
        )

    logger.info(
        "Deleted variable %s: %d questions, %d answers, %d children reassigned",
        variable_id,
        outcome.deleted_questions,
        outcome.deleted_answers,
        len(outcome.children_reassigned),
    )
    return outcome


async def _hard_delete(
    session: AsyncSession, variable: Variable, preview: Dict[str, Any], outcome: DeletionResult
) -> None:
    question_ids = [q["id"] for q in preview["questions_to_delete"]]
    if question_ids:
        affected = await _affected_response_ids(session, question_ids)
        sq_ids = select(SurveyQuestion.id).where(
            SurveyQuestion.variable_question_id.in_(question_ids)
        )
        deleted_answers = await session.scalar(
            select(func.count(Answer.id)).where(Answer.survey_question_id.in_(sq_ids))
        )
        await session.execute(
            delete(Answer)
            .where(Answer.survey_question_id.in_(sq_ids))
            .execution_options(synchronize_session="fetch")
        )
        # Frozen survey copies survive; only the back-reference is dropped.
        await session.execute(
            update(SurveyQuestion)
            .where(SurveyQuestion.variable_question_id.in_(question_ids))
            .values(variable_question_id=None)
        )
        await session.execute(
            delete(VariableQuestion).where(VariableQuestion.id.in_(question_ids))
        )
        outcome.deleted_questions = len(question_ids)
        outcome.deleted_answers = deleted_answers or 0
        outcome.affected_responses = len(affected)
    else:
        affected = []

    if variable.parent_id is not None:
        new_parent = await _reload(session, variable.parent_id)
        parent_path, parent_level = new_parent.path, new_parent.level
    else:
        parent_path, parent_level = None, None

    result = await session.execute(
        select(Variable)
        .where(Variable.parent_id == variable.id)
        .execution_options(populate_existing=True)
    )
    children = result.scalars().all()
    for child in children:
        child.parent_id = variable.parent_id
        child.lever_id = variable.lever_id if variable.parent_id is None else None
    await session.flush()
    for child in children:
        await paths.recompute_subtree(session, child, parent_path, parent_level)
    outcome.children_reassigned = [c.id for c in children]

    await session.delete(variable)
    await session.flush()

    if affected:
        # late import: scoring depends on the tree, not the other way round
        from .scoring import recalculate_response_scores

        await recalculate_response_scores(session, affected)


# --- Reads ------------------------------------------------------------------


async def get_variable_stats(session: AsyncSession, variable_id: int) -> Dict[str, Any]:
    variable = await get_variable(session, variable_id)
    tree = await load_subtree(session, variable)
    counts = await session.execute(
        select(VariableQuestion.variable_id, func.count(VariableQuestion.id))
        .where(VariableQuestion.variable_id.in_(list(tree.nodes)))
        .group_by(VariableQuestion.variable_id)
    )
    per_variable = dict(counts.all())
    return {
        "direct_children": len(tree.children[variable.id]),
        "direct_questions": per_variable.get(variable.id, 0),
        "total_descendants": len(tree) - 1,
        "total_questions": sum(per_variable.values()),
        "level": variable.level,
        "path": variable.path,
    }


async def get_variable_ancestors(session: AsyncSession, variable_id: int) -> List[Variable]:
    variable = await get_variable(session, variable_id)
    return await load_ancestors(session, variable)


def _node_dict(variable: Variable) -> Dict[str, Any]:
    return {
        "id": variable.id,
        "name": variable.name,
        "description": variable.description,
        "weightage": variable.weightage,
        "level": variable.level,
        "path": variable.path,
        "parent_id": variable.parent_id,
        "lever_id": variable.lever_id,
        "aggregation_type": variable.aggregation_type,
        "order": variable.order,
        "is_active": variable.is_active,
        "version": variable.version,
        "questions": [],
        "children": [],
    }


async def get_lever_tree(
    session: AsyncSession, lever_id: int, include_inactive: bool = False
) -> List[Dict[str, Any]]:
    """Nested tree of every root variable under ``lever_id``, at any depth."""
    await get_lever(session, lever_id)
    stmt = select(Variable).where(Variable.lever_id == lever_id, Variable.parent_id.is_(None))
    if not include_inactive:
        stmt = stmt.where(Variable.is_active.is_(True))
    result = await session.execute(stmt)
    tree = await load_forest(session, result.scalars().all(), include_inactive=include_inactive)
    questions = await _questions_by_variable(session, list(tree.nodes))

    built: Dict[int, Dict[str, Any]] = {}
    for node_id in tree.postorder():
        node = _node_dict(tree.nodes[node_id])
        node["questions"] = [
            q for q in questions[node_id] if include_inactive or q.is_active
        ]
        node["children"] = [built.pop(child_id) for child_id in tree.children[node_id]]
        built[node_id] = node
    return [built[root_id] for root_id in tree.root_ids]


async def list_variables(
    session: AsyncSession, lever_id: Optional[int] = None, include_inactive: bool = False
) -> List[Dict[str, Any]]:
    """Flat listing with the lever/pillar each variable resolves to."""
    if lever_id is not None:
        root_stmt = select(Variable).where(
            Variable.lever_id == lever_id, Variable.parent_id.is_(None)
        )
    else:
        root_stmt = select(Variable).where(Variable.parent_id.is_(None))
    result = await session.execute(root_stmt)
    tree = await load_forest(session, result.scalars().all())

    levers = {}
    lever_ids = {tree.nodes[r].lever_id for r in tree.root_ids}
    if lever_ids:
        rows = await session.execute(select(Lever).where(Lever.id.in_(lever_ids)))
        levers = {lever.id: lever for lever in rows.scalars().all()}

    resolved_lever: Dict[int, Optional[int]] = {}
    listing = []
    for node_id in tree.preorder():
        node = tree.nodes[node_id]
        owner = node.lever_id if node.parent_id is None else resolved_lever[node.parent_id]
        resolved_lever[node_id] = owner
        if not include_inactive and not node.is_active:
            continue
        lever = levers.get(owner)
        item = _node_dict(node)
        del item["questions"], item["children"]
        listing.append(
            {
                **item,
                "resolved_lever_id": owner,
                "resolved_pillar_id": lever.pillar_id if lever else None,
            }
        )
    listing.sort(key=lambda item: (item["level"], item["path"]))
    return listing
