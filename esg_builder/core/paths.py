"""Derived ``level``/``path`` maintenance for variable trees."""

import logging
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models import Variable
from .traversal import load_ancestors, load_forest, load_subtree

logger = logging.getLogger(__name__)


def build_path(parent_path: Optional[str], name: str, separator: Optional[str] = None) -> str:
    separator = settings.path_separator if separator is None else separator
    if parent_path:
        return f"{parent_path}{separator}{name}"
    return name


def child_level(parent_level: Optional[int]) -> int:
    return 0 if parent_level is None else parent_level + 1


def expected_position(ancestors: List[Variable], name: str) -> Tuple[str, int]:
    """Path and level computed from scratch from the ancestor names (root first)."""
    path = None
    for ancestor in ancestors:
        path = build_path(path, ancestor.name)
    return build_path(path, name), len(ancestors)


async def recompute_subtree(
    session: AsyncSession,
    root: Variable,
    parent_path: Optional[str] = None,
    parent_level: Optional[int] = None,
) -> int:
    """Rewrite path/level of ``root`` and every descendant.

    ``parent_level`` None means ``root`` has no parent variable. Returns the
    number of rows whose stored path or level actually changed. The caller
    owns the transaction; nothing is committed here.
    """
    await session.flush()
    tree = await load_subtree(session, root)

    changed = 0
    stack = [(root.id, parent_path, parent_level)]
    while stack:
        node_id, ctx_path, ctx_level = stack.pop()
        node = tree.nodes[node_id]
        new_path = build_path(ctx_path, node.name)
        new_level = child_level(ctx_level)
        if node.path != new_path or node.level != new_level:
            node.path = new_path
            node.level = new_level
            changed += 1
        for child_id in reversed(tree.children[node_id]):
            stack.append((child_id, new_path, new_level))

    await session.flush()
    if changed:
        logger.info(
            "Recomputed path/level under variable %s: %d of %d nodes changed",
            root.id,
            changed,
            len(tree),
        )
    return changed


async def recompute_from_parent(session: AsyncSession, variable: Variable) -> int:
    """Recompute ``variable``'s subtree using its current parent as context."""
    if variable.parent_id is None:
        return await recompute_subtree(session, variable)
    parent = await session.get(Variable, variable.parent_id, populate_existing=True)
    return await recompute_subtree(session, variable, parent.path, parent.level)


async def repair_lever_forest(session: AsyncSession, lever_id: int) -> int:
    """Recompute path/level over every tree rooted at ``lever_id``."""
    await session.flush()
    result = await session.execute(
        select(Variable)
        .where(Variable.lever_id == lever_id, Variable.parent_id.is_(None))
        .execution_options(populate_existing=True)
    )
    roots = result.scalars().all()
    changed = 0
    for root in roots:
        changed += await recompute_subtree(session, root)
    logger.info("Repaired lever %s forest: %d nodes changed", lever_id, changed)
    return changed


async def find_inconsistent(session: AsyncSession, lever_id: int) -> List[int]:
    """Ids of variables under ``lever_id`` whose stored path/level is stale."""
    result = await session.execute(
        select(Variable).where(Variable.lever_id == lever_id, Variable.parent_id.is_(None))
    )
    tree = await load_forest(session, result.scalars().all())
    stale = []
    positions = {}
    for node_id in tree.preorder():
        node = tree.nodes[node_id]
        if node.parent_id is None:
            path, level = build_path(None, node.name), 0
        else:
            parent_path, parent_level = positions[node.parent_id]
            path, level = build_path(parent_path, node.name), parent_level + 1
        positions[node_id] = (path, level)
        if node.path != path or node.level != level:
            stale.append(node_id)
    return stale


async def verify_variable(session: AsyncSession, variable: Variable) -> bool:
    ancestors = await load_ancestors(session, variable)
    return expected_position(ancestors, variable.name) == (variable.path, variable.level)
