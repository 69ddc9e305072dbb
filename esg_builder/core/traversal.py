"""Iterative loading and walking of variable subtrees.

Subtrees are loaded breadth-first, one query per level, into a flat arena
keyed by variable id. All walks over the arena use an explicit stack so a
deep tree never touches the interpreter's recursion limit.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..errors import CircularReference, TreeDepthExceeded
from ..models import Variable


def _sort_key(variable: Variable):
    return (variable.order or 0, variable.name, variable.id)


@dataclass
class Subtree:
    root_ids: List[int]
    nodes: Dict[int, Variable] = field(default_factory=dict)
    children: Dict[int, List[int]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.nodes)

    def descendant_ids(self) -> List[int]:
        roots = set(self.root_ids)
        return [node_id for node_id in self.preorder() if node_id not in roots]

    def preorder(self) -> Iterator[int]:
        stack = list(reversed(self.root_ids))
        while stack:
            node_id = stack.pop()
            yield node_id
            stack.extend(reversed(self.children.get(node_id, [])))

    def postorder(self) -> Iterator[int]:
        # Children are always yielded before their parent.
        stack = [(node_id, False) for node_id in reversed(self.root_ids)]
        while stack:
            node_id, expanded = stack.pop()
            if expanded:
                yield node_id
                continue
            stack.append((node_id, True))
            for child_id in reversed(self.children.get(node_id, [])):
                stack.append((child_id, False))


async def load_forest(
    session: AsyncSession,
    roots: Iterable[Variable],
    max_depth: Optional[int] = None,
    include_inactive: bool = True,
) -> Subtree:
    """Load every descendant of ``roots``.

    Raises CircularReference if a node is reached twice (a corrupted parent
    chain) and TreeDepthExceeded if the tree is deeper than ``max_depth``.
    """
    max_depth = settings.max_tree_depth if max_depth is None else max_depth
    roots = sorted(roots, key=_sort_key)
    tree = Subtree(root_ids=[r.id for r in roots])
    for root in roots:
        tree.nodes[root.id] = root
        tree.children[root.id] = []

    frontier = list(tree.root_ids)
    depth = 0
    while frontier:
        # Refresh rows the session already holds; they may predate a commit
        # made by another request.
        stmt = (
            select(Variable)
            .where(Variable.parent_id.in_(frontier))
            .execution_options(populate_existing=True)
        )
        if not include_inactive:
            stmt = stmt.where(Variable.is_active.is_(True))
        result = await session.execute(stmt)
        level_nodes = sorted(result.scalars().all(), key=_sort_key)
        if not level_nodes:
            break

        depth += 1
        if depth > max_depth:
            raise TreeDepthExceeded(
                f"Variable tree below {tree.root_ids} is deeper than {max_depth} levels"
            )

        frontier = []
        for node in level_nodes:
            if node.id in tree.nodes:
                raise CircularReference(
                    f"Variable {node.id} is reachable twice; parent chain contains a cycle"
                )
            tree.nodes[node.id] = node
            tree.children[node.id] = []
            tree.children[node.parent_id].append(node.id)
            frontier.append(node.id)
    return tree


async def load_subtree(
    session: AsyncSession,
    root: Variable,
    max_depth: Optional[int] = None,
    include_inactive: bool = True,
) -> Subtree:
    return await load_forest(session, [root], max_depth, include_inactive)


async def load_ancestors(
    session: AsyncSession, variable: Variable, max_depth: Optional[int] = None
) -> List[Variable]:
    """Return the parent chain of ``variable``, root first."""
    max_depth = settings.max_tree_depth if max_depth is None else max_depth
    ancestors: List[Variable] = []
    seen = {variable.id}
    current = variable
    while current.parent_id is not None:
        if current.parent_id in seen:
            raise CircularReference(
                f"Parent chain of variable {variable.id} loops back to {current.parent_id}"
            )
        if len(ancestors) >= max_depth:
            raise TreeDepthExceeded(
                f"Variable {variable.id} has more than {max_depth} ancestors"
            )
        parent = await session.get(Variable, current.parent_id, populate_existing=True)
        if parent is None:
            break
        seen.add(parent.id)
        ancestors.append(parent)
        current = parent
    ancestors.reverse()
    return ancestors


async def root_lever_id(session: AsyncSession, variable: Variable) -> Optional[int]:
    """Lever owning the forest ``variable`` lives in."""
    if variable.lever_id is not None:
        return variable.lever_id
    ancestors = await load_ancestors(session, variable)
    if not ancestors:
        return None
    return ancestors[0].lever_id
