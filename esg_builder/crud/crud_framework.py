import logging
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.hierarchy import deactivate_forests
from ..core.locks import atomic_mutation
from ..errors import DependentRecordsExist, DuplicateName, InactiveAncestor, NotFound
from ..models import Lever, Pillar, Variable
from ..schemas import LeverCreate, LeverUpdate, PillarCreate, PillarUpdate

logger = logging.getLogger(__name__)


# --- Pillars ---


async def get_pillar(db: AsyncSession, pillar_id: int) -> Pillar:
    pillar = await db.get(Pillar, pillar_id)
    if pillar is None:
        raise NotFound("Pillar", pillar_id)
    return pillar


async def _ensure_pillar_name_free(
    db: AsyncSession, name: str, exclude_id: Optional[int] = None
) -> None:
    stmt = select(Pillar.id).where(Pillar.name == name)
    if exclude_id is not None:
        stmt = stmt.where(Pillar.id != exclude_id)
    if (await db.execute(stmt)).first() is not None:
        raise DuplicateName(f"A pillar named {name!r} already exists")


async def lever_counts(db: AsyncSession, pillar_ids: List[int]) -> Dict[int, int]:
    if not pillar_ids:
        return {}
    result = await db.execute(
        select(Lever.pillar_id, func.count(Lever.id))
        .where(Lever.pillar_id.in_(pillar_ids), Lever.is_active.is_(True))
        .group_by(Lever.pillar_id)
    )
    return dict(result.all())


async def create_pillar(db: AsyncSession, pillar_in: PillarCreate) -> Pillar:
    await _ensure_pillar_name_free(db, pillar_in.name)
    pillar = Pillar(**pillar_in.model_dump())
    db.add(pillar)
    await db.commit()
    logger.info("Created pillar %s (%s)", pillar.id, pillar.name)
    return pillar


async def list_pillars(db: AsyncSession, include_inactive: bool = False) -> List[Pillar]:
    stmt = select(Pillar).order_by(Pillar.name)
    if not include_inactive:
        stmt = stmt.where(Pillar.is_active.is_(True))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def update_pillar(db: AsyncSession, pillar_id: int, pillar_in: PillarUpdate) -> Pillar:
    pillar = await get_pillar(db, pillar_id)
    changes = pillar_in.model_dump(exclude_unset=True)
    if "name" in changes and changes["name"] != pillar.name:
        await _ensure_pillar_name_free(db, changes["name"], exclude_id=pillar_id)
    for key, value in changes.items():
        setattr(pillar, key, value)
    await db.commit()
    return pillar


async def set_pillar_active(db: AsyncSession, pillar_id: int, is_active: bool) -> Pillar:
    """Deactivation cascades to every lever and variable below; activation does not."""
    pillar = await get_pillar(db, pillar_id)
    result = await db.execute(select(Lever).where(Lever.pillar_id == pillar_id))
    levers = result.scalars().all()

    if is_active:
        pillar.is_active = True
        await db.commit()
        logger.info("Activated pillar %s", pillar_id)
        return pillar

    lever_ids = [lever.id for lever in levers]
    async with atomic_mutation(db, lever_ids, "deactivate pillar"):
        pillar.is_active = False
        for lever in levers:
            lever.is_active = False
        variables = await deactivate_forests(db, lever_ids)
    logger.info(
        "Deactivated pillar %s with %d levers and %d variables",
        pillar_id,
        len(levers),
        variables,
    )
    return pillar


async def delete_pillar(db: AsyncSession, pillar_id: int) -> Pillar:
    """Soft delete; only a pillar without levers can go."""
    pillar = await get_pillar(db, pillar_id)
    count = await db.scalar(select(func.count(Lever.id)).where(Lever.pillar_id == pillar_id))
    if count:
        logger.warning("Refused to delete pillar %s: %d levers attached", pillar_id, count)
        raise DependentRecordsExist(
            f"Pillar {pillar_id} still has {count} levers; move or delete them first"
        )
    pillar.is_active = False
    await db.commit()
    logger.info("Soft deleted pillar %s", pillar_id)
    return pillar


# --- Levers ---


async def get_lever(db: AsyncSession, lever_id: int) -> Lever:
    lever = await db.get(Lever, lever_id)
    if lever is None:
        raise NotFound("Lever", lever_id)
    return lever


async def _ensure_lever_name_free(
    db: AsyncSession, pillar_id: int, name: str, exclude_id: Optional[int] = None
) -> None:
    stmt = select(Lever.id).where(Lever.pillar_id == pillar_id, Lever.name == name)
    if exclude_id is not None:
        stmt = stmt.where(Lever.id != exclude_id)
    if (await db.execute(stmt)).first() is not None:
        raise DuplicateName(f"Pillar {pillar_id} already has a lever named {name!r}")


async def root_variable_counts(db: AsyncSession, lever_ids: List[int]) -> Dict[int, int]:
    if not lever_ids:
        return {}
    result = await db.execute(
        select(Variable.lever_id, func.count(Variable.id))
        .where(Variable.lever_id.in_(lever_ids), Variable.is_active.is_(True))
        .group_by(Variable.lever_id)
    )
    return dict(result.all())


async def create_lever(db: AsyncSession, lever_in: LeverCreate) -> Lever:
    await get_pillar(db, lever_in.pillar_id)
    await _ensure_lever_name_free(db, lever_in.pillar_id, lever_in.name)
    lever = Lever(**lever_in.model_dump())
    db.add(lever)
    await db.commit()
    logger.info("Created lever %s (%s) in pillar %s", lever.id, lever.name, lever.pillar_id)
    return lever


async def list_levers(
    db: AsyncSession, pillar_id: Optional[int] = None, include_inactive: bool = False
) -> List[Lever]:
    stmt = select(Lever).order_by(Lever.pillar_id, Lever.name)
    if pillar_id is not None:
        stmt = stmt.where(Lever.pillar_id == pillar_id)
    if not include_inactive:
        stmt = stmt.where(Lever.is_active.is_(True))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def update_lever(db: AsyncSession, lever_id: int, lever_in: LeverUpdate) -> Lever:
    lever = await get_lever(db, lever_id)
    changes = lever_in.model_dump(exclude_unset=True)
    if "name" in changes and changes["name"] != lever.name:
        await _ensure_lever_name_free(db, lever.pillar_id, changes["name"], exclude_id=lever_id)
    for key, value in changes.items():
        setattr(lever, key, value)
    await db.commit()
    return lever


async def set_lever_active(db: AsyncSession, lever_id: int, is_active: bool) -> Lever:
    lever = await get_lever(db, lever_id)

    if is_active:
        pillar = await get_pillar(db, lever.pillar_id)
        if not pillar.is_active:
            logger.warning("Refused to activate lever %s: pillar %s inactive", lever_id, pillar.id)
            raise InactiveAncestor(
                f"Cannot activate lever {lever_id}: pillar {pillar.id} ({pillar.name}) is inactive"
            )
        lever.is_active = True
        await db.commit()
        logger.info("Activated lever %s", lever_id)
        return lever

    async with atomic_mutation(db, [lever_id], "deactivate lever"):
        lever.is_active = False
        variables = await deactivate_forests(db, [lever_id])
    logger.info("Deactivated lever %s and %d variables", lever_id, variables)
    return lever


async def delete_lever(db: AsyncSession, lever_id: int) -> Lever:
    """Soft delete; only a lever without root variables can go."""
    lever = await get_lever(db, lever_id)
    count = await db.scalar(select(func.count(Variable.id)).where(Variable.lever_id == lever_id))
    if count:
        logger.warning("Refused to delete lever %s: %d root variables attached", lever_id, count)
        raise DependentRecordsExist(
            f"Lever {lever_id} still has {count} root variables; move or delete them first"
        )
    lever.is_active = False
    await db.commit()
    logger.info("Soft deleted lever %s", lever_id)
    return lever
