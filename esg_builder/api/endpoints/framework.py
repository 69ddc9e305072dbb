from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ... import schemas
from ...core import hierarchy, scoring
from ...crud import crud_framework
from ...database import get_db_session

router = APIRouter()


def _pillar_out(pillar, lever_count: int = 0) -> schemas.PillarResponse:
    return schemas.PillarResponse.model_validate(pillar).model_copy(
        update={"lever_count": lever_count}
    )


def _lever_out(lever, variable_count: int = 0) -> schemas.LeverResponse:
    return schemas.LeverResponse.model_validate(lever).model_copy(
        update={"variable_count": variable_count}
    )


# --- Pillars ---


@router.post("/pillars", response_model=schemas.PillarResponse, status_code=201)
async def create_pillar(pillar_in: schemas.PillarCreate, db: AsyncSession = Depends(get_db_session)):
    return _pillar_out(await crud_framework.create_pillar(db, pillar_in))


@router.get("/pillars", response_model=List[schemas.PillarResponse])
async def list_pillars(include_inactive: bool = False, db: AsyncSession = Depends(get_db_session)):
    pillars = await crud_framework.list_pillars(db, include_inactive)
    counts = await crud_framework.lever_counts(db, [p.id for p in pillars])
    return [_pillar_out(p, counts.get(p.id, 0)) for p in pillars]


@router.get("/pillars/{pillar_id}", response_model=schemas.PillarResponse)
async def get_pillar(pillar_id: int, db: AsyncSession = Depends(get_db_session)):
    pillar = await crud_framework.get_pillar(db, pillar_id)
    counts = await crud_framework.lever_counts(db, [pillar_id])
    return _pillar_out(pillar, counts.get(pillar_id, 0))


@router.put("/pillars/{pillar_id}", response_model=schemas.PillarResponse)
async def update_pillar(
    pillar_id: int, pillar_in: schemas.PillarUpdate, db: AsyncSession = Depends(get_db_session)
):
    return _pillar_out(await crud_framework.update_pillar(db, pillar_id, pillar_in))


@router.patch("/pillars/{pillar_id}/toggle", response_model=schemas.PillarResponse)
async def toggle_pillar(
    pillar_id: int, toggle: schemas.ToggleRequest, db: AsyncSession = Depends(get_db_session)
):
    return _pillar_out(await crud_framework.set_pillar_active(db, pillar_id, toggle.is_active))


@router.delete("/pillars/{pillar_id}", response_model=schemas.MessageResponse)
async def delete_pillar(pillar_id: int, db: AsyncSession = Depends(get_db_session)):
    await crud_framework.delete_pillar(db, pillar_id)
    return schemas.MessageResponse(message=f"Pillar {pillar_id} deactivated")


@router.get("/pillars/{pillar_id}/score", response_model=schemas.ScoreResponse)
async def pillar_score(pillar_id: int, response_id: int, db: AsyncSession = Depends(get_db_session)):
    score = await scoring.compute_pillar_score(db, pillar_id, response_id)
    return schemas.ScoreResponse(
        target="pillar", target_id=pillar_id, response_id=response_id, score=score
    )


# --- Levers ---


@router.post("/levers", response_model=schemas.LeverResponse, status_code=201)
async def create_lever(lever_in: schemas.LeverCreate, db: AsyncSession = Depends(get_db_session)):
    return _lever_out(await crud_framework.create_lever(db, lever_in))


@router.get("/levers", response_model=List[schemas.LeverResponse])
async def list_levers(
    pillar_id: Optional[int] = None, include_inactive: bool = False, db: AsyncSession = Depends(get_db_session)
):
    levers = await crud_framework.list_levers(db, pillar_id, include_inactive)
    counts = await crud_framework.root_variable_counts(db, [l.id for l in levers])
    return [_lever_out(l, counts.get(l.id, 0)) for l in levers]


@router.get("/levers/{lever_id}", response_model=schemas.LeverResponse)
async def get_lever(lever_id: int, db: AsyncSession = Depends(get_db_session)):
    lever = await crud_framework.get_lever(db, lever_id)
    counts = await crud_framework.root_variable_counts(db, [lever_id])
    return _lever_out(lever, counts.get(lever_id, 0))


@router.put("/levers/{lever_id}", response_model=schemas.LeverResponse)
async def update_lever(
    lever_id: int, lever_in: schemas.LeverUpdate, db: AsyncSession = Depends(get_db_session)
):
    return _lever_out(await crud_framework.update_lever(db, lever_id, lever_in))


@router.patch("/levers/{lever_id}/toggle", response_model=schemas.LeverResponse)
async def toggle_lever(
    lever_id: int, toggle: schemas.ToggleRequest, db: AsyncSession = Depends(get_db_session)
):
    return _lever_out(await crud_framework.set_lever_active(db, lever_id, toggle.is_active))


@router.delete("/levers/{lever_id}", response_model=schemas.MessageResponse)
async def delete_lever(lever_id: int, db: AsyncSession = Depends(get_db_session)):
    await crud_framework.delete_lever(db, lever_id)
    return schemas.MessageResponse(message=f"Lever {lever_id} deactivated")


@router.post("/levers/{lever_id}/repair-paths", response_model=schemas.RepairResponse)
async def repair_lever_paths(lever_id: int, db: AsyncSession = Depends(get_db_session)):
    changed = await hierarchy.repair_lever_paths(db, lever_id)
    return schemas.RepairResponse(lever_id=lever_id, nodes_changed=changed)


@router.get("/levers/{lever_id}/score", response_model=schemas.ScoreResponse)
async def lever_score(lever_id: int, response_id: int, db: AsyncSession = Depends(get_db_session)):
    score = await scoring.compute_lever_score(db, lever_id, response_id)
    return schemas.ScoreResponse(
        target="lever", target_id=lever_id, response_id=response_id, score=score
    )


@router.get("/levers/{lever_id}/score-breakdown", response_model=List[schemas.ScoreTreeNode])
async def lever_score_breakdown(
    lever_id: int, response_id: int, db: AsyncSession = Depends(get_db_session)
):
    return await scoring.lever_score_breakdown(db, lever_id, response_id)
