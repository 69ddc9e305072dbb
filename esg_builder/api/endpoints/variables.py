from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ... import schemas
from ...core import hierarchy, scoring
from ...database import get_db_session

router = APIRouter()


@router.get("/variables", response_model=List[schemas.VariableListItem])
async def list_variables(
    lever_id: Optional[int] = None,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db_session),
):
    return await hierarchy.list_variables(db, lever_id, include_inactive)


# vor /variables/{variable_id}, sonst greift die Pfad-Variable
@router.get("/variables/hierarchy", response_model=List[schemas.VariableTreeNode])
async def get_hierarchy(
    lever_id: int, include_inactive: bool = False, db: AsyncSession = Depends(get_db_session)
):
    tree = await hierarchy.get_lever_tree(db, lever_id, include_inactive)
    return [schemas.VariableTreeNode.model_validate(node) for node in tree]


@router.post("/variables", response_model=schemas.VariableResponse, status_code=201)
async def create_variable(
    variable_in: schemas.VariableCreate, db: AsyncSession = Depends(get_db_session)
):
    return await hierarchy.create_variable(
        db,
        name=variable_in.name,
        description=variable_in.description,
        weightage=variable_in.weightage,
        parent_id=variable_in.parent_id,
        lever_id=variable_in.lever_id,
        aggregation_type=variable_in.aggregation_type.value,
        order=variable_in.order,
    )


@router.get("/variables/{variable_id}", response_model=schemas.VariableResponse)
async def get_variable(variable_id: int, db: AsyncSession = Depends(get_db_session)):
    return await hierarchy.get_variable(db, variable_id)


@router.put("/variables/{variable_id}", response_model=schemas.VariableResponse)
async def update_variable(
    variable_id: int,
    variable_in: schemas.VariableUpdate,
    db: AsyncSession = Depends(get_db_session),
):
    changes = {
        key: value
        for key, value in variable_in.model_dump(
            exclude_unset=True, exclude={"expected_version"}
        ).items()
        if value is not None or key == "description"
    }
    if "aggregation_type" in changes:
        changes["aggregation_type"] = changes["aggregation_type"].value
    return await hierarchy.update_variable(
        db, variable_id, changes, expected_version=variable_in.expected_version
    )


@router.patch("/variables/{variable_id}/toggle", response_model=schemas.VariableResponse)
async def toggle_variable(
    variable_id: int, toggle: schemas.ToggleRequest, db: AsyncSession = Depends(get_db_session)
):
    return await hierarchy.set_variable_active(db, variable_id, toggle.is_active)


@router.get("/variables/{variable_id}/stats", response_model=schemas.VariableStats)
async def get_variable_stats(variable_id: int, db: AsyncSession = Depends(get_db_session)):
    return await hierarchy.get_variable_stats(db, variable_id)


@router.get("/variables/{variable_id}/ancestors", response_model=List[schemas.VariableResponse])
async def get_variable_ancestors(variable_id: int, db: AsyncSession = Depends(get_db_session)):
    return await hierarchy.get_variable_ancestors(db, variable_id)


@router.get("/variables/{variable_id}/can-move", response_model=schemas.CanMoveResponse)
async def can_move_variable(
    variable_id: int, new_parent_id: int, db: AsyncSession = Depends(get_db_session)
):
    """Dry run: would moving the variable under ``new_parent_id`` be allowed?"""
    await hierarchy.get_variable(db, new_parent_id)
    allowed = await hierarchy.can_move_variable(db, variable_id, new_parent_id)
    return schemas.CanMoveResponse(
        variable_id=variable_id, new_parent_id=new_parent_id, can_move=allowed
    )


@router.post("/variables/{variable_id}/move", response_model=schemas.VariableResponse)
async def move_variable(
    variable_id: int, move: schemas.VariableMove, db: AsyncSession = Depends(get_db_session)
):
    return await hierarchy.move_variable(
        db, variable_id, new_parent_id=move.new_parent_id, new_lever_id=move.new_lever_id
    )


@router.post(
    "/variables/{variable_id}/clone", response_model=schemas.VariableResponse, status_code=201
)
async def clone_variable(
    variable_id: int, clone: schemas.VariableClone, db: AsyncSession = Depends(get_db_session)
):
    return await hierarchy.clone_variable_tree(
        db,
        variable_id,
        target_lever_id=clone.target_lever_id,
        target_parent_id=clone.target_parent_id,
    )


@router.get("/variables/{variable_id}/delete-preview")
async def preview_variable_deletion(variable_id: int, db: AsyncSession = Depends(get_db_session)):
    return await hierarchy.preview_deletion(db, variable_id)


@router.delete("/variables/{variable_id}", response_model=schemas.DeletionResponse)
async def delete_variable(
    variable_id: int, force: bool = False, db: AsyncSession = Depends(get_db_session)
):
    """Without ``force`` a non-empty variable is only deactivated and a 409 with
    the deletion preview comes back."""
    return await hierarchy.delete_variable(db, variable_id, force=force)


@router.get("/variables/{variable_id}/score", response_model=schemas.ScoreResponse)
async def variable_score(
    variable_id: int, response_id: int, db: AsyncSession = Depends(get_db_session)
):
    score = await scoring.compute_score(db, variable_id, response_id)
    return schemas.ScoreResponse(
        target="variable", target_id=variable_id, response_id=response_id, score=score
    )


@router.get("/variables/{variable_id}/score-tree", response_model=schemas.ScoreTreeNode)
async def variable_score_tree(
    variable_id: int, response_id: int, db: AsyncSession = Depends(get_db_session)
):
    return await scoring.score_variable_tree(db, variable_id, response_id)
