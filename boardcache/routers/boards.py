from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from boardcache.models import AggregateKey, BoardState, TimelineEvent
from boardcache.mutations.payloads import Mutation
from boardcache.routers.admin import RuntimeDep

router = APIRouter(prefix="/boards", tags=["boards"])


def get_board_key(project_id: str, team_id: str) -> AggregateKey:
    try:
        return AggregateKey(project_id, team_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


BoardKeyDep = Annotated[AggregateKey, Depends(get_board_key)]


class MutationRequest(BaseModel):
    actor: str = Field(min_length=1)
    payload: dict[str, Any]
    client_timestamp: datetime | None = None


class MutationResponse(BaseModel):
    mutation: Mutation
    board: BoardState


@router.get("/{project_id}/{team_id}", response_model=BoardState)
async def get_board(key: BoardKeyDep, runtime: RuntimeDep):
    """Current view of a board, including mutations still pending"""
    return await runtime.engine.view(key)


@router.put("/{project_id}/{team_id}", status_code=status.HTTP_204_NO_CONTENT)
async def replace_board(key: BoardKeyDep, board: BoardState, runtime: RuntimeDep):
    """Import a whole board, replacing what the source of truth holds"""
    if board.key != key:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Board body is for {board.key}, not {key}",
        )
    if runtime.engine.pending_count(key):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Board {key} has mutations in flight",
        )
    await runtime.boards.replace_board(board)


@router.post(
    "/{project_id}/{team_id}/mutations",
    response_model=MutationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_mutation(
    key: BoardKeyDep,
    body: MutationRequest,
    runtime: RuntimeDep,
    wait: bool = Query(default=False),
):
    """
    Apply a mutation optimistically.

    Returns the optimistic board right away. With `wait=true` the response
    is held until the mutation is confirmed; a rollback becomes an error
    response (504 timeout, 502 persist failure, 422 no longer applicable).
    """
    handle = await runtime.engine.mutate(
        key, body.payload, body.actor, body.client_timestamp
    )
    mutation = handle.mutation
    if wait:
        mutation = await handle.outcome()
    return MutationResponse(mutation=mutation, board=handle.view)


@router.get("/{project_id}/{team_id}/mutations/{mutation_id}", response_model=Mutation)
async def get_mutation(key: BoardKeyDep, mutation_id: str, runtime: RuntimeDep):
    mutation = runtime.engine.status(mutation_id)
    if mutation is None or mutation.aggregate_key != str(key):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Mutation {mutation_id} not found",
        )
    return mutation


@router.get("/{project_id}/{team_id}/mutations")
async def pending_mutations(key: BoardKeyDep, runtime: RuntimeDep):
    return {"aggregate_key": str(key), "pending": runtime.engine.pending_count(key)}


@router.get("/{project_id}/{team_id}/timeline", response_model=list[TimelineEvent])
async def get_timeline(
    key: BoardKeyDep,
    runtime: RuntimeDep,
    limit: int | None = Query(default=None, ge=1, le=1000),
):
    """Confirmed changes of a board, oldest first"""
    return await runtime.boards.timeline_events(key, limit=limit)


@router.post("/{project_id}/{team_id}/invalidate")
async def invalidate_board(key: BoardKeyDep, runtime: RuntimeDep):
    """Drop the cached copy of a board; the next read reloads it"""
    await runtime.boards.invalidate(key)
    return {"success": True, "message": f"Cache invalidated for {key}"}

