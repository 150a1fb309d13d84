"""1v1 battle endpoints: thin wrappers over battle_service.

Failures raised by the service are BattleError subclasses; the app-level
handler in main.py maps them to status codes and ``{detail, code}`` bodies.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from fitarena.models.battle import (
    BaselineSet,
    BattleCreate,
    BattleResponse,
    BattleStats,
    BattleStatus,
    BattleType,
    BattleUpdateCreate,
    ProgressUpdate,
    SpectatorJoin,
)
from fitarena.services import battle_service
from fitarena.services.auth_service import get_current_user

router = APIRouter(prefix="/api/battles", tags=["battles"])


def _page(result: dict, viewer_id: str) -> dict:
    return {
        "battles": [battle_service.to_response(b, viewer_id) for b in result["battles"]],
        "pagination": result["pagination"],
    }


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=BattleResponse)
async def create(body: BattleCreate, user=Depends(get_current_user)):
    """Create a new pending battle."""
    user_id = str(user["_id"])
    battle = await battle_service.create_battle(body, user_id)
    return battle_service.to_response(battle, user_id)


@router.get("/")
async def list_battles(
    status_filter: Optional[BattleStatus] = Query(None, alias="status"),
    battle_type: Optional[BattleType] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    user=Depends(get_current_user),
):
    """List battles with status/type filters and pagination."""
    result = await battle_service.get_battles(
        status=status_filter,
        battle_type=battle_type,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return _page(result, str(user["_id"]))


@router.get("/user/me")
async def my_battles(
    status_filter: Optional[BattleStatus] = Query(None, alias="status"),
    spectating: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_current_user),
):
    """Battles the current user fights in (or watches, with ``spectating``)."""
    user_id = str(user["_id"])
    result = await battle_service.get_user_battles(
        user_id, status=status_filter, page=page, limit=limit, spectating=spectating,
    )
    return _page(result, user_id)


@router.get("/stats/me", response_model=BattleStats)
async def my_stats(user=Depends(get_current_user)):
    return await battle_service.get_battle_stats(str(user["_id"]))


@router.get("/{battle_id}", response_model=BattleResponse)
async def get_battle(battle_id: str, user=Depends(get_current_user)):
    """Battle details with the viewer's role and permissions."""
    return await battle_service.get_battle_by_id(battle_id, str(user["_id"]))


@router.post("/{battle_id}/accept", response_model=BattleResponse)
async def accept(battle_id: str, user=Depends(get_current_user)):
    user_id = str(user["_id"])
    battle = await battle_service.accept_battle(battle_id, user_id)
    return battle_service.to_response(battle, user_id)


@router.post("/{battle_id}/baseline", response_model=BattleResponse)
async def set_baseline(battle_id: str, body: BaselineSet, user=Depends(get_current_user)):
    user_id = str(user["_id"])
    battle = await battle_service.set_baseline(battle_id, user_id, body.baseline_value)
    return battle_service.to_response(battle, user_id)


@router.post("/{battle_id}/progress", response_model=BattleResponse)
async def update_progress(battle_id: str, body: ProgressUpdate, user=Depends(get_current_user)):
    user_id = str(user["_id"])
    battle = await battle_service.update_progress(
        battle_id, user_id, body.current_value, body.note,
    )
    return battle_service.to_response(battle, user_id)


@router.post("/{battle_id}/updates", response_model=BattleResponse)
async def add_update(battle_id: str, body: BattleUpdateCreate, user=Depends(get_current_user)):
    """Post to the battle feed (trash talk, milestones, ...)."""
    user_id = str(user["_id"])
    battle = await battle_service.add_update(battle_id, user_id, body.type, body.message)
    return battle_service.to_response(battle, user_id)


@router.post("/{battle_id}/spectators", response_model=BattleResponse)
async def join_as_spectator(battle_id: str, body: SpectatorJoin, user=Depends(get_current_user)):
    user_id = str(user["_id"])
    battle = await battle_service.add_spectator(battle_id, user_id, body.support_for)
    return battle_service.to_response(battle, user_id)


@router.post("/{battle_id}/complete", response_model=BattleResponse)
async def complete(battle_id: str, user=Depends(get_current_user)):
    """Manually end an active battle and declare the winner."""
    user_id = str(user["_id"])
    battle = await battle_service.complete_battle(battle_id, user_id)
    return battle_service.to_response(battle, user_id)


@router.post("/{battle_id}/cancel", response_model=BattleResponse)
async def cancel(battle_id: str, user=Depends(get_current_user)):
    user_id = str(user["_id"])
    battle = await battle_service.cancel_battle(battle_id, user_id)
    return battle_service.to_response(battle, user_id)
