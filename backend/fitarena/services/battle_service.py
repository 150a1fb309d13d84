"""
backend/fitarena/services/battle_service.py

Purpose:
    Use cases for 1v1 battles: create, list, view, accept, baselines,
    progress, feed updates, spectators, manual completion, cancellation and
    per-user history/stats.

    Every mutation runs as one serialized cycle under the per-battle lock:
    load -> record mutator -> evaluate_transitions -> versioned replace.
    XP rewards fire after the write and never fail the request.

Dependencies:
    - fitarena.services.battle_record
    - fitarena.services.battle_lifecycle
    - fitarena.services.battle_repository
    - fitarena.services.user_directory
    - fitarena.services.rewards_service
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from fitarena.config import settings
from fitarena.errors import (
    AlreadyHasOpponent,
    ConcurrentModification,
    InvalidState,
    NotParticipant,
    ValidationError,
)
from fitarena.models.battle import (
    BattleCreate,
    BattleInDB,
    BattleResponse,
    BattleStats,
    BattleStatus,
    BattleType,
    PartyProgress,
    SupportFor,
    UpdateType,
)
from fitarena.services import battle_record, battle_repository, rewards_service
from fitarena.services.battle_lifecycle import evaluate_transitions
from fitarena.services.battle_repository import battle_locks
from fitarena.services.user_directory import resolve_display_name
from fitarena.utils import utcnow

logger = logging.getLogger("fitarena.battle_service")

SORTABLE_FIELDS = {
    "created_at",
    "updated_at",
    "start_date",
    "end_date",
    "duration_days",
    "title",
    "status",
}

Mutator = Callable[[BattleInDB, datetime], Any]


# ---------- Internal helpers ----------


async def _mutate(battle_id: str, mutator: Optional[Mutator] = None) -> BattleInDB:
    """Run one load -> settle -> mutate -> evaluate -> replace cycle for a battle.

    Transitions already due at load time are persisted before ``mutator``
    runs, so a write that arrives after the deadline meets the terminal
    status and fails instead of changing the outcome. Without a mutator only
    the settling pass runs.
    """
    newly_completed: Optional[BattleInDB] = None
    try:
        async with battle_locks.hold(battle_id):
            battle = await battle_repository.load(battle_id)
            was_completed = battle.status == BattleStatus.completed
            now = utcnow()

            battle, transitions = evaluate_transitions(battle, now)
            if transitions:
                await battle_repository.replace(battle)
                _log_transitions(battle_id, transitions)
            if not was_completed and battle.status == BattleStatus.completed:
                newly_completed = battle

            if mutator is not None:
                mutator(battle, now)
                battle, transitions = evaluate_transitions(battle, now)
                await battle_repository.replace(battle)
                _log_transitions(battle_id, transitions)
                if newly_completed is None and not was_completed and battle.status == BattleStatus.completed:
                    newly_completed = battle
    finally:
        # Paid even when the mutator is rejected after an overdue completion was stored.
        if newly_completed is not None:
            await award_winner(newly_completed)
    return battle


def _log_transitions(battle_id: str, transitions: list) -> None:
    if transitions:
        logger.info(
            "Battle %s lifecycle: %s",
            battle_id, ", ".join(t.value for t in transitions),
        )


async def _safe_grant(user_id: str, amount: int, reason: str, battle_id: Optional[str]) -> None:
    """Grant XP; ledger failures are logged, never propagated."""
    try:
        await rewards_service.grant(
            user_id, amount, reason,
            reference_type="battle", reference_id=battle_id,
        )
    except Exception:
        logger.exception(
            "XP grant failed: user=%s amount=%d battle=%s", user_id, amount, battle_id,
        )


async def award_winner(battle: BattleInDB) -> None:
    """Winner bonus for a completed battle; ties pay nothing."""
    if battle.winner is None:
        logger.info("Battle %s ended in a tie", battle.id)
        return
    await _safe_grant(
        battle.winner, settings.BATTLE_WIN_XP, f"Won battle: {battle.title}", battle.id,
    )


def to_response(
    battle: BattleInDB,
    viewer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> BattleResponse:
    """Shape a battle for the client. Viewer annotations are never persisted."""
    now = now or utcnow()
    data = battle.model_dump()
    data["days_remaining"] = battle_record.days_remaining(battle, now)
    data["progress_percentage"] = round(battle_record.progress_percentage(battle, now), 2)
    if viewer_id:
        data["user_role"] = battle_record.user_role(battle, viewer_id)
        data["can_accept"] = battle_record.can_accept(battle, viewer_id)
        data["can_update"] = battle_record.can_update(battle, viewer_id)
    return BattleResponse.model_validate(data)


def _pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }


def _check_paging(page: int, limit: int) -> int:
    if page < 1:
        raise ValidationError("Page must be 1 or greater.")
    if limit < 1:
        raise ValidationError("Limit must be 1 or greater.")
    return min(limit, settings.BATTLE_PAGE_MAX_LIMIT)


def _format_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ())) or "body"
        parts.append(f"{field}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)


# ---------- Create / read ----------


async def create_battle(data: BattleCreate | dict, creator_id: str) -> BattleInDB:
    """Create a pending battle owned by ``creator_id``."""
    if not isinstance(data, BattleCreate):
        try:
            data = BattleCreate.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(_format_validation_error(exc)) from exc

    creator_name = await resolve_display_name(creator_id)

    now = utcnow()
    battle = BattleInDB(
        **data.model_dump(),
        creator_id=creator_id,
        creator_name=creator_name,
        status=BattleStatus.pending,
        creator_progress=PartyProgress(),
        opponent_progress=PartyProgress(),
        spectators=[],
        updates=[],
        version=0,
        created_at=now,
        updated_at=now,
    )
    await battle_repository.insert(battle)
    logger.info(
        "Battle created: %s (%s, %d days) by %s",
        battle.id, battle.battle_type.value, battle.duration_days, creator_id,
    )
    return battle


async def get_battles(
    status: Optional[BattleStatus | str] = None,
    battle_type: Optional[BattleType | str] = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> dict:
    """Filtered, sorted, paginated battle listing."""
    limit = _check_paging(page, limit)
    if sort_by not in SORTABLE_FIELDS:
        raise ValidationError(f"Cannot sort by '{sort_by}'.")
    if sort_order not in ("asc", "desc"):
        raise ValidationError("Sort order must be 'asc' or 'desc'.")

    query: dict = {}
    if status:
        query["status"] = BattleStatus(status).value
    if battle_type:
        query["battle_type"] = BattleType(battle_type).value

    battles, total = await battle_repository.find_page(
        query,
        sort_field=sort_by,
        sort_direction=-1 if sort_order == "desc" else 1,
        page=page,
        limit=limit,
    )
    return {"battles": battles, "pagination": _pagination(page, limit, total)}


async def get_battle_by_id(battle_id: str, user_id: Optional[str] = None) -> BattleResponse:
    """Load a battle, settle any overdue lifecycle transition, annotate for the viewer."""
    battle = await battle_repository.load(battle_id)
    now = utcnow()
    evaluated, transitions = evaluate_transitions(battle, now)
    if transitions:
        try:
            battle = await _mutate(battle_id)
        except ConcurrentModification:
            # Someone else is writing this battle right now; show the evaluated view.
            logger.info("Lazy transition for battle %s lost a race; serving evaluated copy", battle_id)
            battle = evaluated
    return to_response(battle, user_id, now)


# ---------- Mutations ----------


async def accept_battle(battle_id: str, opponent_id: str) -> BattleInDB:
    """Attach ``opponent_id`` as the opponent and grant the accept bonus."""
    opponent_name = await resolve_display_name(opponent_id)

    def _accept(battle: BattleInDB, now: datetime) -> None:
        check = battle_record.can_accept(battle, opponent_id)
        if not check.can_accept:
            if battle.status == BattleStatus.pending and battle.opponent_id is not None:
                raise AlreadyHasOpponent(check.reason)
            raise InvalidState(check.reason, reason=battle.status.value)
        battle_record.accept(battle, opponent_id, opponent_name, now)

    battle = await _mutate(battle_id, _accept)
    logger.info("Battle %s accepted by %s", battle_id, opponent_id)
    await _safe_grant(
        opponent_id, settings.BATTLE_ACCEPT_XP, f"Accepted battle: {battle.title}", battle.id,
    )
    return battle


async def set_baseline(battle_id: str, user_id: str, baseline_value: Any) -> BattleInDB:
    battle = await _mutate(
        battle_id,
        lambda b, now: battle_record.set_baseline(b, user_id, baseline_value, now),
    )
    logger.info("Battle %s baseline set by %s: %s", battle_id, user_id, baseline_value)
    return battle


async def update_progress(
    battle_id: str, user_id: str, current_value: Any, note: str = "",
) -> BattleInDB:
    battle = await _mutate(
        battle_id,
        lambda b, now: battle_record.update_progress(b, user_id, current_value, note, now),
    )
    logger.info("Battle %s progress by %s: %s", battle_id, user_id, current_value)
    await _safe_grant(
        user_id, settings.BATTLE_PROGRESS_XP, f"Battle progress: {battle.title}", battle.id,
    )
    return battle


async def complete_battle(battle_id: str, user_id: Optional[str] = None) -> BattleInDB:
    """Manual completion. When ``user_id`` is given it must be a party."""

    def _complete(battle: BattleInDB, now: datetime) -> None:
        if user_id is not None and not battle_record.is_participant(battle, user_id):
            raise NotParticipant("Only participants can complete a battle")
        battle_record.complete(battle, now)

    battle = await _mutate(battle_id, _complete)
    logger.info("Battle %s completed, winner=%s", battle_id, battle.winner)
    return battle


async def cancel_battle(battle_id: str, user_id: str) -> BattleInDB:
    """Creator-only cancellation of a pending or active battle."""

    def _cancel(battle: BattleInDB, now: datetime) -> None:
        if user_id != battle.creator_id:
            raise NotParticipant("Only the creator can cancel a battle")
        battle_record.cancel(battle, now)

    battle = await _mutate(battle_id, _cancel)
    logger.info("Battle %s cancelled by %s", battle_id, user_id)
    return battle


async def add_update(
    battle_id: str, user_id: str, update_type: UpdateType | str, message: str,
) -> BattleInDB:
    user_name = await resolve_display_name(user_id)
    battle = await _mutate(
        battle_id,
        lambda b, now: battle_record.add_update(b, user_id, user_name, update_type, message, now),
    )
    logger.info("Battle %s update (%s) by %s", battle_id, UpdateType(update_type).value, user_id)
    return battle


async def add_spectator(
    battle_id: str, user_id: str, support_for: SupportFor | str = SupportFor.neutral,
) -> BattleInDB:
    battle = await _mutate(
        battle_id,
        lambda b, now: battle_record.add_spectator(b, user_id, support_for, now),
    )
    logger.info("Spectator %s joined battle %s (%s)", user_id, battle_id, SupportFor(support_for).value)
    return battle


# ---------- Per-user reads ----------


async def get_user_battles(
    user_id: str,
    status: Optional[BattleStatus | str] = None,
    page: int = 1,
    limit: int = 20,
    spectating: bool = False,
) -> dict:
    """Battles the user fights in (or watches, with ``spectating``), newest first."""
    limit = _check_paging(page, limit)
    if spectating:
        query: dict = {"spectators.user_id": user_id}
    else:
        query = {"$or": [{"creator_id": user_id}, {"opponent_id": user_id}]}
    if status:
        query["status"] = BattleStatus(status).value

    battles, total = await battle_repository.find_page(
        query, sort_field="created_at", sort_direction=-1, page=page, limit=limit,
    )
    return {"battles": battles, "pagination": _pagination(page, limit, total)}


async def get_battle_stats(user_id: str) -> BattleStats:
    """Win/loss/tie record over the user's completed battles."""
    battles = await battle_repository.find_all({
        "$or": [{"creator_id": user_id}, {"opponent_id": user_id}],
        "status": BattleStatus.completed.value,
    })

    stats = BattleStats(total_battles=len(battles))
    score_sum = 0.0
    for battle in battles:
        if battle.winner == user_id:
            stats.wins += 1
        elif battle.results is not None and battle.results.tie:
            stats.ties += 1
        else:
            stats.losses += 1
        if battle.results is not None:
            own = battle.results.creator_score if battle.creator_id == user_id else battle.results.opponent_score
            score_sum += own

    if stats.total_battles:
        stats.win_rate = round(stats.wins / stats.total_battles * 100, 2)
        stats.average_score = round(score_sum / stats.total_battles, 2)
    return stats
