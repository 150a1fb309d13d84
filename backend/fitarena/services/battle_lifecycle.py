"""
backend/fitarena/services/battle_lifecycle.py

Purpose:
    Single source of truth for time- and data-driven battle status changes.
    ``evaluate_transitions`` is pure: it returns a new BattleInDB with every
    transition whose condition holds at ``now`` applied, and leaves the input
    untouched. The battle service runs it before every persist; the sweeper
    worker runs it for battles nobody touches.

    pending (opponent set, both baselines) -> active
    active  (end_date passed)              -> completed
    pending (no opponent, too old)         -> expired
    pending (opponent set, window lapsed)  -> expired

Dependencies:
    - fitarena.services.battle_record
    - fitarena.config
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from fitarena.config import settings
from fitarena.models.battle import BattleInDB, BattleStatus
from fitarena.services import battle_record
from fitarena.utils import ensure_utc, utcnow

logger = logging.getLogger("fitarena.battle_lifecycle")


class Transition(str, Enum):
    activated = "activated"
    completed = "completed"
    expired = "expired"


def should_activate(battle: BattleInDB) -> bool:
    return (
        battle.status == BattleStatus.pending
        and battle.opponent_id is not None
        and battle.creator_progress.baseline is not None
        and battle.opponent_progress.baseline is not None
    )


def should_complete(battle: BattleInDB, now: datetime) -> bool:
    return (
        battle.status == BattleStatus.active
        and battle.end_date is not None
        and ensure_utc(battle.end_date) <= now
    )


def should_expire(battle: BattleInDB, now: datetime, pending_expiry_days: Optional[int] = None) -> bool:
    if battle.status != BattleStatus.pending or should_activate(battle):
        return False
    if battle.opponent_id is None:
        days = settings.BATTLE_PENDING_EXPIRY_DAYS if pending_expiry_days is None else pending_expiry_days
        return ensure_utc(battle.created_at) + timedelta(days=days) <= now
    # Accepted, but the window closed before both baselines were in.
    return battle.end_date is not None and ensure_utc(battle.end_date) <= now


def evaluate_transitions(
    battle: BattleInDB,
    now: Optional[datetime] = None,
    *,
    pending_expiry_days: Optional[int] = None,
) -> tuple[BattleInDB, list[Transition]]:
    """Apply every due transition to a copy of ``battle``.

    Returns the (possibly unchanged) copy and the transitions applied, in
    order. Running it again on its own output applies nothing.
    """
    now = now or utcnow()
    result = battle.model_copy(deep=True)
    applied: list[Transition] = []

    if should_activate(result):
        result.status = BattleStatus.active
        result.started_at = now
        result.updated_at = now
        applied.append(Transition.activated)
    elif should_expire(result, now, pending_expiry_days):
        battle_record.expire(result, now)
        applied.append(Transition.expired)

    if should_complete(result, now):
        battle_record.complete(result, now)
        applied.append(Transition.completed)

    if applied:
        logger.debug(
            "Battle %s transitions applied: %s",
            result.id, ", ".join(t.value for t in applied),
        )
    return result, applied
