"""
backend/fitarena/services/battle_record.py

Purpose:
    Invariant-preserving mutators for a single 1v1 battle document. Every
    function checks the battle status and party membership before writing,
    raises a typed BattleError on violation, and otherwise mutates the
    passed-in BattleInDB in place (returning it for chaining).

    No I/O happens here: callers load, mutate, evaluate lifecycle
    transitions, and persist.

Dependencies:
    - fitarena.models.battle
    - fitarena.errors
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Optional

from fitarena.errors import (
    AlreadyHasOpponent,
    InvalidState,
    NotParticipant,
    SpectatorsDisallowed,
)
from fitarena.models.battle import (
    AcceptCheck,
    BattleInDB,
    BattleMetric,
    BattleResults,
    BattleStatus,
    BattleUpdate,
    DailyLog,
    PartyProgress,
    Spectator,
    SupportFor,
    UpdateType,
    UserRole,
)
from fitarena.utils import ensure_utc, utc_day_start, utcnow

_SECONDS_PER_DAY = 24 * 60 * 60


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, float)) and math.isfinite(value)


def calculate_improvement(metric: BattleMetric | str, baseline: Any, current: Any) -> float:
    """Signed percent change from baseline to current, oriented so better is positive.

    ``weight_pct`` is loss-oriented: a drop from 100 to 95 scores +5.
    Every other metric is gain-oriented: 10 -> 15 scores +50.
    Missing or non-numeric operands (and a zero baseline) score 0.
    """
    if not _is_number(baseline) or not _is_number(current) or baseline == 0:
        return 0.0
    change = (current - baseline) / baseline * 100
    if metric == BattleMetric.weight_pct:
        return -change
    return change


# ---------- Party resolution ----------


def is_participant(battle: BattleInDB, user_id: str) -> bool:
    return user_id == battle.creator_id or (
        battle.opponent_id is not None and user_id == battle.opponent_id
    )


def user_role(battle: BattleInDB, user_id: str) -> UserRole:
    if user_id == battle.creator_id:
        return UserRole.creator
    if battle.opponent_id is not None and user_id == battle.opponent_id:
        return UserRole.opponent
    return UserRole.spectator


def can_update(battle: BattleInDB, user_id: str) -> bool:
    return is_participant(battle, user_id)


def _progress_for(battle: BattleInDB, user_id: str) -> PartyProgress:
    if user_id == battle.creator_id:
        return battle.creator_progress
    if battle.opponent_id is not None and user_id == battle.opponent_id:
        return battle.opponent_progress
    raise NotParticipant("User is not a participant in this battle")


# ---------- Acceptance ----------


def can_accept(battle: BattleInDB, user_id: str) -> AcceptCheck:
    if battle.status != BattleStatus.pending:
        return AcceptCheck(can_accept=False, reason="Battle is not pending")
    if user_id == battle.creator_id:
        return AcceptCheck(can_accept=False, reason="Creator cannot accept their own battle")
    if battle.opponent_id is not None:
        if user_id == battle.opponent_id:
            return AcceptCheck(can_accept=False, reason="User is already the opponent")
        return AcceptCheck(can_accept=False, reason="Battle already has an opponent")
    return AcceptCheck(can_accept=True)


def accept(
    battle: BattleInDB,
    opponent_id: str,
    opponent_name: Optional[str],
    now: Optional[datetime] = None,
) -> BattleInDB:
    """Attach the opponent and open the battle window.

    Status stays ``pending``; activation happens once both baselines exist.
    """
    if battle.status != BattleStatus.pending:
        raise InvalidState("Battle is not pending", reason=battle.status.value)
    if battle.opponent_id is not None:
        raise AlreadyHasOpponent("Battle already has an opponent")
    if opponent_id == battle.creator_id:
        raise InvalidState("Creator cannot accept their own battle", reason="self_accept")

    now = now or utcnow()
    battle.opponent_id = opponent_id
    battle.opponent_name = opponent_name
    battle.accepted_at = now
    battle.start_date = now
    battle.end_date = now + timedelta(days=battle.duration_days)
    battle.updated_at = now
    return battle


# ---------- Progress ----------


def set_baseline(
    battle: BattleInDB,
    user_id: str,
    value: Any,
    now: Optional[datetime] = None,
) -> BattleInDB:
    """Record a party's starting measurement.

    Baselines are written after acceptance and before activation; once the
    battle is active they are fixed.
    """
    if battle.status != BattleStatus.pending:
        raise InvalidState("Baselines can only be set before the battle starts", reason=battle.status.value)
    if battle.opponent_id is None:
        raise InvalidState("Battle has not been accepted yet", reason="not_accepted")
    progress = _progress_for(battle, user_id)

    now = now or utcnow()
    progress.baseline = value
    progress.last_updated = now
    battle.updated_at = now
    return battle


def update_progress(
    battle: BattleInDB,
    user_id: str,
    current_value: Any,
    note: str = "",
    now: Optional[datetime] = None,
) -> BattleInDB:
    """Record a party's current value and upsert today's daily log."""
    if battle.status != BattleStatus.active:
        raise InvalidState("Battle is not active", reason=battle.status.value)
    progress = _progress_for(battle, user_id)

    now = now or utcnow()
    progress.current = current_value
    progress.last_updated = now
    if progress.baseline is not None:
        progress.improvement = calculate_improvement(battle.metric, progress.baseline, current_value)

    today = utc_day_start(now)
    entry = DailyLog(date=today, value=current_value, note=note or "")
    for i, log in enumerate(progress.daily_logs):
        if utc_day_start(log.date) == today:
            progress.daily_logs[i] = entry
            break
    else:
        progress.daily_logs.append(entry)

    battle.updated_at = now
    return battle


# ---------- Terminal transitions ----------


def complete(battle: BattleInDB, now: Optional[datetime] = None) -> BattleInDB:
    """Score both parties and declare the winner. Terminal; cannot run twice."""
    if battle.status != BattleStatus.active:
        raise InvalidState("Battle is not active", reason=battle.status.value)

    creator_score = battle.creator_progress.improvement or 0.0
    opponent_score = battle.opponent_progress.improvement or 0.0

    winner = None
    winner_name = None
    if creator_score > opponent_score:
        winner, winner_name = battle.creator_id, battle.creator_name
    elif opponent_score > creator_score:
        winner, winner_name = battle.opponent_id, battle.opponent_name

    now = now or utcnow()
    battle.results = BattleResults(
        creator_score=creator_score,
        opponent_score=opponent_score,
        margin=abs(creator_score - opponent_score),
        tie=winner is None,
    )
    battle.winner = winner
    battle.winner_name = winner_name
    battle.status = BattleStatus.completed
    battle.completed_at = now
    battle.updated_at = now
    return battle


def cancel(battle: BattleInDB, now: Optional[datetime] = None) -> BattleInDB:
    if battle.status not in (BattleStatus.pending, BattleStatus.active):
        raise InvalidState("Only pending or active battles can be cancelled", reason=battle.status.value)
    now = now or utcnow()
    battle.status = BattleStatus.cancelled
    battle.cancelled_at = now
    battle.updated_at = now
    return battle


def expire(battle: BattleInDB, now: Optional[datetime] = None) -> BattleInDB:
    if battle.status != BattleStatus.pending:
        raise InvalidState("Only pending battles can expire", reason=battle.status.value)
    now = now or utcnow()
    battle.status = BattleStatus.expired
    battle.expired_at = now
    battle.updated_at = now
    return battle


# ---------- Social overlay ----------


def add_update(
    battle: BattleInDB,
    user_id: str,
    user_name: Optional[str],
    update_type: UpdateType | str,
    message: str,
    now: Optional[datetime] = None,
) -> BattleInDB:
    if not battle.allow_spectators and not is_participant(battle, user_id):
        raise SpectatorsDisallowed("Spectators are not allowed to add updates")

    now = now or utcnow()
    battle.updates.append(BattleUpdate(
        type=update_type,
        user_id=user_id,
        user_name=user_name,
        message=message,
        timestamp=now,
    ))
    battle.updated_at = now
    return battle


def add_spectator(
    battle: BattleInDB,
    user_id: str,
    support_for: SupportFor | str = SupportFor.neutral,
    now: Optional[datetime] = None,
) -> BattleInDB:
    """Join as spectator, or change the supported side if already watching."""
    if not battle.allow_spectators:
        raise SpectatorsDisallowed("Spectators are not allowed")
    if is_participant(battle, user_id):
        raise InvalidState("Participants cannot join as spectators", reason="participant")

    now = now or utcnow()
    support = SupportFor(support_for)
    for spectator in battle.spectators:
        if spectator.user_id == user_id:
            spectator.support_for = support
            break
    else:
        battle.spectators.append(Spectator(user_id=user_id, joined_at=now, support_for=support))
    battle.updated_at = now
    return battle


# ---------- Derived view values ----------


def days_remaining(battle: BattleInDB, now: Optional[datetime] = None) -> int:
    if battle.status != BattleStatus.active or battle.end_date is None:
        return 0
    now = now or utcnow()
    end = ensure_utc(battle.end_date)
    if now > end:
        return 0
    return math.ceil((end - now).total_seconds() / _SECONDS_PER_DAY)


def progress_percentage(battle: BattleInDB, now: Optional[datetime] = None) -> float:
    if battle.status != BattleStatus.active or battle.start_date is None or battle.end_date is None:
        return 0.0
    now = now or utcnow()
    start = ensure_utc(battle.start_date)
    total = (ensure_utc(battle.end_date) - start).total_seconds()
    if total <= 0:
        return 100.0
    elapsed = (now - start).total_seconds()
    return min(100.0, max(0.0, elapsed / total * 100))
