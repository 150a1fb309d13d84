"""Settle battles whose lifecycle deadline passed without anyone touching them.

Auto-completes active battles past their end date and expires pending
battles that were never accepted (or never got both baselines) in time.
Each battle goes through the same lock + versioned replace as a request.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fitarena.config import settings
from fitarena.errors import BattleError, ConcurrentModification
from fitarena.models.battle import BattleStatus
from fitarena.services import battle_repository
from fitarena.services.battle_lifecycle import Transition, evaluate_transitions
from fitarena.services.battle_repository import battle_locks
from fitarena.services.battle_service import award_winner
from fitarena.utils import utcnow

logger = logging.getLogger("fitarena.battle_sweeper")


def _due_query(now: datetime) -> dict:
    stale_cutoff = now - timedelta(days=settings.BATTLE_PENDING_EXPIRY_DAYS)
    return {
        "$or": [
            {"status": BattleStatus.active.value, "end_date": {"$lte": now}},
            {
                "status": BattleStatus.pending.value,
                "opponent_id": None,
                "created_at": {"$lte": stale_cutoff},
            },
            {
                "status": BattleStatus.pending.value,
                "opponent_id": {"$ne": None},
                "end_date": {"$lte": now},
            },
        ],
    }


async def sweep_battles(now: Optional[datetime] = None) -> dict:
    """Apply due transitions to overdue battles. Returns per-transition counts."""
    now = now or utcnow()
    candidates = await battle_repository.find_all(
        _due_query(now), limit=settings.BATTLE_SWEEP_BATCH_SIZE,
    )
    counts = {t.value: 0 for t in Transition}
    counts["conflicts"] = 0

    for candidate in candidates:
        battle_id = candidate.id
        try:
            async with battle_locks.hold(battle_id):
                battle = await battle_repository.load(battle_id)
                evaluated, transitions = evaluate_transitions(battle, now)
                if not transitions:
                    continue
                await battle_repository.replace(evaluated)
        except ConcurrentModification:
            counts["conflicts"] += 1
            logger.info("Sweep skipped battle %s: modified concurrently", battle_id)
            continue
        except BattleError as exc:
            logger.warning("Sweep skipped battle %s: %s", battle_id, exc)
            continue

        for transition in transitions:
            counts[transition.value] += 1
        if Transition.completed in transitions:
            await award_winner(evaluated)

    if any(counts.values()):
        logger.info("Battle sweep: %s (candidates=%d)", counts, len(candidates))
    else:
        logger.debug("Battle sweep: nothing due")
    return counts
