"""XP rewards ledger: balance increments plus an immutable transaction log."""

import logging
from typing import Optional

import fitarena.database as _db
from fitarena.utils import utcnow

logger = logging.getLogger("fitarena.rewards_service")


async def grant(
    user_id: str,
    amount: int,
    reason: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> dict:
    """Credit ``amount`` XP to the user and log the transaction.

    Returns the updated gamification document.
    """
    now = utcnow()
    profile = await _db.db.gamification.find_one_and_update(
        {"user_id": user_id},
        {
            "$inc": {"total_xp": amount},
            "$set": {"updated_at": now},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
        return_document=True,
    )
    await _db.db.xp_transactions.insert_one({
        "user_id": user_id,
        "amount": amount,
        "reason": reason,
        "reference_type": reference_type,
        "reference_id": reference_id,
        "created_at": now,
    })
    logger.info("Granted %d XP to user %s: %s", amount, user_id, reason)
    return profile
