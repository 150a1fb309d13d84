"""
backend/fitarena/database.py

Purpose:
    MongoDB connection bootstrap and index management for battle-engine
    collections.

Dependencies:
    - motor.motor_asyncio
    - fitarena.config
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from fitarena.config import settings

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None

logger = logging.getLogger("fitarena.database")


async def connect_db() -> None:
    global client, db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=5,
        tz_aware=True,
    )
    db = client[settings.MONGO_DB]
    await _ensure_indexes()


async def close_db() -> None:
    global client
    if client:
        client.close()


async def get_db() -> AsyncIOMotorDatabase:
    return db


async def _ensure_indexes() -> None:
    """Create indexes on startup. Idempotent."""

    # ---- Users ----
    await db.users.create_index("email", unique=True, sparse=True)
    await db.users.create_index("is_deleted")

    # ---- Battles ----
    await db.battles.create_index([("status", 1), ("start_date", 1)])
    await db.battles.create_index([("creator_id", 1), ("status", 1)])
    await db.battles.create_index([("opponent_id", 1), ("status", 1)])
    await db.battles.create_index([("battle_type", 1), ("status", 1)])
    await db.battles.create_index("spectators.user_id")
    # Sweeper: overdue active battles / stale pending battles
    await db.battles.create_index([("status", 1), ("end_date", 1)])
    await db.battles.create_index([("status", 1), ("created_at", 1)])
    await db.battles.create_index([("created_at", -1)])

    # ---- Rewards ledger ----
    await db.gamification.create_index("user_id", unique=True)
    await db.xp_transactions.create_index([("user_id", 1), ("created_at", -1)])

    logger.info("Database indexes ensured")
