"""
backend/fitarena/services/battle_repository.py

Purpose:
    Persistence for battle documents: point lookup, insert, and a versioned
    replace that rejects stale writes. Also owns the per-battle-id lock used
    to serialize load -> mutate -> save cycles inside one process.

    The lock covers a single instance; the version check covers everything
    else (other instances, workers, scripts).

Dependencies:
    - motor (via fitarena.database)
    - bson.ObjectId
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from bson import ObjectId

import fitarena.database as _db
from fitarena.errors import ConcurrentModification, NotFound
from fitarena.models.battle import BattleInDB

logger = logging.getLogger("fitarena.battle_repository")


class BattleLocks:
    """Per-battle asyncio locks, dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, battle_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(battle_id, asyncio.Lock())
        self._waiters[battle_id] = self._waiters.get(battle_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[battle_id] -= 1
            if self._waiters[battle_id] == 0:
                del self._waiters[battle_id]
                self._locks.pop(battle_id, None)

    def __len__(self) -> int:
        return len(self._locks)


battle_locks = BattleLocks()


def _oid(battle_id: str) -> ObjectId:
    # Raises bson.errors.InvalidId for malformed ids; mapped to 400 by the app.
    return ObjectId(battle_id)


async def load(battle_id: str) -> BattleInDB:
    doc = await _db.db.battles.find_one({"_id": _oid(battle_id)})
    if not doc:
        raise NotFound("Battle not found")
    return BattleInDB.from_mongo(doc)


async def insert(battle: BattleInDB) -> BattleInDB:
    doc = battle.to_mongo()
    result = await _db.db.battles.insert_one(doc)
    battle.id = str(result.inserted_id)
    return battle


async def replace(battle: BattleInDB, expected_version: Optional[int] = None) -> BattleInDB:
    """Atomically replace the stored document if its version is unchanged.

    ``expected_version`` defaults to ``battle.version`` (the version it was
    loaded at). On success ``battle.version`` is bumped to the stored value.
    """
    if battle.id is None:
        raise ValueError("Cannot replace a battle that was never inserted")
    expected = battle.version if expected_version is None else expected_version

    doc = battle.to_mongo()
    doc["version"] = expected + 1
    result = await _db.db.battles.replace_one(
        {"_id": _oid(battle.id), "version": expected},
        doc,
    )
    if result.matched_count == 0:
        logger.warning("Stale write rejected for battle %s (expected version %d)", battle.id, expected)
        raise ConcurrentModification(
            "Battle was modified by another request. Reload and try again.",
        )
    battle.version = expected + 1
    return battle


async def find_page(
    query: dict,
    *,
    sort_field: str,
    sort_direction: int,
    page: int,
    limit: int,
) -> tuple[list[BattleInDB], int]:
    skip = (page - 1) * limit
    docs = await (
        _db.db.battles.find(query)
        .sort(sort_field, sort_direction)
        .skip(skip)
        .limit(limit)
        .to_list(length=limit)
    )
    total = await _db.db.battles.count_documents(query)
    return [BattleInDB.from_mongo(d) for d in docs], total


async def find_all(query: dict, *, limit: Optional[int] = None) -> list[BattleInDB]:
    """Every matching battle, or at most ``limit`` of them."""
    docs = await _db.db.battles.find(query).to_list(length=limit)
    return [BattleInDB.from_mongo(d) for d in docs]
