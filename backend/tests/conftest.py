"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: import paths for the backend package plus an
    in-memory stand-in for the Mongo collections the battle engine touches.
    The fake understands exactly the query shapes the services issue
    (equality, dotted array paths, $or, $ne, $in, $lt/$lte/$gt/$gte).
"""

from __future__ import annotations

import copy
import operator
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from bson import ObjectId

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]

if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

_COMPARE = {
    "$lt": operator.lt,
    "$lte": operator.le,
    "$gt": operator.gt,
    "$gte": operator.ge,
}


def _values_at(doc: dict, path: str) -> list:
    values = [doc]
    for part in path.split("."):
        nxt = []
        for value in values:
            if isinstance(value, dict):
                if part in value:
                    nxt.append(value[part])
            elif isinstance(value, list):
                nxt.extend(item[part] for item in value if isinstance(item, dict) and part in item)
        values = nxt
    return values or [None]


def _match_condition(values: list, cond) -> bool:
    if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
        for op, arg in cond.items():
            if op == "$ne":
                if any(v == arg for v in values):
                    return False
            elif op == "$in":
                if not any(v in arg for v in values):
                    return False
            elif op in _COMPARE:
                if not any(v is not None and _COMPARE[op](v, arg) for v in values):
                    return False
            else:
                raise NotImplementedError(op)
        return True
    return any(v == cond for v in values)


def matches(doc: dict, query: dict) -> bool:
    for key, cond in query.items():
        if key == "$or":
            if not any(matches(doc, clause) for clause in cond):
                return False
        elif not _match_condition(_values_at(doc, key), cond):
            return False
    return True


class FakeCursor:
    def __init__(self, docs: list[dict]):
        self._docs = docs
        self._skip = 0
        self._limit = None

    def sort(self, field: str, direction: int):
        self._docs.sort(
            key=lambda d: (d.get(field) is None, d.get(field)),
            reverse=int(direction) < 0,
        )
        return self

    def skip(self, value: int):
        self._skip = int(value)
        return self

    def limit(self, value: int):
        self._limit = int(value)
        return self

    async def to_list(self, length: int | None = None):
        rows = self._docs[self._skip:]
        if self._limit is not None:
            rows = rows[: self._limit]
        if length is not None:
            rows = rows[:length]
        return [copy.deepcopy(r) for r in rows]


class FakeCollection:
    def __init__(self, docs: list[dict] | None = None):
        self.docs: list[dict] = [copy.deepcopy(d) for d in (docs or [])]

    def find(self, query: dict | None = None, projection: dict | None = None):
        return FakeCursor([d for d in self.docs if matches(d, query or {})])

    async def find_one(self, query: dict, projection: dict | None = None):
        for doc in self.docs:
            if matches(doc, query):
                return copy.deepcopy(doc)
        return None

    async def count_documents(self, query: dict) -> int:
        return sum(1 for d in self.docs if matches(d, query))

    async def insert_one(self, doc: dict):
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", ObjectId())
        doc["_id"] = stored["_id"]
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    async def replace_one(self, query: dict, doc: dict):
        for i, existing in enumerate(self.docs):
            if matches(existing, query):
                stored = copy.deepcopy(doc)
                stored["_id"] = existing["_id"]
                self.docs[i] = stored
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    async def find_one_and_update(self, query: dict, update: dict, upsert: bool = False, return_document=False):
        target = next((d for d in self.docs if matches(d, query)), None)
        if target is None:
            if not upsert:
                return None
            target = {"_id": ObjectId(), **{k: v for k, v in query.items() if not k.startswith("$")}}
            target.update(update.get("$setOnInsert", {}))
            self.docs.append(target)
        before = copy.deepcopy(target)
        for field, amount in update.get("$inc", {}).items():
            target[field] = target.get(field, 0) + amount
        target.update(update.get("$set", {}))
        return copy.deepcopy(target if return_document else before)


def make_fake_db() -> SimpleNamespace:
    return SimpleNamespace(
        battles=FakeCollection(),
        users=FakeCollection(),
        gamification=FakeCollection(),
        xp_transactions=FakeCollection(),
    )


@pytest.fixture
def fake_db(monkeypatch):
    import fitarena.database as _db

    db = make_fake_db()
    monkeypatch.setattr(_db, "db", db, raising=False)
    return db


def add_user(db: SimpleNamespace, full_name: str) -> str:
    user_id = ObjectId()
    db.users.docs.append({"_id": user_id, "full_name": full_name, "is_deleted": False})
    return str(user_id)
