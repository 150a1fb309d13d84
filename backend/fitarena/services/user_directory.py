"""Display-name lookups against the users collection."""

import logging

from bson import ObjectId
from bson.errors import InvalidId

import fitarena.database as _db
from fitarena.errors import NotFound

logger = logging.getLogger("fitarena.user_directory")


async def resolve_display_name(user_id: str) -> str:
    """Return the user's display name (full name, else alias). Raises NotFound."""
    try:
        oid = ObjectId(user_id)
    except (InvalidId, TypeError):
        raise NotFound("User not found", reason="invalid_user_id")

    user = await _db.db.users.find_one(
        {"_id": oid, "is_deleted": {"$ne": True}},
        {"full_name": 1, "alias": 1},
    )
    if not user:
        raise NotFound("User not found")
    return user.get("full_name") or user.get("alias") or "Unknown"
