"""1v1 Battle models: the battle document, its sub-records, and request bodies."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class BattleType(str, Enum):
    weight_loss = "weight_loss"
    muscle_gain = "muscle_gain"
    endurance = "endurance"
    strength = "strength"
    nutrition = "nutrition"
    general = "general"


class BattleMetric(str, Enum):
    weight_pct = "weight_pct"
    muscle_gain = "muscle_gain"
    workout_frequency = "workout_frequency"
    nutrition_score = "nutrition_score"
    streak_days = "streak_days"
    custom = "custom"


class BattleStatus(str, Enum):
    pending = "pending"
    active = "active"
    completed = "completed"
    cancelled = "cancelled"
    expired = "expired"


TERMINAL_STATUSES = frozenset({
    BattleStatus.completed,
    BattleStatus.cancelled,
    BattleStatus.expired,
})


class StakeType(str, Enum):
    xp = "xp"
    badge = "badge"
    title = "title"
    real_prize = "real_prize"


class UpdateType(str, Enum):
    progress = "progress"
    milestone = "milestone"
    trash_talk = "trash_talk"
    encouragement = "encouragement"


class SupportFor(str, Enum):
    creator = "creator"
    opponent = "opponent"
    neutral = "neutral"


class UserRole(str, Enum):
    creator = "creator"
    opponent = "opponent"
    spectator = "spectator"


# ---------- Sub-records ----------

class CustomMetric(BaseModel):
    name: Optional[str] = None
    unit: Optional[str] = None
    target_value: Optional[float] = None


class Stakes(BaseModel):
    """Opaque reward descriptor; the engine never interprets it."""
    type: StakeType
    value: Any = None
    description: Optional[str] = None


class DailyLog(BaseModel):
    date: datetime  # 00:00 UTC of the logged day
    value: Any = None
    note: str = ""


class PartyProgress(BaseModel):
    baseline: Any = None
    current: Any = None
    improvement: float = 0.0  # Signed percent, "better" is positive
    last_updated: Optional[datetime] = None
    daily_logs: list[DailyLog] = []


class BattleResults(BaseModel):
    creator_score: float
    opponent_score: float
    margin: float
    tie: bool


class Spectator(BaseModel):
    user_id: str
    joined_at: datetime
    support_for: SupportFor = SupportFor.neutral


class BattleUpdate(BaseModel):
    type: UpdateType
    user_id: str
    user_name: Optional[str] = None
    message: str
    timestamp: datetime


# ---------- Battle document ----------

class BattleInDB(BaseModel):
    """1v1 battle document as stored in MongoDB.

    ``creator_name``/``opponent_name`` are snapshots taken at creation and
    acceptance; later display-name changes are not reflected.
    """
    id: Optional[str] = None
    title: str
    description: Optional[str] = None
    battle_type: BattleType
    duration_days: int
    metric: BattleMetric
    custom_metric: Optional[CustomMetric] = None

    creator_id: str
    creator_name: Optional[str] = None
    opponent_id: Optional[str] = None
    opponent_name: Optional[str] = None

    status: BattleStatus = BattleStatus.pending
    stakes: Optional[Stakes] = None

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    creator_progress: PartyProgress = Field(default_factory=PartyProgress)
    opponent_progress: PartyProgress = Field(default_factory=PartyProgress)

    winner: Optional[str] = None
    winner_name: Optional[str] = None
    results: Optional[BattleResults] = None

    rules: list[str] = []
    verification_required: bool = True
    allow_spectators: bool = True
    spectators: list[Spectator] = []
    updates: list[BattleUpdate] = []

    version: int = 0
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_mongo(cls, doc: dict) -> "BattleInDB":
        data = dict(doc)
        if "_id" in data:
            data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)

    def to_mongo(self) -> dict:
        """Document body for insert/replace (``_id`` is handled by the repository)."""
        return self.model_dump(mode="python", exclude={"id"})


# ---------- Request bodies ----------

class BattleCreate(BaseModel):
    """Request body for creating a battle."""
    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    battle_type: BattleType
    duration_days: int = Field(..., ge=1, le=90)
    metric: BattleMetric
    custom_metric: Optional[CustomMetric] = None
    stakes: Optional[Stakes] = None
    rules: list[str] = Field(default_factory=list, max_length=20)
    verification_required: bool = True
    allow_spectators: bool = True

    @field_validator("rules")
    @classmethod
    def _rule_length(cls, rules: list[str]) -> list[str]:
        cleaned = [r.strip() for r in rules if r and r.strip()]
        for rule in cleaned:
            if len(rule) > 200:
                raise ValueError("Each rule must be at most 200 characters.")
        return cleaned


class BaselineSet(BaseModel):
    baseline_value: float


class ProgressUpdate(BaseModel):
    current_value: float
    note: str = Field("", max_length=500)


class BattleUpdateCreate(BaseModel):
    type: UpdateType
    message: str = Field(..., min_length=1, max_length=1000)


class SpectatorJoin(BaseModel):
    support_for: SupportFor = SupportFor.neutral


# ---------- Responses ----------

class AcceptCheck(BaseModel):
    can_accept: bool
    reason: Optional[str] = None


class BattleResponse(BattleInDB):
    """Battle returned to the client, with viewer-only annotations."""
    user_role: Optional[UserRole] = None
    can_accept: Optional[AcceptCheck] = None
    can_update: Optional[bool] = None
    days_remaining: int = 0
    progress_percentage: float = 0.0


class BattleStats(BaseModel):
    total_battles: int = 0
    wins: int = 0
    losses: int = 0
    ties: int = 0
    win_rate: float = 0.0
    average_score: float = 0.0
