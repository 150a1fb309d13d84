"""
backend/tests/test_battle_service.py

Purpose:
    Use-case tests for battle_service against in-memory Mongo collections:
    the full create -> accept -> baselines -> progress -> complete flow,
    reward side effects, stale-write rejection, listing and stats.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import timedelta

import pytest
from bson import ObjectId

from conftest import add_user
from fitarena.config import settings
from fitarena.errors import (
    AlreadyHasOpponent,
    ConcurrentModification,
    InvalidState,
    NotFound,
    NotParticipant,
    SpectatorsDisallowed,
    ValidationError,
)
from fitarena.models.battle import BattleStatus, UserRole
from fitarena.services import battle_repository, battle_service, rewards_service
from fitarena.services.battle_repository import BattleLocks, battle_locks


def _payload(**overrides) -> dict:
    data = {
        "title": "Spring cut",
        "battle_type": "weight_loss",
        "duration_days": 30,
        "metric": "weight_pct",
        "stakes": {"type": "xp", "value": 250, "description": "loser buys protein"},
    }
    data.update(overrides)
    return data


def _xp(db, user_id: str) -> int:
    for doc in db.gamification.docs:
        if doc["user_id"] == user_id:
            return doc["total_xp"]
    return 0


async def _active_battle(db):
    creator = add_user(db, "Casey Creator")
    opponent = add_user(db, "Robin Rival")
    battle = await battle_service.create_battle(_payload(), creator)
    await battle_service.accept_battle(battle.id, opponent)
    await battle_service.set_baseline(battle.id, creator, 80)
    await battle_service.set_baseline(battle.id, opponent, 90)
    return battle.id, creator, opponent


@pytest.mark.asyncio
async def test_end_to_end_weight_battle(fake_db):
    creator = add_user(fake_db, "Casey Creator")
    opponent = add_user(fake_db, "Robin Rival")

    battle = await battle_service.create_battle(_payload(), creator)
    assert battle.status == BattleStatus.pending
    assert battle.creator_name == "Casey Creator"
    assert battle.version == 0

    battle = await battle_service.accept_battle(battle.id, opponent)
    assert battle.opponent_name == "Robin Rival"
    assert battle.status == BattleStatus.pending

    battle = await battle_service.set_baseline(battle.id, creator, 80)
    assert battle.status == BattleStatus.pending
    battle = await battle_service.set_baseline(battle.id, opponent, 90)
    assert battle.status == BattleStatus.active
    assert battle.started_at is not None

    battle = await battle_service.update_progress(battle.id, creator, 78, "cut carbs")
    assert battle.creator_progress.improvement == pytest.approx(2.5)
    battle = await battle_service.update_progress(battle.id, opponent, 89)
    assert battle.opponent_progress.improvement == pytest.approx(1.111, abs=1e-3)

    battle = await battle_service.complete_battle(battle.id, creator)
    assert battle.status == BattleStatus.completed
    assert battle.winner == creator
    assert battle.winner_name == "Casey Creator"
    assert battle.results.tie is False
    assert battle.results.margin == pytest.approx(1.39, abs=0.01)

    stored = await battle_repository.load(battle.id)
    assert stored.status == BattleStatus.completed
    assert stored.version == battle.version

    expected_creator = settings.BATTLE_PROGRESS_XP + settings.BATTLE_WIN_XP
    expected_opponent = settings.BATTLE_ACCEPT_XP + settings.BATTLE_PROGRESS_XP
    assert _xp(fake_db, creator) == expected_creator
    assert _xp(fake_db, opponent) == expected_opponent
    assert len(fake_db.xp_transactions.docs) == 4


@pytest.mark.asyncio
async def test_tie_pays_no_winner_bonus(fake_db):
    battle_id, creator, opponent = await _active_battle(fake_db)

    battle = await battle_service.complete_battle(battle_id)

    assert battle.results.tie is True
    assert battle.winner is None
    assert _xp(fake_db, creator) == 0
    assert _xp(fake_db, opponent) == settings.BATTLE_ACCEPT_XP


@pytest.mark.asyncio
async def test_second_complete_fails_and_does_not_pay_twice(fake_db):
    battle_id, creator, _ = await _active_battle(fake_db)
    await battle_service.update_progress(battle_id, creator, 70)
    await battle_service.complete_battle(battle_id)

    with pytest.raises(InvalidState):
        await battle_service.complete_battle(battle_id)
    with pytest.raises(InvalidState):
        await battle_service.update_progress(battle_id, creator, 60)

    assert _xp(fake_db, creator) == settings.BATTLE_PROGRESS_XP + settings.BATTLE_WIN_XP


@pytest.mark.asyncio
async def test_reward_ledger_failure_does_not_block_mutation(fake_db, monkeypatch):
    creator = add_user(fake_db, "Casey Creator")
    opponent = add_user(fake_db, "Robin Rival")
    battle = await battle_service.create_battle(_payload(), creator)

    async def _broken_grant(*_args, **_kwargs):
        raise RuntimeError("ledger down")

    monkeypatch.setattr(rewards_service, "grant", _broken_grant)

    accepted = await battle_service.accept_battle(battle.id, opponent)

    assert accepted.opponent_id == opponent
    stored = await battle_repository.load(battle.id)
    assert stored.opponent_id == opponent


@pytest.mark.asyncio
async def test_accept_exclusivity(fake_db):
    creator = add_user(fake_db, "Casey Creator")
    first = add_user(fake_db, "Robin Rival")
    second = add_user(fake_db, "Sam Second")
    battle = await battle_service.create_battle(_payload(), creator)

    with pytest.raises(InvalidState):
        await battle_service.accept_battle(battle.id, creator)

    await battle_service.accept_battle(battle.id, first)
    with pytest.raises(AlreadyHasOpponent):
        await battle_service.accept_battle(battle.id, second)
    with pytest.raises(AlreadyHasOpponent):
        await battle_service.accept_battle(battle.id, first)

    stored = await battle_repository.load(battle.id)
    assert stored.opponent_id == first
    assert _xp(fake_db, first) == settings.BATTLE_ACCEPT_XP
    assert _xp(fake_db, second) == 0


@pytest.mark.asyncio
async def test_stale_version_write_is_rejected(fake_db):
    battle_id, creator, opponent = await _active_battle(fake_db)

    copy_a = await battle_repository.load(battle_id)
    copy_b = await battle_repository.load(battle_id)
    copy_a.creator_progress.current = 79
    copy_b.opponent_progress.current = 88

    await battle_repository.replace(copy_a)
    with pytest.raises(ConcurrentModification):
        await battle_repository.replace(copy_b)

    stored = await battle_repository.load(battle_id)
    assert stored.creator_progress.current == 79
    assert stored.opponent_progress.current is None
    assert stored.version == copy_a.version


@pytest.mark.asyncio
async def test_failed_mutation_leaves_stored_record_untouched(fake_db):
    battle_id, _, _ = await _active_battle(fake_db)
    before = await battle_repository.load(battle_id)

    with pytest.raises(NotParticipant):
        await battle_service.update_progress(battle_id, str(ObjectId()), 50)

    after = await battle_repository.load(battle_id)
    assert after == before


@pytest.mark.asyncio
async def test_create_validation(fake_db):
    creator = add_user(fake_db, "Casey Creator")

    for bad in (
        _payload(title=""),
        _payload(duration_days=0),
        _payload(duration_days=91),
        {k: v for k, v in _payload().items() if k != "battle_type"},
        {k: v for k, v in _payload().items() if k != "duration_days"},
    ):
        with pytest.raises(ValidationError):
            await battle_service.create_battle(bad, creator)

    assert fake_db.battles.docs == []


@pytest.mark.asyncio
async def test_create_with_unknown_creator_is_not_found(fake_db):
    with pytest.raises(NotFound):
        await battle_service.create_battle(_payload(), str(ObjectId()))


@pytest.mark.asyncio
async def test_unknown_battle_is_not_found(fake_db):
    user = add_user(fake_db, "Casey Creator")
    with pytest.raises(NotFound):
        await battle_service.set_baseline(str(ObjectId()), user, 80)
    with pytest.raises(NotFound):
        await battle_service.get_battle_by_id(str(ObjectId()))


@pytest.mark.asyncio
async def test_get_battle_by_id_annotates_viewer(fake_db):
    creator = add_user(fake_db, "Casey Creator")
    viewer = add_user(fake_db, "Vic Viewer")
    battle = await battle_service.create_battle(_payload(), creator)

    as_creator = await battle_service.get_battle_by_id(battle.id, creator)
    as_viewer = await battle_service.get_battle_by_id(battle.id, viewer)
    anonymous = await battle_service.get_battle_by_id(battle.id)

    assert as_creator.user_role == UserRole.creator
    assert as_creator.can_accept.can_accept is False
    assert as_creator.can_update is True
    assert as_viewer.user_role == UserRole.spectator
    assert as_viewer.can_accept.can_accept is True
    assert as_viewer.can_update is False
    assert anonymous.user_role is None

    stored = fake_db.battles.docs[0]
    assert "user_role" not in stored
    assert "can_accept" not in stored


@pytest.mark.asyncio
async def test_overdue_battle_completes_on_read_and_pays_winner(fake_db):
    battle_id, creator, _ = await _active_battle(fake_db)
    await battle_service.update_progress(battle_id, creator, 76)

    stored = fake_db.battles.docs[0]
    stored["end_date"] = stored["end_date"] - timedelta(days=31)

    view = await battle_service.get_battle_by_id(battle_id, creator)

    assert view.status == BattleStatus.completed
    assert view.winner == creator
    persisted = await battle_repository.load(battle_id)
    assert persisted.status == BattleStatus.completed
    assert _xp(fake_db, creator) == settings.BATTLE_PROGRESS_XP + settings.BATTLE_WIN_XP


@pytest.mark.asyncio
async def test_updates_and_spectators(fake_db):
    battle_id, creator, _ = await _active_battle(fake_db)
    fan = add_user(fake_db, "Fran Fan")

    await battle_service.add_spectator(battle_id, fan, "creator")
    battle = await battle_service.add_spectator(battle_id, fan, "neutral")
    assert len(battle.spectators) == 1
    assert battle.spectators[0].support_for.value == "neutral"

    battle = await battle_service.add_update(battle_id, fan, "encouragement", "keep going")
    assert battle.updates[-1].user_name == "Fran Fan"

    watching = await battle_service.get_user_battles(fan, spectating=True)
    assert watching["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_closed_battle_rejects_outside_updates(fake_db):
    creator = add_user(fake_db, "Casey Creator")
    fan = add_user(fake_db, "Fran Fan")
    battle = await battle_service.create_battle(_payload(allow_spectators=False), creator)

    await battle_service.add_update(battle.id, creator, "milestone", "first week done")
    with pytest.raises(SpectatorsDisallowed):
        await battle_service.add_update(battle.id, fan, "trash_talk", "boo")
    with pytest.raises(SpectatorsDisallowed):
        await battle_service.add_spectator(battle.id, fan)


@pytest.mark.asyncio
async def test_cancel_is_creator_only(fake_db):
    creator = add_user(fake_db, "Casey Creator")
    other = add_user(fake_db, "Olly Other")
    battle = await battle_service.create_battle(_payload(), creator)

    with pytest.raises(NotParticipant):
        await battle_service.cancel_battle(battle.id, other)

    cancelled = await battle_service.cancel_battle(battle.id, creator)
    assert cancelled.status == BattleStatus.cancelled
    with pytest.raises(InvalidState):
        await battle_service.accept_battle(battle.id, other)


@pytest.mark.asyncio
async def test_get_battles_filters_sorts_and_paginates(fake_db):
    creator = add_user(fake_db, "Casey Creator")
    for i in range(5):
        await battle_service.create_battle(
            _payload(title=f"Battle {i}", battle_type="strength" if i % 2 else "endurance", metric="custom"),
            creator,
        )

    page = await battle_service.get_battles(page=2, limit=2, sort_by="title", sort_order="asc")
    assert [b.title for b in page["battles"]] == ["Battle 2", "Battle 3"]
    assert page["pagination"] == {"page": 2, "limit": 2, "total": 5, "pages": 3}

    strength = await battle_service.get_battles(battle_type="strength")
    assert strength["pagination"]["total"] == 2

    active = await battle_service.get_battles(status="active")
    assert active["battles"] == []

    with pytest.raises(ValidationError):
        await battle_service.get_battles(sort_by="creator_progress")
    with pytest.raises(ValidationError):
        await battle_service.get_battles(page=0)


@pytest.mark.asyncio
async def test_battle_stats(fake_db):
    me = add_user(fake_db, "Me")
    rival = add_user(fake_db, "Rival")

    async def _battle(my_value: float, rival_value: float):
        battle = await battle_service.create_battle(_payload(metric="streak_days"), me)
        await battle_service.accept_battle(battle.id, rival)
        await battle_service.set_baseline(battle.id, me, 10)
        await battle_service.set_baseline(battle.id, rival, 10)
        await battle_service.update_progress(battle.id, me, my_value)
        await battle_service.update_progress(battle.id, rival, rival_value)
        return await battle_service.complete_battle(battle.id)

    await _battle(15, 12)  # win, +50
    await _battle(12, 12)  # tie, +20
    await _battle(11, 14)  # loss, +10
    await _battle(20, 10)  # win, +100
    await battle_service.create_battle(_payload(), me)  # pending, ignored

    stats = await battle_service.get_battle_stats(me)

    assert stats.total_battles == 4
    assert stats.wins == 2
    assert stats.ties == 1
    assert stats.losses == 1
    assert stats.win_rate == 50.0
    assert stats.average_score == 45.0

    rival_stats = await battle_service.get_battle_stats(rival)
    assert (rival_stats.wins, rival_stats.ties, rival_stats.losses) == (1, 1, 2)

    mine = await battle_service.get_user_battles(me)
    assert mine["pagination"]["total"] == 5
    completed = await battle_service.get_user_battles(rival, status="completed")
    assert completed["pagination"]["total"] == 4


@pytest.mark.asyncio
async def test_progress_after_deadline_is_rejected_and_winner_stands(fake_db):
    battle_id, creator, opponent = await _active_battle(fake_db)
    await battle_service.update_progress(battle_id, creator, 78)   # +2.5
    await battle_service.update_progress(battle_id, opponent, 89)  # +1.11

    stored = fake_db.battles.docs[0]
    stored["end_date"] = stored["end_date"] - timedelta(days=31)

    with pytest.raises(InvalidState):
        await battle_service.update_progress(battle_id, opponent, 80)

    persisted = await battle_repository.load(battle_id)
    assert persisted.status == BattleStatus.completed
    assert persisted.winner == creator
    assert persisted.opponent_progress.current == 89
    assert persisted.results.creator_score == pytest.approx(2.5)
    assert persisted.results.opponent_score == pytest.approx(100 / 90, rel=1e-6)
    assert _xp(fake_db, creator) == settings.BATTLE_PROGRESS_XP + settings.BATTLE_WIN_XP
    assert _xp(fake_db, opponent) == settings.BATTLE_ACCEPT_XP + settings.BATTLE_PROGRESS_XP


@pytest.mark.asyncio
async def test_accept_after_pending_expiry_is_rejected(fake_db):
    creator = add_user(fake_db, "Casey Creator")
    opponent = add_user(fake_db, "Robin Rival")
    battle = await battle_service.create_battle(_payload(), creator)

    stored = fake_db.battles.docs[0]
    stored["created_at"] = stored["created_at"] - timedelta(days=settings.BATTLE_PENDING_EXPIRY_DAYS + 1)

    with pytest.raises(InvalidState):
        await battle_service.accept_battle(battle.id, opponent)

    persisted = await battle_repository.load(battle.id)
    assert persisted.status == BattleStatus.expired
    assert persisted.expired_at is not None
    assert persisted.opponent_id is None
    assert _xp(fake_db, opponent) == 0


@pytest.mark.asyncio
async def test_concurrent_progress_writes_are_serialized(fake_db, monkeypatch):
    battle_id, creator, opponent = await _active_battle(fake_db)
    before = await battle_repository.load(battle_id)
    original_find_one = fake_db.battles.find_one

    async def _slow_find_one(query, projection=None):
        doc = await original_find_one(query, projection)
        await asyncio.sleep(0.01)
        return doc

    monkeypatch.setattr(fake_db.battles, "find_one", _slow_find_one)

    await asyncio.gather(
        battle_service.update_progress(battle_id, creator, 78),
        battle_service.update_progress(battle_id, opponent, 89),
    )

    stored = await battle_repository.load(battle_id)
    assert stored.creator_progress.current == 78
    assert stored.opponent_progress.current == 89
    assert stored.version == before.version + 2
    assert len(battle_locks) == 0


@pytest.mark.asyncio
async def test_battle_locks_serialize_and_drop_idle_entries():
    locks = BattleLocks()
    order: list[str] = []

    async def _second():
        async with locks.hold("b1"):
            order.append("second")

    async with locks.hold("b1"):
        waiter = asyncio.create_task(_second())
        await asyncio.sleep(0)
        assert len(locks) == 1
        order.append("first")

    await waiter
    assert order == ["first", "second"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_battle_stats_count_every_completed_battle(fake_db):
    me = add_user(fake_db, "Me")
    rival = add_user(fake_db, "Rival")
    battle = await battle_service.create_battle(_payload(metric="streak_days"), me)
    await battle_service.accept_battle(battle.id, rival)
    await battle_service.set_baseline(battle.id, me, 10)
    await battle_service.set_baseline(battle.id, rival, 10)
    await battle_service.update_progress(battle.id, me, 15)
    await battle_service.complete_battle(battle.id)

    template = fake_db.battles.docs[0]
    for _ in range(5000):
        clone = copy.deepcopy(template)
        clone["_id"] = ObjectId()
        fake_db.battles.docs.append(clone)

    stats = await battle_service.get_battle_stats(me)

    assert stats.total_battles == 5001
    assert stats.wins == 5001
    assert stats.win_rate == 100.0
