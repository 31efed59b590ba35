"""Tests for dealboard/credits.py."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from config.config_loader import CreditsConfig
from dealboard.credits import InMemoryCreditGate, Plan, next_month_start
from dealboard.errors import InsufficientCredits, InvalidSessionState


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))


def _gate(clock: Clock, **limits) -> InMemoryCreditGate:
    config = CreditsConfig(
        max_concurrent_sessions=limits.get("concurrent", 5),
        max_sessions_per_period=limits.get("per_period", 50),
        period_hours=1,
        monthly_allocation={"FREE": 0, "PRO": limits.get("pro", 5), "ENTERPRISE": 50},
    )
    return InMemoryCreditGate(config, clock=clock)


async def test_reserve_debits_monthly_first(clock):
    gate = _gate(clock)
    await gate.add_extra_credits("alice", 2)
    reservation = await gate.reserve("alice")
    assert reservation.source == "monthly"
    status = await gate.status("alice")
    assert status.used_this_month == 1
    assert status.total_available == 6


async def test_extra_credits_used_when_monthly_exhausted(clock):
    gate = _gate(clock, pro=1)
    await gate.add_extra_credits("alice", 1)
    first = await gate.reserve("alice")
    await gate.commit(first)
    second = await gate.reserve("alice")
    assert second.source == "extra"
    assert (await gate.status("alice")).extra_credits == 0


async def test_no_credits_left_is_rejected(clock):
    gate = _gate(clock, pro=1)
    await gate.commit(await gate.reserve("alice"))
    with pytest.raises(InsufficientCredits, match="No board credits"):
        await gate.reserve("alice")


async def test_free_plan_is_rejected(clock):
    gate = _gate(clock)
    gate.set_plan("bob", Plan.FREE)
    with pytest.raises(InsufficientCredits) as exc_info:
        await gate.reserve("bob")
    assert exc_info.value.status_code == 402
    assert exc_info.value.reason == "insufficient_credits"


async def test_concurrent_session_limit(clock):
    gate = _gate(clock, concurrent=1)
    first = await gate.reserve("alice")
    with pytest.raises(InsufficientCredits, match="concurrent"):
        await gate.reserve("alice")
    await gate.commit(first)
    await gate.reserve("alice")


async def test_rolling_period_limit(clock):
    gate = _gate(clock, per_period=2)
    for _ in range(2):
        await gate.commit(await gate.reserve("alice"))
    with pytest.raises(InsufficientCredits, match="per 1h"):
        await gate.reserve("alice")
    clock.now += timedelta(hours=1, minutes=1)
    await gate.reserve("alice")


async def test_two_concurrent_reserves_for_last_credit(clock):
    gate = _gate(clock, pro=1)
    results = await asyncio.gather(gate.reserve("alice"), gate.reserve("alice"), return_exceptions=True)
    assert sum(not isinstance(r, Exception) for r in results) == 1
    assert sum(isinstance(r, InsufficientCredits) for r in results) == 1


async def test_refund_restores_credit_once(clock):
    gate = _gate(clock, pro=1)
    reservation = await gate.reserve("alice")
    assert await gate.refund(reservation) is True
    assert await gate.refund(reservation) is False
    status = await gate.status("alice")
    assert status.used_this_month == 0
    assert status.active_sessions == 0
    assert status.sessions_in_period == 0
    assert len(gate.entries_for(reservation.id, "refund")) == 1


async def test_refund_of_extra_credit(clock):
    gate = _gate(clock, pro=0)
    await gate.add_extra_credits("alice", 1)
    reservation = await gate.reserve("alice")
    await gate.refund(reservation)
    assert (await gate.status("alice")).extra_credits == 1


async def test_committed_reservation_is_never_refunded(clock, caplog):
    gate = _gate(clock)
    reservation = await gate.reserve("alice")
    await gate.commit(reservation)
    assert await gate.refund(reservation) is False
    assert gate.entries_for(reservation.id, "refund") == []
    assert "Refusing refund" in caplog.text


async def test_commit_after_refund_is_invalid(clock):
    gate = _gate(clock)
    reservation = await gate.reserve("alice")
    await gate.refund(reservation)
    with pytest.raises(InvalidSessionState):
        await gate.commit(reservation)


async def test_ledger_records_debit_and_refund(clock):
    gate = _gate(clock)
    reservation = await gate.reserve("alice")
    await gate.refund(reservation)
    assert [e.kind for e in gate.ledger] == ["debit", "refund"]
    assert all(e.user_id == "alice" for e in gate.ledger)


async def test_monthly_reset(clock):
    gate = _gate(clock, pro=1)
    await gate.commit(await gate.reserve("alice"))
    with pytest.raises(InsufficientCredits):
        await gate.reserve("alice")
    clock.now = datetime(2026, 4, 1, 0, 5, tzinfo=timezone.utc)
    reservation = await gate.reserve("alice")
    assert reservation.source == "monthly"


async def test_status_reports_plan_and_reset(clock):
    gate = _gate(clock)
    gate.set_plan("carol", Plan.ENTERPRISE)
    status = await gate.status("carol")
    assert status.plan is Plan.ENTERPRISE
    assert status.monthly_allocation == 50
    assert status.can_use_board is True
    assert status.reason is None
    data = status.to_dict()
    assert data["plan"] == "ENTERPRISE"
    assert data["next_reset"] == "2026-04-01T00:00:00+00:00"


async def test_add_extra_credits_rejects_non_positive(clock):
    gate = _gate(clock)
    with pytest.raises(ValueError):
        await gate.add_extra_credits("alice", 0)


def test_next_month_start_wraps_year():
    assert next_month_start(datetime(2026, 12, 15, 8, 30)) == datetime(2027, 1, 1)
