"""Tests for dealboard/session.py: admission, phases, failure and refund."""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from dealboard.errors import (
    DealAccessDenied,
    DealNotFound,
    InsufficientCredits,
    InvalidSessionState,
    NoLiveMembersError,
    PersistenceError,
    SessionConflict,
)
from dealboard.events import EventType
from dealboard.models import ConsensusLevel, Phase, Session, VoteChoice
from dealboard.session import advance
from dealboard.stores import CompositeSink, InMemoryAnalysisStore, InMemoryPersistenceSink, PersistenceSink
from tests.conftest import board_callers

_PHASE_OF = {
    EventType.SESSION_STARTED: "ANALYSIS",
    EventType.MEMBER_ANALYSIS_STARTED: "ANALYSIS",
    EventType.MEMBER_ANALYSIS_COMPLETED: "ANALYSIS",
    EventType.DEBATE_ROUND_STARTED: "DEBATE",
    EventType.DEBATE_RESPONSE: "DEBATE",
    EventType.DEBATE_ROUND_COMPLETED: "DEBATE",
    EventType.VOTING_STARTED: "VOTE",
    EventType.MEMBER_VOTED: "VOTE",
    EventType.VERDICT_REACHED: "DONE",
    EventType.ERROR: "FAILED",
}


class BrokenSink(PersistenceSink):
    async def save(self, session, verdict):
        raise OSError("database unavailable")


def _observed_phases(events) -> list[str]:
    phases: list[str] = []
    for event in events:
        phase = _PHASE_OF.get(event.type)
        if phase and (not phases or phases[-1] != phase):
            phases.append(phase)
    return phases


def _refunds(gate, board) -> int:
    return len(gate.entries_for(board.reservation.id, "refund"))


async def test_happy_path_reaches_done(make_controller, gate, sink):
    controller = make_controller(board_callers(grok={"verdict": "NO_GO"}))
    board = await controller.open("acme", "alice")
    verdict = await controller.run(board)

    assert verdict.final_choice is VoteChoice.GO
    assert verdict.consensus_level is ConsensusLevel.MAJORITY
    assert verdict.total_rounds == 2
    assert verdict.total_tokens == 4 * 10 * 4
    assert board.session.phase is Phase.DONE
    assert board.session.verdict is verdict
    assert board.session.completed_at is not None
    assert sink.get(board.id).verdict is verdict
    assert sink.get(board.id).phase is Phase.DONE
    assert _refunds(gate, board) == 0


async def test_event_log_follows_phase_order(make_controller):
    controller = make_controller(board_callers())
    board = await controller.open("acme", "alice")
    await controller.run(board)
    events = board.emitter.events

    assert _observed_phases(events) == ["ANALYSIS", "DEBATE", "VOTE", "DONE"]
    assert events[0].type is EventType.SESSION_STARTED
    assert [e.seq for e in events] == list(range(len(events)))


async def test_exactly_one_terminal_event_and_it_is_last(make_controller):
    controller = make_controller(board_callers())
    board = await controller.open("acme", "alice")
    await controller.run(board)
    terminal = [e for e in board.emitter.events if e.type.is_terminal]
    assert len(terminal) == 1
    assert board.emitter.events[-1].type is EventType.VERDICT_REACHED
    assert board.emitter.events[-1].payload["finalChoice"] == "GO"


async def test_analysis_failure_excludes_member_for_good(make_controller):
    callers = board_callers(gpt={"fail_in": ("analysis",)})
    controller = make_controller(callers)
    board = await controller.open("acme", "alice")
    verdict = await controller.run(board)

    assert callers[1].phases == ["analysis"]
    assert "gpt" not in [v.member_id for v in verdict.votes]
    assert verdict.failed_members == ("gpt",)
    responders = {e.member_id for e in board.emitter.events if e.type is EventType.DEBATE_RESPONSE}
    assert responders == {"claude", "gemini", "grok"}
    assert not any(
        e.member_id == "gpt" for e in board.emitter.events if e.type is EventType.MEMBER_VOTED
    )


async def test_live_set_never_grows(make_controller):
    callers = board_callers(
        gpt={"fail_in": ("analysis",)},
        gemini={"hang_in": ("debate:2",)},
        grok={"vote_reply": "no opinion"},
    )
    controller = make_controller(callers)
    board = await controller.open("acme", "alice")
    verdict = await controller.run(board)

    rounds = [
        {e.member_id for e in board.emitter.events if e.type is EventType.DEBATE_RESPONSE and e.round_number == r}
        for r in (1, 2)
    ]
    voters = {v.member_id for v in verdict.votes}
    assert rounds[0] == {"claude", "gemini", "grok"}
    assert rounds[1] <= rounds[0]
    assert voters <= rounds[1]
    assert voters == {"claude"}
    assert verdict.failed_members == ("gpt", "gemini", "grok")
    assert verdict.consensus_level is ConsensusLevel.UNANIMOUS


async def test_all_members_failing_analysis_fails_and_refunds(make_controller, gate, sink):
    callers = board_callers(**{m: {"fail_in": ("analysis",)} for m in ("claude", "gpt", "gemini", "grok")})
    controller = make_controller(callers)
    board = await controller.open("acme", "alice")

    with pytest.raises(NoLiveMembersError):
        await controller.run(board)

    assert board.session.phase is Phase.FAILED
    assert board.session.verdict is None
    assert board.session.error_reason == "no_live_members"
    assert _refunds(gate, board) == 1
    assert sink.get(board.id) is None
    last = board.emitter.events[-1]
    assert last.type is EventType.ERROR
    assert last.payload["reason"] == "no_live_members"
    assert last.payload["refunded"] is True
    assert sum(e.type.is_terminal for e in board.emitter.events) == 1
    assert not any(e.type is EventType.DEBATE_ROUND_STARTED for e in board.emitter.events)


async def test_all_votes_failing_fails_session(make_controller, gate):
    callers = board_callers(**{m: {"vote_reply": "pass"} for m in ("claude", "gpt", "gemini", "grok")})
    controller = make_controller(callers)
    board = await controller.open("acme", "alice")
    with pytest.raises(NoLiveMembersError):
        await controller.run(board)
    assert board.session.phase is Phase.FAILED
    assert _refunds(gate, board) == 1


async def test_single_survivor_skips_debate(make_controller):
    callers = board_callers(**{m: {"fail_in": ("analysis",)} for m in ("gpt", "gemini", "grok")})
    controller = make_controller(callers)
    board = await controller.open("acme", "alice")
    verdict = await controller.run(board)

    assert verdict.stopping_reason == "single_member"
    assert verdict.total_rounds == 0
    assert callers[0].phases == ["analysis", "vote"]
    assert _observed_phases(board.emitter.events) == ["ANALYSIS", "VOTE", "DONE"]


async def test_round_two_waits_for_round_one(make_controller):
    release = asyncio.Event()
    callers = board_callers()
    slow = callers[3]
    answer = slow._answer

    async def late_in_round_one(prompt, system_prompt=""):
        if prompt.startswith("DEBATE 1"):
            await release.wait()
        return await answer(prompt, system_prompt)

    slow.invoke = AsyncMock(side_effect=late_in_round_one)
    controller = make_controller(callers)
    board = await controller.open("acme", "alice")
    task = asyncio.create_task(controller.run(board))

    for _ in range(50):
        await asyncio.sleep(0.001)
    assert all("debate:2" not in c.phases for c in callers[:3])
    release.set()
    await task

    events = board.emitter.events
    last_round_one = max(i for i, e in enumerate(events) if e.round_number == 1)
    first_round_two = min(i for i, e in enumerate(events) if e.round_number == 2)
    assert last_round_one < first_round_two


async def test_persistence_failure_fails_and_refunds(make_controller, gate):
    controller = make_controller(board_callers(), sink=BrokenSink())
    board = await controller.open("acme", "alice")
    with pytest.raises(PersistenceError):
        await controller.run(board)

    assert board.session.phase is Phase.FAILED
    assert _refunds(gate, board) == 1
    types = [e.type for e in board.emitter.events]
    assert EventType.VERDICT_REACHED not in types
    assert types[-1] is EventType.ERROR
    assert board.emitter.events[-1].payload["reason"] == "persistence_unavailable"


async def test_done_session_is_never_refunded(make_controller, gate):
    controller = make_controller(board_callers())
    board = await controller.open("acme", "alice")
    await controller.run(board)
    assert await gate.refund(board.reservation) is False
    assert _refunds(gate, board) == 0


async def test_cancellation_refunds_and_emits_error(make_controller, gate, sample_board_config):
    callers = board_callers(**{m: {"hang_in": ("analysis",)} for m in ("claude", "gpt", "gemini", "grok")})
    slow = replace(sample_board_config, analysis_timeout_sec=30)
    controller = make_controller(callers, board=slow)
    board = await controller.open("acme", "alice")
    task = asyncio.create_task(controller.run(board))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert board.session.phase is Phase.FAILED
    assert _refunds(gate, board) == 1
    assert board.emitter.events[-1].type is EventType.ERROR
    assert board.emitter.events[-1].payload["reason"] == "cancelled"
    assert controller.active_session("acme") is None


async def test_open_rejects_second_session_on_same_deal(make_controller, gate):
    controller = make_controller(board_callers())
    first = await controller.open("acme", "alice")
    with pytest.raises(SessionConflict) as exc_info:
        await controller.open("acme", "bob")
    assert exc_info.value.status_code == 409
    await controller.run(first)
    assert controller.active_session("acme") is None


async def test_unknown_deal_is_rejected_before_debit(make_controller, gate):
    controller = make_controller(board_callers())
    with pytest.raises(DealNotFound):
        await controller.open("missing", "alice")
    assert gate.ledger == ()


async def test_foreign_deal_is_rejected_before_debit(make_controller, gate):
    controller = make_controller(board_callers())
    with pytest.raises(DealAccessDenied):
        await controller.open("acme", "mallory")
    assert gate.ledger == ()


async def test_insufficient_credits_rejects_admission(make_controller, gate):
    controller = make_controller(board_callers())
    await gate.reserve("alice")
    with pytest.raises(InsufficientCredits):
        await controller.open("acme", "alice")
    assert controller.active_session("acme") is None


async def test_run_board_convenience(make_controller):
    seen = []
    controller = make_controller(board_callers())
    verdict = await controller.run_board("acme", "alice", listener=seen.append)
    assert verdict.final_choice is VoteChoice.GO
    assert seen[-1].type is EventType.VERDICT_REACHED


async def test_session_cannot_run_twice(make_controller):
    controller = make_controller(board_callers())
    board = await controller.open("acme", "alice")
    await controller.run(board)
    with pytest.raises(InvalidSessionState):
        await controller.run(board)


def test_advance_rejects_skipping_and_going_back():
    session = Session(id="s1", deal_id="acme", user_id="alice", created_at=datetime.now(timezone.utc))
    with pytest.raises(InvalidSessionState):
        advance(session, Phase.DEBATE)
    advance(session, Phase.ANALYSIS)
    with pytest.raises(InvalidSessionState):
        advance(session, Phase.INIT)
    advance(session, Phase.FAILED)
    with pytest.raises(InvalidSessionState):
        advance(session, Phase.FAILED)


class GatedStore(InMemoryAnalysisStore):
    """Holds ``load`` for one deal until ``release`` is set."""

    def __init__(self, contexts, held: str) -> None:
        super().__init__(contexts)
        self.held = held
        self.release = asyncio.Event()

    async def load(self, deal_id, user_id):
        if deal_id == self.held:
            await self.release.wait()
        return await super().load(deal_id, user_id)


async def test_abandon_refunds_and_frees_the_deal(make_controller, gate):
    controller = make_controller(board_callers())
    board = await controller.open("acme", "alice")

    await controller.abandon(board)

    assert board.session.phase is Phase.FAILED
    assert board.session.error_reason == "cancelled"
    assert _refunds(gate, board) == 1
    assert board.emitter.events[-1].type is EventType.ERROR
    assert controller.active_session("acme") is None
    verdict = await controller.run_board("acme", "alice")
    assert verdict.final_choice is VoteChoice.GO


async def test_abandon_after_run_changes_nothing(make_controller, gate):
    controller = make_controller(board_callers())
    board = await controller.open("acme", "alice")
    await controller.run(board)
    await controller.abandon(board)
    assert board.session.phase is Phase.DONE
    assert _refunds(gate, board) == 0


async def test_slow_deal_lookup_does_not_block_other_admissions(make_controller, sample_context):
    store = GatedStore([sample_context, replace(sample_context, deal_id="beta")], held="beta")
    controller = make_controller(board_callers(), results=store)
    slow = asyncio.create_task(controller.open("beta", "alice"))
    await asyncio.sleep(0.01)

    board = await asyncio.wait_for(controller.open("acme", "alice"), timeout=1)
    assert controller.active_session("acme") == board.id
    assert not slow.done()

    await controller.abandon(board)
    store.release.set()
    other = await slow
    assert controller.active_session("beta") == other.id
    await controller.abandon(other)


async def test_concurrent_admissions_on_one_deal_admit_only_one(make_controller, gate, sample_context):
    store = GatedStore([sample_context], held="acme")
    controller = make_controller(board_callers(), results=store)
    attempts = [asyncio.create_task(controller.open("acme", "alice")) for _ in range(2)]
    await asyncio.sleep(0.01)
    store.release.set()

    results = await asyncio.gather(*attempts, return_exceptions=True)

    admitted = [r for r in results if not isinstance(r, Exception)]
    assert len(admitted) == 1
    assert [type(r) for r in results if isinstance(r, Exception)] == [SessionConflict]
    assert len(gate.ledger) == 1
    await controller.abandon(admitted[0])


async def test_failed_save_leaves_no_completed_record(make_controller, gate):
    records = InMemoryPersistenceSink()
    controller = make_controller(board_callers(), sink=CompositeSink(records, BrokenSink()))
    board = await controller.open("acme", "alice")

    with pytest.raises(PersistenceError):
        await controller.run(board)

    assert records.get(board.id) is None
    assert board.session.phase is Phase.FAILED
    assert _refunds(gate, board) == 1


async def test_session_time_budget_skips_remaining_rounds(make_controller, sample_board_config):
    controller = make_controller(board_callers(), board=replace(sample_board_config, session_timeout_sec=0))
    board = await controller.open("acme", "alice")
    verdict = await controller.run(board)

    assert verdict.stopping_reason == "timeout"
    assert verdict.total_rounds == 0
    assert board.session.phase is Phase.DONE
    assert not any(e.type is EventType.DEBATE_ROUND_STARTED for e in board.emitter.events)
