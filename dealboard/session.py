"""Board session lifecycle: admission, then ANALYSIS -> DEBATE -> VOTE -> DONE.

``SessionController.open`` performs admission (one running session per
deal, deal lookup, credit reservation) and hands back a ``BoardSession``.
``SessionController.run`` drives the phases. Any session-fatal error moves
the session to FAILED, refunds the reservation once, emits a single
``error`` event and re-raises.
"""

import asyncio
import logging
import time
import uuid
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from config.config_loader import BoardConfig, PromptsConfig
from dealboard.credits import CreditGate, Reservation
from dealboard.debate import DebateCoordinator, failure_payload
from dealboard.errors import (
    BoardError,
    InvalidSessionState,
    NoLiveMembersError,
    PersistenceError,
    SessionCancelled,
    SessionConflict,
)
from dealboard.events import EventType, ProgressEmitter, ProgressEvent
from dealboard.members import MemberPool
from dealboard.models import (
    AnalysisContext,
    BoardMember,
    DebateRound,
    MemberAnalysis,
    MemberStatus,
    Phase,
    Session,
    Verdict,
    verdict_to_dict,
)
from dealboard.prompts import build_analysis_prompt, build_system_prompt, parse_analysis
from dealboard.providers.base import ProviderError
from dealboard.stores import AnalysisResultsProvider, PersistenceSink
from dealboard.voting import VoteAggregator, aggregate

logger = logging.getLogger(__name__)

_FORWARD = (Phase.INIT, Phase.ANALYSIS, Phase.DEBATE, Phase.VOTE, Phase.DONE)


def advance(session: Session, target: Phase) -> None:
    """Move a session one step forward, or to FAILED from any non-terminal phase."""
    if session.phase in (Phase.DONE, Phase.FAILED):
        raise InvalidSessionState(f"Session {session.id} is already {session.phase.value}")
    if target is not Phase.FAILED and _FORWARD.index(target) != _FORWARD.index(session.phase) + 1:
        raise InvalidSessionState(
            f"Session {session.id} cannot move from {session.phase.value} to {target.value}"
        )
    logger.info("Session %s: %s -> %s", session.id, session.phase.value, target.value)
    session.phase = target


@dataclass
class BoardSession:
    """Everything one running orchestration owns."""

    session: Session
    context: AnalysisContext
    reservation: Reservation
    emitter: ProgressEmitter
    analyses: dict[str, MemberAnalysis] = field(default_factory=dict)
    rounds: list[DebateRound] = field(default_factory=list)
    live: list[BoardMember] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    tokens: Counter = field(default_factory=Counter)
    refunded: bool = False

    @property
    def id(self) -> str:
        return self.session.id

    def exclude(self, member_ids: list[str]) -> None:
        for member_id in member_ids:
            if member_id not in self.failed:
                self.failed.append(member_id)
        self.live = [m for m in self.live if m.id not in self.failed]


class SessionController:
    """Owns admission and the phase state machine for board sessions."""

    def __init__(
        self,
        pool: MemberPool,
        credits: CreditGate,
        results: AnalysisResultsProvider,
        sink: PersistenceSink,
        prompts: PromptsConfig,
        board: BoardConfig,
    ) -> None:
        self._pool = pool
        self._credits = credits
        self._results = results
        self._sink = sink
        self._prompts = prompts
        self._board = board
        self._admission = asyncio.Lock()
        self._active: dict[str, str] = {}

    @property
    def pool(self) -> MemberPool:
        return self._pool

    def active_session(self, deal_id: str) -> str | None:
        return self._active.get(deal_id)

    async def open(
        self,
        deal_id: str,
        user_id: str,
        listener: Callable[[ProgressEvent], None] | None = None,
    ) -> BoardSession:
        """Admit a new session. Nothing is debited unless this returns.

        Raises:
            SessionConflict: A session is already running for the deal.
            DealNotFound / DealAccessDenied: From the results provider.
            InsufficientCredits: From the credit gate.
        """
        self._check_conflict(deal_id)
        context = await self._results.load(deal_id, user_id)
        async with self._admission:
            self._check_conflict(deal_id)
            reservation = await self._credits.reserve(user_id)

            session = Session(
                id=uuid.uuid4().hex,
                deal_id=deal_id,
                user_id=user_id,
                created_at=datetime.now(timezone.utc),
            )
            self._active[deal_id] = session.id

        logger.info("Admitted session %s for deal %s (user %s)", session.id, deal_id, user_id)
        return BoardSession(
            session=session,
            context=context,
            reservation=reservation,
            emitter=ProgressEmitter(session.id, listener),
        )

    def _check_conflict(self, deal_id: str) -> None:
        if deal_id in self._active:
            raise SessionConflict(f"Session {self._active[deal_id]} is already deliberating on deal {deal_id}")

    def _release(self, board: BoardSession) -> None:
        if self._active.get(board.session.deal_id) == board.id:
            del self._active[board.session.deal_id]

    async def abandon(self, board: BoardSession) -> None:
        """Give up an admitted session that never started running.

        Refunds the reservation and frees the deal. No-op once ``run`` has
        taken the session past INIT; ``run`` cleans up after itself.
        """
        if board.session.phase is not Phase.INIT:
            return
        try:
            await self._fail(board, SessionCancelled(f"Session {board.id} abandoned before it started"))
        finally:
            self._release(board)

    async def run(self, board: BoardSession) -> Verdict:
        """Drive an admitted session to DONE or FAILED.

        Raises:
            BoardError: The session failed; the terminal error event is
                already emitted and the credit refunded.
            asyncio.CancelledError: The caller went away; refunded as well.
        """
        if board.session.phase is not Phase.INIT:
            raise InvalidSessionState(f"Session {board.id} was already run")
        start = time.monotonic()
        try:
            advance(board.session, Phase.ANALYSIS)
            board.emitter.emit(
                EventType.SESSION_STARTED,
                message=f"Board convened on {board.context.deal_name}",
                payload={
                    "dealId": board.session.deal_id,
                    "members": [m.id for m in self._pool.members],
                    "debateRounds": self._board.debate_rounds,
                },
            )
            await self._run_analysis(board)

            advance(board.session, Phase.DEBATE)
            coordinator = DebateCoordinator(
                self._pool, self._prompts, board.emitter, self._board.debate_timeout_sec, board.tokens
            )
            outcome = await coordinator.run(
                board.context,
                board.analyses,
                board.live,
                self._board.debate_rounds,
                stop_on_consensus=self._board.stop_on_consensus,
                stop_on_majority_stable=self._board.stop_on_majority_stable,
                stop_on_stagnation=self._board.stop_on_stagnation,
                deadline=start + self._board.session_timeout_sec,
            )
            board.rounds = outcome.rounds
            board.exclude(outcome.failed)

            advance(board.session, Phase.VOTE)
            voting = VoteAggregator(
                self._pool, self._prompts, board.emitter, self._board.vote_timeout_sec, board.tokens
            )
            votes, vote_failures = await voting.collect(board.context, board.rounds, board.live)
            board.exclude(vote_failures)

            verdict = aggregate(
                votes,
                [m.id for m in self._pool.members],
                board.failed,
                self._board.majority_threshold,
                stopping_reason=outcome.stopping_reason,
                total_rounds=len(board.rounds),
                total_tokens=sum(board.tokens.values()),
                duration_sec=time.monotonic() - start,
            )
            await self._complete(board, verdict)
            return verdict
        except asyncio.CancelledError:
            await self._fail(board, SessionCancelled("Session cancelled by the caller"))
            raise
        except BoardError as exc:
            await self._fail(board, exc)
            raise
        except Exception as exc:
            logger.exception("Session %s crashed", board.id)
            await self._fail(board, BoardError(f"Unexpected failure: {exc}"))
            raise
        finally:
            self._release(board)

    async def run_board(
        self,
        deal_id: str,
        user_id: str,
        listener: Callable[[ProgressEvent], None] | None = None,
    ) -> Verdict:
        board = await self.open(deal_id, user_id, listener)
        return await self.run(board)

    async def _run_analysis(self, board: BoardSession) -> None:
        members = list(self._pool.members)
        board.live = members
        board.analyses = {m.id: MemberAnalysis(member_id=m.id) for m in members}
        prompt = build_analysis_prompt(board.context, self._prompts)

        for member in members:
            board.emitter.emit(
                EventType.MEMBER_ANALYSIS_STARTED,
                member_id=member.id,
                message=f"{member.display_name} is analyzing the deal",
            )

        def on_settled(member: BoardMember, result: MemberAnalysis | ProviderError) -> None:
            if isinstance(result, ProviderError):
                analysis = board.analyses[member.id]
                analysis.status = MemberStatus.FAILED
                analysis.error_reason = result.reason
                board.emitter.emit(
                    EventType.MEMBER_ANALYSIS_FAILED,
                    member_id=member.id,
                    message=f"{member.display_name} failed its analysis",
                    payload=failure_payload("analysis", result),
                )
                return
            board.analyses[member.id] = result
            board.emitter.emit(
                EventType.MEMBER_ANALYSIS_COMPLETED,
                member_id=member.id,
                payload={
                    "content": result.content,
                    "stance": result.stance.value if result.stance else None,
                },
            )

        await self._pool.call_all(
            members,
            {m.id: prompt for m in members},
            self._board.analysis_timeout_sec,
            system_prompts={m.id: build_system_prompt(m, self._prompts) for m in members},
            parse=parse_analysis,
            on_settled=on_settled,
            tokens=board.tokens,
        )
        board.exclude([m.id for m in members if board.analyses[m.id].status is not MemberStatus.SUCCEEDED])
        logger.info("Analysis complete: %d/%d members live", len(board.live), len(members))
        if not board.live:
            raise NoLiveMembersError("Every member failed during analysis")

    async def _complete(self, board: BoardSession, verdict: Verdict) -> None:
        completed_at = datetime.now(timezone.utc)
        record = replace(board.session, phase=Phase.DONE, completed_at=completed_at, verdict=verdict)
        try:
            await self._sink.save(record, verdict)
        except Exception as exc:
            raise PersistenceError(f"Could not persist session {board.id}: {exc}") from exc
        await self._credits.commit(board.reservation)

        advance(board.session, Phase.DONE)
        board.session.completed_at = completed_at
        board.session.verdict = verdict
        board.emitter.emit(
            EventType.VERDICT_REACHED,
            message=f"Verdict: {verdict.final_choice.value} ({verdict.consensus_level.value})",
            payload=verdict_to_dict(verdict),
        )
        logger.info(
            "Session %s done: %s (%s)",
            board.id,
            verdict.final_choice.value,
            verdict.consensus_level.value,
        )

    async def _fail(self, board: BoardSession, error: BoardError) -> None:
        previous = board.session.phase
        if previous in (Phase.DONE, Phase.FAILED):
            logger.error("Session %s error after reaching %s: %s", board.id, previous.value, error)
            return
        advance(board.session, Phase.FAILED)
        board.session.completed_at = datetime.now(timezone.utc)
        board.session.error_reason = error.reason

        if not board.refunded:
            try:
                board.refunded = await self._credits.refund(board.reservation)
            except Exception:
                logger.exception("Refund failed for session %s", board.id)

        logger.error("Session %s failed during %s (%s): %s", board.id, previous.value, error.reason, error)
        if not board.emitter.closed:
            board.emitter.emit(
                EventType.ERROR,
                message=str(error),
                payload={
                    "reason": error.reason,
                    "phase": previous.value,
                    "refunded": board.refunded,
                    "failedMembers": list(board.failed),
                },
            )
