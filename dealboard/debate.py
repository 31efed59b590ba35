"""Debate orchestration: synchronized critique rounds among live members."""

import logging
import time
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field

from config.config_loader import PromptsConfig
from dealboard.errors import NoLiveMembersError
from dealboard.events import EventType, ProgressEmitter
from dealboard.members import MemberPool
from dealboard.models import (
    AnalysisContext,
    BoardMember,
    DebateResponse,
    DebateRound,
    MemberAnalysis,
    VoteChoice,
)
from dealboard.prompts import build_debate_prompt, build_system_prompt, parse_debate
from dealboard.providers.base import ProviderError

logger = logging.getLogger(__name__)

_STABLE_MAJORITY = 3


@dataclass
class DebateOutcome:
    rounds: list[DebateRound]
    live: list[BoardMember]
    failed: list[str] = field(default_factory=list)
    stopping_reason: str = "max_rounds"


def failure_payload(phase: str, error: ProviderError) -> dict[str, str]:
    return {"phase": phase, "reason": error.reason, "detail": error.detail}


def _early_stop(
    current: list[VoteChoice | None],
    previous: list[VoteChoice | None],
    *,
    consensus: bool,
    majority_stable: bool,
    stagnation: bool,
) -> str | None:
    """Reason to end the debate after a round, checked in priority order."""
    counts = Counter(s for s in current if s is not None)
    moved = any(now != before for now, before in zip(current, previous))
    if consensus and len(counts) == 1 and None not in current:
        return "consensus"
    if majority_stable and not moved and counts and max(counts.values()) >= _STABLE_MAJORITY:
        return "majority_stable"
    if stagnation and not moved:
        return "stagnation"
    return None


class DebateCoordinator:
    """Runs up to ``num_rounds`` rounds; each round is a barrier over the live set.

    Every live member sees its own latest content plus the latest content of
    every other live member. A member that fails a round is dropped for the
    rest of the session; what it said earlier stays in the record.
    """

    def __init__(
        self,
        pool: MemberPool,
        prompts: PromptsConfig,
        emitter: ProgressEmitter,
        timeout: float,
        tokens: Counter | None = None,
    ) -> None:
        self._pool = pool
        self._prompts = prompts
        self._emitter = emitter
        self._timeout = timeout
        self._tokens = tokens

    async def run(
        self,
        context: AnalysisContext,
        analyses: dict[str, MemberAnalysis],
        live: Sequence[BoardMember],
        num_rounds: int,
        *,
        stop_on_consensus: bool = False,
        stop_on_majority_stable: bool = False,
        stop_on_stagnation: bool = False,
        deadline: float | None = None,
    ) -> DebateOutcome:
        """Run the debate.

        Args:
            context: The deal being discussed.
            analyses: Successful analyses keyed by member id; round 1 starts
                from these.
            live: Members still live after analysis, in roster order.
            num_rounds: Rounds to run at most.
            stop_on_consensus: End early once every live member holds the
                same stance after a round.
            stop_on_majority_stable: End early once at least three live
                members share a stance and nobody changed stance in the round.
            stop_on_stagnation: End early after a round in which no live
                member changed stance.
            deadline: ``time.monotonic()`` value after which no new round
                starts. A round already running is not interrupted.

        Returns:
            DebateOutcome with completed rounds and the surviving live set.

        Raises:
            NoLiveMembersError: If every live member fails during a round.
        """
        outcome = DebateOutcome(rounds=[], live=list(live))
        latest = {m.id: analyses[m.id].content for m in live}
        stances: dict[str, VoteChoice | None] = {m.id: analyses[m.id].stance for m in live}

        for round_num in range(1, num_rounds + 1):
            if len(outcome.live) <= 1:
                logger.info("Debate skipped from round %d: %d live member(s)", round_num, len(outcome.live))
                outcome.stopping_reason = "single_member"
                break
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("Session time budget spent, skipping debate from round %d", round_num)
                outcome.stopping_reason = "timeout"
                break

            previous = dict(stances)
            debate_round = await self._run_round(context, round_num, outcome, latest)
            outcome.rounds.append(debate_round)
            for response in debate_round.responses:
                latest[response.member_id] = response.content
                if response.stance is not None:
                    stances[response.member_id] = response.stance

            if not outcome.live:
                raise NoLiveMembersError(f"All members failed during debate round {round_num}")
            if round_num == num_rounds:
                break

            reason = _early_stop(
                [stances[m.id] for m in outcome.live],
                [previous[m.id] for m in outcome.live],
                consensus=stop_on_consensus,
                majority_stable=stop_on_majority_stable,
                stagnation=stop_on_stagnation,
            )
            if reason:
                logger.info("Ending debate after round %d: %s", round_num, reason)
                outcome.stopping_reason = reason
                break

        return outcome

    async def _run_round(
        self,
        context: AnalysisContext,
        round_num: int,
        outcome: DebateOutcome,
        latest: dict[str, str],
    ) -> DebateRound:
        live = list(outcome.live)
        prompts_for_round = {
            m.id: build_debate_prompt(
                context,
                self._prompts,
                round_num,
                latest[m.id],
                [(other, latest[other.id]) for other in live if other.id != m.id],
            )
            for m in live
        }
        system_prompts = {m.id: build_system_prompt(m, self._prompts) for m in live}

        self._emitter.emit(
            EventType.DEBATE_ROUND_STARTED,
            round_number=round_num,
            message=f"Debate round {round_num}",
            payload={"members": [m.id for m in live]},
        )
        logger.info("Starting debate round %d with %d members", round_num, len(live))

        def on_settled(member: BoardMember, result: DebateResponse | ProviderError) -> None:
            if isinstance(result, ProviderError):
                self._emitter.emit(
                    EventType.MEMBER_ANALYSIS_FAILED,
                    member_id=member.id,
                    round_number=round_num,
                    message=f"{member.display_name} dropped out of the debate",
                    payload=failure_payload("debate", result),
                )
                return
            self._emitter.emit(
                EventType.DEBATE_RESPONSE,
                member_id=member.id,
                round_number=round_num,
                payload={
                    "content": result.content,
                    "stance": result.stance.value if result.stance else None,
                    "positionChanged": result.position_changed,
                },
            )

        results = await self._pool.call_all(
            live,
            prompts_for_round,
            self._timeout,
            system_prompts=system_prompts,
            parse=parse_debate,
            on_settled=on_settled,
            tokens=self._tokens,
        )

        debate_round = DebateRound(round_number=round_num)
        for member_id, result in results.items():
            if isinstance(result, ProviderError):
                outcome.failed.append(member_id)
            else:
                debate_round.responses.append(result)
        outcome.live = [m for m in live if m.id not in outcome.failed]

        self._emitter.emit(
            EventType.DEBATE_ROUND_COMPLETED,
            round_number=round_num,
            payload={
                "responded": [r.member_id for r in debate_round.responses],
                "failed": [m.id for m in live if m.id in outcome.failed],
            },
        )
        logger.info(
            "Debate round %d complete: %d/%d members responded",
            round_num,
            len(debate_round.responses),
            len(live),
        )
        return debate_round
