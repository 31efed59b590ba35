"""Final vote collection and verdict aggregation.

Aggregation is a set of pure functions over the cast votes so it can be
tested without any model calls. ``VoteAggregator`` is the thin async part
that asks each live member for its vote.
"""

import logging
import re
from collections import Counter
from collections.abc import Sequence
from fractions import Fraction

from config.config_loader import PromptsConfig
from dealboard.debate import failure_payload
from dealboard.errors import NoLiveMembersError
from dealboard.events import EventType, ProgressEmitter
from dealboard.members import MemberPool
from dealboard.models import (
    AnalysisContext,
    BoardMember,
    ConsensusLevel,
    DebateRound,
    Verdict,
    Vote,
    VoteChoice,
)
from dealboard.prompts import build_system_prompt, build_vote_prompt, parse_vote
from dealboard.providers.base import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = Fraction(2, 3)

# Investment themes matched against vote rationales to find convergence and
# divergence. Each theme maps to the stems that signal it.
THEMES: dict[str, tuple[str, ...]] = {
    "team": ("team", "founder", "management", "ceo"),
    "market": ("market", "tam", "addressable"),
    "traction": ("traction", "growth", "revenue", "customers", "arr"),
    "valuation": ("valuation", "price", "multiple", "dilution"),
    "competition": ("competit", "moat", "differentiat"),
    "unit economics": ("unit economics", "margin", "cac", "ltv", "burn"),
    "technology": ("technolog", "product", "ip", "patent"),
    "regulation": ("regulat", "compliance", "legal"),
    "exit": ("exit", "acquisition", "ipo"),
}

_NORMALIZE = re.compile(r"[^a-z0-9 ]+")


def tally(votes: Sequence[Vote]) -> Counter:
    return Counter(v.choice for v in votes)


def break_tie(tied: set[VoteChoice], votes: Sequence[Vote], roster_order: Sequence[str]) -> VoteChoice:
    """The first member in roster order whose choice is among the tied ones wins."""
    by_member = {v.member_id: v.choice for v in votes}
    for member_id in roster_order:
        choice = by_member.get(member_id)
        if choice in tied:
            return choice
    raise ValueError("no voter in roster order holds a tied choice")


def plurality(votes: Sequence[Vote], roster_order: Sequence[str]) -> VoteChoice:
    counts = tally(votes)
    top = max(counts.values())
    leaders = {choice for choice, n in counts.items() if n == top}
    if len(leaders) == 1:
        return leaders.pop()
    return break_tie(leaders, votes, roster_order)


def classify_consensus(
    winning_count: int,
    total: int,
    distinct_choices: int,
    threshold: Fraction = DEFAULT_THRESHOLD,
) -> ConsensusLevel:
    """unanimous, else majority when winning_count/total >= threshold exactly."""
    if distinct_choices == 1:
        return ConsensusLevel.UNANIMOUS
    if Fraction(winning_count, total) >= threshold:
        return ConsensusLevel.MAJORITY
    return ConsensusLevel.SPLIT


def _normalized(text: str) -> str:
    return " ".join(_NORMALIZE.sub(" ", text.lower()).split())


def _dedupe(items: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for item in items:
        key = _normalized(item)
        if key and key not in seen:
            seen.add(key)
            unique.append(item.strip())
    return unique


def _themes_in(text: str) -> set[str]:
    lowered = text.lower()
    return {
        theme
        for theme, stems in THEMES.items()
        if any(re.search(rf"\b{re.escape(stem)}", lowered) for stem in stems)
    }


def _first_sentence(text: str, limit: int = 200) -> str:
    sentence = re.split(r"(?<=[.!?])\s", text.strip(), maxsplit=1)[0]
    return sentence[:limit]


def extract_points(
    votes: Sequence[Vote],
    final_choice: VoteChoice,
) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Derive agreement and friction points from votes and their rationales.

    Agreement: explicit agreement points, then every theme raised by two or
    more voters who all chose the same way. Friction: every theme raised by
    voters who chose differently, each dissenting vote, then remaining
    concerns. Output is de-duplicated and depends only on the input order.
    """
    mentions: dict[str, list[Vote]] = {}
    for vote in votes:
        for theme in _themes_in(" ".join((vote.rationale, *vote.agreement_points, *vote.concerns))):
            mentions.setdefault(theme, []).append(vote)

    agreement: list[str] = [p for v in votes for p in v.agreement_points]
    friction: list[str] = []
    for theme in THEMES:
        voters = mentions.get(theme, [])
        if len(voters) < 2:
            continue
        choices = {v.choice for v in voters}
        if len(choices) == 1:
            agreement.append(f"Shared view on {theme} ({choices.pop().value})")
        else:
            sides = ", ".join(
                f"{choice.value} ({', '.join(v.member_id for v in voters if v.choice == choice)})"
                for choice in VoteChoice
                if choice in choices
            )
            friction.append(f"Divided on {theme}: {sides}")

    for vote in votes:
        if vote.choice != final_choice:
            friction.append(f"{vote.member_id} votes {vote.choice.value}: {_first_sentence(vote.rationale)}")
    friction.extend(c for v in votes for c in v.concerns)

    return tuple(_dedupe(agreement)), tuple(_dedupe(friction))


def questions_for_founder(votes: Sequence[Vote]) -> tuple[str, ...]:
    """Questions raised by high-weight negative factors and remaining concerns."""
    questions: list[str] = []
    for vote in votes:
        for factor in vote.key_factors:
            if factor.get("direction") == "negative" and factor.get("weight") == "high":
                questions.append(f"How do you plan to address: {factor['factor']}?")
        for concern in vote.concerns:
            questions.append(f"Can you clarify: {concern.rstrip('?.')}?")
    return tuple(_dedupe(questions))


def aggregate(
    votes: Sequence[Vote],
    roster_order: Sequence[str],
    failed_members: Sequence[str] = (),
    threshold: Fraction = DEFAULT_THRESHOLD,
    *,
    stopping_reason: str = "max_rounds",
    total_rounds: int = 0,
    total_tokens: int = 0,
    duration_sec: float = 0.0,
) -> Verdict:
    """Build the verdict from the votes actually cast.

    Raises:
        NoLiveMembersError: If no vote was cast.
    """
    if not votes:
        raise NoLiveMembersError("No member cast a vote")

    rank = {member_id: i for i, member_id in enumerate(roster_order)}
    ordered = sorted(votes, key=lambda v: rank.get(v.member_id, len(rank)))
    counts = tally(ordered)
    final_choice = plurality(ordered, roster_order)
    consensus = classify_consensus(counts[final_choice], len(ordered), len(counts), threshold)
    agreement, friction = extract_points(ordered, final_choice)

    return Verdict(
        final_choice=final_choice,
        consensus_level=consensus,
        agreement_points=agreement,
        friction_points=friction,
        votes=tuple(ordered),
        failed_members=tuple(failed_members),
        questions_for_founder=questions_for_founder(ordered),
        stopping_reason=stopping_reason,
        total_rounds=total_rounds,
        total_tokens=total_tokens,
        duration_sec=duration_sec,
    )


class VoteAggregator:
    """Asks each live member for exactly one final vote."""

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

    async def collect(
        self,
        context: AnalysisContext,
        rounds: list[DebateRound],
        live: Sequence[BoardMember],
    ) -> tuple[list[Vote], list[str]]:
        """Returns (votes in roster order, ids of members whose vote failed)."""
        names = {m.id: m.display_name for m in self._pool.members}
        prompt = build_vote_prompt(context, self._prompts, rounds, names)
        self._emitter.emit(
            EventType.VOTING_STARTED,
            message=f"{len(live)} member(s) voting",
            payload={"members": [m.id for m in live]},
        )

        def on_settled(member: BoardMember, result: Vote | ProviderError) -> None:
            if isinstance(result, ProviderError):
                self._emitter.emit(
                    EventType.MEMBER_ANALYSIS_FAILED,
                    member_id=member.id,
                    message=f"{member.display_name} could not vote",
                    payload=failure_payload("vote", result),
                )
                return
            self._emitter.emit(
                EventType.MEMBER_VOTED,
                member_id=member.id,
                payload={
                    "choice": result.choice.value,
                    "confidence": result.confidence,
                    "rationale": result.rationale,
                },
            )

        results = await self._pool.call_all(
            live,
            {m.id: prompt for m in live},
            self._timeout,
            system_prompts={m.id: build_system_prompt(m, self._prompts) for m in live},
            parse=parse_vote,
            on_settled=on_settled,
            tokens=self._tokens,
        )
        votes = [r for r in results.values() if isinstance(r, Vote)]
        failed = [member_id for member_id, r in results.items() if isinstance(r, ProviderError)]
        logger.info("Voting complete: %d vote(s), %d failure(s)", len(votes), len(failed))
        return votes, failed
