"""Dataclasses and enums for the board deliberation pipeline, plus their JSON-ready dict forms."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Provider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    XAI = "xai"


class Phase(str, Enum):
    INIT = "INIT"
    ANALYSIS = "ANALYSIS"
    DEBATE = "DEBATE"
    VOTE = "VOTE"
    DONE = "DONE"
    FAILED = "FAILED"


class MemberStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class VoteChoice(str, Enum):
    GO = "GO"
    NO_GO = "NO_GO"
    NEED_MORE_INFO = "NEED_MORE_INFO"


class ConsensusLevel(str, Enum):
    UNANIMOUS = "unanimous"
    MAJORITY = "majority"
    SPLIT = "split"


@dataclass(frozen=True)
class BoardMember:
    id: str
    display_name: str
    provider: Provider
    persona: str
    color: str             # display only
    model_key: str = ""


@dataclass
class ModelResponse:
    member_id: str
    model: str             # actual model string used
    content: str
    latency_sec: float
    token_count: int | None


@dataclass
class AnalysisContext:
    """Prior due-diligence findings the members reason over. Read-only."""

    deal_id: str
    deal_name: str
    company_name: str
    owner_id: str | None = None
    sector: str | None = None
    stage: str | None = None
    findings: str = ""
    tier1: dict[str, Any] = field(default_factory=dict)
    tier2: dict[str, Any] = field(default_factory=dict)
    sources: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class Session:
    id: str
    deal_id: str
    user_id: str
    created_at: datetime
    phase: Phase = Phase.INIT
    completed_at: datetime | None = None
    verdict: "Verdict | None" = None
    error_reason: str | None = None


@dataclass
class MemberAnalysis:
    member_id: str
    status: MemberStatus = MemberStatus.PENDING
    content: str = ""
    stance: VoteChoice | None = None
    error_reason: str | None = None


@dataclass
class DebateResponse:
    member_id: str
    content: str
    stance: VoteChoice | None = None
    position_changed: bool = False


@dataclass
class DebateRound:
    round_number: int
    responses: list[DebateResponse] = field(default_factory=list)


@dataclass(frozen=True)
class Vote:
    member_id: str
    choice: VoteChoice
    rationale: str
    confidence: int = 50
    agreement_points: tuple[str, ...] = ()
    concerns: tuple[str, ...] = ()
    key_factors: tuple[dict[str, str], ...] = ()


@dataclass(frozen=True)
class Verdict:
    final_choice: VoteChoice
    consensus_level: ConsensusLevel
    agreement_points: tuple[str, ...]
    friction_points: tuple[str, ...]
    votes: tuple[Vote, ...]
    failed_members: tuple[str, ...]
    questions_for_founder: tuple[str, ...] = ()
    # "max_rounds", "single_member", "consensus", "majority_stable", "stagnation", "timeout"
    stopping_reason: str = "max_rounds"
    total_rounds: int = 0
    total_tokens: int = 0
    duration_sec: float = 0.0


def vote_to_dict(vote: Vote) -> dict[str, Any]:
    return {
        "memberId": vote.member_id,
        "choice": vote.choice.value,
        "rationale": vote.rationale,
        "confidence": vote.confidence,
        "agreementPoints": list(vote.agreement_points),
        "concerns": list(vote.concerns),
        "keyFactors": [dict(f) for f in vote.key_factors],
    }


def verdict_to_dict(verdict: Verdict) -> dict[str, Any]:
    return {
        "finalChoice": verdict.final_choice.value,
        "consensusLevel": verdict.consensus_level.value,
        "agreementPoints": list(verdict.agreement_points),
        "frictionPoints": list(verdict.friction_points),
        "votes": [vote_to_dict(v) for v in verdict.votes],
        "failedMembers": list(verdict.failed_members),
        "questionsForFounder": list(verdict.questions_for_founder),
        "stoppingReason": verdict.stopping_reason,
        "totalRounds": verdict.total_rounds,
        "totalTokens": verdict.total_tokens,
        "durationSec": round(verdict.duration_sec, 3),
    }


def session_to_dict(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "dealId": session.deal_id,
        "userId": session.user_id,
        "phase": session.phase.value,
        "createdAt": session.created_at.isoformat(),
        "completedAt": session.completed_at.isoformat() if session.completed_at else None,
        "verdict": verdict_to_dict(session.verdict) if session.verdict else None,
        "errorReason": session.error_reason,
    }
