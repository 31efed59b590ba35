"""Shared pytest fixtures."""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from config.config_loader import BoardConfig, CreditsConfig, ModelConfig, PromptsConfig
from dealboard.credits import InMemoryCreditGate
from dealboard.members import MemberPool
from dealboard.models import AnalysisContext, BoardMember, ModelResponse, Provider
from dealboard.providers.base import ModelCaller, ProviderError
from dealboard.session import SessionController
from dealboard.stores import InMemoryAnalysisStore, InMemoryPersistenceSink

ROSTER = ("claude", "gpt", "gemini", "grok")


def _phase(prompt: str) -> str:
    first = prompt.split("\n", 1)[0]
    if first.startswith("ANALYSIS"):
        return "analysis"
    if first.startswith("DEBATE"):
        return f"debate:{first.split()[1]}"
    if first.startswith("VOTE"):
        return "vote"
    return "ping"


class MockCaller(ModelCaller):
    """Test double ModelCaller that answers each phase with canned JSON.

    ``fail_in`` / ``hang_in`` take phase names: "analysis", "vote", "ping",
    "debate" (every round) or "debate:N" (round N only).
    """

    def __init__(
        self,
        name: str = "mock",
        verdict: str = "GO",
        rationale: str = "",
        fail_in: tuple[str, ...] = (),
        hang_in: tuple[str, ...] = (),
        vote_reply: str | None = None,
        vote_payload: dict | None = None,
    ) -> None:
        self._name = name
        self.verdict = verdict
        self.rationale = rationale or f"{name} sees a solid team and growing revenue."
        self.fail_in = fail_in
        self.hang_in = hang_in
        self.vote_reply = vote_reply
        self.vote_payload = vote_payload or {}
        self.phases: list[str] = []
        self.prompts: list[str] = []
        # Shadow the class method with an AsyncMock at the instance level.
        self.invoke = AsyncMock(side_effect=self._answer)  # type: ignore[assignment]

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    def _matches(self, phase: str, wanted: tuple[str, ...]) -> bool:
        return phase in wanted or phase.split(":")[0] in wanted

    async def _answer(self, prompt: str, system_prompt: str = "") -> ModelResponse:
        phase = _phase(prompt)
        self.phases.append(phase)
        self.prompts.append(prompt)
        if self._matches(phase, self.hang_in):
            await asyncio.sleep(60)
        if self._matches(phase, self.fail_in):
            raise ProviderError(self._name, f"503 Service Unavailable in {phase}")

        if phase == "analysis":
            body = {
                "verdict": self.verdict,
                "confidence": 70,
                "arguments": [{"point": f"{self._name} likes the team", "strength": "strong"}],
                "concerns": [],
            }
        elif phase.startswith("debate"):
            body = {"positionChanged": False, "newVerdict": self.verdict, "justification": f"{self._name} holds"}
        elif phase == "vote":
            if self.vote_reply is not None:
                return self._response(self.vote_reply)
            body = {
                "verdict": self.verdict,
                "confidence": 80,
                "justification": self.rationale,
                "keyFactors": [],
                "agreementPoints": [],
                "remainingConcerns": [],
                **self.vote_payload,
            }
        else:
            return self._response("OK")
        return self._response(json.dumps(body))

    def _response(self, content: str) -> ModelResponse:
        return ModelResponse(
            member_id=self._name,
            model="mock-model",
            content=content,
            latency_sec=0.01,
            token_count=10,
        )

    async def invoke(self, prompt: str, system_prompt: str = "") -> ModelResponse:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return await self._answer(prompt, system_prompt)


def make_member(member_id: str) -> BoardMember:
    return BoardMember(
        id=member_id,
        display_name=member_id.title(),
        provider=Provider.ANTHROPIC,
        persona=f"Persona of {member_id}",
        color="#666666",
    )


def make_pool(*callers: MockCaller) -> MemberPool:
    return MemberPool([make_member(c.name()) for c in callers], {c.name(): c for c in callers})


def board_callers(**overrides: dict) -> list[MockCaller]:
    """Four callers in roster order; keyword args customize one member each."""
    return [MockCaller(member_id, **overrides.get(member_id, {})) for member_id in ROSTER]


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        sdk="anthropic",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        base_url=None,
    )


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        system="You are {display_name}. {persona}",
        analysis="ANALYSIS\n{deal}",
        debate="DEBATE {round}\n{deal}\nMINE:\n{own_position}\nOTHERS:\n{others}",
        vote="VOTE\n{deal}\nHISTORY:\n{history}",
    )


@pytest.fixture
def sample_board_config(tmp_path: Path) -> BoardConfig:
    return BoardConfig(
        profile="test",
        debate_rounds=2,
        analysis_timeout_sec=0.5,
        debate_timeout_sec=0.5,
        vote_timeout_sec=0.5,
        output_dir=tmp_path / "output",
        dossier_dir=tmp_path / "dossiers",
    )


@pytest.fixture
def sample_credits_config() -> CreditsConfig:
    return CreditsConfig(max_concurrent_sessions=1, max_sessions_per_period=5, period_hours=1)


@pytest.fixture
def sample_context() -> AnalysisContext:
    return AnalysisContext(
        deal_id="acme",
        deal_name="Acme Seed",
        company_name="Acme SAS",
        owner_id="alice",
        sector="SaaS",
        stage="Seed",
        findings="ARR 1.2M EUR, growing 15% month over month. Two repeat founders.",
        tier1={"team": {"score": 8}},
    )


@pytest.fixture
def gate(sample_credits_config: CreditsConfig) -> InMemoryCreditGate:
    return InMemoryCreditGate(sample_credits_config)


@pytest.fixture
def sink() -> InMemoryPersistenceSink:
    return InMemoryPersistenceSink()


@pytest.fixture
def make_controller(sample_board_config, sample_prompts_config, sample_context, gate, sink):
    """Factory: SessionController over the given callers and shared fixtures."""

    def factory(callers: list[MockCaller], **overrides) -> SessionController:
        return SessionController(
            pool=overrides.get("pool") or make_pool(*callers),
            credits=overrides.get("credits", gate),
            results=overrides.get("results") or InMemoryAnalysisStore([sample_context]),
            sink=overrides.get("sink", sink),
            prompts=sample_prompts_config,
            board=overrides.get("board", sample_board_config),
        )

    return factory
