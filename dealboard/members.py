"""Board roster and bounded parallel fan-out over member model calls."""

import asyncio
import logging
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from config.config_loader import AppConfig
from dealboard.models import BoardMember, ModelResponse, Provider
from dealboard.providers.anthropic import AnthropicCaller
from dealboard.providers.base import MemberProviderError, MemberTimeout, ModelCaller, ProviderError
from dealboard.providers.gemini import GeminiCaller
from dealboard.providers.openai_provider import OpenAICaller
from dealboard.providers.xai import XAICaller

logger = logging.getLogger(__name__)

CALLER_CLASSES: dict[Provider, type[ModelCaller]] = {
    Provider.ANTHROPIC: AnthropicCaller,
    Provider.OPENAI: OpenAICaller,
    Provider.GOOGLE: GeminiCaller,
    Provider.XAI: XAICaller,
}

CallOutcome = Any  # parsed value, ModelResponse, or ProviderError
SettledCallback = Callable[[BoardMember, Any], None]


class MemberPool:
    """Fixed roster of board members, each bound to one ModelCaller.

    Roster order is significant: it is the order results are reported in
    and the order used to break voting ties.
    """

    def __init__(
        self,
        members: Sequence[BoardMember],
        callers: dict[str, ModelCaller],
        max_concurrency: int | None = None,
    ) -> None:
        if not members:
            raise ValueError("A board needs at least one member")
        ids = [m.id for m in members]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate member ids in roster: {ids}")
        missing = [m.id for m in members if m.id not in callers]
        if missing:
            raise ValueError(f"No caller bound for members: {missing}")
        self._members = tuple(members)
        self._callers = dict(callers)
        self._max_concurrency = max_concurrency or len(self._members)

    @property
    def members(self) -> tuple[BoardMember, ...]:
        return self._members

    def caller(self, member_id: str) -> ModelCaller:
        return self._callers[member_id]

    def in_roster_order(self, member_ids: Iterable[str]) -> list[BoardMember]:
        wanted = set(member_ids)
        return [m for m in self._members if m.id in wanted]

    def subset(self, member_ids: Iterable[str]) -> "MemberPool":
        """A new pool restricted to the given members, roster order kept."""
        members = self.in_roster_order(member_ids)
        return MemberPool(members, {m.id: self._callers[m.id] for m in members})

    async def _call_one(
        self,
        semaphore: asyncio.Semaphore,
        member: BoardMember,
        prompt: str,
        system_prompt: str,
        timeout: float,
        parse: Callable[[ModelResponse], Any] | None,
        tokens: Counter | None,
    ) -> CallOutcome:
        """Call a single member. Never raises: failures come back as ProviderError."""
        async with semaphore:
            try:
                response = await asyncio.wait_for(
                    self._callers[member.id].invoke(prompt, system_prompt),
                    timeout=timeout,
                )
            except TimeoutError:
                logger.warning("Member %s timed out after %.0fs", member.id, timeout)
                return MemberTimeout(member.id, f"No answer within {timeout:.0f}s")
            except ProviderError as exc:
                logger.warning("Member %s failed: %s", member.id, exc)
                return exc
            except Exception as exc:
                logger.warning("Member %s unexpected failure: %s", member.id, exc)
                return ProviderError(member.id, f"Unexpected error: {exc}")

        response.member_id = member.id
        if tokens is not None and response.token_count:
            tokens[member.id] += response.token_count

        if parse is None:
            return response
        try:
            return parse(response)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Member %s returned unusable output: %s", member.id, exc)
            return MemberProviderError(member.id, f"Unusable output: {exc}")

    async def call_all(
        self,
        members: Sequence[BoardMember],
        prompts: dict[str, str],
        timeout: float,
        system_prompts: dict[str, str] | None = None,
        parse: Callable[[ModelResponse], Any] | None = None,
        on_settled: SettledCallback | None = None,
        tokens: Counter | None = None,
    ) -> dict[str, CallOutcome]:
        """Call every given member once, in parallel, and wait for all of them.

        Args:
            members: The live subset to call.
            prompts: Prompt per member id.
            timeout: Per-call timeout in seconds; a timeout is a MemberTimeout.
            system_prompts: Optional system prompt per member id.
            parse: Optional converter applied to each response; a ValueError,
                KeyError or TypeError from it turns into MemberProviderError.
            on_settled: Invoked once per member as soon as its call settles,
                in arrival order.
            tokens: Optional counter that accumulates reported token usage
                per member id.

        Returns:
            Outcome per member id (parsed value, ModelResponse, or
            ProviderError), in roster order.
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)
        system_prompts = system_prompts or {}
        outcomes: dict[str, CallOutcome] = {}

        async def settle(member: BoardMember) -> None:
            outcome = await self._call_one(
                semaphore,
                member,
                prompts[member.id],
                system_prompts.get(member.id, ""),
                timeout,
                parse,
                tokens,
            )
            outcomes[member.id] = outcome
            if on_settled is not None:
                on_settled(member, outcome)

        await asyncio.gather(*(settle(m) for m in members))
        return {m.id: outcomes[m.id] for m in self.in_roster_order(outcomes)}


def build_members(config: AppConfig, profile: str | None = None) -> list[BoardMember]:
    """Turn the configured roster into BoardMember descriptors."""
    members: list[BoardMember] = []
    for entry in config.roster(profile):
        model_cfg = config.models[entry.model_key]
        members.append(
            BoardMember(
                id=entry.id,
                display_name=entry.display_name,
                provider=Provider(model_cfg.sdk),
                persona=entry.persona,
                color=entry.color,
                model_key=entry.model_key,
            )
        )
    return members


def build_pool(config: AppConfig, profile: str | None = None) -> MemberPool:
    """Build a pool with one caller per member whose API key is available.

    Members whose caller cannot be built are left out of the roster and
    logged, the same way a missing key is.
    """
    members: list[BoardMember] = []
    callers: dict[str, ModelCaller] = {}
    for member in build_members(config, profile):
        if member.model_key not in config.available_models:
            logger.warning("Member '%s' skipped: no API key for %s", member.id, member.model_key)
            continue
        try:
            callers[member.id] = CALLER_CLASSES[member.provider](config.models[member.model_key], member.id)
        except ProviderError as exc:
            logger.warning("Failed to build caller for member '%s': %s", member.id, exc)
            continue
        members.append(member)
    return MemberPool(members, callers)
