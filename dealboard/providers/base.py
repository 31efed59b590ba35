"""The model capability behind each board member, and the shared SDK plumbing."""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any

from config.config_loader import ModelConfig
from dealboard.models import ModelResponse

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when a model call fails."""

    reason = "provider_error"

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        self.detail = message
        super().__init__(f"[{provider_name}] {message}")


class MemberTimeout(ProviderError):
    """The call did not settle within its per-call timeout."""

    reason = "timeout"


class MemberProviderError(ProviderError):
    """The call settled but its output could not be used."""

    reason = "invalid_output"


class ModelCaller(ABC):
    """Uniform async contract over one external reasoning model."""

    @abstractmethod
    def name(self) -> str:
        """Return the name this caller reports in responses and errors."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def invoke(self, prompt: str, system_prompt: str = "") -> ModelResponse:
        """Send one prompt and return the model's text.

        Args:
            prompt: The user prompt.
            system_prompt: Persona / standing instructions, may be empty.

        Returns:
            ModelResponse dataclass with content and metadata.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        ...


class SDKCaller(ModelCaller):
    """ModelCaller backed by a vendor SDK client.

    Subclasses build the client, send one request and pull the text and
    token usage out of the raw reply; key lookup, the request timeout,
    error wrapping and timing live here.
    """

    label = "SDK"

    def __init__(self, config: ModelConfig, name: str | None = None) -> None:
        self._config = config
        self._name = name or config.name
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(self._name, f"Missing API key: {config.api_key_env}")
        self._client = self._connect(api_key)

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return self._config.model

    @abstractmethod
    def _connect(self, api_key: str) -> Any:
        ...

    @abstractmethod
    async def _request(self, prompt: str, system_prompt: str) -> Any:
        ...

    @abstractmethod
    def _extract(self, raw: Any) -> tuple[str, int | None]:
        """Return (text, total tokens). Raise ProviderError if there is no text."""
        ...

    async def invoke(self, prompt: str, system_prompt: str = "") -> ModelResponse:
        start = time.monotonic()
        try:
            raw = await asyncio.wait_for(
                self._request(prompt, system_prompt),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self._name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise ProviderError(self._name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start
        content, token_count = self._extract(raw)
        logger.info("%s %s: %.2fs, %s tokens", self.label, self._name, latency, token_count)

        return ModelResponse(
            member_id=self._name,
            model=self._config.model,
            content=content,
            latency_sec=latency,
            token_count=token_count,
        )
