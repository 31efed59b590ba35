"""xAI Grok caller using openai SDK (OpenAI-compatible API)."""

from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from dealboard.providers.base import ProviderError
from dealboard.providers.openai_provider import OpenAICaller


class XAICaller(OpenAICaller):
    """xAI Grok via OpenAI-compatible API."""

    label = "xAI"

    def __init__(self, config: ModelConfig, name: str | None = None) -> None:
        if not config.base_url:
            raise ProviderError(name or config.name, "base_url is required for xAI provider")
        super().__init__(config, name)

    def _connect(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=api_key, base_url=self._config.base_url)
