"""Anthropic Claude caller using anthropic SDK with native async."""

import anthropic as anthropic_sdk

from dealboard.providers.base import ProviderError, SDKCaller


class AnthropicCaller(SDKCaller):
    """Anthropic Claude via anthropic SDK."""

    label = "Anthropic"

    def _connect(self, api_key: str) -> anthropic_sdk.AsyncAnthropic:
        return anthropic_sdk.AsyncAnthropic(api_key=api_key)

    async def _request(self, prompt: str, system_prompt: str):
        kwargs: dict = {
            "model": self._config.model,
            "max_tokens": self._config.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if self._config.temperature is not None:
            kwargs["temperature"] = self._config.temperature
        return await self._client.messages.create(**kwargs)

    def _extract(self, raw) -> tuple[str, int | None]:
        text_blocks = [b.text for b in raw.content or [] if b.type == "text"]
        if not text_blocks:
            raise ProviderError(self._name, "No text blocks in response")
        token_count = raw.usage.input_tokens + raw.usage.output_tokens if raw.usage else None
        return "\n".join(text_blocks), token_count
