"""OpenAI caller using openai SDK with native async."""

from openai import AsyncOpenAI

from dealboard.providers.base import ProviderError, SDKCaller


def chat_messages(prompt: str, system_prompt: str) -> list[dict[str, str]]:
    """Build a chat-completions message list, system turn first when present."""
    messages = [{"role": "system", "content": system_prompt}] if system_prompt else []
    messages.append({"role": "user", "content": prompt})
    return messages


class OpenAICaller(SDKCaller):
    """OpenAI via openai SDK."""

    label = "OpenAI"

    def _connect(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=api_key)

    async def _request(self, prompt: str, system_prompt: str):
        kwargs: dict = {
            "model": self._config.model,
            "messages": chat_messages(prompt, system_prompt),
            "max_tokens": self._config.max_tokens,
        }
        if self._config.temperature is not None:
            kwargs["temperature"] = self._config.temperature
        return await self._client.chat.completions.create(**kwargs)

    def _extract(self, raw) -> tuple[str, int | None]:
        choice = raw.choices[0] if raw.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self._name, "Empty response content")
        return choice.message.content, raw.usage.total_tokens if raw.usage else None
