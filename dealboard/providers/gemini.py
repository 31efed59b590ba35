"""Gemini caller using google-genai SDK with native async."""

from google import genai
from google.genai import types as genai_types

from dealboard.providers.base import ProviderError, SDKCaller


class GeminiCaller(SDKCaller):
    """Google Gemini via google-genai SDK."""

    label = "Gemini"

    def _connect(self, api_key: str) -> genai.Client:
        return genai.Client(api_key=api_key)

    async def _request(self, prompt: str, system_prompt: str):
        return await self._client.aio.models.generate_content(
            model=self._config.model,
            contents=prompt,
            config=genai_types.GenerateContentConfig(
                max_output_tokens=self._config.max_tokens,
                system_instruction=system_prompt or None,
                temperature=self._config.temperature,
            ),
        )

    def _extract(self, raw) -> tuple[str, int | None]:
        if not raw.text:
            raise ProviderError(self._name, "Empty response text")
        usage = raw.usage_metadata
        return raw.text, usage.total_token_count if usage else None
