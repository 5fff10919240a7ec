"""OpenAI API LLM provider (chat completions in JSON mode)."""
import logging

from openai import AsyncOpenAI

from app.services.llm_provider import LLMProvider

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI API provider (chat completions)."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        temperature: float = 0.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.temperature = temperature
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def generate(self, prompt: str, **kwargs) -> str:
        messages = []
        if kwargs.get("system"):
            messages.append({"role": "system", "content": kwargs["system"]})
        messages.append({"role": "user", "content": prompt})
        temperature = kwargs.get("temperature")
        resp = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=self.temperature if temperature is None else temperature,
            max_tokens=kwargs.get("max_tokens"),
            response_format={"type": "json_object"},
        )
        if resp.choices and resp.choices[0].message.content:
            return resp.choices[0].message.content
        logger.warning("OpenAI returned no content (model=%s)", self.model)
        return ""
