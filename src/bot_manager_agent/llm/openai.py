"""
OpenAI GPT LLM provider (also works with OpenRouter and compatible APIs).
"""

from typing import Any

import openai
import structlog

from .base import BaseLLM, LLMMessage, LLMResponse

logger = structlog.get_logger()


class OpenAILLM(BaseLLM):
    """OpenAI GPT LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.3,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = openai.AsyncOpenAI(
            api_key=api_key or None,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "openai"

    async def generate(
        self,
        messages: list[LLMMessage],
        system_prompt: str | None = None,
    ) -> LLMResponse:
        """Generate a response from GPT."""
        converted: list[dict[str, Any]] = [
            {"role": m.role, "content": m.content} for m in messages
        ]

        if system_prompt:
            converted.insert(0, {"role": "system", "content": system_prompt})

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=converted,  # type: ignore[arg-type]
            )
        except openai.APIError as e:
            logger.error("OpenAI API error", error=str(e))
            raise

        choice = response.choices[0]

        return LLMResponse(
            content=choice.message.content or "",
            input_tokens=response.usage.prompt_tokens if response.usage else 0,
            output_tokens=response.usage.completion_tokens if response.usage else 0,
            model=response.model,
            stop_reason=choice.finish_reason,
            raw_response=response,
        )
