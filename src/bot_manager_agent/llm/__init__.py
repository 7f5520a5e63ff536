"""
LLM module for the summarization calls made during compaction.

Providers:
- Anthropic Claude (native SDK)
- OpenAI GPT (native SDK)
- OpenRouter (via OpenAI-compatible endpoint)
"""

from .base import BaseLLM, LLMMessage, LLMResponse
from .anthropic import AnthropicLLM
from .openai import OpenAILLM
from .factory import create_llm

__all__ = [
    "BaseLLM",
    "LLMMessage",
    "LLMResponse",
    "AnthropicLLM",
    "OpenAILLM",
    "create_llm",
]
