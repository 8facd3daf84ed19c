"""
LLM Providers — Completion generation against OpenAI or Anthropic.

A provider takes a fully composed prompt and returns the model's text.
create_llm_provider() returns None when no credential is configured; the
worker refuses to start in that case.
"""
from __future__ import annotations

import abc
import os
import structlog
from typing import Optional

from config.settings import PROVIDER_DEFAULTS, LLMConfig

logger = structlog.get_logger()

DEFAULT_OPENAI_MODEL = PROVIDER_DEFAULTS["openai"][0]
DEFAULT_ANTHROPIC_MODEL = PROVIDER_DEFAULTS["anthropic"][0]


class LLMError(Exception):
    """Raised when a completion request fails or returns nothing usable."""


class LLMConfigurationError(LLMError):
    """Raised when a provider cannot be constructed (e.g. missing API key)."""


class LLMProvider(abc.ABC):
    """Contract for a completion backend."""

    default_model: str = ""

    @abc.abstractmethod
    async def generate_completion(self, prompt: str, model: Optional[str] = None) -> str:
        """Return the completion text for prompt, using model or the provider default."""
        ...


class OpenAILLMProvider(LLMProvider):
    """Chat-completions provider with the prompt sent as a single user message."""

    def __init__(self, api_key: str = None, default_model: str = DEFAULT_OPENAI_MODEL,
                 client=None):
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        if not self.api_key:
            raise LLMConfigurationError(
                "OpenAI API key is not provided and not found in OPENAI_API_KEY environment variable."
            )
        self.default_model = default_model
        if client is None:
            from openai import AsyncOpenAI
            client = AsyncOpenAI(api_key=self.api_key)
        self._client = client

    async def generate_completion(self, prompt: str, model: Optional[str] = None) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=model or self.default_model,
                messages=[{"role": "user", "content": prompt}],
            )
            choices = getattr(response, "choices", None) or []
            content = choices[0].message.content if choices else None
            if content is None:
                raise LLMError("OpenAI API returned an empty or unexpected response.")
            return content
        except Exception as e:
            logger.error("llm_completion_failed", provider="openai", error=str(e))
            raise LLMError(f"OpenAI API request failed: {e}") from e


class AnthropicLLMProvider(LLMProvider):
    """Messages-API provider; same single-user-message shape as OpenAI."""

    def __init__(self, api_key: str = None, default_model: str = DEFAULT_ANTHROPIC_MODEL,
                 max_tokens: int = 1024, client=None):
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        if not self.api_key:
            raise LLMConfigurationError(
                "Anthropic API key is not provided and not found in ANTHROPIC_API_KEY environment variable."
            )
        self.default_model = default_model
        self.max_tokens = max_tokens
        if client is None:
            import anthropic
            client = anthropic.AsyncAnthropic(api_key=self.api_key)
        self._client = client

    async def generate_completion(self, prompt: str, model: Optional[str] = None) -> str:
        try:
            response = await self._client.messages.create(
                model=model or self.default_model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
            blocks = getattr(response, "content", None) or []
            text = getattr(blocks[0], "text", None) if blocks else None
            if text is None:
                raise LLMError("Anthropic API returned an empty or unexpected response.")
            return text
        except Exception as e:
            logger.error("llm_completion_failed", provider="anthropic", error=str(e))
            raise LLMError(f"Anthropic API request failed: {e}") from e


def create_llm_provider(config: LLMConfig) -> Optional[LLMProvider]:
    """Factory: build the configured provider, or None if it is unusable."""
    try:
        if config.provider == "anthropic":
            provider = AnthropicLLMProvider(
                api_key=config.api_key, default_model=config.model,
                max_tokens=config.max_tokens,
            )
        else:
            provider = OpenAILLMProvider(api_key=config.api_key, default_model=config.model)
    except LLMConfigurationError as e:
        logger.warning("llm_provider_unavailable", provider=config.provider, reason=str(e))
        return None
    except Exception as e:
        logger.warning("llm_provider_init_failed", provider=config.provider, error=str(e))
        return None

    logger.info("llm_provider_initialized", provider=config.provider, model=config.model)
    return provider
