"""
Prompt Service — the processing capability behind the worker.

Resolves the prompt to send (library entry and/or explicit text), applies the
optional enhancement, picks the model and asks the LLM provider for a
completion. Every failure surfaces as PromptProcessingError so the consumer
can discard the message.
"""
from __future__ import annotations

import abc
import structlog
from typing import Optional

from core.llm import LLMProvider, DEFAULT_OPENAI_MODEL
from database.prompt_library import BasePromptLibrary

logger = structlog.get_logger()

ENHANCEMENT_SUFFIX = "\n\nProvide a detailed and comprehensive response. Ensure clarity and accuracy."


class PromptProcessingError(Exception):
    """Raised when a prompt cannot be resolved or completed."""


class PromptProcessor(abc.ABC):
    """What the consumer dispatches to."""

    @abc.abstractmethod
    async def process_prompt(
        self,
        prompt_text: Optional[str],
        requested_model: Optional[str] = None,
        enhance: bool = False,
        prompt_id: Optional[str] = None,
    ) -> str:
        ...


class PromptService(PromptProcessor):
    """
    Composes prompts and generates completions.

    Library resolution (prompt_id given):
      - found:     library text, followed by " <prompt_text>" when both exist;
                   library model used unless requested_model overrides it
      - not found: falls back to prompt_text, error if there is none
      - lookup error: same fallback as not found
    """

    def __init__(
        self,
        llm_provider: Optional[LLMProvider],
        library: Optional[BasePromptLibrary] = None,
        default_model: str = DEFAULT_OPENAI_MODEL,
    ):
        self.llm_provider = llm_provider
        self.library = library
        self.default_model = default_model
        if llm_provider is None:
            logger.warning("prompt_service_without_provider")

    async def _resolve(self, prompt_text: Optional[str], requested_model: Optional[str],
                       prompt_id: Optional[str]) -> tuple[str, str]:
        text = prompt_text or ""
        model = requested_model or self.default_model

        if not prompt_id:
            if not prompt_text:
                raise PromptProcessingError(
                    "Cannot process prompt: Neither promptId nor promptText was provided."
                )
            return text, model

        if self.library is None:
            logger.warning("prompt_library_unavailable", prompt_id=prompt_id)
            if not prompt_text:
                raise PromptProcessingError(
                    f"Prompt library is not configured and no fallback promptText provided for '{prompt_id}'."
                )
            return text, model

        try:
            stored = await self.library.get_by_name(prompt_id)
        except Exception as e:
            logger.error("prompt_library_lookup_failed", prompt_id=prompt_id, error=str(e))
            if not prompt_text:
                raise PromptProcessingError(
                    f"Failed to retrieve prompt '{prompt_id}' from database and no fallback promptText provided."
                ) from e
            return text, model

        if stored is None:
            logger.warning("prompt_not_found", prompt_id=prompt_id)
            if not prompt_text:
                raise PromptProcessingError(
                    f"Prompt name '{prompt_id}' not found in database and no fallback promptText provided."
                )
            return text, model

        text = stored.prompt_text + (f" {prompt_text}" if prompt_text else "")
        if stored.model_name and not requested_model:
            model = stored.model_name
        logger.info("prompt_resolved_from_library", prompt_id=prompt_id, model=model)
        return text, model

    async def process_prompt(
        self,
        prompt_text: Optional[str],
        requested_model: Optional[str] = None,
        enhance: bool = False,
        prompt_id: Optional[str] = None,
    ) -> str:
        logger.info("processing_prompt", prompt_id=prompt_id, enhance=bool(enhance),
                    requested_model=requested_model)

        if self.llm_provider is None:
            raise PromptProcessingError("LLM provider is not available. Cannot process prompt.")

        text, model = await self._resolve(prompt_text, requested_model, prompt_id)

        if enhance:
            text += ENHANCEMENT_SUFFIX

        if not text.strip():
            raise PromptProcessingError("Final prompt text is empty or whitespace. Cannot send to LLM.")

        try:
            completion = await self.llm_provider.generate_completion(text, model)
        except Exception as e:
            logger.error("prompt_completion_failed", model=model, error=str(e))
            raise PromptProcessingError(
                f"Failed to process prompt and generate completion: {e}"
            ) from e

        logger.info("prompt_completed", model=model, completion_chars=len(completion))
        return completion
