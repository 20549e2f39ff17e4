"""LLM router with role-based model dispatch.

All generative calls made by the pipeline go through ``LLMRouter`` which
talks to LiteLLM, so any provider LiteLLM supports can back a role:

- "anthropic/claude-sonnet-4-20250514" -> Anthropic API
- "gpt-4o" -> OpenAI API
- "ollama/llama3" -> Ollama (local)

Callers depend on the ``GenerativeService`` protocol, not on the router, and
always check ``is_configured()`` before using it.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Protocol

import structlog

from training_camp.config import LLMRole, RoleModelConfig, TrainingCampConfig

logger = structlog.get_logger(__name__)

# Retry settings for rate limit errors
_MAX_RETRIES = 5
_BASE_DELAY_S = 2.0
_MAX_DELAY_S = 60.0


class GenerativeService(Protocol):
    """Optional text-generation backend used as an upgrade path by every stage."""

    def is_configured(self) -> bool: ...

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        role: LLMRole = LLMRole.ANALYZING,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str: ...


def llm_available(llm: GenerativeService | None) -> bool:
    """Capability check shared by all stages."""
    return llm is not None and llm.is_configured()


class LLMRouter:
    """Routes LLM calls to the model configured for each role.

    Retries automatically on rate limit errors with exponential backoff and
    optionally spaces requests by ``min_request_interval_s``.
    """

    def __init__(self, config: TrainingCampConfig) -> None:
        self._enabled = config.llm_enabled
        self._role_map = config.role_models
        self._default_config = RoleModelConfig()
        self._min_interval = config.min_request_interval_s
        self._last_request_time: float = 0.0

    def is_configured(self) -> bool:
        return self._enabled and bool(self._role_map)

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        role: LLMRole = LLMRole.ANALYZING,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        """Send a completion request routed by role and return the text."""
        config = self._role_map.get(role, self._default_config)
        logger.debug("llm_request", role=role.value, model=config.model)
        return await self._litellm_complete(
            config,
            messages,
            max_tokens=max_tokens if max_tokens is not None else config.max_tokens,
            temperature=temperature if temperature is not None else config.temperature,
        )

    async def _litellm_complete(
        self,
        config: RoleModelConfig,
        messages: list[dict[str, str]],
        **kwargs: Any,
    ) -> str:
        """Complete via LiteLLM with retry and rate limit spacing."""
        import litellm

        completion_kwargs: dict[str, Any] = {
            "model": config.model,
            "messages": messages,
            "temperature": kwargs.pop("temperature"),
            "max_tokens": kwargs.pop("max_tokens"),
        }

        if config.api_key:
            completion_kwargs["api_key"] = config.api_key
        if config.api_base:
            completion_kwargs["api_base"] = config.api_base

        # Rate limit spacing: ensure minimum interval between requests
        if self._min_interval > 0:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()

        last_exc: Exception | None = None
        for attempt in range(_MAX_RETRIES):
            try:
                response = await litellm.acompletion(**completion_kwargs)
                content = response.choices[0].message.content or ""
                logger.debug("llm_response", model=config.model, length=len(content))
                return content
            except litellm.RateLimitError as exc:
                last_exc = exc
                delay = min(_BASE_DELAY_S * (2**attempt), _MAX_DELAY_S)
                logger.warning(
                    "rate_limit_retry",
                    attempt=attempt + 1,
                    max_retries=_MAX_RETRIES,
                    delay_s=delay,
                    model=config.model,
                )
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]
