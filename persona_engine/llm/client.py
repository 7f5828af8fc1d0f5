"""LiteLLM wrapper for the generation backend.

Translates backend failures into the engine's error taxonomy so nothing
above this module handles litellm exception types.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import litellm

from persona_engine.config import ENGINE_CONFIG
from persona_engine.errors import (
    AuthenticationError,
    ConfigurationError,
    GenerationError,
    GenerationTimeoutError,
    NetworkError,
    RateLimitError,
)
from persona_engine.models import GenerationResult

logger = logging.getLogger(__name__)

# Suppress litellm's verbose logging
litellm.suppress_debug_info = True


class GenerationClient:
    """Chat-completion client with a fixed timeout and network-only retry."""

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        config: dict | None = None,
    ) -> None:
        cfg = self.config = config or ENGINE_CONFIG
        self.model = model if model is not None else cfg["llm_model"]
        self.api_key = api_key or cfg.get("llm_api_key")
        self.api_base = api_base or cfg.get("llm_api_base")
        self.timeout = timeout or cfg["llm_timeout_seconds"]
        self.max_retries = max(1, max_retries or cfg["llm_max_retries"])

    def check_configuration(self) -> None:
        """Fail fast, before any network call, when credentials are missing."""
        if not self.model:
            raise ConfigurationError("No generation model configured")
        if self.api_key:
            return
        env = litellm.validate_environment(model=self.model)
        if not env.get("keys_in_environment", False):
            raise ConfigurationError(
                f"Missing credentials for model {self.model}",
                details={"missing_keys": env.get("missing_keys", [])},
            )

    async def complete(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> GenerationResult:
        """Send an ordered list of {role, content} turns and return the reply."""
        self.check_configuration()

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature if temperature is not None else self.config["base_temperature"],
            "max_tokens": max_tokens if max_tokens is not None else self.config["base_max_tokens"],
            "timeout": self.timeout,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        for attempt in range(self.max_retries):
            try:
                response = await litellm.acompletion(**kwargs)
                break
            except Exception as exc:
                error = _translate(exc)
                if not isinstance(error, NetworkError) or attempt == self.max_retries - 1:
                    raise error from exc
                logger.warning(
                    "Generation call failed (attempt %d/%d), retrying...",
                    attempt + 1, self.max_retries,
                )

        content = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        tokens_used = getattr(usage, "total_tokens", 0) or 0
        return GenerationResult(content=content, tokens_used=tokens_used)

    async def complete_json(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float | None = None,
    ) -> Any:
        """Send a single prompt and parse the reply as JSON.

        The prompt should instruct the LLM to respond with valid JSON only.
        Raises ``json.JSONDecodeError`` when it does not.
        """
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        result = await self.complete(messages, temperature=temperature)
        return json.loads(strip_code_fences(result.content))


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        # Remove first and last lines (fences)
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    return cleaned


def _translate(exc: Exception) -> GenerationError:
    """Map a backend exception onto the engine's taxonomy."""
    if isinstance(exc, GenerationError):
        return exc
    # litellm.Timeout subclasses the connection error, so check it first
    if isinstance(exc, (litellm.Timeout, asyncio.TimeoutError)):
        return GenerationTimeoutError("Generation request timed out")
    if isinstance(exc, litellm.AuthenticationError):
        return AuthenticationError("Generation backend rejected the credentials")
    if isinstance(exc, litellm.RateLimitError):
        return RateLimitError("Generation backend rate limit exceeded")
    if isinstance(exc, (litellm.APIConnectionError, ConnectionError)):
        return NetworkError(f"Generation backend unreachable: {exc}")
    return GenerationError(f"Generation request failed: {exc}")
