"""Error taxonomy for the engine.

Only generation failures are meant to reach the conversation layer.
Everything raised from an enrichment path (extraction, consolidation,
analytics) is caught and logged where it happens.
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(EngineError):
    """A required credential or backend parameter is missing. Never retried."""

    code = "configuration_error"


class ValidationError(EngineError):
    """A record was rejected at the store boundary."""

    code = "validation_error"


class PersonaNotFoundError(EngineError):
    code = "persona_not_found"


class GenerationError(EngineError):
    """The generation backend failed."""

    code = "generation_error"


class NetworkError(GenerationError):
    code = "network_error"


class GenerationTimeoutError(GenerationError):
    code = "timeout"


class AuthenticationError(GenerationError):
    code = "unauthorized"


class RateLimitError(GenerationError):
    code = "rate_limited"
