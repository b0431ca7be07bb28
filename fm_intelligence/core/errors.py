from __future__ import annotations

import importlib
import importlib.util
import json
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

fm: Any = None
if importlib.util.find_spec("apple_fm_sdk") is not None:
    fm = importlib.import_module("apple_fm_sdk")
HAS_APPLE_FM_SDK = fm is not None


@dataclass
class IntelligenceError(Exception):
    status_code: int
    message: str
    code: str | None = None

    def __str__(self) -> str:
        return self.message

    def to_error(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
        }


class GenerationInFlightError(IntelligenceError):
    def __init__(self, service_name: str) -> None:
        super().__init__(
            status_code=409,
            message=f"{service_name} already has a generation in flight.",
            code="generation_in_flight",
        )


@dataclass(frozen=True, slots=True)
class GenerationFailure:
    """Terminal failure of a single generate() invocation."""

    code: str
    message: str
    status_code: int = 500

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


def describe_failure(exc: BaseException) -> GenerationFailure:
    """Map session and parsing exceptions to a generation failure."""

    if isinstance(exc, IntelligenceError):
        return GenerationFailure(
            code=exc.code or "intelligence_error",
            message=exc.message,
            status_code=exc.status_code,
        )

    if isinstance(exc, (ValidationError, json.JSONDecodeError)):
        return GenerationFailure(
            code="malformed_output",
            message=f"Model returned a malformed structured output: {exc}",
            status_code=502,
        )

    if HAS_APPLE_FM_SDK and isinstance(exc, fm.ExceededContextWindowSizeError):
        return GenerationFailure("context_length_exceeded", str(exc), 400)

    if HAS_APPLE_FM_SDK and isinstance(exc, fm.InvalidGenerationSchemaError):
        return GenerationFailure("invalid_json_schema", str(exc), 400)

    if HAS_APPLE_FM_SDK and isinstance(
        exc, (fm.UnsupportedGuideError, fm.UnsupportedLanguageOrLocaleError)
    ):
        return GenerationFailure("unsupported_parameter", str(exc), 400)

    if HAS_APPLE_FM_SDK and isinstance(
        exc, (fm.GuardrailViolationError, fm.RefusalError)
    ):
        return GenerationFailure("content_policy_violation", str(exc), 400)

    if HAS_APPLE_FM_SDK and isinstance(
        exc, (fm.RateLimitedError, fm.ConcurrentRequestsError)
    ):
        return GenerationFailure("rate_limited", str(exc), 429)

    if HAS_APPLE_FM_SDK and isinstance(exc, fm.AssetsUnavailableError):
        return GenerationFailure("assets_unavailable", str(exc), 503)

    if HAS_APPLE_FM_SDK and isinstance(exc, fm.DecodingFailureError):
        return GenerationFailure("decoding_failure", str(exc), 500)

    if HAS_APPLE_FM_SDK and isinstance(exc, fm.GenerationError):
        return GenerationFailure("generation_error", str(exc), 500)

    if HAS_APPLE_FM_SDK and isinstance(exc, fm.FoundationModelsError):
        return GenerationFailure("foundation_models_error", str(exc), 500)

    return GenerationFailure(
        code="internal_error",
        message=f"Unexpected generation error: {exc}",
        status_code=500,
    )
