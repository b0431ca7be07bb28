from __future__ import annotations

import importlib
import importlib.util
import json
import logging
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Callable,
    Iterable,
    Protocol,
    Sequence,
    runtime_checkable,
)

from .errors import IntelligenceError

if TYPE_CHECKING:
    import apple_fm_sdk as fm_types

fm: Any = None
if importlib.util.find_spec("apple_fm_sdk") is not None:
    fm = importlib.import_module("apple_fm_sdk")
HAS_APPLE_FM_SDK = fm is not None

logger = logging.getLogger(__name__)

BACKEND_APPLE_FM = "apple_fm"
BACKEND_SCRIPTED = "scripted"


@runtime_checkable
class ModelSession(Protocol):
    """Stateful handle to a language-generation backend."""

    def prewarm(self) -> None:
        ...

    def stream_response(
        self,
        prompt: str,
        *,
        json_schema: dict[str, Any],
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield progressively more complete structured snapshots."""
        ...


SessionFactory = Callable[[str], ModelSession]


class AppleFMSession:
    """Model session backed by the on-device Foundation Models SDK.

    Schema-guided generation is not streamed by the SDK, so the settled
    result is yielded as a single complete snapshot.
    """

    def __init__(self, session: "fm_types.LanguageModelSession") -> None:
        self._session = session

    def prewarm(self) -> None:
        prewarm = getattr(self._session, "prewarm", None)
        if prewarm is None:
            logger.debug("Foundation Models session does not expose prewarm")
            return
        prewarm()

    async def stream_response(
        self,
        prompt: str,
        *,
        json_schema: dict[str, Any],
    ) -> AsyncIterator[dict[str, Any]]:
        generated = await self._session.respond(prompt, json_schema=json_schema)
        yield _decode_snapshot(generated.to_json())


class ScriptedSession:
    """Deterministic session replaying configured snapshot sequences.

    Each call to ``stream_response`` consumes the next script; the last
    script is reused once the list is exhausted. A script entry that is an
    exception instance is raised at that point of the stream.
    """

    def __init__(
        self,
        scripts: Sequence[Iterable[Any]] | None = None,
        *,
        instructions: str | None = None,
    ) -> None:
        self.instructions = instructions
        self._scripts = [list(script) for script in scripts or ()]
        self.prompts: list[str] = []
        self.prewarm_count = 0

    def prewarm(self) -> None:
        self.prewarm_count += 1

    async def stream_response(
        self,
        prompt: str,
        *,
        json_schema: dict[str, Any],
    ) -> AsyncIterator[dict[str, Any]]:
        self.prompts.append(prompt)
        for item in self._next_script(prompt, json_schema):
            if isinstance(item, BaseException):
                raise item
            yield item

    def _next_script(
        self,
        prompt: str,
        json_schema: dict[str, Any],
    ) -> list[Any]:
        if not self._scripts:
            return echo_script(prompt, json_schema)
        if len(self._scripts) > 1:
            return self._scripts.pop(0)
        return self._scripts[0]


def echo_script(prompt: str, json_schema: dict[str, Any]) -> list[dict[str, Any]]:
    """Build a script that fills every string property in schema order."""

    properties = json_schema.get("properties", {})
    text = prompt.strip().splitlines()[-1] if prompt.strip() else ""
    snapshots: list[dict[str, Any]] = []
    current: dict[str, Any] = {}

    for name in properties:
        current = {**current, name: f"{name}: {text}"}
        snapshots.append(current)

    return snapshots


def create_session(instructions: str, backend: str = BACKEND_APPLE_FM) -> ModelSession:
    if backend == BACKEND_SCRIPTED:
        return ScriptedSession(instructions=instructions)

    if backend != BACKEND_APPLE_FM:
        raise IntelligenceError(
            status_code=500,
            message=f"Unknown session backend '{backend}'.",
            code="unknown_backend",
        )

    if not HAS_APPLE_FM_SDK:
        raise IntelligenceError(
            status_code=503,
            message="Foundation model SDK is not installed in this environment.",
            code="model_unavailable",
        )

    model = fm.SystemLanguageModel()
    is_available, reason = model.is_available()

    if not is_available:
        reason_name = getattr(reason, "name", str(reason) if reason else "UNKNOWN")
        raise IntelligenceError(
            status_code=503,
            message=(
                "Foundation model is unavailable on this machine "
                f"(reason={reason_name})."
            ),
            code="model_unavailable",
        )

    return AppleFMSession(
        fm.LanguageModelSession(instructions=instructions, model=model)
    )


def _decode_snapshot(raw: str) -> dict[str, Any]:
    snapshot = json.loads(raw)
    if not isinstance(snapshot, dict):
        raise IntelligenceError(
            status_code=502,
            message="Model returned a non-object structured output.",
            code="malformed_output",
        )
    return snapshot
