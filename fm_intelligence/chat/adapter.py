from __future__ import annotations

import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator

from fm_intelligence.config import Settings, get_settings
from fm_intelligence.core.lifecycle import Observation, observe, run
from fm_intelligence.core.types import GenerationOutcome

from .schemas import ChatRequest, ChatResponse
from .service import ChatService

logger = logging.getLogger(__name__)


def new_chat_service(settings: Settings | None = None) -> ChatService:
    settings = settings or get_settings()
    service = ChatService(instructions=settings.chat_instructions)
    if settings.prewarm_on_create:
        service.prewarm()
    return service


class WarmChatServiceSlot:
    """Holds at most one prewarmed service for the next request to take.

    A service is handed out once; the request that takes it owns it and
    its session from then on.
    """

    def __init__(self) -> None:
        self._service: ChatService | None = None

    @property
    def occupied(self) -> bool:
        return self._service is not None

    def prewarm(self, settings: Settings | None = None) -> ChatService:
        if self._service is None:
            self._service = new_chat_service(settings)
        if not self._service.prewarmed:
            self._service.prewarm()
        return self._service

    def take(self, settings: Settings | None = None) -> ChatService:
        service, self._service = self._service, None
        if service is not None:
            logger.debug("Reusing prewarmed chat service")
            return service
        return new_chat_service(settings)


def result_status_code(outcome: GenerationOutcome | None) -> int:
    if outcome is None or outcome.succeeded or outcome.failure is None:
        return 200
    return outcome.failure.status_code


async def create_chat_result(
    request: ChatRequest,
    service: ChatService,
) -> tuple[dict[str, Any], int]:
    output, outcome = await run(
        service,
        request.question,
        prewarm=_needs_prewarm(request, service),
    )
    logger.info(
        "Chat request settled (status=%s)",
        outcome.status.value if outcome else "skipped",
    )

    payload = {
        "output": _output_payload(output),
        "outcome": outcome.to_dict() if outcome else None,
    }
    return payload, result_status_code(outcome)


async def create_chat_stream(
    request: ChatRequest,
    service: ChatService,
) -> AsyncIterator[bytes]:
    prewarm = _needs_prewarm(request, service)

    async def _iterator() -> AsyncIterator[bytes]:
        observations = observe(service, request.question, prewarm=prewarm)
        async with aclosing(observations):
            async for observation in observations:
                if observation.final:
                    yield _sse_event("settled", _settled_payload(observation))
                else:
                    yield _sse_event("output", {"output": _output_payload(observation.output)})

    return _iterator()


def _needs_prewarm(request: ChatRequest, service: ChatService) -> bool:
    return request.prewarm and not service.prewarmed


def _settled_payload(observation: Observation[ChatResponse]) -> dict[str, Any]:
    outcome = observation.outcome
    return {
        "output": _output_payload(observation.output),
        "outcome": outcome.to_dict() if outcome else None,
    }


def _output_payload(output: ChatResponse | None) -> dict[str, Any] | None:
    if output is None:
        return None
    return output.model_dump()


def _sse_event(event: str, payload: dict[str, Any]) -> bytes:
    serialized = json.dumps(payload, ensure_ascii=False)
    return f"event: {event}\ndata: {serialized}\n\n".encode("utf-8")
