"""Consumer-side driver for one request/response cycle of a service."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Generic, TypeVar

from .service import IntelligenceService
from .types import GenerationOutcome, IntelligenceOutput, ServiceState

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT")
OutputT = TypeVar("OutputT", bound=IntelligenceOutput)


@dataclass(frozen=True, slots=True)
class Observation(Generic[OutputT]):
    output: OutputT | None
    state: ServiceState
    outcome: GenerationOutcome | None = None
    final: bool = False

    @property
    def settled(self) -> bool:
        return self.state is ServiceState.SETTLED

    @property
    def provisional(self) -> bool:
        return self.state is ServiceState.GENERATING


async def observe(
    service: IntelligenceService[InputT, OutputT],
    value: InputT,
    *,
    prewarm: bool = False,
) -> AsyncIterator[Observation[OutputT]]:
    """Run one generation on ``service`` and yield what a consumer sees.

    Every published output is yielded as a provisional observation. The
    last observation carries the settled outcome. Closing the iterator
    before it settles cancels the in-flight generation.
    """
    if prewarm:
        service.prewarm()

    service.input = value
    if not service.has_input():
        yield Observation(output=service.output, state=service.state, final=True)
        return

    queue: asyncio.Queue[Observation[OutputT] | None] = asyncio.Queue()

    def _on_change(changed: IntelligenceService[Any, Any]) -> None:
        queue.put_nowait(
            Observation(
                output=changed.output,
                state=changed.state,
                outcome=changed.outcome if changed.state is ServiceState.SETTLED else None,
            )
        )

    task = service.start()
    unsubscribe = service.subscribe(_on_change)
    task.add_done_callback(lambda _task: queue.put_nowait(None))
    last_output: OutputT | None = None

    try:
        while True:
            observation = await queue.get()

            if observation is None:
                if task.cancelled():
                    service.cancel()
                    yield Observation(
                        output=service.output,
                        state=service.state,
                        outcome=service.outcome,
                        final=True,
                    )
                    return
                task.result()
                return

            if observation.state is ServiceState.SETTLED:
                yield replace(observation, final=True)
                return

            if observation.output is None or observation.output is last_output:
                continue

            last_output = observation.output
            yield observation
    finally:
        unsubscribe()
        if not task.done():
            logger.debug("Consumer left %s before it settled", service.name)
            service.cancel()


async def run(
    service: IntelligenceService[InputT, OutputT],
    value: InputT,
    *,
    prewarm: bool = False,
) -> tuple[OutputT | None, GenerationOutcome | None]:
    """Drive one request to completion and return the settled result."""
    final: Observation[OutputT] | None = None
    async for observation in observe(service, value, prewarm=prewarm):
        final = observation

    if final is None:
        return service.output, service.outcome
    return final.output, final.outcome
