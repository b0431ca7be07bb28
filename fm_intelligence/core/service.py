from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, ClassVar, Generic, TypeVar

from .errors import GenerationFailure, GenerationInFlightError, describe_failure
from .session import ModelSession, SessionFactory, create_session
from .types import GenerationOutcome, IntelligenceOutput, OutcomeStatus, ServiceState

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT")
OutputT = TypeVar("OutputT", bound=IntelligenceOutput)

Observer = Callable[["IntelligenceService[Any, Any]"], None]


def default_session_factory(instructions: str) -> ModelSession:
    from fm_intelligence.config import get_settings

    return create_session(instructions, backend=get_settings().backend)


class IntelligenceService(ABC, Generic[InputT, OutputT]):
    """Feature-specific service bound to one exclusively owned model session.

    A service holds one input and one output. ``generate()`` turns the input
    into a prompt and overwrites the output with every snapshot the session
    produces, notifying subscribers each time. Failures settle the current
    invocation and are exposed through ``outcome``; they never propagate.
    """

    instructions: ClassVar[str] = ""
    output_type: ClassVar[type[IntelligenceOutput]]

    def __init__(
        self,
        *,
        session: ModelSession | None = None,
        session_factory: SessionFactory | None = None,
        instructions: str | None = None,
    ) -> None:
        self._instructions = instructions or type(self).instructions
        if session is None:
            factory = session_factory or default_session_factory
            session = factory(self._instructions)

        self.session = session
        self._input: InputT | None = None
        self._output: OutputT | None = None
        self._state = ServiceState.IDLE
        self._outcome: GenerationOutcome | None = None
        self._observers: list[Observer] = []
        self._request_id = 0
        self._task: asyncio.Task[None] | None = None
        self._prewarmed = False

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def input(self) -> InputT | None:
        return self._input

    @input.setter
    def input(self, value: InputT | None) -> None:
        self._input = value
        if self._state is not ServiceState.GENERATING:
            self._set_state(
                ServiceState.INPUT_SET if self.has_input() else ServiceState.IDLE
            )

    @property
    def output(self) -> OutputT | None:
        return self._output

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def outcome(self) -> GenerationOutcome | None:
        return self._outcome

    @property
    def is_generating(self) -> bool:
        return self._state is ServiceState.GENERATING

    @property
    def prewarmed(self) -> bool:
        return self._prewarmed

    def has_input(self) -> bool:
        return self._input is not None

    @abstractmethod
    def build_prompt(self, value: InputT) -> str:
        ...

    def parse_output(self, snapshot: dict[str, Any]) -> OutputT:
        return self.output_type.model_validate(snapshot)  # type: ignore[return-value]

    def prewarm(self) -> None:
        try:
            self.session.prewarm()
        except Exception:
            logger.warning("Prewarm failed for %s", self.name, exc_info=True)
            return
        self._prewarmed = True

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def start(self) -> asyncio.Task[None]:
        """Dispatch a generation as a task and return it.

        The prompt is built and the service enters ``generating`` before
        this returns, so later input changes apply to the next invocation.
        """
        loop = asyncio.get_running_loop()
        if not self.has_input():
            self._task = loop.create_task(self.generate())
            return self._task

        request_id, prompt = self._dispatch()
        self._task = loop.create_task(self._run(request_id, prompt))
        return self._task

    def cancel(self) -> bool:
        """Cancel the in-flight generation, if any."""
        if self._state is not ServiceState.GENERATING:
            return False

        self._request_id += 1
        self._settle(GenerationOutcome(status=OutcomeStatus.CANCELLED))

        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True

    async def generate(self) -> None:
        if not self.has_input():
            return

        request_id, prompt = self._dispatch()
        self._task = None
        await self._run(request_id, prompt)

    def _dispatch(self) -> tuple[int, str | Exception]:
        if self.is_generating:
            raise GenerationInFlightError(self.name)

        self._request_id += 1
        self._output = None
        self._outcome = None

        try:
            prompt: str | Exception = self.build_prompt(self._input)  # type: ignore[arg-type]
        except Exception as exc:
            prompt = exc

        self._set_state(ServiceState.GENERATING)
        return self._request_id, prompt

    async def _run(self, request_id: int, prompt: str | Exception) -> None:
        snapshots = 0
        observed: frozenset[str] = frozenset()

        try:
            if isinstance(prompt, Exception):
                raise prompt
            stream = self.session.stream_response(
                prompt,
                json_schema=self.output_type.generation_schema(),
            )
            async for snapshot in stream:
                if request_id != self._request_id:
                    return

                output = self.parse_output(snapshot)
                fields = output.populated_fields()
                if not observed <= fields:
                    logger.debug(
                        "%s skipped a snapshot missing fields %s",
                        self.name,
                        sorted(observed - fields),
                    )
                    continue

                observed = fields
                snapshots += 1
                self._output = output
                self._notify()

        except asyncio.CancelledError:
            if request_id == self._request_id:
                self._request_id += 1
                self._settle(
                    GenerationOutcome(status=OutcomeStatus.CANCELLED, snapshots=snapshots)
                )
            raise

        except Exception as exc:
            if request_id != self._request_id:
                return

            failure = describe_failure(exc)
            logger.warning(
                "%s generation failed (code=%s): %s",
                self.name,
                failure.code,
                failure.message,
            )
            self._settle(
                GenerationOutcome(
                    status=OutcomeStatus.FAILED,
                    snapshots=snapshots,
                    failure=failure,
                )
            )
            return

        if request_id != self._request_id:
            return

        if snapshots == 0:
            self._settle(
                GenerationOutcome(
                    status=OutcomeStatus.FAILED,
                    failure=GenerationFailure(
                        code="empty_response",
                        message="Model session produced no output.",
                        status_code=502,
                    ),
                )
            )
            return

        self._settle(GenerationOutcome(status=OutcomeStatus.SUCCEEDED, snapshots=snapshots))

    def _settle(self, outcome: GenerationOutcome) -> None:
        self._outcome = outcome
        logger.debug("%s settled: %s", self.name, outcome.status.value)
        self._set_state(ServiceState.SETTLED)

    def _set_state(self, state: ServiceState) -> None:
        if state is self._state:
            return
        logger.debug("%s: %s -> %s", self.name, self._state.value, state.value)
        self._state = state
        self._notify()

    def _notify(self) -> None:
        for observer in list(self._observers):
            try:
                observer(self)
            except Exception:
                logger.exception("Observer of %s raised", self.name)
