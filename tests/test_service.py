from __future__ import annotations

import asyncio
import logging

import pytest

import fm_intelligence.core.service as service_module
from fm_intelligence.chat.schemas import ChatResponse
from fm_intelligence.chat.service import CHAT_INSTRUCTIONS, ChatService
from fm_intelligence.core.errors import GenerationInFlightError
from fm_intelligence.core.session import ScriptedSession
from fm_intelligence.core.types import OutcomeStatus, ServiceState

ANSWER_SNAPSHOTS = [
    {"answer": "4"},
    {"answer": "4", "explanation": "Two plus two is four."},
]


def _published_outputs(service: ChatService) -> list[ChatResponse]:
    published: list[ChatResponse] = []

    def _record(changed):
        if changed.state is ServiceState.GENERATING and changed.output is not None:
            published.append(changed.output)

    service.subscribe(_record)
    return published


def test_construction_creates_session_from_instructions(monkeypatch):
    captured: list[str] = []

    def fake_factory(instructions: str):
        captured.append(instructions)
        return ScriptedSession([ANSWER_SNAPSHOTS])

    monkeypatch.setattr(service_module, "default_session_factory", fake_factory)

    service = ChatService()

    assert captured == [CHAT_INSTRUCTIONS]
    assert isinstance(service.session, ScriptedSession)
    assert service.state is ServiceState.IDLE


def test_instructions_override_reaches_session_factory():
    captured: list[str] = []

    def fake_factory(instructions: str):
        captured.append(instructions)
        return ScriptedSession()

    ChatService(session_factory=fake_factory, instructions="Answer in French.")

    assert captured == ["Answer in French."]


@pytest.mark.parametrize("value", [None, "", "   "])
def test_generate_without_input_is_a_noop(value):
    session = ScriptedSession([ANSWER_SNAPSHOTS])
    service = ChatService(session=session)
    service.input = value

    asyncio.run(service.generate())

    assert service.output is None
    assert service.outcome is None
    assert service.state is ServiceState.IDLE
    assert session.prompts == []


def test_setting_input_moves_to_input_set():
    service = ChatService(session=ScriptedSession())

    service.input = "What is 2+2?"

    assert service.state is ServiceState.INPUT_SET


def test_generate_publishes_every_snapshot_and_settles():
    session = ScriptedSession([ANSWER_SNAPSHOTS])
    service = ChatService(session=session)
    published = _published_outputs(service)
    service.input = "What is 2+2?"

    asyncio.run(service.generate())

    assert session.prompts == ["Question: What is 2+2?"]
    assert [output.answer for output in published] == ["4", "4"]
    assert published[0].explanation is None
    assert not published[0].is_complete
    assert published[-1].is_complete
    assert service.output == published[-1]
    assert service.state is ServiceState.SETTLED
    assert service.outcome is not None
    assert service.outcome.status is OutcomeStatus.SUCCEEDED
    assert service.outcome.snapshots == 2


def test_snapshot_dropping_an_observed_field_is_skipped():
    session = ScriptedSession(
        [
            [
                {"answer": "4"},
                {"explanation": "lost the answer"},
                {"answer": "4", "explanation": "Two plus two is four."},
            ]
        ]
    )
    service = ChatService(session=session)
    published = _published_outputs(service)
    service.input = "What is 2+2?"

    asyncio.run(service.generate())

    observed = [output.populated_fields() for output in published]
    assert observed == [
        frozenset({"answer"}),
        frozenset({"answer", "explanation"}),
    ]
    assert service.outcome.snapshots == 2


def test_session_failure_settles_without_raising():
    session = ScriptedSession([[{"answer": "4"}, RuntimeError("backend exploded")]])
    service = ChatService(session=session)
    service.input = "What is 2+2?"

    asyncio.run(service.generate())

    assert service.state is ServiceState.SETTLED
    assert service.outcome.status is OutcomeStatus.FAILED
    assert service.outcome.failure.code == "internal_error"
    assert "backend exploded" in service.outcome.failure.message
    assert service.outcome.snapshots == 1
    assert service.output.answer == "4"


def test_malformed_snapshot_is_reported_as_failure():
    session = ScriptedSession([[{"answer": ["not", "text"]}]])
    service = ChatService(session=session)
    service.input = "What is 2+2?"

    asyncio.run(service.generate())

    assert service.outcome.status is OutcomeStatus.FAILED
    assert service.outcome.failure.code == "malformed_output"
    assert service.output is None


def test_empty_stream_settles_as_failure():
    service = ChatService(session=ScriptedSession([[]]))
    service.input = "What is 2+2?"

    asyncio.run(service.generate())

    assert service.outcome.status is OutcomeStatus.FAILED
    assert service.outcome.failure.code == "empty_response"


def test_service_is_reusable_after_failure():
    session = ScriptedSession([[RuntimeError("boom")], ANSWER_SNAPSHOTS])
    service = ChatService(session=session)

    async def scenario():
        service.input = "What is 2+2?"
        await service.generate()
        assert service.outcome.status is OutcomeStatus.FAILED

        service.input = "What is 2+2, really?"
        assert service.state is ServiceState.INPUT_SET
        await service.generate()

    asyncio.run(scenario())

    assert service.outcome.status is OutcomeStatus.SUCCEEDED
    assert service.output.answer == "4"
    assert len(session.prompts) == 2


def test_second_generation_overwrites_previous_output():
    session = ScriptedSession(
        [
            [{"answer": "4", "explanation": "Two plus two is four."}],
            [{"answer": "Paris"}],
        ]
    )
    service = ChatService(session=session)

    async def scenario():
        service.input = "What is 2+2?"
        await service.generate()
        service.input = "What is the capital of France?"
        await service.generate()

    asyncio.run(scenario())

    assert service.output.answer == "Paris"
    assert service.output.explanation is None


def test_prewarm_delegates_to_session_and_does_not_change_result():
    warmed_session = ScriptedSession([ANSWER_SNAPSHOTS])
    cold_session = ScriptedSession([ANSWER_SNAPSHOTS])
    warmed = ChatService(session=warmed_session)
    cold = ChatService(session=cold_session)

    warmed.prewarm()
    warmed.prewarm()
    warmed.prewarm()
    assert warmed.state is ServiceState.IDLE

    for service in (warmed, cold):
        service.input = "What is 2+2?"
        asyncio.run(service.generate())

    assert warmed_session.prewarm_count == 3
    assert cold_session.prewarm_count == 0
    assert warmed.output == cold.output
    assert warmed.outcome == cold.outcome


def test_prewarm_failure_is_logged_not_raised(caplog):
    class BrokenPrewarmSession(ScriptedSession):
        def prewarm(self) -> None:
            raise RuntimeError("assets still downloading")

    service = ChatService(session=BrokenPrewarmSession([ANSWER_SNAPSHOTS]))

    with caplog.at_level(logging.WARNING, logger="fm_intelligence"):
        service.prewarm()

    assert "Prewarm failed for ChatService" in caplog.text
    assert not service.prewarmed


def test_prewarmed_is_set_by_a_successful_prewarm():
    service = ChatService(session=ScriptedSession([ANSWER_SNAPSHOTS]))
    assert not service.prewarmed

    service.prewarm()

    assert service.prewarmed


def test_concurrent_generation_is_rejected(gated_session_cls):
    session = gated_session_cls(ANSWER_SNAPSHOTS)
    service = ChatService(session=session)
    service.input = "What is 2+2?"

    async def scenario():
        task = service.start()
        await session.started.wait()
        assert service.state is ServiceState.GENERATING
        assert service.is_generating

        with pytest.raises(GenerationInFlightError):
            await service.generate()
        with pytest.raises(GenerationInFlightError):
            service.start()

        session.release.set()
        await task

    asyncio.run(scenario())

    assert service.outcome.status is OutcomeStatus.SUCCEEDED
    assert len(session.prompts) == 1


def test_cancel_settles_invocation_and_keeps_service_usable(gated_session_cls):
    session = gated_session_cls(ANSWER_SNAPSHOTS, hold_at=1)
    service = ChatService(session=session)
    service.input = "What is 2+2?"

    async def scenario():
        task = service.start()
        await session.started.wait()
        await asyncio.sleep(0)

        assert service.cancel() is True
        assert service.state is ServiceState.SETTLED
        assert service.outcome.status is OutcomeStatus.CANCELLED

        with pytest.raises(asyncio.CancelledError):
            await task

        assert service.cancel() is False

        session.release.set()
        await service.generate()

    asyncio.run(scenario())

    assert service.outcome.status is OutcomeStatus.SUCCEEDED
    assert service.output.is_complete


def test_start_right_after_cancel_begins_a_new_generation(gated_session_cls):
    session = gated_session_cls(ANSWER_SNAPSHOTS, hold_at=1)
    service = ChatService(session=session)
    service.input = "What is 2+2?"

    async def scenario():
        first = service.start()
        await session.started.wait()
        await asyncio.sleep(0)

        assert service.cancel() is True
        assert not service.is_generating

        service.input = "What is the capital of France?"
        second = service.start()
        assert service.is_generating

        session.release.set()
        await second
        with pytest.raises(asyncio.CancelledError):
            await first

    asyncio.run(scenario())

    assert service.outcome.status is OutcomeStatus.SUCCEEDED
    assert session.prompts == [
        "Question: What is 2+2?",
        "Question: What is the capital of France?",
    ]


def test_new_invocation_clears_previous_outcome(gated_session_cls):
    session = gated_session_cls(ANSWER_SNAPSHOTS, hold_at=1)
    service = ChatService(session=session)
    service.input = "What is 2+2?"
    outcomes_while_generating = []

    def _record(changed):
        if changed.state is ServiceState.GENERATING:
            outcomes_while_generating.append(changed.outcome)

    async def scenario():
        session.release.set()
        await service.generate()
        assert service.outcome.status is OutcomeStatus.SUCCEEDED

        service.subscribe(_record)
        session.release.clear()
        task = service.start()
        assert service.state is ServiceState.GENERATING
        assert service.outcome is None
        assert service.output is None

        await asyncio.sleep(0)
        assert service.output.answer == "4"
        assert service.outcome is None

        session.release.set()
        await task

    asyncio.run(scenario())

    assert outcomes_while_generating
    assert all(outcome is None for outcome in outcomes_while_generating)
    assert service.outcome.status is OutcomeStatus.SUCCEEDED


def test_prompt_is_built_when_generation_starts(gated_session_cls):
    session = gated_session_cls(ANSWER_SNAPSHOTS)
    service = ChatService(session=session)
    service.input = "What is 2+2?"

    async def scenario():
        task = service.start()
        service.input = "What is the capital of France?"
        assert service.state is ServiceState.GENERATING

        session.release.set()
        await task

    asyncio.run(scenario())

    assert session.prompts == ["Question: What is 2+2?"]
    assert service.input == "What is the capital of France?"
    assert service.outcome.status is OutcomeStatus.SUCCEEDED


def test_observer_errors_do_not_break_generation(caplog):
    service = ChatService(session=ScriptedSession([ANSWER_SNAPSHOTS]))

    def broken_observer(_service):
        raise ValueError("render failed")

    service.subscribe(broken_observer)
    service.input = "What is 2+2?"

    with caplog.at_level(logging.ERROR, logger="fm_intelligence"):
        asyncio.run(service.generate())

    assert service.outcome.status is OutcomeStatus.SUCCEEDED
    assert "Observer of ChatService raised" in caplog.text


def test_unsubscribe_stops_notifications():
    service = ChatService(session=ScriptedSession([ANSWER_SNAPSHOTS]))
    seen: list[ServiceState] = []

    unsubscribe = service.subscribe(lambda changed: seen.append(changed.state))
    service.input = "What is 2+2?"
    unsubscribe()
    asyncio.run(service.generate())

    assert seen == [ServiceState.INPUT_SET]
