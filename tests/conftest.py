from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import pytest

from fm_intelligence.config import get_settings


class GatedSession:
    """Session that blocks before yielding the snapshot at ``hold_at``."""

    def __init__(self, snapshots: list[dict[str, Any]], *, hold_at: int = 0) -> None:
        self.snapshots = snapshots
        self.hold_at = hold_at
        self.started = asyncio.Event()
        self.release = asyncio.Event()
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
        self.started.set()
        for index, snapshot in enumerate(self.snapshots):
            if index == self.hold_at:
                await self.release.wait()
            yield snapshot


@pytest.fixture()
def gated_session_cls() -> type[GatedSession]:
    return GatedSession


@pytest.fixture()
def scripted_backend(monkeypatch):
    monkeypatch.setenv("FM_INTELLIGENCE_BACKEND", "scripted")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
