from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from fm_intelligence.core.types import IntelligenceOutput


class ChatResponse(IntelligenceOutput):
    answer: str | None = Field(
        default=None,
        description="A direct, concise answer to the question.",
    )
    explanation: str | None = Field(
        default=None,
        description="A short explanation supporting the answer.",
    )

    model_config = ConfigDict(extra="ignore")


class ChatRequest(BaseModel):
    question: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    stream: bool = False
    prewarm: bool = False

    model_config = ConfigDict(extra="ignore")

