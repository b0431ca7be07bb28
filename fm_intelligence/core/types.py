from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from .errors import GenerationFailure


class ServiceState(str, enum.Enum):
    IDLE = "idle"
    INPUT_SET = "input_set"
    GENERATING = "generating"
    SETTLED = "settled"


class OutcomeStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class IntelligenceOutput(BaseModel):
    """Structured output whose fields arrive incrementally.

    Subclasses declare every field as optional with a ``None`` default;
    a field counts as present once the session has produced it.
    """

    def populated_fields(self) -> frozenset[str]:
        return frozenset(
            name
            for name in type(self).model_fields
            if getattr(self, name) is not None
        )

    @property
    def is_complete(self) -> bool:
        return len(self.populated_fields()) == len(type(self).model_fields)

    @classmethod
    def generation_schema(cls) -> dict[str, Any]:
        return cls.model_json_schema()


@dataclass(frozen=True, slots=True)
class GenerationOutcome:
    status: OutcomeStatus
    snapshots: int = 0
    failure: GenerationFailure | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "snapshots": self.snapshots,
            "failure": self.failure.to_dict() if self.failure else None,
        }
