from __future__ import annotations

from fm_intelligence.core.service import IntelligenceService

from .schemas import ChatResponse

CHAT_INSTRUCTIONS = (
    "You are a helpful on-device assistant. "
    "Answer the user's question directly and accurately, "
    "then add a brief explanation. Say so when you are unsure."
)


class ChatService(IntelligenceService[str, ChatResponse]):
    """Answers a single question with a structured ``ChatResponse``."""

    instructions = CHAT_INSTRUCTIONS
    output_type = ChatResponse

    def has_input(self) -> bool:
        return bool(self._input and self._input.strip())

    def build_prompt(self, value: str) -> str:
        return f"Question: {value.strip()}"
