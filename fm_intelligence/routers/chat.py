from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse

from fm_intelligence.chat.adapter import (
    WarmChatServiceSlot,
    create_chat_result,
    create_chat_stream,
)
from fm_intelligence.chat.schemas import ChatRequest
from fm_intelligence.dependencies import get_warm_chat_slot

router = APIRouter(prefix="/v1/chat", tags=["chat"])


@router.post("/responses")
async def chat_responses(
    payload: ChatRequest,
    slot: WarmChatServiceSlot = Depends(get_warm_chat_slot),
):
    service = slot.take()

    if payload.stream:
        iterator = await create_chat_stream(payload, service)

        return StreamingResponse(
            iterator,
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    response_payload, status_code = await create_chat_result(payload, service)
    return JSONResponse(content=response_payload, status_code=status_code)


@router.post("/prewarm")
async def chat_prewarm(
    slot: WarmChatServiceSlot = Depends(get_warm_chat_slot),
) -> dict[str, str]:
    slot.prewarm()
    return {"status": "prewarmed"}
