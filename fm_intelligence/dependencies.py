from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from fm_intelligence.chat.adapter import WarmChatServiceSlot
from fm_intelligence.core.errors import IntelligenceError


def get_warm_chat_slot(request: Request) -> WarmChatServiceSlot:
    return request.app.state.warm_chat_slot


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(IntelligenceError)
    async def handle_intelligence_error(
        _request: Request,
        exc: IntelligenceError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.to_error()},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        _request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        first_error = exc.errors()[0]["msg"] if exc.errors() else "Invalid request"

        compat_error = IntelligenceError(
            status_code=400,
            message=first_error,
            code="invalid_request",
        )
        return JSONResponse(
            status_code=compat_error.status_code,
            content={"error": compat_error.to_error()},
        )
