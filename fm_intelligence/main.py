from __future__ import annotations

from fastapi import FastAPI

from fm_intelligence.chat.adapter import WarmChatServiceSlot
from fm_intelligence.config import get_settings
from fm_intelligence.dependencies import register_exception_handlers
from fm_intelligence.internal import admin
from fm_intelligence.logging_config import configure_logging
from fm_intelligence.routers import chat


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="fm-intelligence",
        version="0.1.0",
        docs_url="/docs",
        redoc_url=None,
    )

    app.state.warm_chat_slot = WarmChatServiceSlot()
    register_exception_handlers(app)

    app.include_router(chat.router)
    app.include_router(admin.router)

    return app


app = create_app()
