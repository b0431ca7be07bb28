from __future__ import annotations

from fastapi import APIRouter

from fm_intelligence.config import get_settings

router = APIRouter(prefix="/internal", tags=["internal"])


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok", "backend": get_settings().backend}
