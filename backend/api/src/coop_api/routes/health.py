"""Health check endpoints."""

import datetime as dt
from typing import Any

from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health", summary="Service health")
async def health() -> dict[str, Any]:
    return {
        "status": "healthy",
        "timestamp": dt.datetime.now(dt.UTC).isoformat(),
        "service": "coop-booking-api",
    }
