"""FastAPI application for the cooperative booking API.

Runs under uvicorn locally and behind API Gateway via Mangum on Lambda.
"""

import logging
import os
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from coop_api.dependencies import get_notification_dispatcher
from coop_api.exceptions import register_exception_handlers
from coop_api.middleware.correlation import CorrelationIdMiddleware
from coop_api.routes import (
    bookings_router,
    health_router,
    payments_router,
    programs_router,
    refunds_router,
    reservations_router,
    webhooks_router,
)
from coop_booking.utils.logging import configure_logging

configure_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Cooperative Booking API",
    description="Program booking, payment and refund endpoints",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv(
            "CORS_ALLOW_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
        ).split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

register_exception_handlers(app)


if os.getenv("AWS_LAMBDA_FUNCTION_NAME"):

    @app.middleware("http")
    async def drain_notifications(request: Request, call_next: Any) -> Response:
        # Lambda freezes the process after the response; finish pending sends first
        response = await call_next(request)
        await get_notification_dispatcher().drain()
        return response


# /api/* is routed to API Gateway by CloudFront
app.include_router(health_router, prefix="/api")
app.include_router(programs_router, prefix="/api")
app.include_router(bookings_router, prefix="/api")
app.include_router(payments_router, prefix="/api")
app.include_router(reservations_router, prefix="/api")
app.include_router(refunds_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")


@app.get("/api/ping")
async def ping() -> dict[str, Any]:
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat(),
        "service": "coop-booking-api",
    }


# Lambda handler
handler = Mangum(app, lifespan="off")


def run_server(host: str = "0.0.0.0", port: int = 8080, reload: bool = True) -> None:
    """Run the API with uvicorn.

    Args:
        host: Host to bind to
        port: Port to listen on
        reload: Enable hot reload for development
    """
    import uvicorn

    if reload:
        uvicorn.run(
            "coop_api.main:app",
            host=host,
            port=port,
            reload=True,
            reload_dirs=["api/src", "shared/src"],
        )
    else:
        uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
