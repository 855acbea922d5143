"""FastAPI health endpoints for liveness and readiness probes."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import HealthStatus, RelayStatus

if TYPE_CHECKING:
    from .app import RelayApp

SERVICE_NAME = "mail-relay"


def create_health_app(relay: RelayApp) -> FastAPI:
    """Build a minimal FastAPI app with ``/health`` and ``/ready`` routes."""
    app = FastAPI(title=f"{SERVICE_NAME} health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        monitor = relay.monitor
        last_poll = monitor.last_poll_time
        status = HealthStatus(
            service=SERVICE_NAME,
            status=relay.status,
            monitor_state=monitor.state,
            uptime_seconds=time.monotonic() - relay.start_time,
            details={
                "last_poll_time": last_poll.isoformat() if last_poll else None,
                "emails_emitted": monitor.messages_emitted,
                "emails_forwarded": relay.publisher.emails_forwarded,
                "emails_skipped": relay.publisher.emails_skipped,
                "emails_failed": relay.publisher.emails_failed,
            },
        )
        code = 200 if relay.status in (RelayStatus.RUNNING, RelayStatus.STARTING) else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = relay.status == RelayStatus.RUNNING and relay.monitor.is_running
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    return app
