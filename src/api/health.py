"""Health and metrics HTTP surface for a running service."""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from prometheus_client import make_asgi_app
from pydantic import BaseModel

from src.core.messaging import PumpState, Service


class HealthBinding(BaseModel):
    listening_exchange: str
    emitting_exchange: str
    queue_name: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    service: str
    pump_state: str
    processed: int
    dropped: int
    binding: Optional[HealthBinding] = None
    python_version: str


def create_health_app(service: Service) -> FastAPI:
    app = FastAPI(title=f"{service.config.service_name} health", version="1.0.0")
    app.mount("/metrics", make_asgi_app())

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        state = service.state
        pump = service.pump
        binding = service.binding
        return HealthResponse(
            status="healthy" if state is PumpState.RUNNING else "unhealthy",
            timestamp=datetime.now(timezone.utc).isoformat(),
            service=service.config.service_name,
            pump_state=state.value,
            processed=pump.processed if pump else 0,
            dropped=pump.dropped if pump else 0,
            binding=HealthBinding(
                listening_exchange=binding.listening_exchange,
                emitting_exchange=binding.emitting_exchange,
                queue_name=binding.queue_name,
            ) if binding else None,
            python_version=sys.version.split(" ")[0],
        )

    return app
