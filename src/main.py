"""
Example typed service entry point.

Listens for ``DataIn`` events and emits ``DataOut`` with ``b`` set to twice
the length of ``a``. Run with ``python -m src.main``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import List, Optional

import uvicorn
from pydantic import BaseModel, ValidationError

from src.api.health import create_health_app
from src.core.config import Settings, get_settings
from src.core.errors import ConfigError, ServiceError
from src.core.logging.structured import setup_structured_logging
from src.core.messaging import Service

logger = logging.getLogger(__name__)


class DataIn(BaseModel):
    a: str


class DataOut(BaseModel):
    b: int


def handle(event: DataIn) -> DataOut:
    logger.info("Received %s", event.a)
    return DataOut(b=len(event.a) * 2)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the example typed service")
    parser.add_argument("--name", help="service (and queue) name")
    parser.add_argument("--listen", help="event to listen on; omit to search for a compatible one")
    parser.add_argument("--emit", help="event to emit")
    parser.add_argument("--workers", type=int, help="handlers allowed in flight")
    parser.add_argument("--auto-ack", action="store_true", default=None)
    return parser.parse_args(argv)


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides = {
        "SERVICE_NAME": args.name,
        "LISTEN_EVENT": args.listen,
        "EMIT_EVENT": args.emit,
        "WORKERS": args.workers,
        "AUTO_ACK": args.auto_ack,
    }
    updates = {k: v for k, v in overrides.items() if v is not None}
    try:
        return Settings.model_validate({**settings.model_dump(), **updates})
    except ValidationError as e:
        raise ConfigError(f"Invalid command line override: {e}") from e


async def serve(settings: Settings) -> None:
    service = Service(settings.connection(), handle, DataIn, DataOut)
    await service.start()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(service.stop()))

    server: Optional[uvicorn.Server] = None
    server_task: Optional[asyncio.Task] = None
    if settings.HEALTH_PORT:
        server = uvicorn.Server(
            uvicorn.Config(
                create_health_app(service),
                host=settings.HEALTH_HOST,
                port=settings.HEALTH_PORT,
                log_config=None,
            )
        )
        server_task = asyncio.create_task(server.serve())

    try:
        await service.run()
    finally:
        if server is not None and server_task is not None:
            server.should_exit = True
            await server_task


def main(argv: Optional[List[str]] = None) -> int:
    try:
        settings = apply_overrides(get_settings(), parse_args(argv))
    except (ConfigError, ValidationError) as e:
        logging.basicConfig()
        logger.error("Invalid configuration: %s", e)
        return 1
    setup_structured_logging(
        service_name=settings.SERVICE_NAME,
        environment=settings.ENVIRONMENT,
        level=settings.LOG_LEVEL.upper(),
        json_output=settings.LOG_JSON,
    )
    logger.info("Starting service %s", settings.SERVICE_NAME)
    try:
        asyncio.run(serve(settings))
    except ServiceError as e:
        logger.error("Service failed: %s", e.message, extra={"error_code": e.code.value})
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
