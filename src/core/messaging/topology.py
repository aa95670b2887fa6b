"""Queue declaration and binding for a service's input side."""

from __future__ import annotations

import logging

from aio_pika.abc import AbstractChannel, AbstractQueue
from aio_pika.exceptions import AMQPError

from src.core.errors import TopologyError

logger = logging.getLogger(__name__)


class TopologyBinder:
    """Declares the service-private queue and binds it to the listening exchange."""

    def __init__(self, channel: AbstractChannel):
        self.channel = channel

    async def bind(self, queue_name: str, exchange_name: str) -> AbstractQueue:
        # Same parameters on every run keep the declaration idempotent
        try:
            queue = await self.channel.declare_queue(
                queue_name,
                durable=False,
                exclusive=False,
                auto_delete=True,
            )
            await queue.bind(exchange_name, routing_key="")
        except AMQPError as e:
            raise TopologyError(
                f"Can not bind queue {queue_name} to exchange {exchange_name}: {e}"
            ) from e

        logger.info(
            "Bound queue %s to %s",
            queue_name,
            exchange_name,
            extra={"queue": queue_name, "exchange": exchange_name},
        )
        return queue
