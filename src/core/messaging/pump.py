"""Message Pump.

Consumes the service queue, runs the user handler on each decoded payload
and publishes the encoded result to the emitting exchange.

Per-message failures (decode, handler, encode, publish) are logged, counted
and reported as ``MessageDropped`` events; the message is still
acknowledged and the pump moves on. Losing the broker connection or channel
stops the pump and raises ``TransportClosedError``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, Set, TypeVar, Union

import aio_pika
from aio_pika.abc import AbstractExchange, AbstractIncomingMessage, AbstractQueue
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError
from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from src.core.errors import TransportClosedError
from src.core.logging.structured import clear_message_context, exchange_var, set_message_context
from src.core.schema_registry import ShapeCodec
from src.utils.metrics import (
    message_handler_duration_seconds,
    messages_dropped_total,
    messages_processed_total,
    messages_received_total,
    pump_running,
)

logger = logging.getLogger(__name__)

In = TypeVar("In")
Out = TypeVar("Out")

Handler = Callable[[In], Union[Out, Awaitable[Out]]]

CONTENT_TYPE = "application/json"

_TRANSPORT_ERRORS = (AMQPError, ChannelInvalidStateError, ConnectionError)


class PumpState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class DropStage(str, Enum):
    DECODE = "decode"
    HANDLER = "handler"
    ENCODE = "encode"
    PUBLISH = "publish"


@dataclass(frozen=True)
class MessageDropped:
    """A delivery that was acknowledged without a published result."""

    stage: DropStage
    message_id: str
    error: str


class MessagePump(Generic[In, Out]):
    """Single-queue consume/handle/publish loop."""

    def __init__(
        self,
        queue: AbstractQueue,
        exchange: AbstractExchange,
        handler: Handler,
        input_codec: ShapeCodec,
        output_codec: ShapeCodec,
        auto_ack: bool = False,
        workers: int = 1,
        on_drop: Optional[Callable[[MessageDropped], Any]] = None,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.queue = queue
        self.exchange = exchange
        self.handler = handler
        self.input_codec = input_codec
        self.output_codec = output_codec
        self.auto_ack = auto_ack
        self.workers = workers
        self.on_drop = on_drop

        self.state = PumpState.IDLE
        self.processed = 0
        self.dropped = 0
        self._iterator: Optional[Any] = None
        self._stopping = False
        self._inflight: Set[asyncio.Task] = set()

    async def run(self, max_messages: Optional[int] = None) -> None:
        """Consume until stopped, ``max_messages`` deliveries, or transport loss."""
        self.state = PumpState.RUNNING
        pump_running.set(1)
        exchange_var.set(self.exchange.name)
        limiter = asyncio.Semaphore(self.workers)
        received = 0
        logger.info("Message pump started", extra={"queue": self.queue.name})

        try:
            self._iterator = self.queue.iterator(no_ack=self.auto_ack)
            async with self._iterator as messages:
                async for message in messages:
                    received += 1
                    messages_received_total.inc()
                    if self.workers == 1:
                        await self.process(message)
                    else:
                        await limiter.acquire()
                        task = asyncio.create_task(self._bounded(message, limiter))
                        self._inflight.add(task)
                        task.add_done_callback(self._inflight.discard)
                    if max_messages is not None and received >= max_messages:
                        break
                    if self._stopping:
                        break
            await self._drain()
        except _TRANSPORT_ERRORS as e:
            await self._abandon()
            self._stop_state()
            logger.error("Broker transport closed under the pump: %s", e)
            raise TransportClosedError(f"Broker transport closed: {e}") from e
        except asyncio.CancelledError:
            await self._abandon()
            self._stop_state()
            raise

        self._stop_state()
        exhausted = max_messages is not None and received >= max_messages
        if not self._stopping and not exhausted:
            raise TransportClosedError("Delivery stream ended without a stop request")
        logger.info(
            "Message pump stopped",
            extra={"queue": self.queue.name},
        )

    async def stop(self) -> None:
        """Ask the pump to finish the in-flight message and return from ``run()``."""
        self._stopping = True
        if self._iterator is not None:
            await self._iterator.close()

    async def process(self, message: AbstractIncomingMessage) -> Optional[MessageDropped]:
        """Handle one delivery; always acknowledges unless auto-ack is on."""
        message_id = set_message_context(message.message_id)
        try:
            dropped = await self._handle(message, message_id)
        finally:
            clear_message_context()

        if dropped is None:
            self.processed += 1
            messages_processed_total.inc()
        else:
            self._report(dropped)

        if not self.auto_ack:
            await message.ack()
        return dropped

    async def _handle(self, message: AbstractIncomingMessage, message_id: str) -> Optional[MessageDropped]:
        try:
            value = self.input_codec.decode(message.body)
        except ValidationError as e:
            return MessageDropped(DropStage.DECODE, message_id, f"Can not decode input data: {e}")

        started = time.perf_counter()
        try:
            result = self.handler(value)
            if asyncio.iscoroutine(result):
                result = await result
        except Exception as e:
            return MessageDropped(DropStage.HANDLER, message_id, f"Can not handle event: {e}")
        finally:
            message_handler_duration_seconds.observe(time.perf_counter() - started)

        try:
            body = self.output_codec.encode(result)
        except (ValidationError, PydanticSerializationError) as e:
            return MessageDropped(DropStage.ENCODE, message_id, f"Can not encode output data: {e}")

        try:
            await self.exchange.publish(
                aio_pika.Message(
                    body=body,
                    content_type=CONTENT_TYPE,
                    message_id=str(uuid.uuid4()),
                    correlation_id=message_id,
                ),
                routing_key="",
            )
        except _TRANSPORT_ERRORS as e:
            return MessageDropped(DropStage.PUBLISH, message_id, f"Can not publish result: {e}")
        return None

    def _report(self, dropped: MessageDropped) -> None:
        self.dropped += 1
        messages_dropped_total.labels(stage=dropped.stage.value).inc()
        logger.error(
            "Dropped message %s: %s",
            dropped.message_id,
            dropped.error,
            extra={"stage": dropped.stage.value},
        )
        if self.on_drop is not None:
            self.on_drop(dropped)

    async def _bounded(self, message: AbstractIncomingMessage, limiter: asyncio.Semaphore) -> None:
        try:
            await self.process(message)
        finally:
            limiter.release()

    async def _drain(self) -> None:
        if self._inflight:
            await asyncio.gather(*self._inflight)

    async def _abandon(self) -> None:
        """Cancel handlers still in flight and wait for them to unwind."""
        pending = list(self._inflight)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _stop_state(self) -> None:
        self.state = PumpState.STOPPED
        pump_running.set(0)
