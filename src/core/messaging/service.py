"""Service startup: schema derivation, exchange binding and the pump.

Startup runs strictly in order and aborts on the first failure:

1. derive the input and output schemas
2. connect to the broker and its management API
3. resolve the listening exchange (named, or searched when no name is set)
4. resolve the emitting exchange (always named)
5. declare and bind the service queue
6. run the message pump
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, Tuple

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractQueue
from aio_pika.exceptions import AMQPError

from src.core.config import ConnectionConfig
from src.core.errors import ServiceStartupError
from src.core.messaging.management import ManagementClient
from src.core.messaging.pump import Handler, MessageDropped, MessagePump, PumpState
from src.core.messaging.resolver import ExchangeResolver, ExchangeRole
from src.core.messaging.topology import TopologyBinder
from src.core.schema_registry import (
    CompatibilityOracle,
    ShapeCodec,
    get_compatibility_oracle,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceBinding:
    """Where a running service reads from and writes to; fixed for its lifetime."""

    listening_exchange: str
    emitting_exchange: str
    queue_name: str


@dataclass(frozen=True)
class BindingBuilder:
    """Staged construction of a ``ServiceBinding``; each stage returns a new builder."""

    queue_name: Optional[str] = None
    listening_exchange: Optional[str] = None
    emitting_exchange: Optional[str] = None

    def with_queue(self, name: str) -> "BindingBuilder":
        return replace(self, queue_name=name)

    def with_listening(self, name: str) -> "BindingBuilder":
        return replace(self, listening_exchange=name)

    def with_emitting(self, name: str) -> "BindingBuilder":
        return replace(self, emitting_exchange=name)

    def build(self) -> ServiceBinding:
        missing = [
            stage
            for stage, value in (
                ("queue", self.queue_name),
                ("listening exchange", self.listening_exchange),
                ("emitting exchange", self.emitting_exchange),
            )
            if not value
        ]
        if missing:
            raise ServiceStartupError(f"Binding incomplete, missing: {', '.join(missing)}")
        return ServiceBinding(
            listening_exchange=self.listening_exchange,  # type: ignore[arg-type]
            emitting_exchange=self.emitting_exchange,  # type: ignore[arg-type]
            queue_name=self.queue_name,  # type: ignore[arg-type]
        )


async def resolve_binding(
    resolver: ExchangeResolver,
    config: ConnectionConfig,
    input_codec: ShapeCodec,
    output_codec: ShapeCodec,
) -> ServiceBinding:
    """Resolve both exchanges and return the finished binding."""
    builder = BindingBuilder().with_queue(config.queue_name)

    if config.listen_event:
        listening = await resolver.resolve_named(
            config.listen_event, input_codec.schema, ExchangeRole.LISTENING
        )
        builder = builder.with_listening(listening.name)
    else:
        name, _ = await resolver.search_suitable(input_codec.schema)
        builder = builder.with_listening(name)

    emitting = await resolver.resolve_named(
        config.emit_event, output_codec.schema, ExchangeRole.EMITTING
    )
    return builder.with_emitting(emitting.name).build()


class Service:
    """A typed service bound to one listening and one emitting exchange."""

    def __init__(
        self,
        config: ConnectionConfig,
        handler: Handler,
        input_shape: Any,
        output_shape: Any,
        oracle: Optional[CompatibilityOracle] = None,
        on_drop: Optional[Callable[[MessageDropped], Any]] = None,
        management: Optional[ManagementClient] = None,
    ):
        self.config = config
        self.handler = handler
        self.input_codec: ShapeCodec = ShapeCodec(input_shape)
        self.output_codec: ShapeCodec = ShapeCodec(output_shape)
        self.oracle = oracle or get_compatibility_oracle()
        self.on_drop = on_drop

        self.binding: Optional[ServiceBinding] = None
        self.pump: Optional[MessagePump] = None
        self._management = management
        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None

    @property
    def state(self) -> PumpState:
        return self.pump.state if self.pump is not None else PumpState.IDLE

    async def start(self) -> ServiceBinding:
        """Everything up to (not including) consuming."""
        # Schemas are derived before any I/O so a bad shape fails fast
        input_schema = self.input_codec.schema
        output_schema = self.output_codec.schema
        logger.debug("Input schema %s, output schema %s", input_schema, output_schema)

        try:
            channel, management = await self._connect()

            resolver = ExchangeResolver(management, self.config.vhost, self.oracle)
            binding = await resolve_binding(
                resolver, self.config, self.input_codec, self.output_codec
            )
            queue = await TopologyBinder(channel).bind(
                binding.queue_name, binding.listening_exchange
            )
            self.pump = await self._build_pump(channel, queue, binding)
        except BaseException:
            await self.close()
            raise

        self.binding = binding
        logger.info(
            "Service %s bound: %s -> %s",
            self.config.service_name,
            binding.listening_exchange,
            binding.emitting_exchange,
            extra={"queue": binding.queue_name, "vhost": self.config.vhost},
        )
        return binding

    async def run(self, max_messages: Optional[int] = None) -> None:
        if self.pump is None:
            raise ServiceStartupError("Service.run() called before start()")
        try:
            await self.pump.run(max_messages=max_messages)
        finally:
            await self.close()

    async def stop(self) -> None:
        if self.pump is not None:
            await self.pump.stop()

    async def close(self) -> None:
        if self._management is not None:
            await self._management.close()
            self._management = None
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel = None
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._connection = None

    async def _connect(self) -> Tuple[AbstractChannel, ManagementClient]:
        try:
            self._connection = await aio_pika.connect(self.config.amqp_url)
            channel = self._channel = await self._connection.channel()
            await channel.set_qos(prefetch_count=self.config.workers)
        except (AMQPError, ConnectionError) as e:
            raise ServiceStartupError(f"Can not connect to broker: {e}") from e
        if self._management is None:
            self._management = ManagementClient(
                self.config.api_url,
                self.config.api_user,
                self.config.api_password,
            )
        return channel, self._management

    async def _build_pump(
        self, channel: AbstractChannel, queue: AbstractQueue, binding: ServiceBinding
    ) -> MessagePump:
        exchange = await channel.get_exchange(binding.emitting_exchange, ensure=False)
        return MessagePump(
            queue=queue,
            exchange=exchange,
            handler=self.handler,
            input_codec=self.input_codec,
            output_codec=self.output_codec,
            auto_ack=self.config.auto_ack,
            workers=self.config.workers,
            on_drop=self.on_drop,
        )


async def liftoff(
    config: ConnectionConfig,
    handler: Handler,
    input_shape: Any,
    output_shape: Any,
    oracle: Optional[CompatibilityOracle] = None,
) -> None:
    """Start a service and pump messages until the transport closes."""
    service = Service(config, handler, input_shape, output_shape, oracle=oracle)
    await service.start()
    await service.run()
