import asyncio
import json
import os
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

import httpx
import pytest
from aio_pika.exceptions import ChannelPreconditionFailed

from src.core import config as config_module


# List of environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "RMQ_URL",
    "RMQ_API_URL",
    "SERVICE_NAME",
    "LISTEN_EVENT",
    "EMIT_EVENT",
    "QUEUE_NAME",
    "WORKERS",
    "AUTO_ACK",
    "HEALTH_PORT",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables and the settings cache between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    config_module.reset_settings()
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        config_module.reset_settings()


# ---------------------------------------------------------------------------
# Management API fake
# ---------------------------------------------------------------------------

class FakeManagementTransport(httpx.AsyncBaseTransport):
    """In-memory stand-in for the RabbitMQ management exchange endpoints."""

    def __init__(self):
        self.exchanges: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.requests: List[httpx.Request] = []
        self.status_override: Optional[int] = None

    def add_exchange(self, name: str, arguments: Optional[Dict[str, Any]] = None, vhost: str = "/") -> None:
        self.exchanges.setdefault(vhost, {})[name] = {
            "name": name,
            "vhost": vhost,
            "type": "fanout",
            "durable": True,
            "auto_delete": False,
            "internal": False,
            "arguments": arguments if arguments is not None else {},
        }

    def puts(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == "PUT"]

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:  # type: ignore
        self.requests.append(request)
        if self.status_override is not None:
            return httpx.Response(self.status_override, request=request, text="forced")

        parts = [unquote(p) for p in request.url.raw_path.decode().split("?")[0].split("/")]
        # ["", "api", "exchanges", vhost, name?]
        if parts[1:3] != ["api", "exchanges"]:
            return httpx.Response(404, request=request)
        vhost = parts[3]
        exchanges = self.exchanges.setdefault(vhost, {})

        if len(parts) == 4 and request.method == "GET":
            return httpx.Response(200, request=request, json=list(exchanges.values()))

        name = parts[4]
        if request.method == "GET":
            if name not in exchanges:
                return httpx.Response(404, request=request, json={"error": "Object Not Found"})
            return httpx.Response(200, request=request, json=exchanges[name])
        if request.method == "PUT":
            body = json.loads(request.content)
            exchanges[name] = {"name": name, "vhost": vhost, **body}
            return httpx.Response(201, request=request)
        return httpx.Response(405, request=request)


@pytest.fixture
def management_transport() -> FakeManagementTransport:
    return FakeManagementTransport()


@pytest.fixture
def management_client(management_transport):
    from src.core.messaging.management import ManagementClient

    return ManagementClient(
        "http://rabbit:15672", "guest", "guest", transport=management_transport
    )


# ---------------------------------------------------------------------------
# AMQP fakes
# ---------------------------------------------------------------------------

class FakeIncomingMessage:
    def __init__(self, body: bytes, message_id: Optional[str] = None):
        self.body = body
        self.message_id = message_id
        self.acked = False

    async def ack(self, multiple: bool = False) -> None:
        self.acked = True


class FakeQueueIterator:
    """Delivers queued messages, then ends, raises, or waits for close()."""

    def __init__(self, messages: List[FakeIncomingMessage], hang: bool, error: Optional[BaseException]):
        self._messages = list(messages)
        self._hang = hang
        self._error = error
        self._closed = asyncio.Event()

    async def __aenter__(self) -> "FakeQueueIterator":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def __aiter__(self) -> "FakeQueueIterator":
        return self

    async def __anext__(self) -> FakeIncomingMessage:
        if self._closed.is_set():
            raise StopAsyncIteration
        if self._messages:
            await asyncio.sleep(0)
            return self._messages.pop(0)
        if self._error is not None:
            raise self._error
        if self._hang:
            await self._closed.wait()
        raise StopAsyncIteration

    async def close(self) -> None:
        self._closed.set()


class FakeQueue:
    def __init__(self, name: str, durable: bool, exclusive: bool, auto_delete: bool):
        self.name = name
        self.durable = durable
        self.exclusive = exclusive
        self.auto_delete = auto_delete
        self.bindings: List[Tuple[str, str]] = []
        self.messages: List[FakeIncomingMessage] = []
        self.hang = False
        self.error: Optional[BaseException] = None
        self.no_ack: Optional[bool] = None

    def push(self, body: bytes, message_id: Optional[str] = None) -> FakeIncomingMessage:
        message = FakeIncomingMessage(body, message_id)
        self.messages.append(message)
        return message

    async def bind(self, exchange: Any, routing_key: str = "", **kwargs: Any) -> None:
        name = exchange if isinstance(exchange, str) else exchange.name
        if (name, routing_key) not in self.bindings:
            self.bindings.append((name, routing_key))

    def iterator(self, no_ack: bool = False, **kwargs: Any) -> FakeQueueIterator:
        self.no_ack = no_ack
        return FakeQueueIterator(self.messages, self.hang, self.error)


class FakeExchange:
    def __init__(self, name: str):
        self.name = name
        self.published: List[Tuple[Any, str]] = []
        self.error: Optional[BaseException] = None

    async def publish(self, message: Any, routing_key: str, **kwargs: Any) -> None:
        if self.error is not None:
            raise self.error
        self.published.append((message, routing_key))


class FakeChannel:
    def __init__(self):
        self.queues: Dict[str, FakeQueue] = {}
        self.exchanges: Dict[str, FakeExchange] = {}
        self.prefetch_count: Optional[int] = None
        self.is_closed = False

    async def declare_queue(
        self, name: str, durable: bool = False, exclusive: bool = False, auto_delete: bool = False, **kwargs: Any
    ) -> FakeQueue:
        existing = self.queues.get(name)
        if existing is not None:
            if (existing.durable, existing.exclusive, existing.auto_delete) != (durable, exclusive, auto_delete):
                raise ChannelPreconditionFailed(f"inequivalent arg for queue '{name}'")
            return existing
        queue = FakeQueue(name, durable, exclusive, auto_delete)
        self.queues[name] = queue
        return queue

    async def get_exchange(self, name: str, ensure: bool = True) -> FakeExchange:
        return self.exchanges.setdefault(name, FakeExchange(name))

    async def set_qos(self, prefetch_count: int = 0, **kwargs: Any) -> None:
        self.prefetch_count = prefetch_count

    async def close(self) -> None:
        self.is_closed = True


class FakeConnection:
    def __init__(self, channel: FakeChannel):
        self._channel = channel
        self.is_closed = False

    async def channel(self) -> FakeChannel:
        return self._channel

    async def close(self) -> None:
        self.is_closed = True


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def connection(channel) -> FakeConnection:
    return FakeConnection(channel)


@pytest.fixture
def queue(channel) -> FakeQueue:
    queue = FakeQueue("example", durable=False, exclusive=False, auto_delete=True)
    channel.queues[queue.name] = queue
    return queue


@pytest.fixture
def exchange(channel) -> FakeExchange:
    return channel.exchanges.setdefault("ev_b", FakeExchange("ev_b"))
