"""Tests for service queue declaration and binding."""

import pytest

from src.core.errors import TopologyError
from src.core.messaging.topology import TopologyBinder


class TestTopologyBinder:
    @pytest.mark.asyncio
    async def test_declares_private_queue_and_binds_unfiltered(self, channel):
        queue = await TopologyBinder(channel).bind("example", "ev_a")

        assert queue.name == "example"
        assert queue.durable is False
        assert queue.auto_delete is True
        assert queue.exclusive is False
        assert queue.bindings == [("ev_a", "")]

    @pytest.mark.asyncio
    async def test_binding_twice_is_idempotent(self, channel):
        binder = TopologyBinder(channel)

        first = await binder.bind("example", "ev_a")
        second = await binder.bind("example", "ev_a")

        assert first is second
        assert second.bindings == [("ev_a", "")]

    @pytest.mark.asyncio
    async def test_conflicting_queue_is_fatal(self, channel):
        await channel.declare_queue("example", durable=True)

        with pytest.raises(TopologyError, match="Can not bind queue example"):
            await TopologyBinder(channel).bind("example", "ev_a")
