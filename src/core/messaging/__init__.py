"""Typed exchange messaging.

Provides:
- Management API access to exchanges
- Schema-checked exchange resolution
- Queue binding and the message pump
- Staged service startup (``liftoff``)
"""

from src.core.messaging.management import (
    ExchangeInfo,
    ExchangeSettings,
    ManagementClient,
)
from src.core.messaging.resolver import (
    TYPE_ARG_NAME,
    ExchangeDescriptor,
    ExchangeResolver,
    ExchangeRole,
    read_stamp,
)
from src.core.messaging.topology import TopologyBinder
from src.core.messaging.pump import (
    DropStage,
    MessageDropped,
    MessagePump,
    PumpState,
)
from src.core.messaging.service import (
    BindingBuilder,
    Service,
    ServiceBinding,
    liftoff,
    resolve_binding,
)

__all__ = [
    # Management
    "ExchangeInfo",
    "ExchangeSettings",
    "ManagementClient",
    # Resolution
    "TYPE_ARG_NAME",
    "ExchangeDescriptor",
    "ExchangeResolver",
    "ExchangeRole",
    "read_stamp",
    # Topology
    "TopologyBinder",
    # Pump
    "DropStage",
    "MessageDropped",
    "MessagePump",
    "PumpState",
    # Service
    "BindingBuilder",
    "Service",
    "ServiceBinding",
    "liftoff",
    "resolve_binding",
]
