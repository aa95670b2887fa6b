"""Exchange Type Resolution.

Finds the exchange a service listens on or emits to, checking that the
schema stamped on it is compatible with the service's declared shape. A
missing named exchange is provisioned and stamped with the service's own
schema; an existing one is never modified.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from src.core.errors import (
    IncompatibleTypesError,
    MisconfiguredExchangeError,
    NoSuitableExchangeError,
    SchemaDecisionError,
)
from src.core.messaging.management import ExchangeSettings, ManagementClient
from src.core.schema_registry import CompatibilityOracle, Schema, TypesIdentity
from src.utils.metrics import exchange_resolutions_total, exchanges_created_total

logger = logging.getLogger(__name__)

TYPE_ARG_NAME = "datatype"


class ExchangeRole(str, Enum):
    LISTENING = "listening"  # the service consumes from the exchange
    EMITTING = "emitting"    # the service publishes to the exchange


# Accepted results of oracle.compare(exchange_schema, service_schema)
ACCEPTED: Dict[ExchangeRole, FrozenSet[TypesIdentity]] = {
    ExchangeRole.LISTENING: frozenset({TypesIdentity.EQUAL, TypesIdentity.SUPERTYPE}),
    ExchangeRole.EMITTING: frozenset({TypesIdentity.EQUAL, TypesIdentity.SUBTYPE}),
}


@dataclass(frozen=True)
class ExchangeDescriptor:
    name: str
    schema: Schema
    durable: bool = True
    created: bool = False


def read_stamp(arguments: Optional[Dict[str, Any]]) -> Schema:
    """Read the schema stamp from an exchange's argument map."""
    if not arguments or TYPE_ARG_NAME not in arguments:
        raise MisconfiguredExchangeError(f"no {TYPE_ARG_NAME} argument")
    stamp = arguments[TYPE_ARG_NAME]
    if not isinstance(stamp, str):
        raise MisconfiguredExchangeError(f"{TYPE_ARG_NAME} argument is not a string")
    if stamp == "":
        raise MisconfiguredExchangeError(f"{TYPE_ARG_NAME} is empty")
    return Schema.from_stamp(stamp)


class ExchangeResolver:
    """Resolves exchanges on one virtual host."""

    def __init__(self, client: ManagementClient, vhost: str, oracle: CompatibilityOracle):
        self.client = client
        self.vhost = vhost
        self.oracle = oracle

    async def resolve_named(
        self, name: str, required: Schema, role: ExchangeRole
    ) -> ExchangeDescriptor:
        existing = await self.client.get_exchange(self.vhost, name)
        if existing is None:
            await self._create(name, required)
            self._count(role, "created")
            logger.info(
                "Created exchange %s for %s",
                name,
                role.value,
                extra={"exchange": name, "role": role.value, "outcome": "created"},
            )
            return ExchangeDescriptor(name=name, schema=required, durable=True, created=True)

        try:
            stamped = read_stamp(existing.arguments)
        except MisconfiguredExchangeError as e:
            self._count(role, "misconfigured")
            raise MisconfiguredExchangeError(
                f"Exchange {name} exists but can not be used: {e.message}", exchange=name
            ) from e

        identity = self.oracle.compare(stamped, required)
        if identity not in ACCEPTED[role]:
            self._count(role, "incompatible")
            verb = "listen" if role is ExchangeRole.LISTENING else "emit"
            raise IncompatibleTypesError(
                f"Can not {verb} event {name}: incompatible types ({identity.value})",
                exchange=name,
            )

        self._count(role, "reused")
        logger.info(
            "Reusing exchange %s (%s)",
            name,
            identity.value,
            extra={"exchange": name, "role": role.value, "outcome": "reused"},
        )
        return ExchangeDescriptor(name=name, schema=stamped, durable=existing.durable)

    async def search_suitable(self, required: Schema) -> Tuple[str, Schema]:
        """First exchange, in broker order, whose stamp accepts ``required``.

        Exchanges without a readable stamp, or whose stamp the oracle can not
        interpret, are skipped.
        """
        exchanges = await self.client.list_exchanges(self.vhost)
        accepted = ACCEPTED[ExchangeRole.LISTENING]

        for exchange in exchanges:
            try:
                stamped = read_stamp(exchange.arguments)
                identity = self.oracle.compare(stamped, required)
            except (MisconfiguredExchangeError, SchemaDecisionError) as e:
                logger.debug("Skipping exchange %s: %s", exchange.name, e)
                continue
            if identity in accepted:
                self._count(ExchangeRole.LISTENING, "found")
                logger.info(
                    "Found suitable exchange %s (%s)",
                    exchange.name,
                    identity.value,
                    extra={"exchange": exchange.name, "outcome": "found"},
                )
                return exchange.name, stamped

        self._count(ExchangeRole.LISTENING, "not_found")
        raise NoSuitableExchangeError(
            f"No suitable exchange found in vhost {self.vhost} "
            f"among {len(exchanges)} exchange(s)"
        )

    async def _create(self, name: str, schema: Schema) -> None:
        settings = ExchangeSettings(
            type="fanout",
            durable=True,
            auto_delete=False,
            arguments={TYPE_ARG_NAME: schema.schema_str},
        )
        await self.client.declare_exchange(self.vhost, name, settings)
        exchanges_created_total.inc()

    @staticmethod
    def _count(role: ExchangeRole, outcome: str) -> None:
        exchange_resolutions_total.labels(role=role.value, outcome=outcome).inc()
