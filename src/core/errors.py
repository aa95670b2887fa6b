"""Shared error codes and exception types.

Centralizes the startup, schema and transport failures raised while a
service binds itself to typed exchanges. Per-message failures never leave
the pump; they are recorded as drops (see ``src.core.messaging.pump``).
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    CONFIG_INVALID = "CONFIG_INVALID"
    MANAGEMENT_API_ERROR = "MANAGEMENT_API_ERROR"
    AUTH_FAILED = "AUTH_FAILED"  # Management API rejected credentials
    EXCHANGE_MISCONFIGURED = "EXCHANGE_MISCONFIGURED"
    INCOMPATIBLE_TYPES = "INCOMPATIBLE_TYPES"
    NO_SUITABLE_EXCHANGE = "NO_SUITABLE_EXCHANGE"
    SCHEMA_DECISION_FAILED = "SCHEMA_DECISION_FAILED"
    TOPOLOGY_FAILED = "TOPOLOGY_FAILED"  # Queue declare/bind failure
    STARTUP_FAILED = "STARTUP_FAILED"
    TRANSPORT_CLOSED = "TRANSPORT_CLOSED"


class ServiceError(Exception):
    """Base error for typed-exchange services."""

    code: ErrorCode = ErrorCode.STARTUP_FAILED

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ConfigError(ServiceError):
    code = ErrorCode.CONFIG_INVALID


class ManagementAPIError(ServiceError):
    """Broker management API call failed (anything but the 404 existence signal)."""

    code = ErrorCode.MANAGEMENT_API_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ManagementAuthError(ManagementAPIError):
    code = ErrorCode.AUTH_FAILED


class SchemaDecisionError(ServiceError):
    """A schema handed to the compatibility oracle could not be interpreted."""

    code = ErrorCode.SCHEMA_DECISION_FAILED


class ExchangeResolutionError(ServiceError):
    """Base for failures that prevent choosing an exchange."""

    def __init__(self, message: str, exchange: Optional[str] = None):
        super().__init__(message)
        self.exchange = exchange


class MisconfiguredExchangeError(ExchangeResolutionError):
    code = ErrorCode.EXCHANGE_MISCONFIGURED


class IncompatibleTypesError(ExchangeResolutionError):
    code = ErrorCode.INCOMPATIBLE_TYPES


class NoSuitableExchangeError(ExchangeResolutionError):
    code = ErrorCode.NO_SUITABLE_EXCHANGE


class TopologyError(ServiceError):
    code = ErrorCode.TOPOLOGY_FAILED


class ServiceStartupError(ServiceError):
    code = ErrorCode.STARTUP_FAILED


class TransportClosedError(ServiceError):
    """The broker connection or channel went away under a running pump."""

    code = ErrorCode.TRANSPORT_CLOSED


__all__ = [
    "ErrorCode",
    "ServiceError",
    "ConfigError",
    "ManagementAPIError",
    "ManagementAuthError",
    "SchemaDecisionError",
    "ExchangeResolutionError",
    "MisconfiguredExchangeError",
    "IncompatibleTypesError",
    "NoSuitableExchangeError",
    "TopologyError",
    "ServiceStartupError",
    "TransportClosedError",
]
