"""Broker Management API Client.

Reads and declares exchanges through the RabbitMQ HTTP management API.
A 404 on a single-exchange lookup is the "absent" signal; every other
non-2xx response or transport failure is fatal to the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field

from src.core.errors import ManagementAPIError, ManagementAuthError

logger = logging.getLogger(__name__)


class ExchangeInfo(BaseModel):
    """Exchange as reported by the management API."""

    model_config = ConfigDict(extra="ignore")

    name: str
    vhost: str = "/"
    type: str = "fanout"
    durable: bool = True
    auto_delete: bool = False
    internal: bool = False
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ExchangeSettings(BaseModel):
    """Body of an exchange declaration."""

    type: str = "fanout"
    durable: bool = True
    auto_delete: bool = False
    internal: bool = False
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ManagementClient:
    """Async client for the exchange endpoints of the management API."""

    def __init__(
        self,
        api_url: str,
        user: str = "",
        password: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self._auth = httpx.BasicAuth(user, password) if user else None
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            auth=self._auth,
            timeout=timeout,
            transport=transport,
            headers={"content-type": "application/json"},
        )

    async def __aenter__(self) -> "ManagementClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def get_exchange(self, vhost: str, name: str) -> Optional[ExchangeInfo]:
        """Return the exchange, or None when the broker says it does not exist."""
        response = await self._request("GET", _exchange_path(vhost, name), tolerated=(404,))
        if response.status_code == 404:
            return None
        return ExchangeInfo.model_validate(response.json())

    async def list_exchanges(self, vhost: str) -> List[ExchangeInfo]:
        """All exchanges in ``vhost``, in the order the broker returned them."""
        response = await self._request("GET", f"/api/exchanges/{_quote(vhost)}")
        return [ExchangeInfo.model_validate(item) for item in response.json()]

    async def declare_exchange(self, vhost: str, name: str, settings: ExchangeSettings) -> None:
        await self._request(
            "PUT",
            _exchange_path(vhost, name),
            json=settings.model_dump(),
        )
        logger.info(
            "Declared exchange %s",
            name,
            extra={"exchange": name, "vhost": vhost},
        )

    async def _request(
        self,
        method: str,
        path: str,
        tolerated: Tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ManagementAPIError(f"Can not reach management API at {self.api_url}: {e}") from e

        if response.status_code in tolerated:
            return response
        if response.status_code in (401, 403):
            raise ManagementAuthError(
                f"Management API rejected credentials ({response.status_code})",
                status_code=response.status_code,
            )
        if response.is_error:
            raise ManagementAPIError(
                f"{method} {path} failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )
        return response


def _quote(segment: str) -> str:
    return quote(segment, safe="")


def _exchange_path(vhost: str, name: str) -> str:
    return f"/api/exchanges/{_quote(vhost)}/{_quote(name)}"
