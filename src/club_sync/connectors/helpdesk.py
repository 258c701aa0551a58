"""Helpdesk client (FreeScout API)."""

from __future__ import annotations

from typing import Any

import httpx

from club_sync.config import HelpdeskConfig, TimeoutConfig
from club_sync.connectors.http import RestClient
from club_sync.errors import RemoteApiError


class HelpdeskClient(RestClient):
    """
    FreeScout customer client authenticated with ``X-FreeScout-API-Key``.

    New customer ids come back in the ``Resource-ID`` header; older
    versions return the created customer in the body instead.
    """

    api_name = "Helpdesk API"

    def __init__(
        self,
        config: HelpdeskConfig,
        timeouts: TimeoutConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=config.base_url.rstrip("/") + "/",
            headers={
                "X-FreeScout-API-Key": config.api_key.get_secret_value(),
                "Content-Type": "application/json",
            },
            timeouts=timeouts,
            transport=transport,
        )

    async def create_customer(self, body: dict[str, Any]) -> str:
        """Create a customer and return its id."""
        response = await self.send("POST", "api/customers", json=body)
        resource_id = response.headers.get("Resource-ID")
        if resource_id:
            return resource_id
        created = self._decode(response)
        if isinstance(created, dict) and created.get("id") is not None:
            return str(created["id"])
        raise RemoteApiError(
            f"{self.api_name} did not return a customer id",
            details=created,
        )

    async def update_customer(self, customer_id: str, body: dict[str, Any]) -> None:
        await self.request("PUT", f"api/customers/{customer_id}", json=body)

    async def delete_customer(self, customer_id: str) -> None:
        await self.request("DELETE", f"api/customers/{customer_id}")
