"""
Directory/CRM client (WordPress REST API).

Provides:
- create/update/get/delete of posts under ``wp/v2/<resource>``
- paginated listings that stop on an empty page or an out-of-range page
- person relationship read/write on the ACF ``relationships`` field
- listing of people modified since a timestamp (reverse change detection)
- upload/delete of a person's photo on the custom people endpoint
"""

from __future__ import annotations

import mimetypes
from typing import Any, AsyncIterator

import httpx

from club_sync.config import DirectoryConfig, TimeoutConfig
from club_sync.connectors.http import RestClient
from club_sync.errors import RemoteApiError


INVALID_ID_CODES = {"rest_post_invalid_id", "rest_no_route"}
INVALID_PAGE_CODE = "rest_post_invalid_page_number"


class DirectoryClient(RestClient):
    """
    WordPress REST client authenticated with an application password.

    Example:
        async with DirectoryClient(settings.directory, settings.timeouts) as client:
            created = await client.create("people", {"title": "Jan Jansen"})
            await client.update("people", created["id"], {"acf": {...}})
    """

    api_name = "Directory API"

    def __init__(
        self,
        config: DirectoryConfig,
        timeouts: TimeoutConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=config.base_url.rstrip("/") + "/wp-json/",
            auth=httpx.BasicAuth(config.username, config.app_password.get_secret_value()),
            timeouts=timeouts,
            transport=transport,
        )
        self.per_page = config.per_page
        self.namespace = config.api_namespace.strip("/")

    def is_not_found(self, status: int, code: str | None, details: Any) -> bool:
        if status == 404 or code in INVALID_ID_CODES:
            return True
        data = details.get("data") if isinstance(details, dict) else None
        return isinstance(data, dict) and data.get("status") == 404

    # =========================================================================
    # Posts
    # =========================================================================

    async def create(self, resource: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", f"wp/v2/{resource}", json=body)

    async def update(self, resource: str, remote_id: str | int, body: dict[str, Any]) -> dict[str, Any]:
        return await self.request("PUT", f"wp/v2/{resource}/{remote_id}", json=body)

    async def get(self, resource: str, remote_id: str | int) -> dict[str, Any]:
        return await self.request(
            "GET", f"wp/v2/{resource}/{remote_id}", params={"context": "edit"}
        )

    async def delete(self, resource: str, remote_id: str | int) -> None:
        await self.request("DELETE", f"wp/v2/{resource}/{remote_id}", params={"force": "true"})

    async def iter_pages(
        self,
        resource: str,
        params: dict[str, Any] | None = None,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield successive pages of a listing until it is exhausted."""
        page = 1
        while True:
            query = {"per_page": self.per_page, "page": page, **(params or {})}
            try:
                items = await self.request("GET", f"wp/v2/{resource}", params=query)
            except RemoteApiError as e:
                if e.code == INVALID_PAGE_CODE:
                    return
                raise

            if not items:
                return
            yield items
            if len(items) < self.per_page:
                return
            page += 1

    async def list_all(
        self,
        resource: str,
        params: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Collect every page of a listing."""
        items: list[dict[str, Any]] = []
        async for page in self.iter_pages(resource, params):
            items.extend(page)
        return items

    # =========================================================================
    # People
    # =========================================================================

    async def get_relationships(self, person_id: str | int) -> list[dict[str, Any]]:
        person = await self.get("people", person_id)
        acf = person.get("acf") or {}
        return list(acf.get("relationships") or [])

    async def put_relationships(
        self,
        person_id: str | int,
        relationships: list[dict[str, Any]],
    ) -> None:
        await self.update("people", person_id, {"acf": {"relationships": relationships}})

    async def people_modified_since(self, modified_after: str | None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"context": "edit", "orderby": "modified", "order": "asc"}
        if modified_after:
            params["modified_after"] = modified_after
        return await self.list_all("people", params)

    # =========================================================================
    # Photos
    # =========================================================================

    async def upload_photo(self, person_id: str | int, filename: str, content: bytes) -> Any:
        """Replace a person's photo with the given file (multipart upload)."""
        content_type = mimetypes.guess_type(filename)[0] or "image/jpeg"
        return await self.request(
            "POST",
            f"{self.namespace}/people/{person_id}/photo",
            files={"file": (filename, content, content_type)},
        )

    async def delete_photo(self, person_id: str | int) -> None:
        await self.request("DELETE", f"{self.namespace}/people/{person_id}/photo")
