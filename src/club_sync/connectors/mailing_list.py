"""
Mailing-list client (Laposta API v2).

Requests are form-encoded with custom fields flattened to
``custom_fields[<tag>]``. Errors come back as
``{"error": {"type": ..., "code": ..., "message": ...}}``; code 203 means
the member is unknown.
"""

from __future__ import annotations

from typing import Any

import httpx

from club_sync.config import MailingListConfig, TimeoutConfig
from club_sync.connectors.http import RestClient


UNKNOWN_MEMBER_CODE = "203"


def _form(list_id: str, email: str, custom_fields: dict[str, Any]) -> dict[str, str]:
    data = {"list_id": list_id, "email": email, "ip": "127.0.0.1"}
    for tag, value in custom_fields.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        data[f"custom_fields[{tag}]"] = str(value)
    return data


class MailingListClient(RestClient):
    """
    Laposta member client.

    Example:
        async with MailingListClient(settings.mailing_list) as client:
            member = await client.upsert_member(list_id, "jan@example.org", {"voornaam": "Jan"})
    """

    api_name = "Mailing list API"

    def __init__(
        self,
        config: MailingListConfig,
        timeouts: TimeoutConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=config.base_url.rstrip("/") + "/",
            auth=httpx.BasicAuth(config.api_key.get_secret_value(), ""),
            timeouts=timeouts,
            transport=transport,
        )
        self.list_id = config.list_id

    def error_code(self, details: Any) -> str | None:
        if isinstance(details, dict) and isinstance(details.get("error"), dict):
            code = details["error"].get("code")
            return str(code) if code is not None else None
        return super().error_code(details)

    def error_message(self, details: Any) -> str | None:
        if isinstance(details, dict) and isinstance(details.get("error"), dict):
            return details["error"].get("message")
        return super().error_message(details)

    def is_not_found(self, status: int, code: str | None, details: Any) -> bool:
        return status == 404 or code == UNKNOWN_MEMBER_CODE

    async def upsert_member(
        self,
        email: str,
        custom_fields: dict[str, Any],
        list_id: str | None = None,
    ) -> dict[str, Any]:
        """Add a member, or update the existing one with the same email."""
        data = _form(list_id or self.list_id, email, custom_fields)
        data["options[upsert]"] = "true"
        body = await self.request("POST", "member", data=data)
        return (body or {}).get("member", {})

    async def update_member(
        self,
        member_id: str,
        email: str,
        custom_fields: dict[str, Any],
        list_id: str | None = None,
    ) -> dict[str, Any]:
        data = _form(list_id or self.list_id, email, custom_fields)
        body = await self.request("POST", f"member/{member_id}", data=data)
        return (body or {}).get("member", {})

    async def delete_member(self, member_id: str, list_id: str | None = None) -> None:
        await self.request(
            "DELETE", f"member/{member_id}", params={"list_id": list_id or self.list_id}
        )

    async def list_members(self, list_id: str | None = None) -> list[dict[str, Any]]:
        body = await self.request("GET", "member", params={"list_id": list_id or self.list_id})
        return [item["member"] for item in (body or {}).get("data", []) if "member" in item]

    async def fetch_fields(self, list_id: str | None = None) -> list[dict[str, Any]]:
        """Field definitions of the list (tags, datatypes, required flags)."""
        body = await self.request("GET", "field", params={"list_id": list_id or self.list_id})
        return [item["field"] for item in (body or {}).get("data", []) if "field" in item]


def classify_upsert(member: dict[str, Any]) -> str:
    """'added' when the upsert created the member, otherwise 'updated'."""
    if not member:
        return "updated"
    return "added" if member.get("created") == member.get("modified") else "updated"
