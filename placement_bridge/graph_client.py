"""Microsoft Graph helper focused on message lookup, creation and sending."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import quote

import requests

from .config import Settings
from .errors import PlacementBridgeError
from .utils import escape_odata

logger = logging.getLogger(__name__)

FILE_ATTACHMENT_TYPE = "#microsoft.graph.fileAttachment"


@dataclass(frozen=True)
class MailboxEndpoint:
    """Which mailbox a Graph call addresses: ``/me`` or ``/users/<address>``."""

    address: Optional[str] = None

    @classmethod
    def personal(cls) -> "MailboxEndpoint":
        return cls(None)

    @property
    def is_personal(self) -> bool:
        return self.address is None

    @property
    def root(self) -> str:
        if self.address:
            return f"/users/{quote(self.address)}"
        return "/me"

    def __str__(self) -> str:
        return self.root


@dataclass
class GraphResponse:
    """Status plus decoded body of a Graph call; never raises on 4xx/5xx."""

    status: Optional[int]
    payload: dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300

    @property
    def items(self) -> list[dict[str, Any]]:
        return list(self.payload.get("value") or [])


class GraphMailClient:
    """Thin wrapper around the Graph mail endpoints used for forwarding."""

    def __init__(self, settings: Settings, session: requests.Session | None = None) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self.base_url = settings.graph_base_url

    async def get_message(
        self, token: str, mailbox: MailboxEndpoint, message_id: str
    ) -> GraphResponse:
        """Fetch one message with its attachments expanded."""
        url = f"{self.base_url}{mailbox.root}/messages/{quote(message_id, safe='')}"
        return await self._request("GET", url, token, params={"$expand": "attachments"})

    async def search_messages(
        self,
        token: str,
        mailbox: MailboxEndpoint,
        filter_query: str,
        *,
        folder: str | None = None,
        top: int = 1,
        orderby: str | None = None,
        expand_attachments: bool = False,
    ) -> GraphResponse:
        """Run a ``$filter`` query over all messages or one well-known folder."""
        if folder:
            url = f"{self.base_url}{mailbox.root}/mailFolders('{folder}')/messages"
        else:
            url = f"{self.base_url}{mailbox.root}/messages"
        params: dict[str, Any] = {"$filter": filter_query, "$top": top}
        if orderby:
            params["$orderby"] = orderby
        if expand_attachments:
            params["$expand"] = "attachments"
        return await self._request("GET", url, token, params=params)

    async def find_by_id(
        self, token: str, mailbox: MailboxEndpoint, message_id: str, folder: str | None = None
    ) -> GraphResponse:
        """Page-size-one ``id eq`` search, attachments expanded."""
        return await self.search_messages(
            token,
            mailbox,
            f"id eq '{escape_odata(message_id)}'",
            folder=folder,
            top=1,
            expand_attachments=True,
        )

    async def create_message(
        self, token: str, mailbox: MailboxEndpoint, body: dict[str, Any]
    ) -> GraphResponse:
        url = f"{self.base_url}{mailbox.root}/messages"
        return await self._request("POST", url, token, json=body)

    async def send_message(
        self, token: str, mailbox: MailboxEndpoint, message_id: str
    ) -> GraphResponse:
        url = f"{self.base_url}{mailbox.root}/messages/{quote(message_id, safe='')}/send"
        return await self._request("POST", url, token)

    async def get_me(self, token: str) -> GraphResponse:
        return await self._request(
            "GET", f"{self.base_url}/me", token, params={"$select": "mail,userPrincipalName"}
        )

    async def translate_exchange_ids(self, token: str, ids: list[str]) -> GraphResponse:
        body = {"inputIds": ids, "sourceIdType": "ewsId", "targetIdType": "restId"}
        return await self._request("POST", f"{self.base_url}/me/translateExchangeIds", token, json=body)

    async def _request(self, method: str, url: str, token: str, **kwargs: Any) -> GraphResponse:
        return await asyncio.to_thread(self._send, method, url, token, **kwargs)

    def _send(self, method: str, url: str, token: str, **kwargs: Any) -> GraphResponse:
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        logger.debug("Graph %s %s", method, url)
        try:
            resp = self.session.request(
                method, url, headers=headers, timeout=self.settings.http_timeout, **kwargs
            )
        except requests.RequestException as exc:
            logger.warning("Graph %s %s transport failure: %s", method, url, exc)
            return GraphResponse(status=None, error_message=str(exc))

        payload = self._parse_body(resp)
        if resp.status_code >= 400:
            error = payload.get("error") or {}
            logger.warning(
                "Graph request failed (%s) %s: %s",
                resp.status_code,
                error.get("code"),
                error.get("message"),
            )
            return GraphResponse(
                status=resp.status_code,
                payload=payload,
                error_code=error.get("code"),
                error_message=error.get("message") or resp.reason or "",
            )
        return GraphResponse(status=resp.status_code, payload=payload)

    @staticmethod
    def _parse_body(resp: requests.Response) -> dict[str, Any]:
        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError:
            return {"raw": resp.text}
        return body if isinstance(body, dict) else {"value": body}


class GraphIdConverter:
    """Identifier conversion backed by ``translateExchangeIds``.

    Used when the host has no native conversion capability. A token provider
    is awaited per call so the converter always uses a fresh mailbox token.
    """

    def __init__(self, client: GraphMailClient, token_provider) -> None:
        self.client = client
        self.token_provider = token_provider

    async def __call__(self, host_ids: list[str]) -> list[str]:
        token = await self.token_provider()
        if not token:
            raise PlacementBridgeError("No mailbox token available for id conversion")
        response = await self.client.translate_exchange_ids(token, host_ids)
        if not response.ok:
            raise PlacementBridgeError(
                f"translateExchangeIds failed ({response.status}): {response.error_message}"
            )
        translated = {
            entry.get("sourceId"): entry.get("targetId") for entry in response.items
        }
        return [translated.get(host_id) or host_id for host_id in host_ids]
