import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import pytest

from placement_bridge.config import Settings
from placement_bridge.errors import (
    AuthenticationError,
    HostError,
    InteractionRequiredError,
    SubmissionError,
)
from placement_bridge.graph_client import GraphMailClient, GraphResponse
from placement_bridge.host import EmlBuilder, HostItem
from placement_bridge.id_resolver import IdentifierResolver
from placement_bridge.models import PlacementResponse, TokenKind, TokenRecord

NOW = 1_700_000_000
GRAPH_BASE = "https://graph.test/v1.0"
API_SCOPES = ["api://placement/access_as_user"]
GRAPH_SCOPES = ["https://graph.microsoft.com/Mail.Send"]
EML = b"From: Alice <alice@contoso.com>\r\nSubject: Cyber submission\r\n\r\nHello\r\n"


def ok(payload: dict[str, Any] | None = None, status: int = 200) -> GraphResponse:
    return GraphResponse(status=status, payload=payload or {})


def err(status: Optional[int], code: str | None = None, message: str = "") -> GraphResponse:
    return GraphResponse(status=status, error_code=code, error_message=message)


def not_found() -> GraphResponse:
    return err(404, "ErrorItemNotFound", "The specified object was not found in the store.")


def message(message_id: str = "REST1", **extra: Any) -> dict[str, Any]:
    payload = {
        "id": message_id,
        "subject": "Cyber submission",
        "body": {"contentType": "HTML", "content": "<p>hi</p>"},
        "attachments": [],
    }
    payload.update(extra)
    return payload


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeIdentity:
    """Identity platform whose silent path works once someone has signed in."""

    def __init__(self, signed_in: bool = False, deny: bool = False) -> None:
        self.signed_in = signed_in
        self.deny = deny
        self.silent_calls = 0
        self.interactive_calls: list[list[str]] = []
        self.sign_out_calls = 0
        self.gate: asyncio.Event | None = None

    def current_account(self) -> Optional[dict[str, str]]:
        return {"username": "user@contoso.com"} if self.signed_in else None

    async def acquire_silent(self, account, scopes: list[str]) -> TokenRecord:
        self.silent_calls += 1
        if account is None:
            raise InteractionRequiredError("No signed-in account available")
        return self._record(scopes, "silent")

    async def acquire_interactive(self, scopes: list[str]) -> TokenRecord:
        self.interactive_calls.append(list(scopes))
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0.01)
        if self.deny:
            raise AuthenticationError("User cancelled the sign-in", kind="popup_denied")
        self.signed_in = True
        return self._record(scopes, "interactive")

    def sign_out(self) -> None:
        self.sign_out_calls += 1
        self.signed_in = False

    @staticmethod
    def _record(scopes: list[str], source: str) -> TokenRecord:
        return TokenRecord(
            access_token=f"{source}:{' '.join(scopes)}",
            expires_at=NOW + 3600,
            scopes=frozenset(scopes),
        )


@dataclass
class GraphCall:
    method: str
    path: str
    params: dict[str, Any] = field(default_factory=dict)
    json: Any = None


class FakeGraph(GraphMailClient):
    """GraphMailClient with the HTTP layer replaced by scripted responses.

    Direct fetches are answered from ``fetch_script`` (one queue per path,
    the last response repeats); unknown paths answer 404. ``$filter``
    searches go through ``search_hook`` and default to an empty page.
    """

    def __init__(self) -> None:
        self.base_url = GRAPH_BASE
        self.calls: list[GraphCall] = []
        self.fetch_script: dict[str, list[GraphResponse]] = {}
        self.search_hook = None
        self.create_response = ok({"id": "fwd-1"}, status=201)
        self.send_response = GraphResponse(status=202)
        self.me_response = ok({"mail": "user@contoso.com"})
        self.translate_response = ok({"value": []})

    async def _request(self, method: str, url: str, token: str, **kwargs: Any) -> GraphResponse:
        path = url[len(self.base_url):]
        params = dict(kwargs.get("params") or {})
        self.calls.append(GraphCall(method, path, params, kwargs.get("json")))
        if method == "POST":
            if path.endswith("/translateExchangeIds"):
                return self.translate_response
            if path.endswith("/send"):
                return self.send_response
            return self.create_response
        if path == "/me":
            return self.me_response
        if "$filter" in params:
            if self.search_hook is not None:
                response = self.search_hook(path, params)
                if response is not None:
                    return response
            return ok({"value": []})
        queue = self.fetch_script.get(path)
        if not queue:
            return not_found()
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def fetches(self) -> list[str]:
        return [
            call.path
            for call in self.calls
            if call.method == "GET" and call.path != "/me" and "$filter" not in call.params
        ]

    def searches(self) -> list[tuple[str, str]]:
        return [(call.path, call.params["$filter"]) for call in self.calls if "$filter" in call.params]

    def posts(self) -> list[str]:
        return [call.path for call in self.calls if call.method == "POST"]


class FakeHostItem(HostItem):
    """In-memory host item; ``save_results`` scripts what successive saves return."""

    def __init__(
        self,
        item_id: str | None = None,
        compose: bool = False,
        save_results: list[Optional[str]] | None = None,
        subject: str = "Cyber submission",
        sender: str = "alice@contoso.com",
        shared: dict[str, Any] | None = None,
        headers_writable: bool = True,
        properties_writable: bool = True,
    ) -> None:
        self.item_id = item_id
        self.compose = compose
        self.save_results = list(save_results or [])
        self.save_calls = 0
        self.subject = subject
        self.sender = sender
        self.shared = shared
        self.headers_writable = headers_writable
        self.properties_writable = properties_writable
        self.custom_properties: dict[str, str] = {}
        self.headers: dict[str, str] = {}

    @property
    def is_compose(self) -> bool:
        return self.compose

    async def get_item_id(self) -> Optional[str]:
        return self.item_id

    async def save(self) -> Optional[str]:
        self.save_calls += 1
        result = self.save_results.pop(0) if self.save_results else None
        if result:
            self.item_id = result
        return result

    async def get_subject(self) -> str:
        return self.subject

    async def get_sender(self) -> str:
        return self.sender

    async def get_created_at(self) -> str:
        return "2024-05-06T08:00:00Z"

    async def get_internet_message_id(self) -> Optional[str]:
        return "<abc@contoso.com>"

    async def load_custom_properties(self) -> dict[str, str]:
        return dict(self.custom_properties)

    async def save_custom_properties(self, values: dict[str, str]) -> None:
        if not self.properties_writable:
            raise HostError("custom properties are read-only")
        self.custom_properties.update(values)

    async def get_internet_header(self, name: str) -> Optional[str]:
        return self.headers.get(name)

    async def set_internet_headers(self, headers: dict[str, str]) -> None:
        if not self.headers_writable:
            raise HostError("headers are read-only")
        self.headers.update(headers)

    async def get_shared_properties(self) -> Optional[dict[str, Any]]:
        return self.shared


class FakeEmlBuilder(EmlBuilder):
    async def build(self, item: HostItem) -> bytes:
        return EML


class FakePlacementClient:
    def __init__(self, placement_id: str = "PL-1", error: SubmissionError | None = None) -> None:
        self.placement_id = placement_id
        self.error = error
        self.requests: list = []

    async def submit(self, token: str, request) -> PlacementResponse:
        self.requests.append((token, request))
        if self.error is not None:
            raise self.error
        return PlacementResponse(placement_id=self.placement_id)


def mapping_converter(mapping: dict[str, str]):
    calls: list[list[str]] = []

    async def convert(ids: list[str]) -> list[str]:
        calls.append(list(ids))
        return [mapping.get(host_id, host_id) for host_id in ids]

    convert.calls = calls
    return convert


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        AZURE_CLIENT_ID="client-id",
        PLACEMENT_API_URL="https://placement.test/api/placements/",
        PLACEMENT_API_KEY="subscription-key",
        CYBER_MRSNA_MAILBOX="ingest@contoso.com",
        AZURE_API_SCOPES=API_SCOPES[0],
        AZURE_GRAPH_SCOPES=GRAPH_SCOPES[0],
        AZURE_TOKEN_CACHE=str(tmp_path / "cache.bin"),
        FORWARD_STORE_DB=str(tmp_path / "pending.db"),
    )


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def resolver():
    return IdentifierResolver(mapping_converter({"AAA/BBB": "REST-A"}))


@pytest.fixture
def token_scopes():
    return {TokenKind.API: API_SCOPES, TokenKind.GRAPH: GRAPH_SCOPES}
