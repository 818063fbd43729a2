import pytest
import requests

from conftest import EML
from placement_bridge.errors import PlacementBridgeError, SubmissionError
from placement_bridge.graph_client import GraphIdConverter, GraphMailClient, MailboxEndpoint
from placement_bridge.models import PlacementRequest
from placement_bridge.placement_client import PlacementClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.reason = ""

    @property
    def content(self):
        if self._payload is not None:
            return b"{...}"
        return self.text.encode()

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        if self.error:
            raise self.error
        return self.response

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response


def placement_request(eml=EML):
    return PlacementRequest(
        product_code="CYBER",
        email_sender="alice@contoso.com",
        email_subject="Invoice 42 from ACME",
        email_received_at="2024-05-06T08:00:00Z",
        eml_content=eml,
    )


class TestPlacementClient:
    @pytest.mark.asyncio
    async def test_multipart_upload(self, settings):
        session = FakeSession(
            FakeResponse(201, {"placementId": "PL-1", "ingestionId": "ING-1", "runId": "RUN-1"})
        )
        client = PlacementClient(settings, session=session)

        response = await client.submit("api-token", placement_request())

        assert response.placement_id == "PL-1"
        assert response.ingestion_id == "ING-1"
        assert response.run_id == "RUN-1"
        _, url, kwargs = session.calls[0]
        assert url == "https://placement.test/api/placements"
        assert kwargs["headers"] == {
            "Ocp-Apim-Subscription-Key": "subscription-key",
            "Authorization": "Bearer api-token",
        }
        assert kwargs["data"]["productCode"] == "CYBER"
        assert kwargs["data"]["emailReceivedDateTime"] == "2024-05-06T08:00:00Z"
        assert kwargs["files"]["files"] == ("invoice-42-from-acme.eml", EML, "message/rfc822")
        assert kwargs["timeout"] == settings.http_timeout

    @pytest.mark.asyncio
    async def test_rejected_request(self, settings):
        session = FakeSession(FakeResponse(500, {"message": "boom"}))

        with pytest.raises(SubmissionError) as excinfo:
            await PlacementClient(settings, session=session).submit("t", placement_request())

        assert excinfo.value.kind == "rejected"
        assert excinfo.value.status == 500
        assert str(excinfo.value) == "boom"

    @pytest.mark.asyncio
    async def test_plain_text_error_body(self, settings):
        session = FakeSession(FakeResponse(400, None, text="Bad product code\n"))

        with pytest.raises(SubmissionError) as excinfo:
            await PlacementClient(settings, session=session).submit("t", placement_request())

        assert str(excinfo.value) == "Bad product code"

    @pytest.mark.asyncio
    async def test_response_without_placement_id(self, settings):
        session = FakeSession(FakeResponse(200, {"status": "queued"}))

        with pytest.raises(SubmissionError) as excinfo:
            await PlacementClient(settings, session=session).submit("t", placement_request())

        assert excinfo.value.kind == "rejected"

    @pytest.mark.asyncio
    async def test_network_failure(self, settings):
        session = FakeSession(error=requests.ConnectionError("refused"))

        with pytest.raises(SubmissionError) as excinfo:
            await PlacementClient(settings, session=session).submit("t", placement_request())

        assert excinfo.value.kind == "network"

    @pytest.mark.asyncio
    async def test_invalid_eml_is_not_uploaded(self, settings):
        session = FakeSession()
        client = PlacementClient(settings, session=session)

        for eml in (b"", b"Subject: only a subject\r\n\r\nbody"):
            with pytest.raises(SubmissionError) as excinfo:
                await client.submit("t", placement_request(eml))
            assert excinfo.value.kind == "invalid_payload"
        assert session.calls == []


class TestGraphMailClient:
    @pytest.mark.asyncio
    async def test_error_body_is_decoded(self, settings):
        session = FakeSession(
            FakeResponse(
                400,
                {"error": {"code": "ErrorInvalidIdMalformed", "message": "Id is malformed."}},
            )
        )
        client = GraphMailClient(settings, session=session)

        response = await client.get_message("token", MailboxEndpoint("shared@contoso.com"), "AAA/BBB")

        assert not response.ok
        assert response.status == 400
        assert response.error_code == "ErrorInvalidIdMalformed"
        assert response.error_message == "Id is malformed."
        method, url, kwargs = session.calls[0]
        assert method == "GET"
        assert url == "https://graph.microsoft.com/v1.0/users/shared%40contoso.com/messages/AAA%2FBBB"
        assert kwargs["params"] == {"$expand": "attachments"}
        assert kwargs["headers"]["Authorization"] == "Bearer token"

    @pytest.mark.asyncio
    async def test_transport_failure_has_no_status(self, settings):
        session = FakeSession(error=requests.Timeout("slow"))
        client = GraphMailClient(settings, session=session)

        response = await client.get_message("token", MailboxEndpoint.personal(), "REST1")

        assert response.status is None
        assert not response.ok

    @pytest.mark.asyncio
    async def test_folder_search_parameters(self, settings):
        session = FakeSession(FakeResponse(200, {"value": [{"id": "REST1"}]}))
        client = GraphMailClient(settings, session=session)

        response = await client.find_by_id("token", MailboxEndpoint.personal(), "REST1", folder="drafts")

        assert response.items == [{"id": "REST1"}]
        _, url, kwargs = session.calls[0]
        assert url == "https://graph.microsoft.com/v1.0/me/mailFolders('drafts')/messages"
        assert kwargs["params"] == {"$filter": "id eq 'REST1'", "$top": 1, "$expand": "attachments"}

    @pytest.mark.asyncio
    async def test_id_converter_uses_translate_exchange_ids(self, settings):
        session = FakeSession(
            FakeResponse(200, {"value": [{"sourceId": "AAA/BBB", "targetId": "REST-A"}]})
        )
        client = GraphMailClient(settings, session=session)

        async def token():
            return "graph-token"

        converter = GraphIdConverter(client, token)

        assert await converter(["AAA/BBB"]) == ["REST-A"]
        method, url, kwargs = session.calls[0]
        assert (method, url) == ("POST", "https://graph.microsoft.com/v1.0/me/translateExchangeIds")
        assert kwargs["json"]["targetIdType"] == "restId"

    @pytest.mark.asyncio
    async def test_id_converter_failure_raises(self, settings):
        client = GraphMailClient(settings, session=FakeSession(FakeResponse(403, {})))

        async def token():
            return "graph-token"

        with pytest.raises(PlacementBridgeError):
            await GraphIdConverter(client, token)(["AAA/BBB"])
