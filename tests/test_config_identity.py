import threading

import pytest
import requests

from conftest import API_SCOPES, FakeIdentity
from placement_bridge.config import DEFAULT_GRAPH_SCOPES, Settings
from placement_bridge.eml_item import EmlFileBuilder
from placement_bridge.errors import (
    AuthenticationError,
    InteractionInProgressError,
    InteractionRequiredError,
)
from placement_bridge.identity import MsalIdentityPlatform, token_record_from_result
from placement_bridge.services import build_services


class TestSettings:
    def test_derived_values(self, settings):
        assert settings.authority_url == "https://login.microsoftonline.com/organizations"
        assert settings.api_scopes == API_SCOPES
        assert settings.forward_mailbox == "ingest@contoso.com"
        assert settings.placement_endpoint == "https://placement.test/api/placements"

    def test_tenant_scopes_and_mailbox_fallback(self, tmp_path):
        settings = Settings(
            _env_file=None,
            AZURE_CLIENT_ID="client-id",
            AZURE_TENANT_ID="contoso.onmicrosoft.com",
            PLACEMENT_API_URL="https://placement.test/api",
            AZURE_API_SCOPES="api://a/one; api://a/Two ,",
            AZURE_GRAPH_SCOPES="",
            CYBER_MRSNA_MAILBOX="",
            DEFAULT_SHARED_MAILBOX="default@contoso.com",
            GRAPH_BASE_URL="https://graph.test/v1.0/",
        )

        assert settings.authority_url == "https://login.microsoftonline.com/contoso.onmicrosoft.com"
        assert settings.api_scopes == ["api://a/one", "api://a/Two"]
        assert settings.graph_scopes == [DEFAULT_GRAPH_SCOPES]
        assert settings.shared_mailbox is None
        assert settings.forward_mailbox == "default@contoso.com"
        assert settings.graph_base_url == "https://graph.test/v1.0"


class FakeMsalApp:
    def __init__(self, silent=None, interactive=None, accounts=None):
        self.silent = silent
        self.interactive = interactive or {}
        self.accounts = list(accounts or [])
        self.interactive_kwargs = None

    def get_accounts(self):
        return list(self.accounts)

    def remove_account(self, account):
        self.accounts.remove(account)

    def acquire_token_silent_with_error(self, scopes, account=None):
        return self.silent

    def acquire_token_interactive(self, scopes, **kwargs):
        self.interactive_kwargs = kwargs
        return self.interactive


class RaisingMsalApp(FakeMsalApp):
    def __init__(self, error, **kwargs):
        super().__init__(**kwargs)
        self.error = error

    def acquire_token_silent_with_error(self, scopes, account=None):
        raise self.error

    def acquire_token_interactive(self, scopes, **kwargs):
        raise self.error


class TestMsalIdentityPlatform:
    def test_token_record_expiry(self):
        record = token_record_from_result({"access_token": "abc", "expires_in": 600}, API_SCOPES, now=1000)

        assert record.expires_at == 1600
        assert record.scopes == frozenset(API_SCOPES)

    @pytest.mark.asyncio
    async def test_silent_without_account_needs_interaction(self, settings):
        identity = MsalIdentityPlatform(settings, app=FakeMsalApp())

        assert identity.current_account() is None
        with pytest.raises(InteractionRequiredError):
            await identity.acquire_silent(None, API_SCOPES)

    @pytest.mark.asyncio
    async def test_silent_results(self, settings):
        account = {"username": "user@contoso.com"}
        app = FakeMsalApp(silent=None, accounts=[account])
        identity = MsalIdentityPlatform(settings, app=app)

        with pytest.raises(InteractionRequiredError):
            await identity.acquire_silent(account, API_SCOPES)

        app.silent = {"error": "invalid_grant", "error_description": "expired"}
        with pytest.raises(InteractionRequiredError):
            await identity.acquire_silent(account, API_SCOPES)

        app.silent = {"access_token": "abc", "expires_in": 3600}
        record = await identity.acquire_silent(account, API_SCOPES)
        assert record.access_token == "abc"

    @pytest.mark.asyncio
    async def test_interactive_prompt_selects_account(self, settings):
        app = FakeMsalApp(interactive={"access_token": "xyz", "expires_in": 3600})
        identity = MsalIdentityPlatform(settings, app=app)

        record = await identity.acquire_interactive(API_SCOPES)

        assert record.access_token == "xyz"
        assert app.interactive_kwargs == {"prompt": "select_account"}

    @pytest.mark.asyncio
    async def test_cancelled_prompt(self, settings):
        app = FakeMsalApp(interactive={"error": "access_denied", "error_description": "cancelled"})
        identity = MsalIdentityPlatform(settings, app=app)

        with pytest.raises(AuthenticationError) as excinfo:
            await identity.acquire_interactive(API_SCOPES)

        assert excinfo.value.kind == "popup_denied"

    @pytest.mark.asyncio
    async def test_second_prompt_is_refused_while_one_is_open(self, settings):
        identity = MsalIdentityPlatform(settings, app=FakeMsalApp())
        identity._prompt_guard = threading.Lock()
        identity._prompt_guard.acquire()

        with pytest.raises(InteractionInProgressError):
            await identity.acquire_interactive(API_SCOPES)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [requests.ConnectionError("login host unreachable"), RuntimeError("browser could not be opened")]
    )
    async def test_library_errors_become_authentication_errors(self, settings, error):
        account = {"username": "user@contoso.com"}
        identity = MsalIdentityPlatform(settings, app=RaisingMsalApp(error, accounts=[account]))

        with pytest.raises(AuthenticationError):
            await identity.acquire_interactive(API_SCOPES)
        with pytest.raises(AuthenticationError):
            await identity.acquire_silent(account, API_SCOPES)

        # The prompt guard is released after a failed prompt.
        assert identity._prompt_guard.acquire(blocking=False)

    def test_sign_out_removes_accounts(self, settings):
        app = FakeMsalApp(accounts=[{"username": "user@contoso.com"}])
        identity = MsalIdentityPlatform(settings, app=app)

        identity.sign_out()

        assert identity.current_account() is None


def test_services_are_wired_from_settings(settings):
    identity = FakeIdentity(signed_in=True)

    services = build_services(settings, EmlFileBuilder(), identity=identity)

    assert services.broker.identity is identity
    assert services.orchestrator.forward_mailbox == "ingest@contoso.com"
    assert services.orchestrator.store is services.store
    assert services.forwarding.graph is services.graph
    assert services.store.pending() == []
