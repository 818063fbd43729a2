"""MSAL-backed identity platform used by the token broker."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from pathlib import Path
from typing import Any, Optional

import msal
import requests

from .config import Settings
from .errors import AuthenticationError, InteractionInProgressError, InteractionRequiredError
from .models import TokenRecord

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

# MSAL error codes that a fresh interactive sign-in can recover from.
INTERACTION_ERRORS = {"interaction_required", "login_required", "consent_required", "invalid_grant"}
DENIED_ERRORS = {"access_denied", "authorization_declined", "user_cancelled"}
# Exceptions msal raises instead of returning an error dict.
LIBRARY_ERRORS = (requests.RequestException, ValueError, RuntimeError, OSError)


def token_record_from_result(result: dict[str, Any], scopes: list[str], now: float | None = None) -> TokenRecord:
    """Build a ``TokenRecord`` from an MSAL result dictionary."""
    issued = time.time() if now is None else now
    expires_in = result.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS
    return TokenRecord(
        access_token=result["access_token"],
        expires_at=int(issued + int(expires_in)),
        scopes=frozenset(scopes),
    )


class MsalIdentityPlatform:
    """Silent + interactive acquisition on top of ``msal.PublicClientApplication``."""

    def __init__(self, settings: Settings, app: msal.PublicClientApplication | None = None) -> None:
        self.settings = settings
        self.auth_mode = settings.azure_auth_mode
        self._prompt_guard = threading.Lock()
        self._token_cache = msal.SerializableTokenCache()
        cache_path = settings.token_cache_path
        if app is None and cache_path.exists():
            self._token_cache.deserialize(cache_path.read_text())
        self.app = app or msal.PublicClientApplication(
            client_id=settings.azure_client_id,
            authority=settings.authority_url,
            token_cache=self._token_cache,
        )

    def current_account(self) -> Optional[dict[str, Any]]:
        accounts = self.app.get_accounts()
        return accounts[0] if accounts else None

    async def acquire_silent(self, account: Optional[dict[str, Any]], scopes: list[str]) -> TokenRecord:
        """Acquire without UI; raises ``InteractionRequiredError`` when a prompt is needed."""
        if account is None:
            raise InteractionRequiredError("No signed-in account available")
        try:
            result = await asyncio.to_thread(
                self.app.acquire_token_silent_with_error, scopes, account=account
            )
        except LIBRARY_ERRORS as exc:
            raise AuthenticationError(f"Silent token request failed: {exc}") from exc
        if not result:
            raise InteractionRequiredError("No cached session for requested scopes")
        record = self._to_record(result, scopes, silent=True)
        self._persist_token_cache()
        return record

    async def acquire_interactive(self, scopes: list[str]) -> TokenRecord:
        """Show a sign-in prompt (browser or device code) for ``scopes``."""
        return await asyncio.to_thread(self._acquire_interactive_blocking, scopes)

    def sign_out(self) -> None:
        for account in self.app.get_accounts():
            self.app.remove_account(account)
        self._persist_token_cache()

    def _acquire_interactive_blocking(self, scopes: list[str]) -> TokenRecord:
        if not self._prompt_guard.acquire(blocking=False):
            raise InteractionInProgressError("A sign-in prompt is already open")
        try:
            if self.auth_mode == "device_code":
                flow = self.app.initiate_device_flow(scopes=scopes)
                if "user_code" not in flow:
                    raise AuthenticationError(f"Unable to start device code flow: {flow.get('error')}")
                logger.info(flow.get("message"))
                result = self.app.acquire_token_by_device_flow(flow)
            else:
                result = self.app.acquire_token_interactive(scopes, prompt="select_account")
        except LIBRARY_ERRORS as exc:
            raise AuthenticationError(f"Sign-in prompt failed: {exc}") from exc
        finally:
            self._prompt_guard.release()
        record = self._to_record(result, scopes, silent=False)
        self._persist_token_cache()
        return record

    def _to_record(self, result: dict[str, Any], scopes: list[str], silent: bool) -> TokenRecord:
        if "access_token" in result:
            return token_record_from_result(result, scopes)
        error = result.get("error") or ""
        description = result.get("error_description") or error
        if error in INTERACTION_ERRORS or (silent and not error):
            raise InteractionRequiredError(description)
        if error == "interaction_in_progress":
            raise InteractionInProgressError(description)
        if error in DENIED_ERRORS:
            raise AuthenticationError(description, kind="popup_denied")
        raise AuthenticationError(f"Unable to obtain token: {description}")

    def _persist_token_cache(self) -> None:
        if not self._token_cache.has_state_changed:
            return
        cache_path: Path = self.settings.token_cache_path
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        cache_path.write_text(self._token_cache.serialize())
