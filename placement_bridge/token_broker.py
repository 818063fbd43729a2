"""Token brokering for the placement API and the Graph mailbox API.

The broker owns two cached tokens, one per scope set, and the process-wide
interaction lock. All state lives on the instance; the application root
creates one broker and hands it to whoever needs tokens.

Concurrency rules (single event loop):

* Concurrent requests for the same kind share one in-flight task.
* At most one interactive prompt is open at a time. A caller that needs
  interaction while a prompt is open waits for it, retries silently, and only
  prompts itself if the silent retry still needs interaction.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from .config import Settings
from .errors import AuthenticationError, InteractionInProgressError, InteractionRequiredError
from .models import InteractionLock, TokenKind, TokenPair, TokenRecord

logger = logging.getLogger(__name__)

BOTH = "both"
IN_PROGRESS_WAIT_SECONDS = 1.0


class TokenBroker:
    """Cache, de-duplicate and serialize token acquisition."""

    def __init__(
        self,
        identity,
        scopes: dict[TokenKind, list[str]],
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.identity = identity
        self.scopes = scopes
        self.clock = clock
        self.sleep = sleep
        self.lock = InteractionLock()
        self._cache: dict[TokenKind, TokenRecord] = {}
        self._inflight: dict[object, asyncio.Future] = {}
        self._generation = 0

    @classmethod
    def from_settings(cls, settings: Settings, identity) -> "TokenBroker":
        return cls(
            identity,
            {TokenKind.API: settings.api_scopes, TokenKind.GRAPH: settings.graph_scopes},
        )

    def cached(self, kind: TokenKind) -> Optional[TokenRecord]:
        """Return the cached record for ``kind`` if it is still valid."""
        record = self._cache.get(kind)
        if record is not None and record.is_valid(self.clock()):
            return record
        return None

    async def get_token(self, kind: TokenKind) -> Optional[TokenRecord]:
        """Return a valid token for ``kind`` or ``None`` when sign-in failed."""
        record = self.cached(kind)
        if record is not None:
            logger.debug("Using cached %s token", kind.value)
            return record
        return await self._shared(kind, lambda: self._acquire(kind))

    async def acquire_both(self) -> TokenPair:
        """Acquire both tokens, prompting at most once with the combined scopes."""
        api, graph = self.cached(TokenKind.API), self.cached(TokenKind.GRAPH)
        if api is not None and graph is not None:
            logger.debug("Using cached API and Graph tokens")
            return TokenPair(api=api, graph=graph)
        return await self._shared(BOTH, self._acquire_both)

    def clear(self) -> None:
        """Drop cached tokens and forget in-flight requests (explicit logout)."""
        self._cache.clear()
        self._inflight.clear()
        self._generation += 1
        logger.info("Token cache cleared")

    def logout(self) -> None:
        self.clear()
        self.clear_interaction_state()
        sign_out = getattr(self.identity, "sign_out", None)
        if callable(sign_out):
            sign_out()

    def clear_interaction_state(self) -> None:
        """Release the interaction lock, e.g. after a prompt was closed externally."""
        pending = self.lock.pending
        self.lock.in_progress = False
        self.lock.pending = None
        if pending is not None and not pending.done():
            pending.set_result(False)
        logger.debug("Interaction state cleared")

    def is_authenticated(self) -> bool:
        return self.identity.current_account() is not None

    def token_info(self) -> dict[str, dict[str, Any]]:
        now = self.clock()
        info: dict[str, dict[str, Any]] = {}
        for kind in TokenKind:
            record = self._cache.get(kind)
            info[kind.value] = {
                "valid": bool(record and record.is_valid(now)),
                "expires_at": record.expires_at if record else 0,
            }
        return info

    async def _shared(self, key: object, factory: Callable[[], Awaitable[Any]]) -> Any:
        inflight = self._inflight.get(key)
        if inflight is not None:
            logger.debug("Token request %s already in flight, waiting", key)
            return await asyncio.shield(inflight)
        task = asyncio.ensure_future(factory())
        self._inflight[key] = task

        def _forget(done: asyncio.Future) -> None:
            if self._inflight.get(key) is done:
                del self._inflight[key]

        task.add_done_callback(_forget)
        return await asyncio.shield(task)

    def _store(self, kind: TokenKind, record: TokenRecord, generation: int) -> None:
        if generation != self._generation:
            logger.debug("Discarding %s token acquired before logout", kind.value)
            return
        self._cache[kind] = record

    async def _silent(self, kind: TokenKind) -> TokenRecord:
        try:
            account = self.identity.current_account()
            return await self.identity.acquire_silent(account, self.scopes[kind])
        except AuthenticationError:
            raise
        except Exception as exc:
            logger.exception("Silent %s token acquisition raised unexpectedly", kind.value)
            raise AuthenticationError(f"Silent acquisition failed: {exc}") from exc

    async def _acquire(self, kind: TokenKind) -> Optional[TokenRecord]:
        generation = self._generation
        try:
            record = await self._silent(kind)
        except InteractionRequiredError as exc:
            logger.info("Silent %s token acquisition needs interaction: %s", kind.value, exc)

            async def retry_silent() -> TokenRecord:
                return await self._silent(kind)

            record = await self._interactive(self.scopes[kind], retry_silent)
        except AuthenticationError as exc:
            logger.error("Silent %s token acquisition failed: %s", kind.value, exc)
            return None
        if record is not None:
            self._store(kind, record, generation)
            logger.info("Acquired %s token", kind.value)
        return record

    async def _acquire_both(self) -> TokenPair:
        generation = self._generation
        missing: list[TokenKind] = []
        needs_interaction = False
        for kind in TokenKind:
            if self.cached(kind) is not None:
                continue
            try:
                self._store(kind, await self._silent(kind), generation)
            except InteractionRequiredError:
                needs_interaction = True
                missing.append(kind)
            except AuthenticationError as exc:
                logger.error("Silent %s token acquisition failed: %s", kind.value, exc)

        if needs_interaction:
            async def retry_missing() -> TokenRecord:
                record: Optional[TokenRecord] = None
                for kind in missing:
                    record = await self._silent(kind)
                    self._store(kind, record, generation)
                return record

            combined = [scope for kind in TokenKind for scope in self.scopes[kind]]
            record = await self._interactive(combined, retry_missing)
            if record is not None and any(self.cached(kind) is None for kind in missing):
                # One prompt covers both scope sets; the same record fills both slots.
                for kind in TokenKind:
                    self._store(kind, record, generation)
                logger.info("Both tokens acquired via a single prompt")

        return TokenPair(api=self.cached(TokenKind.API), graph=self.cached(TokenKind.GRAPH))

    async def _interactive(
        self, scopes: list[str], retry_silent: Callable[[], Awaitable[TokenRecord]]
    ) -> Optional[TokenRecord]:
        while self.lock.in_progress and self.lock.pending is not None:
            logger.info("Waiting for the open sign-in prompt to finish")
            await asyncio.shield(self.lock.pending)
            try:
                return await retry_silent()
            except InteractionRequiredError:
                logger.info("Silent retry after the other prompt still needs interaction")
            except AuthenticationError as exc:
                logger.error("Silent retry after the other prompt failed: %s", exc)
                return None

        pending = asyncio.get_running_loop().create_future()
        self.lock.in_progress = True
        self.lock.pending = pending
        record: Optional[TokenRecord] = None
        try:
            record = await self._prompt(scopes, retry_silent)
            return record
        finally:
            if self.lock.pending is pending:
                self.lock.in_progress = False
                self.lock.pending = None
            if not pending.done():
                pending.set_result(record is not None)

    async def _prompt(
        self, scopes: list[str], retry_silent: Callable[[], Awaitable[TokenRecord]]
    ) -> Optional[TokenRecord]:
        logger.info("Showing sign-in prompt")
        try:
            return await self.identity.acquire_interactive(scopes)
        except InteractionInProgressError:
            logger.warning("Sign-in prompt blocked by another open prompt; waiting")
            await self.sleep(IN_PROGRESS_WAIT_SECONDS)
            try:
                return await retry_silent()
            except AuthenticationError as exc:
                logger.error("Silent acquisition after blocked prompt failed: %s", exc)
                return None
        except AuthenticationError as exc:
            logger.error("Interactive sign-in failed (%s): %s", exc.kind, exc)
            return None
        except Exception:
            # Any other prompt failure ends this call with no token.
            logger.exception("Interactive sign-in raised unexpectedly")
            return None
