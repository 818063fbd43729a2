"""Submit an email as a placement and forward a copy to the ingestion mailbox."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .errors import ForwardingError, HostError, PlacementBridgeError, SubmissionError
from .forward_store import PendingForwardStore
from .forwarding import ForwardingEngine, ForwardRequest
from .host import EmlBuilder, HostItem
from .id_resolver import IdentifierResolver
from .mailbox import detect_mailbox
from .models import (
    MailboxInfo,
    MailboxItemRef,
    PlacementRequest,
    SubmissionResult,
    TokenKind,
    TokenPair,
)
from .placement_client import PlacementClient
from .stamping import DuplicateDetector, stamp_item
from .token_broker import TokenBroker
from .utils import utc_now_iso

logger = logging.getLogger(__name__)

MAX_SAVE_RETRIES = 5
SAVE_BACKOFF_BASE_MS = 1000
SAVE_BACKOFF_CAP_MS = 10000


class SubmissionOrchestrator:
    """Sequence placement submission, stamping and best-effort forwarding.

    Placement failures end the call with ``success=False``. Once a placement
    exists every later problem is folded into the result instead: stamping
    failures are only logged, forwarding failures come back as
    ``forwarding_failed`` with the state ``retry_forward`` needs.
    """

    def __init__(
        self,
        broker: TokenBroker,
        placement_client: PlacementClient,
        forwarding: ForwardingEngine,
        resolver: IdentifierResolver,
        eml_builder: EmlBuilder,
        forward_mailbox: Optional[str],
        user_email: Optional[str] = None,
        store: PendingForwardStore | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.broker = broker
        self.placement_client = placement_client
        self.forwarding = forwarding
        self.resolver = resolver
        self.eml_builder = eml_builder
        self.forward_mailbox = forward_mailbox
        self.user_email = user_email
        self.store = store
        self.sleep = sleep
        self.duplicates = DuplicateDetector()

    async def submit(
        self,
        tokens: TokenPair | None,
        item: HostItem,
        product_code: str,
        forward_requested: bool,
    ) -> SubmissionResult:
        """Run the whole pipeline; submission and forwarding faults never raise."""
        logger.info("Starting placement submission for product %s", product_code)
        try:
            host_id, rest_id = await self._ensure_ids(item)
            if tokens is None or tokens.api is None:
                tokens = await self.broker.acquire_both()
            if tokens.api is None:
                return SubmissionResult(
                    success=False, error="Authentication failed: no placement API token"
                )
            ref, eml = await self._describe(item, host_id, rest_id)
            placement = await self.placement_client.submit(
                tokens.api.access_token,
                PlacementRequest(
                    product_code=product_code,
                    email_sender=ref.sender,
                    email_subject=ref.subject,
                    email_received_at=ref.created_at or utc_now_iso(),
                    eml_content=eml,
                ),
            )
        except (SubmissionError, HostError) as exc:
            logger.error("Placement submission failed: %s", exc)
            return SubmissionResult(success=False, error=str(exc))

        placement_id = placement.placement_id
        await self._stamp(item, placement_id)

        if not forward_requested:
            return SubmissionResult(success=True, placement_id=placement_id)
        return await self._forward(tokens, item, ref, placement_id)

    async def retry_forward(
        self,
        token: Optional[str],
        placement_id: str,
        last_graph_item_id: Optional[str],
        last_shared_mailbox: Optional[str],
        item: HostItem | None = None,
    ) -> SubmissionResult:
        """Re-run only the forwarding step of an earlier partial failure."""
        target = last_shared_mailbox or self.forward_mailbox
        logger.info("Retrying forward for placement %s", placement_id)
        try:
            token = token or await self._graph_token()
            source = await detect_mailbox(item, self.user_email) if item else MailboxInfo()
            if last_graph_item_id:
                ref = MailboxItemRef(rest_id=last_graph_item_id)
            elif item is not None:
                ref = await self._ref_for_retry(item)
            else:
                raise ForwardingError("Nothing to forward: no item id and no host item")
            await self.forwarding.forward(token, ForwardRequest(placement_id, target or "", ref, source))
        except PlacementBridgeError as exc:
            logger.error("Forwarding retry for %s failed: %s", placement_id, exc)
            result = SubmissionResult(
                success=True,
                placement_id=placement_id,
                forwarding_failed=True,
                forwarding_failed_reason=str(exc),
                last_placement_id=placement_id,
                last_graph_item_id=last_graph_item_id,
                last_shared_mailbox=target,
            )
            if self.store is not None:
                self.store.record(result)
            return result
        if self.store is not None:
            self.store.resolve(placement_id)
        logger.info("Forwarding retry for %s succeeded", placement_id)
        return SubmissionResult(success=True, placement_id=placement_id)

    async def is_already_submitted(self, item: HostItem) -> bool:
        return await self.duplicates.is_duplicate(item)

    async def ensure_item_id(self, item: HostItem) -> Optional[str]:
        """Make sure a persistable identifier exists and return its REST form."""
        _, rest_id = await self._ensure_ids(item)
        return rest_id

    async def save_and_get_item_id(self, item: HostItem) -> str:
        """Save the draft, backing off while the host has not assigned an id yet."""
        for retry in range(MAX_SAVE_RETRIES + 1):
            host_id = await item.save()
            if host_id:
                return host_id
            if retry == MAX_SAVE_RETRIES:
                break
            delay_ms = min(SAVE_BACKOFF_BASE_MS * 2**retry, SAVE_BACKOFF_CAP_MS)
            logger.warning(
                "Item id was null after save, retrying in %sms (attempt %s/%s)",
                delay_ms,
                retry + 1,
                MAX_SAVE_RETRIES,
            )
            await self.sleep(delay_ms / 1000)
        raise HostError(f"Failed to get item id after {MAX_SAVE_RETRIES} retries")

    async def _ensure_ids(self, item: HostItem) -> tuple[Optional[str], Optional[str]]:
        host_id = await item.get_item_id()
        if item.is_compose and not host_id:
            host_id = await self.save_and_get_item_id(item)
            logger.debug("Draft saved with id %s", host_id)
        if not host_id:
            return None, None
        return host_id, await self.resolver.resolve(host_id)

    async def _describe(
        self, item: HostItem, host_id: Optional[str], rest_id: Optional[str]
    ) -> tuple[MailboxItemRef, bytes]:
        eml, subject, sender, created_at, internet_message_id, conversation_id = await asyncio.gather(
            self.eml_builder.build(item),
            item.get_subject(),
            item.get_sender(),
            item.get_created_at(),
            item.get_internet_message_id(),
            item.get_conversation_id(),
        )
        ref = MailboxItemRef(
            exchange_id=host_id,
            rest_id=rest_id,
            conversation_id=conversation_id,
            internet_message_id=internet_message_id,
            subject=str(subject or ""),
            sender=str(sender or ""),
            created_at=str(created_at) if created_at else None,
            is_draft=item.is_compose,
        )
        return ref, eml

    async def _ref_for_retry(self, item: HostItem) -> MailboxItemRef:
        host_id = await item.get_item_id()
        if not host_id and item.is_compose:
            try:
                host_id = await self.save_and_get_item_id(item)
            except HostError as exc:
                logger.warning("Could not obtain a fresh item id, falling back to search: %s", exc)
        subject, sender, created_at, conversation_id = await asyncio.gather(
            item.get_subject(), item.get_sender(), item.get_created_at(), item.get_conversation_id()
        )
        return MailboxItemRef(
            exchange_id=host_id,
            conversation_id=conversation_id,
            subject=subject,
            sender=sender,
            created_at=created_at,
            is_draft=item.is_compose,
        )

    async def _graph_token(self) -> str:
        record = await self.broker.get_token(TokenKind.GRAPH)
        if record is None:
            raise ForwardingError("No mailbox token available")
        return record.access_token

    async def _stamp(self, item: HostItem, placement_id: str) -> None:
        try:
            stamped = await stamp_item(item, placement_id, is_draft=item.is_compose)
        except HostError as exc:
            logger.warning("Stamping placement %s failed: %s", placement_id, exc)
            return
        if not stamped:
            logger.warning("Item could not be stamped with placement %s", placement_id)

    async def _forward(
        self, tokens: TokenPair, item: HostItem, ref: MailboxItemRef, placement_id: str
    ) -> SubmissionResult:
        target = self.forward_mailbox
        try:
            token = tokens.graph.access_token if tokens.graph else await self._graph_token()
            source = await detect_mailbox(item, self.user_email)
            await self.forwarding.forward(token, ForwardRequest(placement_id, target or "", ref, source))
        except PlacementBridgeError as exc:
            logger.error("Forwarding for placement %s failed: %s", placement_id, exc)
            result = SubmissionResult(
                success=True,
                placement_id=placement_id,
                forwarding_failed=True,
                forwarding_failed_reason=str(exc),
                last_placement_id=placement_id,
                last_graph_item_id=ref.rest_id,
                last_shared_mailbox=target,
            )
            if self.store is not None:
                self.store.record(result)
            return result
        return SubmissionResult(success=True, placement_id=placement_id)
