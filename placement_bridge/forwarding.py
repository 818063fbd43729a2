"""Forward a submitted email to the shared ingestion mailbox.

Locating the email is the hard part: right after a draft is saved, or when
the host hands out an identifier in its own encoding, Graph may answer 404,
reject the id as malformed, or claim it belongs to another mailbox. The
resolution ladder below tries strategies in a fixed order:

1. fetch by the converted identifier at the source mailbox endpoint;
2. on the first 404, check the original identifier at ``/me`` and wait
   10 s once, then keep retrying every 5 s (10 fetches in total);
3. on a parse error at the first attempt, search by internetMessageId,
   then by id inside Drafts/Inbox;
4. on a malformed id at the first attempt of a draft, search Drafts/Inbox;
5. on a wrong-mailbox error, retry the original id at ``/me`` and at the
   explicit ``/users/<mailbox>`` endpoint;
6. after the last fetch, one ``$filter=id eq`` search, then fail.

Creating and sending the copy is never retried here.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .errors import (
    FailureKind,
    ForwardingError,
    IdentifierResolutionError,
    LookupFailure,
    classify_failure,
)
from .graph_client import FILE_ATTACHMENT_TYPE, GraphMailClient, MailboxEndpoint
from .id_resolver import IdentifierResolver
from .mailbox import shared_endpoint, source_endpoint
from .models import ForwardAttempt, MailboxInfo, MailboxItemRef
from .utils import escape_odata

logger = logging.getLogger(__name__)

MAX_FETCH_ATTEMPTS = 10
FETCH_RETRY_DELAY_MS = 5000
FIRST_NOT_FOUND_WAIT_MS = 10000
SEARCH_ATTEMPTS = 3
SEARCH_RETRY_DELAY_MS = 2000
SUBJECT_SEARCH_ATTEMPTS = 10
SUBJECT_SEARCH_DELAY_MS = 5000
DRAFT_SETTLE_MS = 5000

FORWARD_SUBJECT = "Ingestion Requested({placement_id}): {subject}"
DEFAULT_BODY = {"contentType": "HTML", "content": "<p>Email forwarded for placement ingestion</p>"}


@dataclass
class ForwardRequest:
    placement_id: str
    target_mailbox: str
    item: MailboxItemRef
    source: MailboxInfo = field(default_factory=MailboxInfo)


class ForwardingEngine:
    """Locate the source email through the resolution ladder and send a copy."""

    def __init__(
        self,
        graph: GraphMailClient,
        resolver: IdentifierResolver,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_attempt: Callable[[ForwardAttempt], None] | None = None,
        send_from: MailboxEndpoint | None = None,
    ) -> None:
        self.graph = graph
        self.resolver = resolver
        self.sleep = sleep
        self.on_attempt = on_attempt
        self.send_from = send_from or MailboxEndpoint.personal()

    async def forward(self, token: str, request: ForwardRequest) -> str:
        """Forward the email described by ``request``; returns the sent message id."""
        if not request.target_mailbox:
            raise ForwardingError("No target mailbox configured", kind="no_target_mailbox")
        message = await self.locate(token, request.item, request.source)
        return await self.send_copy(token, message, request)

    async def forward_by_conversation_id(
        self, token: str, conversation_id: str, placement_id: str, target_mailbox: str
    ) -> str:
        ref = MailboxItemRef(conversation_id=conversation_id, is_draft=True)
        return await self.forward(token, ForwardRequest(placement_id, target_mailbox, ref))

    async def forward_by_search(
        self,
        token: str,
        subject: str,
        sender: str,
        created_at: str,
        placement_id: str,
        target_mailbox: str,
    ) -> str:
        ref = MailboxItemRef(subject=subject, sender=sender, created_at=created_at, is_draft=True)
        return await self.forward(token, ForwardRequest(placement_id, target_mailbox, ref))

    async def locate(self, token: str, ref: MailboxItemRef, source: MailboxInfo) -> dict[str, Any]:
        """Return the Graph message for ``ref`` or raise ``IdentifierResolutionError``."""
        if ref.direct_id:
            return await self._locate_by_id(token, ref, source)

        found_id: Optional[str] = None
        if ref.conversation_id:
            found_id = await self._search_by_conversation(token, ref.conversation_id)
        if not found_id and ref.subject:
            found_id = await self._search_by_subject(token, ref)
        if not found_id:
            raise IdentifierResolutionError(
                "Email could not be located: no identifier and no search criteria matched"
            )
        logger.info("Located email %s by search; resolving it directly", found_id)
        ref.rest_id = found_id
        return await self._locate_by_id(token, ref, source)

    async def send_copy(self, token: str, message: dict[str, Any], request: ForwardRequest) -> str:
        body = self.build_forward_body(message, request.placement_id, request.target_mailbox)

        if request.item.is_draft:
            await self._step("draft_settle", 0, 1, DRAFT_SETTLE_MS)
        created = await self.graph.create_message(token, self.send_from, body)
        if not created.ok:
            raise ForwardingError(
                f"Failed to create draft: {created.error_message} (Status: {created.status})",
                kind="create_failed",
            )
        draft_id = created.payload.get("id")
        if not draft_id:
            raise ForwardingError("Draft creation returned no message id", kind="create_failed")

        if request.item.is_draft:
            await self._step("draft_settle", 1, 1, DRAFT_SETTLE_MS)
        sent = await self.graph.send_message(token, self.send_from, draft_id)
        if not sent.ok:
            raise ForwardingError(
                f"Failed to send draft: {sent.error_message} (Status: {sent.status})",
                kind="send_failed",
            )
        logger.info(
            "Forwarded email for placement %s to %s", request.placement_id, request.target_mailbox
        )
        return draft_id

    @staticmethod
    def build_forward_body(
        message: dict[str, Any], placement_id: str, target_mailbox: str
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "subject": FORWARD_SUBJECT.format(
                placement_id=placement_id, subject=message.get("subject") or "No Subject"
            ),
            "body": message.get("body") or dict(DEFAULT_BODY),
            "toRecipients": [{"emailAddress": {"address": target_mailbox}}],
        }
        attachments = [
            {
                "@odata.type": FILE_ATTACHMENT_TYPE,
                "name": attachment.get("name"),
                "contentType": attachment.get("contentType"),
                "contentBytes": attachment.get("contentBytes"),
                "size": attachment.get("size"),
            }
            for attachment in message.get("attachments") or []
            if attachment.get("@odata.type") == FILE_ATTACHMENT_TYPE
        ]
        if attachments:
            body["attachments"] = attachments
        return body

    async def _locate_by_id(
        self, token: str, ref: MailboxItemRef, source: MailboxInfo
    ) -> dict[str, Any]:
        original_id = ref.direct_id
        # Already-resolved ids pass through the resolver without a round trip.
        rest_id = await self.resolver.resolve(ref.rest_id or original_id)
        ref.rest_id = rest_id
        endpoint = source_endpoint(source)
        personal = MailboxEndpoint.personal()

        first_not_found = True
        mailbox_fallback_used = False
        failure: Optional[LookupFailure] = None
        for attempt in range(MAX_FETCH_ATTEMPTS):
            await self._step(
                "direct_fetch", attempt, MAX_FETCH_ATTEMPTS, FETCH_RETRY_DELAY_MS if attempt else 0
            )
            message, failure = await self._fetch(token, endpoint, rest_id)
            if message is not None:
                logger.debug("Email retrieved on attempt %s", attempt + 1)
                return message
            logger.warning(
                "Fetching email %s failed (attempt %s/%s): %s",
                rest_id,
                attempt + 1,
                MAX_FETCH_ATTEMPTS,
                failure.describe(),
            )
            if not failure.retryable:
                raise IdentifierResolutionError(f"Failed to get email: {failure.describe()}")

            if attempt == 0 and failure.kind is FailureKind.PARSE_ERROR:
                message = await self._after_parse_error(token, ref, endpoint, rest_id)
                if message is not None:
                    return message

            if attempt == 0 and failure.kind is FailureKind.MALFORMED_ID and ref.is_draft:
                message = await self._folder_search(token, rest_id)
                if message is not None:
                    return message

            if failure.kind is FailureKind.WRONG_MAILBOX and not mailbox_fallback_used:
                mailbox_fallback_used = True
                message = await self._other_mailboxes(token, original_id, source)
                if message is not None:
                    return message

            if failure.kind is FailureKind.NOT_FOUND and first_not_found:
                first_not_found = False
                if original_id != rest_id or not endpoint.is_personal:
                    await self._step("original_id_personal", 0, 1)
                    message, _ = await self._fetch(token, personal, original_id)
                    if message is not None:
                        return message
                await self._step("extended_wait", 0, 1, FIRST_NOT_FOUND_WAIT_MS)

        await self._step("last_chance_search", 0, 1)
        message = await self._first_match(self.graph.find_by_id(token, endpoint, rest_id))
        if message is not None:
            logger.info("Email found via last-chance id search")
            return message

        mismatch = await self._identity_mismatch(token, source)
        detail = failure.describe() if failure else "not found"
        if mismatch:
            raise IdentifierResolutionError(
                f"Failed to get email after {MAX_FETCH_ATTEMPTS} attempts: {detail}; {mismatch}",
                kind="cross_identity_mismatch",
            )
        raise IdentifierResolutionError(
            f"Failed to get email after {MAX_FETCH_ATTEMPTS} attempts: {detail}",
            kind="malformed_id" if failure and failure.kind is FailureKind.MALFORMED_ID else None,
        )

    async def _after_parse_error(
        self, token: str, ref: MailboxItemRef, endpoint: MailboxEndpoint, rest_id: str
    ) -> Optional[dict[str, Any]]:
        if ref.internet_message_id:
            query = f"internetMessageId eq '{escape_odata(ref.internet_message_id)}'"
            for attempt in range(SEARCH_ATTEMPTS):
                await self._step(
                    "internet_message_id_search",
                    attempt,
                    SEARCH_ATTEMPTS,
                    SEARCH_RETRY_DELAY_MS if attempt else 0,
                )
                message = await self._first_match(
                    self.graph.search_messages(token, endpoint, query, expand_attachments=True)
                )
                if message is not None:
                    logger.info("Email found via internetMessageId search")
                    return message
        else:
            logger.warning("No internetMessageId available; trying folder search")
        return await self._folder_search(token, rest_id)

    async def _folder_search(self, token: str, rest_id: str) -> Optional[dict[str, Any]]:
        personal = MailboxEndpoint.personal()
        for attempt in range(SEARCH_ATTEMPTS):
            await self._step(
                "folder_search", attempt, SEARCH_ATTEMPTS, SEARCH_RETRY_DELAY_MS if attempt else 0
            )
            for folder in ("drafts", "inbox"):
                found = await self._first_match(
                    self.graph.find_by_id(token, personal, rest_id, folder=folder)
                )
                if found is not None:
                    logger.info("Email found via id search in %s", folder)
                    return found
        return None

    async def _other_mailboxes(
        self, token: str, original_id: str, source: MailboxInfo
    ) -> Optional[dict[str, Any]]:
        candidates = [("original_id_personal", MailboxEndpoint.personal())]
        explicit = shared_endpoint(source)
        if explicit is not None:
            candidates.append(("original_id_shared", explicit))
        for name, endpoint in candidates:
            await self._step(name, 0, 1)
            message, failure = await self._fetch(token, endpoint, original_id)
            if message is not None:
                logger.info("Email found at %s", endpoint)
                return message
            logger.debug("Lookup at %s failed: %s", endpoint, failure.describe())
        return None

    async def _search_by_conversation(self, token: str, conversation_id: str) -> Optional[str]:
        await self._step("conversation_search", 0, 1)
        query = f"conversationId eq '{escape_odata(conversation_id)}'"
        found = await self._first_match(
            self.graph.search_messages(
                token, MailboxEndpoint.personal(), query, folder="drafts", top=1
            )
        )
        return found.get("id") if found else None

    async def _search_by_subject(self, token: str, ref: MailboxItemRef) -> Optional[str]:
        clauses = [f"subject eq '{escape_odata(ref.subject)}'"]
        if ref.sender:
            clauses.append(f"from/emailAddress/address eq '{escape_odata(ref.sender)}'")
        if ref.created_at:
            clauses.append(f"createdDateTime ge {ref.created_at}")
        query = " and ".join(clauses)
        for attempt in range(SUBJECT_SEARCH_ATTEMPTS):
            await self._step(
                "subject_search",
                attempt,
                SUBJECT_SEARCH_ATTEMPTS,
                SUBJECT_SEARCH_DELAY_MS if attempt else 0,
            )
            found = await self._first_match(
                self.graph.search_messages(
                    token,
                    MailboxEndpoint.personal(),
                    query,
                    folder="drafts",
                    top=1,
                    orderby="createdDateTime desc",
                )
            )
            if found is not None:
                return found.get("id")
        return None

    async def _identity_mismatch(self, token: str, source: MailboxInfo) -> Optional[str]:
        """Explain a miss caused by signing in as someone other than the host user."""
        if not source.user_email:
            return None
        response = await self.graph.get_me(token)
        if not response.ok:
            logger.debug("Identity check unavailable: %s", response.error_message)
            return None
        principal = response.payload.get("mail") or response.payload.get("userPrincipalName")
        if principal and principal.lower() != source.user_email.lower():
            logger.warning(
                "Signed-in account %s differs from host account %s", principal, source.user_email
            )
            return f"signed-in account {principal} differs from mailbox user {source.user_email}"
        return None

    async def _fetch(
        self, token: str, endpoint: MailboxEndpoint, message_id: str
    ) -> tuple[Optional[dict[str, Any]], Optional[LookupFailure]]:
        response = await self.graph.get_message(token, endpoint, message_id)
        if response.ok:
            return response.payload, None
        return None, classify_failure(response.status, response.error_code, response.error_message)

    @staticmethod
    async def _first_match(search: Awaitable[Any]) -> Optional[dict[str, Any]]:
        response = await search
        if not response.ok:
            logger.debug("Search failed (%s): %s", response.status, response.error_message)
            return None
        items = response.items
        return items[0] if items else None

    async def _step(self, strategy: str, index: int, max_attempts: int, delay_ms: int = 0) -> None:
        attempt = ForwardAttempt(strategy, index, max_attempts, delay_ms)
        logger.debug(
            "Ladder step %s %s/%s (delay %sms)", strategy, index + 1, max_attempts, delay_ms
        )
        if self.on_attempt is not None:
            self.on_attempt(attempt)
        if delay_ms:
            await self.sleep(delay_ms / 1000)
