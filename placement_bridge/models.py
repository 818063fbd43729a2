"""Typed containers shared across the pipeline."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

TOKEN_REFRESH_BUFFER_SECONDS = 300


class TokenKind(str, Enum):
    """The two independent trust domains a token can be issued for."""

    API = "api"
    GRAPH = "graph"


@dataclass
class TokenRecord:
    """A cached bearer token for one scope set."""

    access_token: str = field(repr=False)
    expires_at: int
    scopes: frozenset[str] = frozenset()

    def is_valid(self, now: float, buffer: int = TOKEN_REFRESH_BUFFER_SECONDS) -> bool:
        if not self.access_token:
            return False
        return self.expires_at > now + buffer


@dataclass
class TokenPair:
    api: Optional[TokenRecord] = None
    graph: Optional[TokenRecord] = None


@dataclass
class InteractionLock:
    """Process-wide guard: at most one interactive sign-in is pending."""

    in_progress: bool = False
    pending: Optional[asyncio.Future] = None


@dataclass
class MailboxItemRef:
    """Addressable identity of one email.

    Fields are filled progressively as resolution strategies succeed; a
    draft may lack ``exchange_id`` until it has been saved.
    """

    exchange_id: Optional[str] = None
    rest_id: Optional[str] = None
    conversation_id: Optional[str] = None
    internet_message_id: Optional[str] = None
    subject: str = ""
    sender: str = ""
    created_at: Optional[str] = None
    is_draft: bool = False

    @property
    def direct_id(self) -> Optional[str]:
        return self.exchange_id or self.rest_id


@dataclass
class MailboxInfo:
    """Result of the mailbox-type detector."""

    is_shared: bool = False
    mailbox_email: Optional[str] = None
    user_email: Optional[str] = None


@dataclass
class ForwardAttempt:
    """Progress marker for one step of the resolution ladder."""

    strategy_name: str
    attempt_index: int
    max_attempts: int
    delay_ms: int = 0


@dataclass
class PlacementRequest:
    product_code: str
    email_sender: str
    email_subject: str
    email_received_at: str
    eml_content: bytes = field(repr=False)


@dataclass
class PlacementResponse:
    placement_id: str
    ingestion_id: Optional[str] = None
    run_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class SubmissionResult:
    """Composite outcome of a submit or retry-forward call."""

    success: bool
    placement_id: Optional[str] = None
    error: Optional[str] = None
    forwarding_failed: bool = False
    forwarding_failed_reason: Optional[str] = None
    last_placement_id: Optional[str] = None
    last_graph_item_id: Optional[str] = None
    last_shared_mailbox: Optional[str] = None

    def __post_init__(self) -> None:
        # Placement succeeds independently of the forwarding outcome.
        if self.forwarding_failed and not (self.success and self.last_placement_id):
            raise ValueError("forwarding_failed requires success=True and last_placement_id")


@dataclass
class PendingForward:
    """Minimal state needed to retry a failed forward on its own."""

    placement_id: str
    graph_item_id: Optional[str]
    shared_mailbox: str
    reason: Optional[str] = None
    failed_at: Optional[str] = None

    @property
    def needs_host_item(self) -> bool:
        """Without a stored item id only the host item can locate the message again."""
        return not self.graph_item_id
