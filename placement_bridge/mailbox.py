"""Mailbox-type detection for the item being forwarded."""

from __future__ import annotations

import logging
from typing import Optional

from .errors import HostError
from .graph_client import MailboxEndpoint
from .host import HostItem
from .models import MailboxInfo

logger = logging.getLogger(__name__)


async def detect_mailbox(item: HostItem, user_email: Optional[str]) -> MailboxInfo:
    """Decide whether ``item`` lives in a shared mailbox rather than the user's own."""
    try:
        shared = await item.get_shared_properties()
    except HostError as exc:
        logger.warning("Shared mailbox detection failed, assuming personal mailbox: %s", exc)
        shared = None

    owner = (shared or {}).get("owner") or (shared or {}).get("target_mailbox")
    if owner and (not user_email or owner.lower() != user_email.lower()):
        logger.debug("Item belongs to shared mailbox %s", owner)
        return MailboxInfo(is_shared=True, mailbox_email=owner, user_email=user_email)
    return MailboxInfo(is_shared=False, mailbox_email=owner or user_email, user_email=user_email)


def source_endpoint(info: MailboxInfo) -> MailboxEndpoint:
    """Endpoint the source item should be fetched from."""
    if info.is_shared and info.mailbox_email:
        return MailboxEndpoint(info.mailbox_email)
    return MailboxEndpoint.personal()


def shared_endpoint(info: MailboxInfo) -> Optional[MailboxEndpoint]:
    """The explicit ``/users/<address>`` variant for the source mailbox, if known."""
    if info.mailbox_email:
        return MailboxEndpoint(info.mailbox_email)
    return None
