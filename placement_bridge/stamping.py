"""Idempotency markers: stamping submitted emails and spotting earlier submissions."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

from .errors import HostError
from .host import HostItem

logger = logging.getLogger(__name__)

CUSTOM_PROPERTY_KEYS = ("UWWBID", "X-UWWBID")
MARKER_HEADER = "X-UWWBID"
SUBJECT_PATTERNS = (
    re.compile(r"WBID:\s*([A-Z0-9-]+)", re.IGNORECASE),
    re.compile(r"UWWBID:\s*([A-Z0-9-]+)", re.IGNORECASE),
)


async def stamp_item(item: HostItem, placement_id: str, is_draft: bool | None = None) -> bool:
    """Write the placement id onto ``item``; returns False if nothing could be stamped.

    Drafts only carry the custom property. Saved items additionally get the
    marker header when the host allows writing it.
    """
    stamped = False
    if is_draft is None:
        is_draft = not await item.get_item_id()

    if not is_draft:
        try:
            await item.set_internet_headers({MARKER_HEADER: placement_id})
            logger.debug("Stamped %s header with %s", MARKER_HEADER, placement_id)
            stamped = True
        except HostError as exc:
            logger.warning("Failed to stamp %s header: %s", MARKER_HEADER, exc)

    try:
        await item.save_custom_properties({CUSTOM_PROPERTY_KEYS[0]: placement_id})
        logger.debug("Stamped custom property %s with %s", CUSTOM_PROPERTY_KEYS[0], placement_id)
        stamped = True
    except HostError as exc:
        logger.warning("Failed to stamp custom property on item: %s", exc)

    return stamped


class DuplicateDetector:
    """Evaluate the markers left by an earlier submission."""

    def __init__(self, subject_patterns=SUBJECT_PATTERNS) -> None:
        self.subject_patterns = subject_patterns

    async def find_marker(self, item: HostItem) -> Optional[str]:
        """Return the earlier placement id if any marker is present."""
        is_draft = not await item.get_item_id()
        checks = [self._from_custom_properties(item), self._from_subject(item)]
        if not is_draft:
            checks.append(self._from_header(item))
        results = await asyncio.gather(*checks)
        for value in results:
            if value:
                return value
        return None

    async def is_duplicate(self, item: HostItem) -> bool:
        marker = await self.find_marker(item)
        if marker:
            logger.info("Item already submitted as %s", marker)
        return marker is not None

    async def _from_custom_properties(self, item: HostItem) -> Optional[str]:
        try:
            properties = await item.load_custom_properties()
        except HostError as exc:
            logger.warning("Failed to load custom properties: %s", exc)
            return None
        for key in CUSTOM_PROPERTY_KEYS:
            if properties.get(key):
                return properties[key]
        return None

    async def _from_subject(self, item: HostItem) -> Optional[str]:
        try:
            subject = await item.get_subject()
        except HostError as exc:
            logger.warning("Failed to read subject: %s", exc)
            return None
        for pattern in self.subject_patterns:
            match = pattern.search(subject or "")
            if match:
                return match.group(1)
        return None

    async def _from_header(self, item: HostItem) -> Optional[str]:
        try:
            value = await item.get_internet_header(MARKER_HEADER)
        except HostError as exc:
            logger.warning("Failed to read %s header: %s", MARKER_HEADER, exc)
            return None
        return value.strip() if value else None
