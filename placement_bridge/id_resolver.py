"""Host identifier → REST identifier conversion."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from .errors import PlacementBridgeError

logger = logging.getLogger(__name__)

# Characters that only appear in the host's proprietary (EWS) encoding.
HOST_ID_MARKERS = ("/", "\\", "+")

Converter = Callable[[list[str]], Awaitable[list[str]]]


def looks_canonical(host_id: str) -> bool:
    return not any(marker in host_id for marker in HOST_ID_MARKERS)


class IdentifierResolver:
    """Resolve host identifiers to REST identifiers, never failing."""

    def __init__(self, converter: Converter) -> None:
        self.converter = converter

    async def resolve(self, host_id: str) -> str:
        if not host_id or looks_canonical(host_id):
            return host_id
        try:
            converted = await self.converter([host_id])
        except PlacementBridgeError as exc:
            logger.warning("Identifier conversion failed for %s: %s", host_id, exc)
            return host_id
        rest_id = converted[0] if converted else None
        if not rest_id:
            logger.warning("Identifier conversion returned nothing for %s; using original", host_id)
            return host_id
        logger.debug("Converted host id %s to REST id %s", host_id, rest_id)
        return rest_id

    async def resolve_many(self, host_ids: list[str]) -> list[str]:
        pending = [host_id for host_id in host_ids if host_id and not looks_canonical(host_id)]
        if not pending:
            return list(host_ids)
        try:
            converted = await self.converter(pending)
        except PlacementBridgeError as exc:
            logger.warning("Bulk identifier conversion failed: %s", exc)
            return list(host_ids)
        if len(converted) != len(pending):
            logger.warning(
                "Bulk conversion returned %s ids for %s inputs; using originals",
                len(converted),
                len(pending),
            )
            return list(host_ids)
        mapping = {src: dst or src for src, dst in zip(pending, converted)}
        return [mapping.get(host_id, host_id) for host_id in host_ids]
