""".eml files as read-mode host items, for running the pipeline outside a mail client."""

from __future__ import annotations

import logging
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import parseaddr, parsedate_to_datetime
from pathlib import Path
from typing import Optional

from .errors import HostError
from .host import EmlBuilder, HostItem
from .utils import isoformat_utc, utc_now_iso

logger = logging.getLogger(__name__)


class EmlFileItem(HostItem):
    """A saved (non-draft) email backed by an RFC 822 file.

    ``item_id`` is the identifier the mailbox knows the message by; without
    it forwarding falls back to subject search. Custom properties live in
    memory only; stamped headers are written back into the file.
    """

    def __init__(self, path: Path, item_id: str | None = None, conversation_id: str | None = None) -> None:
        self.path = path
        self.item_id = item_id
        self.conversation_id = conversation_id
        self.custom_properties: dict[str, str] = {}
        try:
            self.raw = path.read_bytes()
        except OSError as exc:
            raise HostError(f"Cannot read {path}: {exc}") from exc
        self.message: EmailMessage = BytesParser(policy=policy.default).parsebytes(self.raw)

    @property
    def is_compose(self) -> bool:
        return False

    async def get_item_id(self) -> Optional[str]:
        return self.item_id

    async def save(self) -> Optional[str]:
        raise HostError("Saved emails cannot be saved again")

    async def get_subject(self) -> str:
        return str(self.message.get("Subject", ""))

    async def get_sender(self) -> str:
        _, address = parseaddr(str(self.message.get("From", "")))
        return address

    async def get_created_at(self) -> str:
        header = self.message.get("Date")
        if not header:
            return utc_now_iso()
        try:
            return isoformat_utc(parsedate_to_datetime(str(header)))
        except (TypeError, ValueError):
            logger.warning("Unparseable Date header %r in %s", header, self.path)
            return utc_now_iso()

    async def get_internet_message_id(self) -> Optional[str]:
        value = self.message.get("Message-ID")
        return str(value).strip() if value else None

    async def get_conversation_id(self) -> Optional[str]:
        return self.conversation_id

    async def load_custom_properties(self) -> dict[str, str]:
        return dict(self.custom_properties)

    async def save_custom_properties(self, values: dict[str, str]) -> None:
        self.custom_properties.update(values)

    async def get_internet_header(self, name: str) -> Optional[str]:
        value = self.message.get(name)
        return str(value) if value is not None else None

    async def set_internet_headers(self, headers: dict[str, str]) -> None:
        for name, value in headers.items():
            del self.message[name]
            self.message[name] = value
        self.raw = self.message.as_bytes()
        try:
            self.path.write_bytes(self.raw)
        except OSError as exc:
            raise HostError(f"Cannot write {self.path}: {exc}") from exc


class EmlFileBuilder(EmlBuilder):
    """The EML payload of a file-backed item is the file itself."""

    async def build(self, item: HostItem) -> bytes:
        if not isinstance(item, EmlFileItem):
            raise HostError(f"Cannot build EML for {type(item).__name__}")
        return item.raw
