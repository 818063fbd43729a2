"""Host mail client boundary: the item being submitted and its mailbox.

Every host capability is exposed as a coroutine. Hosts whose native API is
callback based are wrapped with :func:`await_callback`, so the rest of the
package only ever awaits.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Optional

from .errors import HostError
from .utils import ensure_utc, isoformat_utc, parse_graph_datetime

logger = logging.getLogger(__name__)


@dataclass
class HostResult:
    """Payload handed to host callbacks."""

    succeeded: bool
    value: Any = None
    error: Any = None


async def await_callback(fn: Callable[..., Any], *args: Any) -> Any:
    """Invoke ``fn(*args, callback)`` and await the ``HostResult`` it reports."""
    loop = asyncio.get_running_loop()
    future: asyncio.Future = loop.create_future()

    def _settle(result: HostResult) -> None:
        if future.done():
            return
        if result.succeeded:
            future.set_result(result.value)
        else:
            future.set_exception(HostError(f"Host call {getattr(fn, '__name__', fn)} failed: {result.error}"))

    def _callback(result: HostResult) -> None:
        loop.call_soon_threadsafe(_settle, result)

    fn(*args, _callback)
    return await future


class HostItem(ABC):
    """The email currently open in the host client."""

    @property
    @abstractmethod
    def is_compose(self) -> bool:
        """True while the item is an unsent draft."""

    @abstractmethod
    async def get_item_id(self) -> Optional[str]: ...

    @abstractmethod
    async def save(self) -> Optional[str]:
        """Persist a draft; may transiently return ``None``."""

    @abstractmethod
    async def get_subject(self) -> str: ...

    @abstractmethod
    async def get_sender(self) -> str: ...

    @abstractmethod
    async def get_created_at(self) -> str: ...

    async def get_internet_message_id(self) -> Optional[str]:
        return None

    async def get_conversation_id(self) -> Optional[str]:
        return None

    @abstractmethod
    async def load_custom_properties(self) -> dict[str, str]: ...

    @abstractmethod
    async def save_custom_properties(self, values: dict[str, str]) -> None: ...

    async def get_internet_header(self, name: str) -> Optional[str]:
        return None

    async def set_internet_headers(self, headers: dict[str, str]) -> None:
        raise HostError("Internet headers are not writable on this item")

    async def get_shared_properties(self) -> Optional[dict[str, Any]]:
        """Owner details when the item lives in a shared folder."""
        return None


class HostMailbox(ABC):
    """Mailbox-level host capabilities."""

    @property
    @abstractmethod
    def user_email(self) -> Optional[str]: ...

    @abstractmethod
    async def convert_to_rest_ids(self, host_ids: list[str]) -> list[str]:
        """Convert host identifiers to REST identifiers, best effort."""


class EmlBuilder(ABC):
    """Produces the RFC 822 bytes uploaded with a placement."""

    @abstractmethod
    async def build(self, item: HostItem) -> bytes: ...


class CallbackHostItem(HostItem):
    """Adapter for a host item whose async getters report through callbacks.

    The wrapped object exposes plain attributes in read mode (``item_id``,
    ``subject``, ``sender``, ``date_time_created``, ``conversation_id``,
    ``internet_message_id``) and callback methods in compose mode
    (``save_async``, ``get_subject_async``, ``get_from_async``). Custom
    properties come from ``load_custom_properties_async``; headers from
    ``get_internet_headers_async``/``set_internet_headers_async``.
    """

    def __init__(self, raw: Any, mailbox: HostMailbox | None = None) -> None:
        self.raw = raw
        self.mailbox = mailbox
        self._custom_properties: Any = None

    @property
    def is_compose(self) -> bool:
        return callable(getattr(self.raw, "save_async", None))

    async def get_item_id(self) -> Optional[str]:
        return getattr(self.raw, "item_id", None) or None

    async def save(self) -> Optional[str]:
        if not self.is_compose:
            raise HostError("Item cannot be saved outside compose mode")
        return await await_callback(self.raw.save_async)

    async def get_subject(self) -> str:
        getter = getattr(self.raw, "get_subject_async", None)
        if callable(getter):
            return (await await_callback(getter)) or ""
        return getattr(self.raw, "subject", "") or ""

    async def get_sender(self) -> str:
        fallback = self.mailbox.user_email if self.mailbox else None
        getter = getattr(self.raw, "get_from_async", None)
        if callable(getter):
            value = await await_callback(getter) or {}
            return value.get("email_address") or fallback or ""
        return getattr(self.raw, "sender", None) or fallback or ""

    async def get_created_at(self) -> str:
        created = getattr(self.raw, "date_time_created", None)
        if isinstance(created, datetime):
            return isoformat_utc(ensure_utc(created))
        if created:
            try:
                return isoformat_utc(parse_graph_datetime(str(created)))
            except ValueError:
                logger.warning("Unparseable creation time %r; passing it through", created)
                return str(created)
        return isoformat_utc(datetime.now(tz=UTC))

    async def get_internet_message_id(self) -> Optional[str]:
        direct = getattr(self.raw, "internet_message_id", None)
        if direct:
            return direct
        return await self.get_internet_header("Message-ID")

    async def get_conversation_id(self) -> Optional[str]:
        return getattr(self.raw, "conversation_id", None) or None

    async def _custom_property_bag(self) -> Any:
        loader = getattr(self.raw, "load_custom_properties_async", None)
        if not callable(loader):
            raise HostError("Custom properties are not available on this item")
        return await await_callback(loader)

    async def load_custom_properties(self) -> dict[str, str]:
        bag = await self._custom_property_bag()
        return dict(bag.get_all())

    async def save_custom_properties(self, values: dict[str, str]) -> None:
        bag = await self._custom_property_bag()
        for key, value in values.items():
            bag.set(key, value)
        await await_callback(bag.save_async)

    async def get_internet_header(self, name: str) -> Optional[str]:
        getter = getattr(self.raw, "get_internet_headers_async", None)
        if not callable(getter):
            return None
        try:
            values = await await_callback(getter, [name])
        except HostError as exc:
            logger.debug("Reading header %s failed: %s", name, exc)
            return None
        return (values or {}).get(name)

    async def set_internet_headers(self, headers: dict[str, str]) -> None:
        setter = getattr(self.raw, "set_internet_headers_async", None)
        if not callable(setter):
            raise HostError("Internet headers are not writable on this item")
        await await_callback(setter, headers)

    async def get_shared_properties(self) -> Optional[dict[str, Any]]:
        getter = getattr(self.raw, "get_shared_properties_async", None)
        if not callable(getter):
            return None
        return await await_callback(getter)


class CallbackHostMailbox(HostMailbox):
    """Adapter for ``convert_to_rest_id(ids, callback)`` style hosts."""

    def __init__(self, raw: Any) -> None:
        self.raw = raw

    @property
    def user_email(self) -> Optional[str]:
        return getattr(self.raw, "user_email", None)

    async def convert_to_rest_ids(self, host_ids: list[str]) -> list[str]:
        converted = await await_callback(self.raw.convert_to_rest_id, list(host_ids))
        return list(converted or host_ids)
