"""Utility helpers shared across modules."""

from __future__ import annotations

import re
from datetime import UTC, datetime


def parse_graph_datetime(value: str) -> datetime:
    """Convert Graph ISO strings (with trailing Z) into aware UTC datetimes."""
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def ensure_utc(dt: datetime) -> datetime:
    """Force a datetime into UTC without altering instant."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def isoformat_utc(dt: datetime) -> str:
    """Return an ISO string that Graph and the placement API accept."""
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def utc_now_iso() -> str:
    return isoformat_utc(datetime.now(tz=UTC))


def escape_odata(value: str) -> str:
    """Quote-escape a literal for use inside an OData ``$filter`` string."""
    return (value or "").replace("'", "''")


def sanitize_eml_filename(value: str | None) -> str:
    """Build a 3-60 character, letter-bounded slug for the uploaded EML file."""
    if not value:
        return "email"
    slug = re.sub(r"[^a-z0-9]", "-", value.lower())
    slug = re.sub(r"--+", "-", slug).strip("-")
    slug = re.sub(r"^[^a-z]+", "", slug)
    slug = re.sub(r"[^a-z]+$", "", slug)
    if not slug:
        return "email"
    if len(slug) < 3:
        return slug.ljust(3, "a")
    if len(slug) > 60:
        slug = re.sub(r"[^a-z]+$", "", slug[:60])
    return slug
