"""Configuration management for the placement submission bridge."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Literal, Sequence

from dotenv import load_dotenv
from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env early so BaseSettings can pick values up seamlessly.
load_dotenv()

DEFAULT_API_SCOPES = "api://d3398715-8435-43df-ac85-d28afd62f0e3/access_as_user"
DEFAULT_GRAPH_SCOPES = "https://graph.microsoft.com/Mail.Send"


def _split_list(value: str | Sequence[str] | None, coerce_lower: bool = True) -> list[str]:
    """Turn delimiter-separated env strings into cleaned lists."""
    if value is None:
        return []
    if isinstance(value, str):
        items = re.split(r"[;,]", value)
    else:
        items = list(value)
    cleaned: list[str] = []
    for item in items:
        trimmed = item.strip()
        if not trimmed:
            continue
        cleaned.append(trimmed.lower() if coerce_lower else trimmed)
    return cleaned


class Settings(BaseSettings):
    """App configuration derived from environment variables."""

    azure_client_id: str = Field(..., alias="AZURE_CLIENT_ID")
    azure_tenant_id: str | None = Field(None, alias="AZURE_TENANT_ID")
    azure_authority: str | None = Field(None, alias="AZURE_AUTHORITY")
    azure_auth_mode: Literal["interactive", "device_code"] = Field(
        "interactive", alias="AZURE_AUTH_MODE"
    )
    azure_api_scopes_raw: str = Field(DEFAULT_API_SCOPES, alias="AZURE_API_SCOPES")
    azure_graph_scopes_raw: str = Field(DEFAULT_GRAPH_SCOPES, alias="AZURE_GRAPH_SCOPES")
    token_cache_path: Path = Field(Path("data/msal_token_cache.bin"), alias="AZURE_TOKEN_CACHE")

    placement_api_url: HttpUrl = Field(..., alias="PLACEMENT_API_URL")
    placement_api_key: str = Field("", alias="PLACEMENT_API_KEY")

    shared_mailbox: str | None = Field(None, alias="CYBER_MRSNA_MAILBOX")
    default_shared_mailbox: str | None = Field(None, alias="DEFAULT_SHARED_MAILBOX")

    graph_base_url: str = Field("https://graph.microsoft.com/v1.0", alias="GRAPH_BASE_URL")
    http_timeout: float = Field(30.0, alias="HTTP_TIMEOUT")

    forward_store_db: Path = Field(Path("data/pending_forwards.db"), alias="FORWARD_STORE_DB")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator(
        "azure_tenant_id",
        "azure_authority",
        "shared_mailbox",
        "default_shared_mailbox",
        mode="before",
    )
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @field_validator("graph_base_url", mode="after")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def authority_url(self) -> str:
        if self.azure_authority:
            return self.azure_authority.rstrip("/")
        if self.azure_tenant_id:
            return f"https://login.microsoftonline.com/{self.azure_tenant_id}"
        return "https://login.microsoftonline.com/organizations"

    @property
    def api_scopes(self) -> list[str]:
        """Scopes for the placement submission API."""
        return _split_list(self.azure_api_scopes_raw, coerce_lower=False) or [DEFAULT_API_SCOPES]

    @property
    def graph_scopes(self) -> list[str]:
        """Scopes for the Graph mailbox API."""
        return _split_list(self.azure_graph_scopes_raw, coerce_lower=False) or [
            DEFAULT_GRAPH_SCOPES
        ]

    @property
    def forward_mailbox(self) -> str | None:
        """Target shared mailbox for forwarded copies."""
        return self.shared_mailbox or self.default_shared_mailbox

    @property
    def placement_endpoint(self) -> str:
        return str(self.placement_api_url).rstrip("/")
