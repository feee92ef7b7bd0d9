"""Data models for OAuth2 credentials and the account endpoint record."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

# Token endpoint JSON field names
FIELD_ACCESS_TOKEN = "access_token"
FIELD_REFRESH_TOKEN = "refresh_token"
FIELD_TOKEN_TYPE = "token_type"
FIELD_EXPIRES_IN = "expires_in"

# Account endpoint JSON field names
FIELD_CONTENT_URL = "contentUrl"
FIELD_METADATA_URL = "metadataUrl"

# Profile store keys
CREDENTIALS_KEY = "authorization"
ENDPOINT_KEY = "endpoint"


@dataclass(frozen=True)
class SecurityProfile:
    """OAuth2 client identity the user authorizes to access their drive."""

    client_id: str
    client_secret: str


@dataclass
class Credentials:
    """Current token pair.

    Attributes:
        access_token: Short-lived bearer token. None until the first
            authorization completes, or after an in-memory invalidation.
        refresh_token: Durable credential used to mint new access tokens.
        token_type: Token type reported by the token endpoint.
        issued_at: Unix time at which the pair was obtained.
    """

    access_token: str | None = None
    refresh_token: str = ""
    token_type: str = ""
    issued_at: int = 0

    def to_record(self) -> dict[str, Any]:
        """Return the JSON-serializable record persisted in the profile store."""
        return asdict(self)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Credentials:
        """Build an instance from a stored record, defaulting missing fields."""
        return cls(
            access_token=record.get("access_token") or None,
            refresh_token=str(record.get("refresh_token", "")),
            token_type=str(record.get("token_type", "")),
            issued_at=int(record.get("issued_at", 0)),
        )


@dataclass(frozen=True)
class Endpoint:
    """Base URLs for metadata and content operations, and when they were fetched."""

    content_url: str = ""
    metadata_url: str = ""
    refreshed_at: int = 0

    def is_fresh(self, now: float, max_age_seconds: float) -> bool:
        """Return True if the URLs are known and younger than ``max_age_seconds``."""
        if not self.content_url or not self.metadata_url:
            return False
        return now - self.refreshed_at < max_age_seconds

    def to_record(self) -> dict[str, Any]:
        """Return the JSON-serializable record persisted in the profile store."""
        return asdict(self)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Endpoint:
        """Build an instance from a stored record, defaulting missing fields."""
        return cls(
            content_url=str(record.get("content_url", "")),
            metadata_url=str(record.get("metadata_url", "")),
            refreshed_at=int(record.get("refreshed_at", 0)),
        )


@dataclass(frozen=True)
class TokenResponse:
    """Successful answer of the OAuth2 token endpoint."""

    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int
