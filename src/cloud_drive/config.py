"""Application configuration loaded from environment variables."""

import hashlib
import os
from dataclasses import dataclass

# Number of hex characters of the client id digest used as the profile key
PROFILE_KEY_LENGTH = 16


@dataclass(frozen=True)
class AppConfig:
    """Centralized client configuration.

    Required fields have no defaults and will cause a KeyError at startup
    if the corresponding environment variable is missing. Service URLs and
    retry tuning have sensible defaults but can be overridden via environment
    variables.
    """

    # Required: no defaults, fail at startup if missing
    client_id: str
    client_secret: str

    # Local state
    config_dir: str = os.path.join(os.path.expanduser("~"), ".cloud-drive")
    storage_connection_string: str | None = None
    profile_container: str = "cloud-drive-profiles"
    cache_url: str | None = None

    # Service endpoints
    authorize_url: str = "https://www.amazon.com/ap/oa"
    token_url: str = "https://api.amazon.com/auth/o2/token"
    endpoint_url: str = "https://drive.amazonaws.com/drive/v1/account/endpoint"
    redirect_uri: str = "http://localhost:26619/"
    scope: str = "clouddrive:read_all clouddrive:write"

    # Retry and freshness tuning
    max_retries: int = 5
    backoff_unit_ms: int = 1000
    endpoint_max_age_hours: int = 72
    request_timeout: float = 60.0

    @property
    def profile_key(self) -> str:
        """Key isolating this client id's state from other profiles."""
        return profile_key(self.client_id)

    @property
    def profile_dir(self) -> str:
        """Directory holding this profile's local state."""
        return os.path.join(self.config_dir, self.profile_key)

    def resolved_cache_url(self) -> str:
        """SQLAlchemy URL of the node cache, defaulting to SQLite in the profile directory."""
        if self.cache_url:
            return self.cache_url
        return f"sqlite:///{os.path.join(self.profile_dir, 'cache.sqlite')}"


def profile_key(client_id: str) -> str:
    """Return the short SHA-256 digest used to namespace a client id's records."""
    return hashlib.sha256(client_id.encode("utf-8")).hexdigest()[:PROFILE_KEY_LENGTH]


def load_config() -> AppConfig:
    """Construct an AppConfig from environment variables.

    Required environment variables:
        CD_CLIENT_ID: OAuth2 client id of the security profile.
        CD_CLIENT_SECRET: OAuth2 client secret of the security profile.

    Optional environment variables (with defaults):
        CD_CONFIG_DIR: Base directory for per-profile state (default: ~/.cloud-drive).
        CD_STORAGE_CONNECTION_STRING: Azure Storage connection string; when set,
            credentials and endpoints persist to blob storage.
        CD_PROFILE_CONTAINER: Blob container for profile records.
        CD_CACHE_URL: SQLAlchemy URL of the node cache.
        CD_AUTHORIZE_URL: OAuth2 authorization page.
        CD_TOKEN_URL: OAuth2 token endpoint.
        CD_ENDPOINT_URL: Account endpoint lookup URL.
        CD_REDIRECT_URI: Redirect URI registered for the security profile.
        CD_SCOPE: Space-separated OAuth2 scopes.
        CD_MAX_RETRIES: Transient retry ceiling (default: 5).
        CD_BACKOFF_UNIT_MS: Backoff unit in milliseconds (default: 1000).
        CD_ENDPOINT_MAX_AGE_HOURS: Endpoint freshness window (default: 72).
        CD_REQUEST_TIMEOUT: Socket timeout per request in seconds (default: 60).

    Returns:
        Configured AppConfig instance.
    """
    defaults = AppConfig(client_id="", client_secret="")
    return AppConfig(
        client_id=os.environ["CD_CLIENT_ID"],
        client_secret=os.environ["CD_CLIENT_SECRET"],
        config_dir=os.path.expanduser(os.environ.get("CD_CONFIG_DIR", defaults.config_dir)),
        storage_connection_string=os.environ.get("CD_STORAGE_CONNECTION_STRING") or None,
        profile_container=os.environ.get("CD_PROFILE_CONTAINER", defaults.profile_container),
        cache_url=os.environ.get("CD_CACHE_URL") or None,
        authorize_url=os.environ.get("CD_AUTHORIZE_URL", defaults.authorize_url),
        token_url=os.environ.get("CD_TOKEN_URL", defaults.token_url),
        endpoint_url=os.environ.get("CD_ENDPOINT_URL", defaults.endpoint_url),
        redirect_uri=os.environ.get("CD_REDIRECT_URI", defaults.redirect_uri),
        scope=os.environ.get("CD_SCOPE", defaults.scope),
        max_retries=int(os.environ.get("CD_MAX_RETRIES", str(defaults.max_retries))),
        backoff_unit_ms=int(os.environ.get("CD_BACKOFF_UNIT_MS", str(defaults.backoff_unit_ms))),
        endpoint_max_age_hours=int(
            os.environ.get("CD_ENDPOINT_MAX_AGE_HOURS", str(defaults.endpoint_max_age_hours))
        ),
        request_timeout=float(
            os.environ.get("CD_REQUEST_TIMEOUT", str(defaults.request_timeout))
        ),
    )
