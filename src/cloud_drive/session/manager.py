"""Session manager — OAuth2 token lifecycle and the account endpoint."""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Callable

from oauthlib.oauth2 import OAuth2Error, WebApplicationClient

from cloud_drive.errors import (
    AuthFailureError,
    BadAuthUrlError,
    ResponseBadJsonError,
    ResponseNotUtf8Error,
    UnknownServerError,
)
from cloud_drive.session.models import (
    CREDENTIALS_KEY,
    ENDPOINT_KEY,
    FIELD_ACCESS_TOKEN,
    FIELD_CONTENT_URL,
    FIELD_EXPIRES_IN,
    FIELD_METADATA_URL,
    FIELD_REFRESH_TOKEN,
    FIELD_TOKEN_TYPE,
    Credentials,
    Endpoint,
    SecurityProfile,
    TokenResponse,
)
from cloud_drive.transport.rest import RestRequest, decode_server_object

if TYPE_CHECKING:
    from cloud_drive.config import AppConfig
    from cloud_drive.session.interactive import InteractiveAuth
    from cloud_drive.storage.profile import ProfileStore
    from cloud_drive.transport.retry import RetryOrchestrator

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600


class SessionManager:
    """Owns the credentials and endpoint of one client profile.

    Token exchanges go through the retry orchestrator as unauthenticated
    calls, so transient failures are retried there. The refresh token is
    only replaced after a successful exchange. ``refresh`` is serialized:
    concurrent callers that observed the same expired token share a single
    exchange.
    """

    def __init__(
        self,
        profile: SecurityProfile,
        store: ProfileStore,
        orchestrator: RetryOrchestrator,
        interactive: InteractiveAuth,
        authorize_url: str,
        token_url: str,
        endpoint_url: str,
        redirect_uri: str,
        scope: str,
        endpoint_max_age_hours: float = 72,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialise the session from persisted records.

        Args:
            profile: OAuth2 client id and secret.
            store: Persistence for the credential and endpoint records.
            orchestrator: Retry orchestrator used for every exchange.
            interactive: Browser/console capability for the code flow.
            authorize_url: OAuth2 authorization page.
            token_url: OAuth2 token endpoint.
            endpoint_url: Authenticated URL returning the account endpoint.
            redirect_uri: Redirect URI registered for the profile.
            scope: Space-separated OAuth2 scopes.
            endpoint_max_age_hours: How long a fetched endpoint stays fresh.
            clock: Wall clock returning Unix time.
        """
        self._profile = profile
        self._store = store
        self._orchestrator = orchestrator
        self._interactive = interactive
        self._authorize_url = authorize_url
        self._token_url = token_url
        self._endpoint_url = endpoint_url
        self._redirect_uri = redirect_uri
        self._scope = scope
        self._endpoint_max_age = endpoint_max_age_hours * SECONDS_PER_HOUR
        self._clock = clock
        self._refresh_lock = threading.Lock()
        self._endpoint_lock = threading.Lock()
        self._oauth = WebApplicationClient(profile.client_id)

        record = store.load(CREDENTIALS_KEY)
        self._credentials = Credentials.from_record(record) if record else Credentials()
        record = store.load(ENDPOINT_KEY)
        self._endpoint = Endpoint.from_record(record) if record else Endpoint()

    @property
    def credentials(self) -> Credentials:
        """Token pair currently held in memory."""
        return self._credentials

    @property
    def endpoint(self) -> Endpoint:
        """Last known endpoint, which may be stale; see ``ensure_endpoint_fresh``."""
        return self._endpoint

    def current_token(self) -> str | None:
        """Return the in-memory access token, or None if absent or invalidated."""
        return self._credentials.access_token

    def invalidate(self) -> None:
        """Forget the access token in memory; the refresh token is kept."""
        self._credentials.access_token = None

    def authorization_request_url(self, client_id: str | None = None) -> str:
        """Build the URL of the authorization page the user must visit.

        Args:
            client_id: Overrides the profile's client id.

        Returns:
            The authorization URL asking for an authorization code.
        """
        client = WebApplicationClient(client_id or self._profile.client_id)
        return client.prepare_request_uri(
            self._authorize_url,
            redirect_uri=self._redirect_uri,
            scope=self._scope,
        )

    def authorize_interactively(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> Credentials:
        """Run the authorization-code flow with the user.

        Opens the authorization page, waits for the user to paste the URL
        they were redirected to, and exchanges its ``code`` for tokens.

        Args:
            client_id: Overrides the profile's client id.
            client_secret: Overrides the profile's client secret.

        Returns:
            The newly stored credentials.

        Raises:
            BadAuthUrlError: The pasted URL is unparsable or has no code.
            AuthFailureError: The token endpoint rejected the code.
        """
        client = WebApplicationClient(client_id or self._profile.client_id)
        client_secret = client_secret or self._profile.client_secret

        self._interactive.open(self.authorization_request_url(client.client_id))
        code = extract_authorization_code(self._interactive.read_line(), client)

        body = client.prepare_request_body(
            code=code,
            redirect_uri=self._redirect_uri,
            client_secret=client_secret,
        )
        credentials = self._exchange(client, body)
        logger.info("[authorize_interactively] authorization completed")
        return credentials

    def ensure_authorized(self) -> Credentials:
        """Run the interactive flow only if no token pair was ever obtained."""
        if not self._credentials.refresh_token:
            return self.authorize_interactively()
        return self._credentials

    def refresh(
        self,
        stale_token: str | None = None,
        deadline: float | None = None,
    ) -> Credentials:
        """Exchange the refresh token for a new token pair.

        Args:
            stale_token: The access token the caller saw rejected. When the
                current token already differs from it, another caller has
                refreshed in the meantime and no exchange is made.
            deadline: Optional ``time.monotonic()`` value bounding the exchange.

        Returns:
            The current credentials.

        Raises:
            AuthFailureError: No refresh token is stored, or the exchange was rejected.
            DeadlineExceededError: The exchange could not finish before ``deadline``.
        """
        with self._refresh_lock:
            current = self._credentials.access_token
            if current is not None and current != stale_token:
                logger.debug("[refresh] token already refreshed by another caller")
                return self._credentials
            if not self._credentials.refresh_token:
                raise AuthFailureError(0, b"no refresh token stored; authorize first")

            logger.info("[refresh] refreshing authorization")
            body = self._oauth.prepare_refresh_body(
                refresh_token=self._credentials.refresh_token,
                client_id=self._profile.client_id,
                client_secret=self._profile.client_secret,
                redirect_uri=self._redirect_uri,
            )
            credentials = self._exchange(self._oauth, body, deadline)
            logger.info("[refresh] authorization refreshed")
            return credentials

    def ensure_endpoint_fresh(self, deadline: float | None = None) -> Endpoint:
        """Return the endpoint, re-fetching it once it is older than the freshness window.

        Raises:
            UnknownServerError: The endpoint lookup answered with an unexpected status.
        """
        with self._endpoint_lock:
            if self._endpoint.is_fresh(self._clock(), self._endpoint_max_age):
                return self._endpoint

            request = RestRequest.get(self._endpoint_url)
            status_code, body = self._orchestrator.execute(request, True, deadline)
            if status_code != 200:
                raise UnknownServerError(status_code, body)
            payload = decode_server_object(body, FIELD_CONTENT_URL, FIELD_METADATA_URL)

            self._endpoint = Endpoint(
                content_url=str(payload[FIELD_CONTENT_URL]),
                metadata_url=str(payload[FIELD_METADATA_URL]),
                refreshed_at=int(self._clock()),
            )
            self._store.save(ENDPOINT_KEY, self._endpoint.to_record())
            logger.info("[ensure_endpoint_fresh] endpoint refreshed")
            return self._endpoint

    def _exchange(
        self,
        client: WebApplicationClient,
        form: str,
        deadline: float | None = None,
    ) -> Credentials:
        """POST ``form`` to the token endpoint and store the resulting credentials."""
        request = RestRequest.post(self._token_url).body_form(form)
        status_code, body = self._orchestrator.execute(request, False, deadline)
        if status_code != 200:
            logger.error("[_exchange] token endpoint rejected the exchange; status:%d", status_code)
            raise AuthFailureError(status_code, body)

        token = decode_token_response(body, client)
        self._credentials = Credentials(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            token_type=token.token_type,
            issued_at=int(self._clock()),
        )
        self._store.save(CREDENTIALS_KEY, self._credentials.to_record())
        return self._credentials


def extract_authorization_code(
    redirect_url: str,
    client: WebApplicationClient | None = None,
) -> str:
    """Return the ``code`` query parameter of the URL the user was redirected to.

    Args:
        redirect_url: URL pasted by the user, surrounding whitespace allowed.
        client: OAuth2 client that receives the code; a fresh one by default.

    Raises:
        BadAuthUrlError: The URL cannot be parsed, reports an error or carries no code.
    """
    client = client or WebApplicationClient(None)
    url = redirect_url.strip()
    # Loopback redirects are plain http; the URL never leaves this process.
    if url.startswith("http://"):
        url = "https://" + url[len("http://") :]
    try:
        response = client.parse_request_uri_response(url)
    except (OAuth2Error, ValueError) as exc:
        raise BadAuthUrlError(f"Invalid authorization URL provided: {exc}") from exc
    return str(response["code"])


def decode_token_response(
    body: bytes,
    client: WebApplicationClient | None = None,
) -> TokenResponse:
    """Decode a successful token endpoint answer.

    Raises:
        ResponseNotUtf8Error: The body is not valid UTF-8.
        ResponseBadJsonError: The body is not a token response carrying a
            refresh token, or one of its fields is malformed.
    """
    client = client or WebApplicationClient(None)
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ResponseNotUtf8Error(body) from exc
    try:
        token = client.parse_request_body_response(text)
        expires_in = int(token.get(FIELD_EXPIRES_IN, 0))
    except (OAuth2Error, ValueError, TypeError) as exc:
        raise ResponseBadJsonError(f"invalid token response: {exc}", body) from exc
    if not token.get(FIELD_REFRESH_TOKEN):
        raise ResponseBadJsonError(f"missing field(s): {FIELD_REFRESH_TOKEN}", body)
    return TokenResponse(
        access_token=str(token[FIELD_ACCESS_TOKEN]),
        refresh_token=str(token[FIELD_REFRESH_TOKEN]),
        token_type=str(token.get(FIELD_TOKEN_TYPE) or client.token_type),
        expires_in=expires_in,
    )


def session_manager_from_config(
    config: AppConfig,
    store: ProfileStore,
    orchestrator: RetryOrchestrator,
    interactive: InteractiveAuth,
) -> SessionManager:
    """Construct a SessionManager from application configuration."""
    return SessionManager(
        profile=SecurityProfile(client_id=config.client_id, client_secret=config.client_secret),
        store=store,
        orchestrator=orchestrator,
        interactive=interactive,
        authorize_url=config.authorize_url,
        token_url=config.token_url,
        endpoint_url=config.endpoint_url,
        redirect_uri=config.redirect_uri,
        scope=config.scope,
        endpoint_max_age_hours=config.endpoint_max_age_hours,
    )
