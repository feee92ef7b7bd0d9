"""Retry orchestrator — backoff, server-error retries and token renewal."""

from __future__ import annotations

import json
import logging
import random
import time
from typing import Callable, Protocol

from cloud_drive.errors import (
    DeadlineExceededError,
    DriveError,
    ProtocolViolationError,
    ServerError,
    TokenExpiredError,
    TransportError,
)
from cloud_drive.transport.rest import RestRequest, Transport

logger = logging.getLogger(__name__)

# Transient failures tolerated per logical operation
DEFAULT_MAX_RETRIES = 5
# Base unit of the randomized backoff, in milliseconds
DEFAULT_BACKOFF_UNIT_MS = 1000
# The backoff ceiling stops doubling after this many retries
MAX_BACKOFF_DOUBLINGS = 8

# The backend reports expiry as 400 with a JSON message, so the payload is
# inspected instead of the status code.
EXPIRED_TOKEN_PHRASE = "Token has expired"
FIELD_MESSAGE = "message"


class TokenSource(Protocol):
    """Provides and renews the bearer token attached to authorized requests."""

    def current_token(self) -> str | None: ...

    def refresh(
        self, stale_token: str | None = None, deadline: float | None = None
    ) -> object: ...


def backoff_ceiling_ms(retry_count: int, unit_ms: int = DEFAULT_BACKOFF_UNIT_MS) -> int:
    """Exclusive upper bound of the sleep before retry number ``retry_count``."""
    return unit_ms * (1 << min(retry_count - 1, MAX_BACKOFF_DOUBLINGS))


def reports_expired_token(body: bytes) -> bool:
    """Return True if ``body`` is a JSON error whose message says the token expired."""
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return False
    if not isinstance(payload, dict):
        return False
    message = payload.get(FIELD_MESSAGE)
    return isinstance(message, str) and EXPIRED_TOKEN_PHRASE in message


class RetryOrchestrator:
    """Executes one logical remote operation to completion.

    Transport failures and 5xx responses are retried with randomized
    exponential backoff up to ``max_retries`` attempts. An expired-token
    response triggers at most one refresh through the bound session, after
    which the retry counter starts over. Any other response is returned
    as-is; business-level status codes are the caller's concern.
    """

    def __init__(
        self,
        transport: Transport,
        session: TokenSource | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_unit_ms: int = DEFAULT_BACKOFF_UNIT_MS,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise the orchestrator.

        Args:
            transport: Sends a single request and returns (status, body).
            session: Token source for authorized calls. May be bound later
                via ``session`` attribute assignment.
            max_retries: Number of attempts allowed for transient failures.
            backoff_unit_ms: Base unit of the backoff ceiling.
            sleep: Blocking sleep, in seconds.
            rng: Random source for backoff jitter.
            monotonic: Clock used to honour deadlines.
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.session = session
        self._transport = transport
        self._max_retries = max_retries
        self._backoff_unit_ms = backoff_unit_ms
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._monotonic = monotonic

    def execute(
        self,
        request: RestRequest,
        requires_auth: bool,
        deadline: float | None = None,
    ) -> tuple[int, bytes]:
        """Send ``request`` until it yields a final response.

        Args:
            request: Replayable request description.
            requires_auth: Attach the session's bearer token.
            deadline: Optional absolute ``time.monotonic()`` value after
                which no further attempt is started.

        Returns:
            Final (status_code, body) for any 2xx or non-5xx response.

        Raises:
            TransportError: Transport kept failing after the last retry.
            ServerError: Server kept answering 5xx after the last retry.
            TokenExpiredError: Token still rejected after one refresh.
            ProtocolViolationError: Token expiry reported for an unauthenticated call.
            DeadlineExceededError: The next backoff would pass ``deadline``.
        """
        session = self.session
        if requires_auth and session is None:
            raise ValueError("an authorized call needs a bound session")

        retry_count = 0
        reauthorized = False
        last_error: DriveError | None = None

        while True:
            if retry_count > 0:
                self._backoff(retry_count, deadline, last_error)
            elif deadline is not None and self._monotonic() >= deadline:
                raise DeadlineExceededError(f"deadline passed before {request.method} was sent")

            token: str | None = None
            outgoing = request
            if requires_auth and session is not None:
                token = session.current_token()
                if token is None and not reauthorized:
                    # Invalidated in memory; renew before sending anything.
                    reauthorized = True
                    session.refresh(stale_token=None, deadline=deadline)
                    token = session.current_token()
                if token is not None:
                    outgoing = request.authorization(token)

            try:
                status_code, body = self._transport.send(outgoing)
            except TransportError as exc:
                retry_count += 1
                last_error = exc
                if retry_count >= self._max_retries:
                    logger.error(
                        "[execute] transport retries exhausted; method:%s;url:%s;attempts:%d",
                        request.method,
                        request.base_url,
                        retry_count,
                    )
                    raise
                logger.warning(
                    "[execute] communication error, will retry; "
                    "method:%s;url:%s;attempt:%d;error:%s",
                    request.method,
                    request.base_url,
                    retry_count,
                    exc,
                )
                continue

            if not 200 <= status_code < 300 and reports_expired_token(body):
                if session is None or not requires_auth or token is None:
                    raise ProtocolViolationError(
                        "Server reported an expired token on a call that carried no token"
                    )
                if reauthorized:
                    logger.error(
                        "[execute] token still expired after reauthorization; method:%s;url:%s",
                        request.method,
                        request.base_url,
                    )
                    raise TokenExpiredError("Access token rejected after reauthorization")
                logger.info("[execute] access token expired, refreshing; url:%s", request.base_url)
                reauthorized = True
                session.refresh(stale_token=token, deadline=deadline)
                retry_count = 0
                last_error = None
                continue

            if 500 <= status_code < 600:
                retry_count += 1
                last_error = ServerError(status_code, body)
                if retry_count >= self._max_retries:
                    logger.error(
                        "[execute] server error retries exhausted; method:%s;url:%s;status:%d",
                        request.method,
                        request.base_url,
                        status_code,
                    )
                    raise last_error
                logger.warning(
                    "[execute] server error, will retry; method:%s;url:%s;status:%d;attempt:%d",
                    request.method,
                    request.base_url,
                    status_code,
                    retry_count,
                )
                continue

            return status_code, body

    def _backoff(
        self,
        retry_count: int,
        deadline: float | None,
        last_error: DriveError | None,
    ) -> None:
        ceiling = backoff_ceiling_ms(retry_count, self._backoff_unit_ms)
        delay = self._rng.randrange(ceiling) / 1000 if ceiling > 0 else 0.0
        if deadline is not None and self._monotonic() + delay >= deadline:
            raise DeadlineExceededError(
                f"retry {retry_count} would pass the deadline; last error: {last_error}"
            ) from last_error
        logger.debug("[_backoff] sleeping before retry; retry:%d;delay:%.3f", retry_count, delay)
        self._sleep(delay)
