"""REST request descriptions and the urllib transport that sends them."""

from __future__ import annotations

import http.client
import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Protocol
from urllib import request as urllib_request
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode

from cloud_drive.errors import ResponseBadJsonError, ResponseNotUtf8Error, TransportError

logger = logging.getLogger(__name__)

CONTENT_TYPE_FORM = "application/x-www-form-urlencoded"
CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_OCTET_STREAM = "application/octet-stream"


@dataclass(frozen=True)
class MultipartField:
    """One part of a multipart/form-data body."""

    name: str
    data: bytes
    filename: str | None = None
    content_type: str | None = None


@dataclass(frozen=True)
class RestRequest:
    """Immutable description of an HTTP request.

    Builder methods return new instances, so a request can be re-sent
    byte-for-byte any number of times. Bodies are rendered once when the
    builder method is called (the multipart boundary included).
    """

    method: str
    base_url: str
    segments: tuple[str, ...] = ()
    query: tuple[tuple[str, str], ...] = ()
    headers: tuple[tuple[str, str], ...] = ()
    body: bytes | None = None
    bearer_token: str | None = field(default=None, repr=False)

    @classmethod
    def get(cls, url: str) -> RestRequest:
        """Start a GET request.

        Args:
            url: Base URL; path segments and query pairs are appended later.

        Returns:
            A request with no segments, query, headers or body.
        """
        return cls("GET", url)

    @classmethod
    def post(cls, url: str) -> RestRequest:
        """Start a POST request against ``url``."""
        return cls("POST", url)

    @classmethod
    def put(cls, url: str) -> RestRequest:
        """Start a PUT request against ``url``."""
        return cls("PUT", url)

    def url_push(self, segment: str) -> RestRequest:
        """Append a path segment; it is percent-encoded when the URL is built."""
        return replace(self, segments=(*self.segments, segment))

    def url_query(self, pairs: list[tuple[str, str]]) -> RestRequest:
        """Append query parameters.

        Args:
            pairs: (name, value) pairs, encoded in order when the URL is built.

        Returns:
            A copy of the request with the extra parameters.
        """
        return replace(self, query=(*self.query, *pairs))

    def header(self, name: str, value: str) -> RestRequest:
        """Add a request header; a later header with the same name wins."""
        return replace(self, headers=(*self.headers, (name, value)))

    def authorization(self, token: str) -> RestRequest:
        """Attach a bearer token."""
        return replace(self, bearer_token=token)

    def body_bytes(self, data: bytes, content_type: str = CONTENT_TYPE_OCTET_STREAM) -> RestRequest:
        """Use raw bytes as the body.

        Args:
            data: Body content, sent unchanged on every attempt.
            content_type: Value of the Content-Type header.

        Returns:
            A copy of the request carrying the body and its content type.
        """
        return replace(self, body=data).header("Content-Type", content_type)

    def body_form(self, form: str | list[tuple[str, str]]) -> RestRequest:
        """Use a url-encoded form as the body.

        Args:
            form: Either an already-encoded form string or (name, value) pairs.
        """
        if not isinstance(form, str):
            form = urlencode(form)
        return self.body_bytes(form.encode("utf-8"), CONTENT_TYPE_FORM)

    def body_json(self, value: Any) -> RestRequest:
        """Use ``value`` serialized as UTF-8 JSON as the body."""
        return self.body_bytes(json.dumps(value).encode("utf-8"), CONTENT_TYPE_JSON)

    def multipart(self, fields: list[MultipartField]) -> RestRequest:
        """Use a multipart/form-data body built from ``fields``."""
        boundary = uuid.uuid4().hex
        data = encode_multipart(fields, boundary)
        return self.body_bytes(data, f"multipart/form-data; boundary={boundary}")

    @property
    def full_url(self) -> str:
        """Base URL followed by the quoted path segments and the encoded query."""
        url = self.base_url.rstrip("/") if self.segments else self.base_url
        for segment in self.segments:
            url = f"{url}/{quote(segment, safe='')}"
        if self.query:
            url = f"{url}?{urlencode(self.query)}"
        return url

    def to_urllib(self) -> urllib_request.Request:
        """Build the ``urllib`` request for one attempt.

        Returns:
            A request carrying the body, the headers, ``Accept: application/json``
            unless overridden, and the bearer token if one is attached.
        """
        headers = dict(self.headers)
        headers.setdefault("Accept", CONTENT_TYPE_JSON)
        if self.bearer_token is not None:
            headers["Authorization"] = f"Bearer {self.bearer_token}"
        return urllib_request.Request(
            self.full_url,
            data=self.body,
            headers=headers,
            method=self.method,
        )


def encode_multipart(fields: list[MultipartField], boundary: str) -> bytes:
    """Render ``fields`` as a multipart/form-data body delimited by ``boundary``."""
    chunks: list[bytes] = []
    for part in fields:
        disposition = f'form-data; name="{part.name}"'
        if part.filename is not None:
            escaped = part.filename.replace("\\", "\\\\").replace('"', '\\"')
            disposition += f'; filename="{escaped}"'
        chunks.append(f"--{boundary}\r\n".encode("ascii"))
        chunks.append(f"Content-Disposition: {disposition}\r\n".encode())
        if part.content_type is not None:
            chunks.append(f"Content-Type: {part.content_type}\r\n".encode("ascii"))
        chunks.append(b"\r\n")
        chunks.append(part.data)
        chunks.append(b"\r\n")
    chunks.append(f"--{boundary}--\r\n".encode("ascii"))
    return b"".join(chunks)


class Transport(Protocol):
    """Sends one request and returns the status code and raw body."""

    def send(self, request: RestRequest) -> tuple[int, bytes]: ...


class UrllibTransport:
    """Transport backed by ``urllib.request``.

    Every HTTP status, errors included, is returned as ``(status, body)``.
    Only failures to exchange a response at all raise TransportError.
    """

    def __init__(self, timeout: float = 60.0) -> None:
        self._timeout = timeout

    def send(self, request: RestRequest) -> tuple[int, bytes]:
        """Send ``request`` once.

        Returns:
            The status code and raw body, for error statuses too.

        Raises:
            TransportError: No response could be received.
        """
        req = request.to_urllib()
        try:
            with urllib_request.urlopen(req, timeout=self._timeout) as resp:
                return resp.status, resp.read()
        except HTTPError as exc:
            try:
                body = exc.read()
            except OSError:
                body = b""
            return exc.code, body
        except (URLError, http.client.HTTPException, OSError) as exc:
            logger.debug(
                "[send] transport failure; method:%s;url:%s;error:%s",
                request.method,
                request.base_url,
                exc,
            )
            raise TransportError(f"{request.method} {request.base_url} failed: {exc}") from exc


def decode_server_json(body: bytes) -> Any:
    """Decode a response body as UTF-8 JSON.

    Raises:
        ResponseNotUtf8Error: If the body is not valid UTF-8.
        ResponseBadJsonError: If the text is not valid JSON.
    """
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ResponseNotUtf8Error(body) from exc
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ResponseBadJsonError(str(exc), body) from exc


def decode_server_object(body: bytes, *required: str) -> dict[str, Any]:
    """Decode a JSON object and check that ``required`` keys are present."""
    payload = decode_server_json(body)
    if not isinstance(payload, dict):
        raise ResponseBadJsonError("expected a JSON object", body)
    missing = [key for key in required if key not in payload]
    if missing:
        raise ResponseBadJsonError(f"missing field(s): {', '.join(missing)}", body)
    return payload
