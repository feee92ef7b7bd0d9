"""Exception taxonomy for the cloud drive client."""

from __future__ import annotations


def _preview(body: bytes, limit: int = 512) -> str:
    """Render a response body for error messages."""
    text = body[:limit].decode("utf-8", errors="replace")
    return text if len(body) <= limit else f"{text}..."


class DriveError(Exception):
    """Base class for every error raised by the client."""


class TransportError(DriveError):
    """Raised when a request could not be delivered or its response read."""


class ResponseError(DriveError):
    """Base for errors that carry the server's status code and body."""

    label = "Server response error"

    def __init__(self, status_code: int, body: bytes = b"") -> None:
        super().__init__(f"{self.label} {status_code}: {_preview(body)}")
        self.status_code = status_code
        self.body = body


class ServerError(ResponseError):
    """Raised when the server keeps answering with a 5xx status."""

    label = "Server error"


class UnknownServerError(ResponseError):
    """Raised when a response carries a status the operation does not expect."""

    label = "Unexpected server response"


class AuthFailureError(ResponseError):
    """Raised when the token endpoint rejects an authorization or refresh exchange."""

    label = "Authorization rejected"


class TokenExpiredError(DriveError):
    """Raised when the server still reports an expired token after reauthorizing."""


class ProtocolViolationError(DriveError):
    """Raised when the server reports token expiry on a call that carried no token."""


class BadPathError(DriveError):
    """Raised for paths with unsupported components or non-portable names."""


class BadAuthUrlError(DriveError):
    """Raised when the pasted redirect URL is unparsable or lacks a code."""


class ResponseNotUtf8Error(DriveError):
    """Raised when a response body expected to be text is not valid UTF-8."""

    def __init__(self, body: bytes) -> None:
        super().__init__("Server response was supposed to be UTF-8, but wasn't")
        self.body = body


class ResponseBadJsonError(DriveError):
    """Raised when a response body could not be decoded as the expected JSON."""

    def __init__(self, detail: str, body: bytes) -> None:
        super().__init__(f"Server response was not the expected JSON: {detail}")
        self.detail = detail
        self.body = body


class NodeExistsError(DriveError):
    """Raised when creating a node whose name is already taken under the parent."""


class IntegrityError(DriveError):
    """Raised when the server's checksum of uploaded content does not match ours."""

    def __init__(self, node_id: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Upload checksum mismatch for node {node_id}: expected {expected}, got {actual}"
        )
        self.node_id = node_id
        self.expected = expected
        self.actual = actual


class DeadlineExceededError(DriveError):
    """Raised when retrying would run past the caller's deadline."""
