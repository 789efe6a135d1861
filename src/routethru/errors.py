from __future__ import annotations

import re
from enum import StrEnum

_URL_USERINFO = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/\s@]+@")


class ErrorCode(StrEnum):
    DECODE_EMPTY = "DECODE_EMPTY"
    DECODE_MALFORMED = "DECODE_MALFORMED"
    HOST_UNREACHABLE = "HOST_UNREACHABLE"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    TLS_ERROR = "TLS_ERROR"
    TIMEOUT = "TIMEOUT"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"


class RouteThruError(Exception):
    """Raised for every expected failure of a proxied request.

    Caught by the route handler and turned into a plain-text HTTP error
    response. Business logic lets it propagate.
    """

    status_code: int = 500

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_text(self) -> str:
        return f"{self.code}: {redact_credentials(self.message)}\n"


class DecodeError(RouteThruError):
    """The request path does not carry a usable target URL."""

    status_code = 400


class FetchError(RouteThruError):
    """The upstream could not be reached. Never retried by the pipeline."""

    def __init__(self, code: ErrorCode, message: str, host: str = "") -> None:
        super().__init__(code, message)
        self.host = host
        self.status_code = 504 if code == ErrorCode.TIMEOUT else 502


def redact_credentials(text: str) -> str:
    """Strip ``user:password@`` from any URL embedded in *text*."""
    return _URL_USERINFO.sub(r"\g<scheme>", text)
