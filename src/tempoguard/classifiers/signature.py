"""Failure signature extraction.

Reduces a raw exception from any collaborator (httpx, stdlib sockets, a
provider SDK) to the handful of facts the classifiers match on: a symbolic
transport code, an HTTP status, a provider error code, and a retry hint.
"""

import errno
import re
import socket
import ssl
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import httpx

# Symbolic transport codes shared by all classifiers
ETIMEDOUT = "ETIMEDOUT"
ECONNABORTED = "ECONNABORTED"
ECONNREFUSED = "ECONNREFUSED"
ECONNRESET = "ECONNRESET"
ENOTFOUND = "ENOTFOUND"
ENETUNREACH = "ENETUNREACH"
EHOSTUNREACH = "EHOSTUNREACH"
ESSL = "ESSL"
ERESPONSETIMEOUT = "ERESPONSETIMEOUT"

TIMEOUT_CODES = frozenset({ETIMEDOUT, ECONNABORTED, ERESPONSETIMEOUT})
TRANSPORT_CODES = frozenset(
    {
        ETIMEDOUT,
        ECONNABORTED,
        ECONNREFUSED,
        ECONNRESET,
        ENOTFOUND,
        ENETUNREACH,
        EHOSTUNREACH,
        ERESPONSETIMEOUT,
        "EAI_NONAME",
        "EAI_AGAIN",
    }
)

_ERRNO_CODES = {
    errno.ETIMEDOUT: ETIMEDOUT,
    errno.ECONNREFUSED: ECONNREFUSED,
    errno.ECONNRESET: ECONNRESET,
    errno.ECONNABORTED: ECONNABORTED,
    errno.ENETUNREACH: ENETUNREACH,
    errno.EHOSTUNREACH: EHOSTUNREACH,
}

# Message fragments seen inside httpx.ConnectError and friends
_MESSAGE_CODES = [
    (re.compile(r"name or service not known|getaddrinfo|nodename nor servname|temporary failure in name resolution", re.I), ENOTFOUND),
    (re.compile(r"connection refused", re.I), ECONNREFUSED),
    (re.compile(r"connection reset", re.I), ECONNRESET),
    (re.compile(r"network is unreachable", re.I), ENETUNREACH),
    (re.compile(r"no route to host", re.I), EHOSTUNREACH),
    (re.compile(r"certificate|ssl", re.I), ESSL),
]

_RETRY_DELAY = re.compile(r"^\s*(\d+(?:\.\d+)?)s\s*$")

MAX_CAUSE_DEPTH = 3


@dataclass
class FailureSignature:
    """Facts extracted from a raw failure."""

    error: BaseException
    message: str = ""
    code: Optional[str] = None
    status: Optional[int] = None
    provider_code: Optional[str] = None
    provider_message: str = ""
    retry_after_ms: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Lower-cased message and provider details for substring matching."""
        parts = [self.message, self.provider_message, self.provider_code or ""]
        return " ".join(p for p in parts if p).lower()

    def mentions(self, *fragments: str) -> bool:
        text = self.text
        return any(fragment.lower() in text for fragment in fragments)

    @property
    def is_transport(self) -> bool:
        return self.code in TRANSPORT_CODES

    @property
    def is_timeout(self) -> bool:
        return self.code in TIMEOUT_CODES

    @classmethod
    def from_exception(cls, error: BaseException) -> "FailureSignature":
        """Build a signature from any exception."""
        response = _find_response(error)
        status = _status_of(error, response)
        payload = _payload_of(error, response)
        provider_code, provider_message = _provider_details(payload)

        return cls(
            error=error,
            message=str(error) or error.__class__.__name__,
            code=_transport_code(error),
            status=status,
            provider_code=provider_code,
            provider_message=provider_message,
            retry_after_ms=_retry_after_ms(error, response, payload),
            payload=payload,
        )


def _transport_code(error: BaseException, depth: int = 0) -> Optional[str]:
    """Map an exception (or its cause chain) to a symbolic transport code."""
    explicit = getattr(error, "code", None)
    if isinstance(explicit, str) and explicit.isupper():
        return explicit

    if isinstance(error, (httpx.ConnectTimeout, httpx.PoolTimeout)):
        return ETIMEDOUT
    if isinstance(error, (httpx.ReadTimeout, httpx.WriteTimeout)):
        return ERESPONSETIMEOUT
    if isinstance(error, httpx.TimeoutException):
        return ETIMEDOUT
    if isinstance(error, ssl.SSLError):
        return ESSL
    if isinstance(error, socket.gaierror):
        return ENOTFOUND
    if isinstance(error, ConnectionRefusedError):
        return ECONNREFUSED
    if isinstance(error, ConnectionResetError):
        return ECONNRESET
    if isinstance(error, ConnectionAbortedError):
        return ECONNABORTED
    if isinstance(error, TimeoutError):
        return ETIMEDOUT
    if isinstance(error, OSError) and error.errno in _ERRNO_CODES:
        return _ERRNO_CODES[error.errno]

    if isinstance(error, (httpx.TransportError, OSError)):
        message = str(error)
        for pattern, code in _MESSAGE_CODES:
            if pattern.search(message):
                return code

    cause = error.__cause__ or error.__context__
    if cause is not None and depth < MAX_CAUSE_DEPTH:
        found = _transport_code(cause, depth + 1)
        if found:
            return found

    if isinstance(error, httpx.RemoteProtocolError):
        return ECONNRESET
    if isinstance(error, httpx.ConnectError):
        return ECONNREFUSED
    return None


def _find_response(error: BaseException) -> Optional[Any]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response
    return getattr(error, "response", None)


def _status_of(error: BaseException, response: Optional[Any]) -> Optional[int]:
    for candidate in (
        getattr(response, "status_code", None),
        getattr(response, "status", None),
        getattr(error, "status_code", None),
        getattr(error, "status", None),
    ):
        if isinstance(candidate, int) and not isinstance(candidate, bool):
            return candidate
    numeric_code = getattr(error, "code", None)
    if isinstance(numeric_code, int) and 100 <= numeric_code <= 599:
        return numeric_code
    return None


def _payload_of(error: BaseException, response: Optional[Any]) -> Dict[str, Any]:
    if isinstance(response, httpx.Response):
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            return data
    for attr in ("data", "body"):
        data = getattr(error, attr, None)
        if isinstance(data, dict):
            return data
    return {}


def _provider_details(payload: Mapping[str, Any]) -> tuple[Optional[str], str]:
    """Pull the provider's own error code and message.

    Handles both OAuth token endpoint bodies (``{"error": "invalid_grant"}``)
    and Google API bodies (``{"error": {"errors": [{"reason": ...}]}}``).
    """
    err = payload.get("error")
    if isinstance(err, str):
        return err, str(payload.get("error_description", ""))
    if isinstance(err, dict):
        reason = None
        errors = err.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            reason = errors[0].get("reason")
        reason = reason or err.get("status")
        return reason, str(err.get("message", ""))
    code = payload.get("code")
    return (str(code) if code is not None else None), str(payload.get("message", ""))


def _retry_after_ms(
    error: BaseException,
    response: Optional[Any],
    payload: Mapping[str, Any],
) -> Optional[int]:
    headers = getattr(response, "headers", None)
    if headers is not None:
        raw = headers.get("retry-after")
        if raw:
            parsed = _parse_retry_after(raw)
            if parsed is not None:
                return parsed

    attr = getattr(error, "retry_after", None)
    if isinstance(attr, (int, float)) and attr >= 0:
        return int(attr * 1000)

    # google.rpc.RetryInfo carried in the error body
    err = payload.get("error")
    if isinstance(err, dict):
        for detail in err.get("details") or []:
            if isinstance(detail, dict) and "retryDelay" in detail:
                match = _RETRY_DELAY.match(str(detail["retryDelay"]))
                if match:
                    return int(float(match.group(1)) * 1000)
    return None


def _parse_retry_after(raw: str) -> Optional[int]:
    raw = raw.strip()
    try:
        return max(0, int(float(raw) * 1000))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - datetime.now(timezone.utc)).total_seconds()
    return max(0, int(delta * 1000))
