"""Error taxonomy and exception hierarchy for TempoGuard.

Provides:
- Failure domains and the bounded taxonomy of error kinds
- Error families that drive the retry decision
- ``ClassifiedError``, the single output shape shared by every classifier
- Exceptions surfaced to callers once automatic recovery is exhausted
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

PROGRESS_SAVED_NOTICE = "Your progress has been saved."


# ============================================================================
# Taxonomy
# ============================================================================


class FailureDomain(str, Enum):
    """Operational domains with their own classification tables."""

    NETWORK = "network"
    AUTHENTICATION = "authentication"
    AI_SERVICE = "ai_service"
    CALENDAR_API = "calendar_api"


class ErrorFamily(str, Enum):
    """Families that decide how a kind is recovered."""

    TRANSIENT_TRANSPORT = "transient_transport"  # retry, short delay
    THROTTLING = "throttling"  # retry, provider-directed delay
    CREDENTIAL = "credential"  # refresh once, else re-authenticate
    TERMINAL_SEMANTIC = "terminal_semantic"  # never retry
    CANCELLATION = "cancellation"  # caller aborted
    UNCLASSIFIED = "unclassified"  # bounded, cautious retry


class ErrorKind(str, Enum):
    """Every kind a classifier may emit, across all domains."""

    # Transport
    CONNECTION_TIMEOUT = "connection_timeout"
    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_RESET = "connection_reset"
    DNS_RESOLUTION_FAILED = "dns_resolution_failed"
    NETWORK_UNREACHABLE = "network_unreachable"
    REQUEST_TIMEOUT = "request_timeout"
    SLOW_NETWORK = "slow_network"
    OFFLINE = "offline"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    MODEL_UNAVAILABLE = "model_unavailable"

    # Throttling
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    QUOTA_EXCEEDED = "quota_exceeded"

    # Credentials
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    REFRESH_TOKEN_EXPIRED = "refresh_token_expired"
    REFRESH_TOKEN_INVALID = "refresh_token_invalid"
    INSUFFICIENT_SCOPES = "insufficient_scopes"
    AUTHENTICATION_REQUIRED = "authentication_required"
    AUTHENTICATION_ERROR = "authentication_error"

    # Terminal semantic
    SSL_ERROR = "ssl_error"
    PERMISSION_DENIED = "permission_denied"
    RESOURCE_NOT_FOUND = "resource_not_found"
    INVALID_REQUEST = "invalid_request"
    CONTENT_FILTERED = "content_filtered"
    TOKEN_LIMIT_EXCEEDED = "token_limit_exceeded"
    GENERATION_STOPPED = "generation_stopped"
    PROVIDER_ERROR = "provider_error"

    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def family(self) -> ErrorFamily:
        """Family this kind belongs to."""
        return KIND_FAMILIES[self]


KIND_FAMILIES: Dict[ErrorKind, ErrorFamily] = {
    ErrorKind.CONNECTION_TIMEOUT: ErrorFamily.TRANSIENT_TRANSPORT,
    ErrorKind.CONNECTION_REFUSED: ErrorFamily.TRANSIENT_TRANSPORT,
    ErrorKind.CONNECTION_RESET: ErrorFamily.TRANSIENT_TRANSPORT,
    ErrorKind.DNS_RESOLUTION_FAILED: ErrorFamily.TRANSIENT_TRANSPORT,
    ErrorKind.NETWORK_UNREACHABLE: ErrorFamily.TRANSIENT_TRANSPORT,
    ErrorKind.REQUEST_TIMEOUT: ErrorFamily.TRANSIENT_TRANSPORT,
    ErrorKind.SLOW_NETWORK: ErrorFamily.TRANSIENT_TRANSPORT,
    ErrorKind.OFFLINE: ErrorFamily.TRANSIENT_TRANSPORT,
    ErrorKind.NETWORK_ERROR: ErrorFamily.TRANSIENT_TRANSPORT,
    ErrorKind.TIMEOUT: ErrorFamily.TRANSIENT_TRANSPORT,
    ErrorKind.SERVICE_UNAVAILABLE: ErrorFamily.TRANSIENT_TRANSPORT,
    ErrorKind.MODEL_UNAVAILABLE: ErrorFamily.TRANSIENT_TRANSPORT,
    ErrorKind.RATE_LIMIT_EXCEEDED: ErrorFamily.THROTTLING,
    ErrorKind.QUOTA_EXCEEDED: ErrorFamily.THROTTLING,
    ErrorKind.TOKEN_EXPIRED: ErrorFamily.CREDENTIAL,
    ErrorKind.TOKEN_INVALID: ErrorFamily.CREDENTIAL,
    ErrorKind.REFRESH_TOKEN_EXPIRED: ErrorFamily.CREDENTIAL,
    ErrorKind.REFRESH_TOKEN_INVALID: ErrorFamily.CREDENTIAL,
    ErrorKind.INSUFFICIENT_SCOPES: ErrorFamily.CREDENTIAL,
    ErrorKind.AUTHENTICATION_REQUIRED: ErrorFamily.CREDENTIAL,
    ErrorKind.AUTHENTICATION_ERROR: ErrorFamily.CREDENTIAL,
    ErrorKind.SSL_ERROR: ErrorFamily.TERMINAL_SEMANTIC,
    ErrorKind.PERMISSION_DENIED: ErrorFamily.TERMINAL_SEMANTIC,
    ErrorKind.RESOURCE_NOT_FOUND: ErrorFamily.TERMINAL_SEMANTIC,
    ErrorKind.INVALID_REQUEST: ErrorFamily.TERMINAL_SEMANTIC,
    ErrorKind.CONTENT_FILTERED: ErrorFamily.TERMINAL_SEMANTIC,
    ErrorKind.TOKEN_LIMIT_EXCEEDED: ErrorFamily.TERMINAL_SEMANTIC,
    ErrorKind.GENERATION_STOPPED: ErrorFamily.TERMINAL_SEMANTIC,
    ErrorKind.PROVIDER_ERROR: ErrorFamily.TERMINAL_SEMANTIC,
    ErrorKind.CANCELLED: ErrorFamily.CANCELLATION,
    ErrorKind.UNKNOWN: ErrorFamily.UNCLASSIFIED,
}

# Kinds that mean "there is no connectivity at all"
CONNECTIVITY_KINDS = frozenset({ErrorKind.OFFLINE, ErrorKind.NETWORK_UNREACHABLE})


# ============================================================================
# Classification result
# ============================================================================


class ClassifiedError(BaseModel):
    """Structured description of a raw failure.

    ``retryable=False`` means the executor never loops on it; a present
    ``retry_after_ms`` always overrides the computed backoff delay.
    ``suggested_delay_ms`` is the domain's typical recovery time, shown to
    users; it never changes the executor's schedule.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: ErrorKind
    domain: FailureDomain
    message: str
    retryable: bool
    retry_after_ms: Optional[int] = Field(default=None, ge=0)
    suggested_delay_ms: Optional[int] = Field(default=None, ge=0)
    fallback_available: bool = False
    preserve_state: bool = False
    recovery_options: List[str] = Field(default_factory=list)
    user_feedback: str = ""
    requires_user_action: bool = False
    status_code: Optional[int] = None
    original_error: Optional[BaseException] = Field(default=None, exclude=True, repr=False)

    @property
    def family(self) -> ErrorFamily:
        return self.kind.family

    @property
    def is_connectivity_loss(self) -> bool:
        return self.kind in CONNECTIVITY_KINDS

    def grouped_recovery_options(self) -> Dict[str, List[str]]:
        """Split recovery options by who acts on them.

        Returns:
            ``immediate`` (retry/wait), ``alternative`` (fallback/alternative
            paths) and ``user_action`` (everything the user must do).
        """
        groups: Dict[str, List[str]] = {"immediate": [], "alternative": [], "user_action": []}
        for option in self.recovery_options:
            lowered = option.lower()
            if "retry" in lowered or "wait" in lowered:
                groups["immediate"].append(option)
            elif "fallback" in lowered or "alternative" in lowered:
                groups["alternative"].append(option)
            else:
                groups["user_action"].append(option)
        return groups

    def user_message(self) -> str:
        """Message suitable for direct display to an end user."""
        text = self.user_feedback or self.message
        if self.preserve_state:
            text = f"{text} {PROGRESS_SAVED_NOTICE}"
        return text

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "kind": self.kind.value,
            "domain": self.domain.value,
            "family": self.family.value,
            "message": self.message,
            "user_message": self.user_message(),
            "retryable": self.retryable,
            "retry_after_ms": self.retry_after_ms,
            "suggested_delay_ms": self.suggested_delay_ms,
            "fallback_available": self.fallback_available,
            "preserve_state": self.preserve_state,
            "progress_saved": self.preserve_state,
            "requires_user_action": self.requires_user_action,
            "recovery_options": list(self.recovery_options),
            "grouped_recovery_options": self.grouped_recovery_options(),
        }


# ============================================================================
# Exception Hierarchy
# ============================================================================


class TempoGuardError(Exception):
    """Base exception for all TempoGuard errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class ClassifiedFailure(TempoGuardError):
    """Automatic recovery is exhausted or inapplicable.

    Carries the last classification so callers can render its recovery
    options without inspecting the raw failure.
    """

    def __init__(
        self,
        classification: ClassifiedError,
        attempts: int = 1,
        operation: Optional[str] = None,
        code: str = "CLASSIFIED_FAILURE",
    ):
        super().__init__(
            classification.message,
            code=code,
            details={"kind": classification.kind.value, "attempts": attempts},
        )
        self.classification = classification
        self.attempts = attempts
        self.operation = operation

    @property
    def original_error(self) -> Optional[BaseException]:
        return self.classification.original_error

    def user_message(self) -> str:
        return self.classification.user_message()

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["operation"] = self.operation
        data["attempts"] = self.attempts
        data["error"] = self.classification.to_dict()
        return data


class OperationCancelled(ClassifiedFailure):
    """A deadline or cancellation signal aborted the operation."""

    def __init__(
        self,
        classification: ClassifiedError,
        attempts: int = 1,
        operation: Optional[str] = None,
    ):
        super().__init__(classification, attempts=attempts, operation=operation, code="CANCELLED")


class OperationQueued(ClassifiedFailure):
    """The operation was parked in the offline queue until connectivity returns."""

    def __init__(
        self,
        classification: ClassifiedError,
        queued_operation_id: str,
        attempts: int = 1,
        operation: Optional[str] = None,
    ):
        super().__init__(classification, attempts=attempts, operation=operation, code="QUEUED")
        self.queued_operation_id = queued_operation_id
        self.details["queued_operation_id"] = queued_operation_id


class FallbacksDisabledError(TempoGuardError):
    """A fallback was requested while fallbacks are turned off."""

    def __init__(self, message: str = "Service unavailable and fallbacks disabled"):
        super().__init__(message, code="FALLBACKS_DISABLED")


class ConfigurationError(TempoGuardError):
    """Configuration errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class QueueFullError(TempoGuardError):
    """The offline queue reached its capacity."""

    def __init__(self, max_size: int):
        super().__init__(
            f"Offline queue is full ({max_size} operations)",
            code="QUEUE_FULL",
            details={"max_size": max_size},
        )


def cancellation_error(domain: FailureDomain, reason: str) -> ClassifiedError:
    """Build the classification used when a caller aborts a wait."""
    return ClassifiedError(
        kind=ErrorKind.CANCELLED,
        domain=domain,
        message=f"Operation cancelled: {reason}",
        retryable=False,
        fallback_available=False,
        preserve_state=True,
        recovery_options=["Retry the operation"],
        user_feedback="The operation was cancelled before it could finish.",
    )
