"""Shared classifier contract.

Every domain classifier maps a raw failure to a ``ClassifiedError`` using its
own rule table. The tables differ; the output shape and the treatment of
unrecognised failures do not.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional

from tempoguard.classifiers.signature import FailureSignature
from tempoguard.errors import ClassifiedError, ClassifiedFailure, ErrorKind, FailureDomain
from tempoguard.logging import get_logger

if TYPE_CHECKING:
    from tempoguard.connectivity import NetworkStatus

logger = get_logger(__name__, component="classifier")

StatusProvider = Callable[[], "NetworkStatus"]


@dataclass(frozen=True)
class ClassificationRule:
    """One row of a domain classification table."""

    kind: ErrorKind
    message: str
    retryable: bool
    retry_after_ms: Optional[int] = None
    suggested_delay_ms: Optional[int] = None
    fallback_available: bool = False
    preserve_state: bool = False
    user_feedback: str = ""
    requires_user_action: bool = False
    recovery_options: List[str] = field(default_factory=list)

    def build(
        self,
        domain: FailureDomain,
        signature: Optional[FailureSignature] = None,
        use_provider_hint: bool = False,
        **overrides,
    ) -> ClassifiedError:
        """Instantiate a classification from this rule.

        Args:
            domain: Domain that produced the classification.
            signature: Source signature (for status code and retry hints).
            use_provider_hint: Prefer the provider's advertised retry delay
                over the rule's default.
            **overrides: Field overrides applied last.
        """
        retry_after = self.retry_after_ms
        if use_provider_hint and signature is not None and signature.retry_after_ms is not None:
            retry_after = signature.retry_after_ms

        values = {
            "kind": self.kind,
            "domain": domain,
            "message": self.message,
            "retryable": self.retryable,
            "retry_after_ms": retry_after if self.retryable else None,
            "suggested_delay_ms": self.suggested_delay_ms,
            "fallback_available": self.fallback_available,
            "preserve_state": self.preserve_state,
            "recovery_options": list(self.recovery_options),
            "user_feedback": self.user_feedback,
            "requires_user_action": self.requires_user_action,
            "status_code": signature.status if signature is not None else None,
        }
        values.update(overrides)
        return ClassifiedError(**values)


OFFLINE_RULE = ClassificationRule(
    kind=ErrorKind.OFFLINE,
    message="No internet connection",
    retryable=True,
    suggested_delay_ms=10000,
    preserve_state=True,
    user_feedback="You appear to be offline. Your request will be processed when the connection is restored.",
    recovery_options=[
        "Wait for the connection to be restored",
        "Check your Wi-Fi or network cable",
        "Retry once you are back online",
    ],
)


def is_offline(status: Optional["NetworkStatus"]) -> bool:
    """Whether a network status means there is no connectivity at all.

    Independent of any error text: a failure raised while the monitor
    reports offline is treated as a connectivity loss.
    """
    if status is None:
        return False
    return not status.is_online or status.connection_class.value == "offline"


class ErrorClassifier(ABC):
    """Maps raw failures of one domain to ``ClassifiedError``.

    Subclasses supply ``_classify``. The base handles already-classified
    failures, transport failures raised while offline, and the uniform
    fallback for unrecognised errors.
    """

    domain: FailureDomain

    UNKNOWN_RULE = ClassificationRule(
        kind=ErrorKind.UNKNOWN,
        message="Unknown error",
        retryable=True,
        preserve_state=True,
        user_feedback="Something went wrong. Retrying...",
        recovery_options=["Retry the operation", "Contact support if the issue persists"],
    )

    def __init__(self, status_provider: Optional[StatusProvider] = None):
        """Initialize classifier.

        Args:
            status_provider: Callable returning the current network status,
                used to recognise failures raised while offline.
        """
        self._status_provider = status_provider

    def classify(self, raw: BaseException) -> ClassifiedError:
        """Classify a raw failure.

        Args:
            raw: Exception raised by the operation.

        Returns:
            Classification for this domain.
        """
        if isinstance(raw, ClassifiedFailure):
            return raw.classification

        signature = FailureSignature.from_exception(raw)
        classification = self._classify(signature)
        # A transport failure while the monitor reports offline is a
        # connectivity loss in every domain; the domain's fallback still applies
        if signature.is_transport and self.is_offline():
            classification = OFFLINE_RULE.build(
                self.domain,
                signature,
                fallback_available=classification is not None and classification.fallback_available,
            )
        if classification is None:
            classification = self._classify_unknown(signature)

        classification.original_error = raw

        logger.debug(
            "error_classified",
            domain=self.domain.value,
            kind=classification.kind.value,
            retryable=classification.retryable,
            status=signature.status,
            code=signature.code,
        )
        return classification

    def is_offline(self, status: Optional["NetworkStatus"] = None) -> bool:
        """Whether the given (or current) network status is offline."""
        if status is None and self._status_provider is not None:
            status = self._status_provider()
        return is_offline(status)

    @abstractmethod
    def _classify(self, signature: FailureSignature) -> Optional[ClassifiedError]:
        """Domain-specific mapping. Return None for unrecognised failures."""

    def _classify_unknown(self, signature: FailureSignature) -> ClassifiedError:
        # HTTP responses outside the table are never "unknown": 5xx is a
        # provider outage, any other status is a request the provider rejected.
        if signature.status is not None:
            if signature.status >= 500:
                return ClassificationRule(
                    kind=ErrorKind.SERVICE_UNAVAILABLE,
                    message=f"Service error (HTTP {signature.status})",
                    retryable=True,
                    suggested_delay_ms=5000,
                    fallback_available=True,
                    preserve_state=True,
                    user_feedback="The service is temporarily unavailable. Retrying...",
                    recovery_options=["Retry later", "Use fallback methods"],
                ).build(self.domain, signature)
            return ClassificationRule(
                kind=ErrorKind.PROVIDER_ERROR,
                message=f"Request rejected (HTTP {signature.status}): {signature.provider_message or signature.message}",
                retryable=False,
                fallback_available=True,
                recovery_options=["Check request parameters", "Contact support"],
            ).build(self.domain, signature)

        logger.warning(
            "error_classification_unknown",
            domain=self.domain.value,
            error_type=signature.error.__class__.__name__,
            error=signature.message,
        )
        return self.UNKNOWN_RULE.build(self.domain, signature, message=signature.message or "Unknown error")
