"""Network domain classifier.

Transport failures map to their own kinds with fixed retry delays; a failure
raised while the connectivity monitor reports offline is ``offline`` no
matter what its text says.
"""

from typing import Dict, Optional

from tempoguard.classifiers.base import OFFLINE_RULE, ClassificationRule, ErrorClassifier
from tempoguard.classifiers.signature import (
    ECONNABORTED,
    ECONNREFUSED,
    ECONNRESET,
    EHOSTUNREACH,
    ENETUNREACH,
    ENOTFOUND,
    ERESPONSETIMEOUT,
    ESSL,
    ETIMEDOUT,
    FailureSignature,
)
from tempoguard.errors import ClassifiedError, ErrorKind, FailureDomain

_TRANSIENT_OPTIONS = ["Retry the operation", "Check your internet connection"]

TIMEOUT_RULE = ClassificationRule(
    kind=ErrorKind.CONNECTION_TIMEOUT,
    message="Connection timed out",
    retryable=True,
    suggested_delay_ms=3000,
    preserve_state=True,
    user_feedback="The connection timed out. Retrying...",
    recovery_options=_TRANSIENT_OPTIONS,
)

REQUEST_TIMEOUT_RULE = ClassificationRule(
    kind=ErrorKind.REQUEST_TIMEOUT,
    message="Request timed out",
    retryable=True,
    suggested_delay_ms=5000,
    preserve_state=True,
    user_feedback="The request took too long. Retrying...",
    recovery_options=["Retry the operation", "Try again when your connection is faster"],
)

_CODE_RULES: Dict[str, ClassificationRule] = {
    ETIMEDOUT: TIMEOUT_RULE,
    ECONNABORTED: TIMEOUT_RULE,
    ERESPONSETIMEOUT: REQUEST_TIMEOUT_RULE,
    ECONNREFUSED: ClassificationRule(
        kind=ErrorKind.CONNECTION_REFUSED,
        message="Connection refused by the server",
        retryable=True,
        suggested_delay_ms=5000,
        preserve_state=True,
        user_feedback="The server is not accepting connections. Retrying...",
        recovery_options=["Retry the operation", "Wait a moment and try again"],
    ),
    ENOTFOUND: ClassificationRule(
        kind=ErrorKind.DNS_RESOLUTION_FAILED,
        message="Could not resolve the server address",
        retryable=True,
        suggested_delay_ms=5000,
        preserve_state=True,
        user_feedback="Unable to reach the server. Retrying...",
        recovery_options=["Check your internet connection", "Retry the operation"],
    ),
    ENETUNREACH: ClassificationRule(
        kind=ErrorKind.NETWORK_UNREACHABLE,
        message="Network is unreachable",
        retryable=True,
        suggested_delay_ms=10000,
        preserve_state=True,
        user_feedback="The network is unreachable. Your progress will be kept.",
        recovery_options=["Check your internet connection", "Wait for the connection to be restored"],
    ),
    ECONNRESET: ClassificationRule(
        kind=ErrorKind.CONNECTION_RESET,
        message="Connection was reset",
        retryable=True,
        suggested_delay_ms=2000,
        preserve_state=True,
        user_feedback="The connection was interrupted. Retrying...",
        recovery_options=_TRANSIENT_OPTIONS,
    ),
}
_CODE_RULES["EAI_NONAME"] = _CODE_RULES[ENOTFOUND]
_CODE_RULES["EAI_AGAIN"] = _CODE_RULES[ENOTFOUND]
_CODE_RULES[EHOSTUNREACH] = _CODE_RULES[ENETUNREACH]

SSL_RULE = ClassificationRule(
    kind=ErrorKind.SSL_ERROR,
    message="Secure connection failed",
    retryable=False,
    user_feedback="A secure connection could not be established.",
    recovery_options=["Check your system date and time", "Contact support if the issue persists"],
    requires_user_action=True,
)


class NetworkErrorClassifier(ErrorClassifier):
    """Classifier for connectivity and transport failures."""

    domain = FailureDomain.NETWORK

    def _classify(self, signature: FailureSignature) -> Optional[ClassifiedError]:
        if self.is_offline():
            return OFFLINE_RULE.build(self.domain, signature)

        if signature.code == ESSL:
            return SSL_RULE.build(self.domain, signature)

        rule = _CODE_RULES.get(signature.code) if signature.code else None
        if rule is not None:
            return rule.build(self.domain, signature)

        if signature.status is not None:
            if signature.status == 429:
                return ClassificationRule(
                    kind=ErrorKind.RATE_LIMIT_EXCEEDED,
                    message="Too many requests",
                    retryable=True,
                    retry_after_ms=30000,
                    preserve_state=True,
                    user_feedback="The service is busy. Retrying shortly...",
                    recovery_options=["Wait and retry"],
                ).build(self.domain, signature, use_provider_hint=True)
            if signature.status in (408, 504):
                return REQUEST_TIMEOUT_RULE.build(self.domain, signature)
            return None

        if signature.mentions("timed out", "timeout"):
            return TIMEOUT_RULE.build(self.domain, signature)
        if signature.mentions("offline", "no internet"):
            return OFFLINE_RULE.build(self.domain, signature)
        return None


def offline_classification(domain: FailureDomain = FailureDomain.NETWORK) -> ClassifiedError:
    """Classification for work refused up front because the monitor reports offline."""
    return OFFLINE_RULE.build(domain)
