"""Generative AI service classifier.

Every AI failure has a deterministic fallback (a canned response, a
templated agenda), so ``fallback_available`` is always set here.
"""

from typing import Optional

from tempoguard.classifiers.base import ClassificationRule, ErrorClassifier
from tempoguard.classifiers.signature import FailureSignature
from tempoguard.errors import ClassifiedError, ErrorKind, FailureDomain

RATE_LIMIT_DEFAULT_MS = 30000
QUOTA_DEFAULT_MS = 60000

TIMEOUT_RULE = ClassificationRule(
    kind=ErrorKind.TIMEOUT,
    message="Request timed out",
    retryable=True,
    suggested_delay_ms=2000,
    fallback_available=True,
    preserve_state=True,
    user_feedback="The assistant is taking longer than usual. Retrying...",
    recovery_options=["Retry the request", "Use fallback response"],
)

NETWORK_RULE = ClassificationRule(
    kind=ErrorKind.NETWORK_ERROR,
    message="Network connection failed",
    retryable=True,
    suggested_delay_ms=3000,
    fallback_available=True,
    preserve_state=True,
    user_feedback="The assistant could not be reached. Retrying...",
    recovery_options=["Check internet connection", "Retry the request"],
)

CONTENT_FILTER_RULE = ClassificationRule(
    kind=ErrorKind.CONTENT_FILTERED,
    message="Content was blocked by safety filters",
    retryable=False,
    fallback_available=True,
    user_feedback="That request couldn't be processed. Try rephrasing it.",
    recovery_options=["Rephrase the request", "Use an alternative wording"],
)

INVALID_REQUEST_RULE = ClassificationRule(
    kind=ErrorKind.INVALID_REQUEST,
    message="Invalid request format",
    retryable=False,
    fallback_available=True,
    recovery_options=["Rephrase the request"],
)

AUTH_RULE = ClassificationRule(
    kind=ErrorKind.AUTHENTICATION_ERROR,
    message="Invalid API key or authentication failed",
    retryable=False,
    fallback_available=True,
    recovery_options=["Use fallback response", "Contact support"],
)

QUOTA_RULE = ClassificationRule(
    kind=ErrorKind.QUOTA_EXCEEDED,
    message="AI service quota exceeded",
    retryable=True,
    retry_after_ms=QUOTA_DEFAULT_MS,
    fallback_available=True,
    user_feedback="The assistant has reached its usage limit. Retrying shortly...",
    recovery_options=["Wait and retry", "Use fallback response"],
)

RATE_LIMIT_RULE = ClassificationRule(
    kind=ErrorKind.RATE_LIMIT_EXCEEDED,
    message="AI service rate limit exceeded",
    retryable=True,
    retry_after_ms=RATE_LIMIT_DEFAULT_MS,
    fallback_available=True,
    user_feedback="The assistant is busy. Retrying shortly...",
    recovery_options=["Wait and retry", "Use fallback response"],
)

MODEL_UNAVAILABLE_RULE = ClassificationRule(
    kind=ErrorKind.MODEL_UNAVAILABLE,
    message="Model not available",
    retryable=True,
    suggested_delay_ms=5000,
    fallback_available=True,
    recovery_options=["Retry with fallback model", "Use fallback response"],
)

TOKEN_LIMIT_RULE = ClassificationRule(
    kind=ErrorKind.TOKEN_LIMIT_EXCEEDED,
    message="Token limit exceeded",
    retryable=False,
    fallback_available=True,
    user_feedback="That request is too long. Try a shorter message.",
    recovery_options=["Shorten the request", "Use fallback response"],
)

SERVICE_UNAVAILABLE_RULE = ClassificationRule(
    kind=ErrorKind.SERVICE_UNAVAILABLE,
    message="AI service temporarily unavailable",
    retryable=True,
    suggested_delay_ms=10000,
    fallback_available=True,
    preserve_state=True,
    user_feedback="The assistant is temporarily unavailable. Retrying...",
    recovery_options=["Retry later", "Use fallback response"],
)

GENERATION_STOPPED_RULE = ClassificationRule(
    kind=ErrorKind.GENERATION_STOPPED,
    message="Generation stopped by the model",
    retryable=False,
    fallback_available=True,
    recovery_options=["Rephrase the request", "Use fallback response"],
)

PROVIDER_RULE = ClassificationRule(
    kind=ErrorKind.PROVIDER_ERROR,
    message="AI service rejected the request",
    retryable=False,
    fallback_available=True,
    recovery_options=["Use fallback response", "Contact support"],
)


class AIServiceErrorClassifier(ErrorClassifier):
    """Classifier for the generative AI provider."""

    domain = FailureDomain.AI_SERVICE

    def _classify(self, signature: FailureSignature) -> Optional[ClassifiedError]:
        if signature.is_timeout:
            return TIMEOUT_RULE.build(self.domain, signature)
        if signature.is_transport:
            return NETWORK_RULE.build(self.domain, signature)

        status = signature.status
        if status == 400:
            if signature.mentions("safety", "content filter", "blocked"):
                return CONTENT_FILTER_RULE.build(self.domain, signature)
            if signature.mentions("invalid", "malformed"):
                return INVALID_REQUEST_RULE.build(self.domain, signature)
            return PROVIDER_RULE.build(self.domain, signature, message="Bad request to AI service")
        if status == 401:
            return AUTH_RULE.build(self.domain, signature)
        if status == 403:
            if signature.mentions("quota", "limit"):
                return QUOTA_RULE.build(self.domain, signature, use_provider_hint=True)
            return AUTH_RULE.build(self.domain, signature, message="Access forbidden to AI service")
        if status == 404:
            if signature.mentions("model", "not found"):
                return MODEL_UNAVAILABLE_RULE.build(self.domain, signature)
            return PROVIDER_RULE.build(self.domain, signature, message="AI service endpoint not found")
        if status == 413:
            return TOKEN_LIMIT_RULE.build(self.domain, signature)
        if status == 429:
            if signature.mentions("quota"):
                return QUOTA_RULE.build(self.domain, signature, use_provider_hint=True)
            return RATE_LIMIT_RULE.build(self.domain, signature, use_provider_hint=True)
        if status is not None and status >= 500:
            return SERVICE_UNAVAILABLE_RULE.build(self.domain, signature)

        # Provider SDK errors that carry no status
        if "STOP" in signature.message or signature.mentions("generation stopped"):
            return GENERATION_STOPPED_RULE.build(self.domain, signature)
        if signature.mentions("token") and signature.mentions("limit", "exceeded"):
            return TOKEN_LIMIT_RULE.build(self.domain, signature)
        if signature.mentions("timed out", "timeout"):
            return TIMEOUT_RULE.build(self.domain, signature)
        return None

    def _classify_unknown(self, signature: FailureSignature) -> ClassifiedError:
        classification = super()._classify_unknown(signature)
        classification.fallback_available = True
        return classification
