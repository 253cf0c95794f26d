"""External calendar API classifier (Calendar, Gmail, People).

Google APIs signal throttling with a 403 and a ``reason`` in the error body,
so the reason is checked before the status decides between quota, rate
limit and permission failures.
"""

from enum import Enum
from typing import Optional

from tempoguard.classifiers.base import ClassificationRule, ErrorClassifier, StatusProvider
from tempoguard.classifiers.signature import FailureSignature
from tempoguard.errors import ClassifiedError, ErrorKind, FailureDomain

QUOTA_DEFAULT_MS = 60000
RATE_LIMIT_DEFAULT_MS = 30000

QUOTA_REASONS = frozenset({"quotaexceeded", "dailylimitexceeded"})
RATE_LIMIT_REASONS = frozenset({"ratelimitexceeded", "userratelimitexceeded"})


class GoogleService(str, Enum):
    """External services behind the calendar API domain."""

    CALENDAR = "calendar"
    GMAIL = "gmail"
    PEOPLE = "people"


class CalendarAPIErrorClassifier(ErrorClassifier):
    """Classifier for one external calendar/email/contacts service.

    Only the contacts service has a local fallback (format-based email
    validation); calendar and mail operations fall back only on outages.
    """

    domain = FailureDomain.CALENDAR_API

    def __init__(
        self,
        service: GoogleService = GoogleService.CALENDAR,
        status_provider: Optional[StatusProvider] = None,
    ):
        super().__init__(status_provider=status_provider)
        self.service = GoogleService(service)

    @property
    def has_fallback(self) -> bool:
        return self.service == GoogleService.PEOPLE

    def _classify(self, signature: FailureSignature) -> Optional[ClassifiedError]:
        service = self.service.value
        fallback = self.has_fallback

        if signature.is_timeout:
            return ClassificationRule(
                kind=ErrorKind.TIMEOUT,
                message=f"{service} service request timed out",
                retryable=True,
                suggested_delay_ms=3000,
                fallback_available=True,
                preserve_state=True,
                user_feedback=f"The {service} service is slow to respond. Retrying...",
                recovery_options=["Retry the operation", "Check internet connection"],
            ).build(self.domain, signature)
        if signature.is_transport:
            return ClassificationRule(
                kind=ErrorKind.NETWORK_ERROR,
                message=f"Network connection to {service} service failed",
                retryable=True,
                suggested_delay_ms=5000,
                fallback_available=True,
                preserve_state=True,
                user_feedback=f"The {service} service could not be reached. Retrying...",
                recovery_options=["Check internet connection", "Retry the operation"],
            ).build(self.domain, signature)

        status = signature.status
        if status is None:
            return None

        reason = (signature.provider_code or "").lower()
        detail = signature.provider_message or signature.message

        if status == 401:
            return ClassificationRule(
                kind=ErrorKind.AUTHENTICATION_ERROR,
                message="Authentication failed - invalid or expired access token",
                retryable=False,
                fallback_available=fallback,
                preserve_state=True,
                requires_user_action=True,
                user_feedback="Please reconnect your Google account.",
                recovery_options=["Re-authenticate with Google", "Check API credentials"],
            ).build(self.domain, signature)

        if status in (403, 429):
            if reason in QUOTA_REASONS or signature.mentions("quota"):
                return ClassificationRule(
                    kind=ErrorKind.QUOTA_EXCEEDED,
                    message=f"{service} API quota exceeded",
                    retryable=True,
                    retry_after_ms=QUOTA_DEFAULT_MS,
                    fallback_available=fallback,
                    user_feedback="Usage limits were reached. Retrying shortly...",
                    recovery_options=["Wait for quota reset", "Use fallback validation"],
                ).build(self.domain, signature, use_provider_hint=True)
            if status == 429 or reason in RATE_LIMIT_REASONS or signature.mentions("rate limit"):
                return ClassificationRule(
                    kind=ErrorKind.RATE_LIMIT_EXCEEDED,
                    message=f"{service} API rate limit exceeded",
                    retryable=True,
                    retry_after_ms=RATE_LIMIT_DEFAULT_MS,
                    fallback_available=fallback,
                    user_feedback="Too many requests right now. Retrying shortly...",
                    recovery_options=["Wait and retry", "Use fallback validation"],
                ).build(self.domain, signature, use_provider_hint=True)
            return ClassificationRule(
                kind=ErrorKind.PERMISSION_DENIED,
                message=f"Insufficient permissions for {service} service",
                retryable=False,
                fallback_available=fallback,
                requires_user_action=True,
                user_feedback="Additional permissions are needed for this action.",
                recovery_options=["Grant required permissions", "Use fallback methods"],
            ).build(self.domain, signature)

        if status == 404:
            return ClassificationRule(
                kind=ErrorKind.RESOURCE_NOT_FOUND,
                message=f"Requested {service} resource not found",
                retryable=False,
                fallback_available=fallback,
                recovery_options=["Verify resource exists", "Use alternative approach"],
            ).build(self.domain, signature)

        if status == 400:
            return ClassificationRule(
                kind=ErrorKind.INVALID_REQUEST,
                message=f"Invalid request to {service} service: {detail}",
                retryable=False,
                fallback_available=True,
                recovery_options=["Check request parameters", "Use fallback validation"],
            ).build(self.domain, signature)

        if status >= 500:
            return ClassificationRule(
                kind=ErrorKind.SERVICE_UNAVAILABLE,
                message=f"{service} service temporarily unavailable",
                retryable=True,
                suggested_delay_ms=10000,
                fallback_available=True,
                preserve_state=True,
                user_feedback=f"The {service} service is temporarily unavailable. Retrying...",
                recovery_options=["Retry later", "Use fallback methods"],
            ).build(self.domain, signature)

        return None

    def _classify_unknown(self, signature: FailureSignature) -> ClassifiedError:
        classification = super()._classify_unknown(signature)
        if classification.kind == ErrorKind.PROVIDER_ERROR:
            classification.fallback_available = self.has_fallback
        return classification
