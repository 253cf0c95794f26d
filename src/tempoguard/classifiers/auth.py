"""Authentication domain classifier.

Every authentication failure preserves state: the interrupted workflow must
be resumable once the user re-authenticates. An expired access token is
retryable only when an automatic refresh path exists.
"""

from typing import Optional

from tempoguard.classifiers.base import ClassificationRule, ErrorClassifier, StatusProvider
from tempoguard.classifiers.signature import FailureSignature
from tempoguard.errors import ClassifiedError, ErrorKind, FailureDomain

REAUTHENTICATE = "Re-authenticate with Google"

NETWORK_RULE = ClassificationRule(
    kind=ErrorKind.NETWORK_ERROR,
    message="Network connection failed during authentication",
    retryable=True,
    suggested_delay_ms=3000,
    preserve_state=True,
    user_feedback="We couldn't reach the sign-in service. Retrying...",
    recovery_options=["Retry authentication", "Check internet connection"],
)

TOKEN_INVALID_RULE = ClassificationRule(
    kind=ErrorKind.TOKEN_INVALID,
    message="Access token is invalid",
    retryable=False,
    preserve_state=True,
    requires_user_action=True,
    user_feedback="Please sign in again to continue.",
    recovery_options=[REAUTHENTICATE],
)

INSUFFICIENT_SCOPES_RULE = ClassificationRule(
    kind=ErrorKind.INSUFFICIENT_SCOPES,
    message="Insufficient permissions for requested operation",
    retryable=False,
    preserve_state=True,
    requires_user_action=True,
    user_feedback="Additional permissions are needed to continue.",
    recovery_options=["Re-authenticate with additional permissions"],
)

AUTH_REQUIRED_RULE = ClassificationRule(
    kind=ErrorKind.AUTHENTICATION_REQUIRED,
    message="Authentication required for this operation",
    retryable=False,
    preserve_state=True,
    requires_user_action=True,
    user_feedback="Please sign in to continue.",
    recovery_options=[REAUTHENTICATE],
)

REFRESH_INVALID_RULE = ClassificationRule(
    kind=ErrorKind.REFRESH_TOKEN_INVALID,
    message="Refresh token is invalid or expired",
    retryable=False,
    preserve_state=True,
    requires_user_action=True,
    user_feedback="Your session has ended. Please sign in again.",
    recovery_options=[REAUTHENTICATE],
)

SERVICE_UNAVAILABLE_RULE = ClassificationRule(
    kind=ErrorKind.SERVICE_UNAVAILABLE,
    message="Authentication service temporarily unavailable",
    retryable=True,
    suggested_delay_ms=5000,
    preserve_state=True,
    user_feedback="The sign-in service is temporarily unavailable. Retrying...",
    recovery_options=["Retry authentication", "Wait and try again"],
)


class AuthErrorClassifier(ErrorClassifier):
    """Classifier for OAuth and credential failures."""

    domain = FailureDomain.AUTHENTICATION

    def __init__(
        self,
        refresh_available: bool = False,
        status_provider: Optional[StatusProvider] = None,
    ):
        """Initialize classifier.

        Args:
            refresh_available: Whether the caller has a credential refresh hook. When
                False an expired token requires the user to sign in again.
            status_provider: Callable returning the current network status.
        """
        super().__init__(status_provider=status_provider)
        self.refresh_available = refresh_available

    def _token_expired(self, signature: FailureSignature) -> ClassifiedError:
        if self.refresh_available:
            rule = ClassificationRule(
                kind=ErrorKind.TOKEN_EXPIRED,
                message="Access token has expired",
                retryable=True,
                preserve_state=True,
                user_feedback="Refreshing your session...",
                recovery_options=["Refresh access token", "Re-authenticate if refresh fails"],
            )
        else:
            rule = ClassificationRule(
                kind=ErrorKind.TOKEN_EXPIRED,
                message="Access token has expired",
                retryable=False,
                preserve_state=True,
                requires_user_action=True,
                user_feedback="Your session has expired. Please sign in again.",
                recovery_options=[REAUTHENTICATE],
            )
        return rule.build(self.domain, signature)

    def _classify(self, signature: FailureSignature) -> Optional[ClassifiedError]:
        if signature.is_transport:
            return NETWORK_RULE.build(self.domain, signature)

        status = signature.status
        if status is None:
            if signature.mentions("invalid_grant"):
                return REFRESH_INVALID_RULE.build(self.domain, signature)
            if signature.mentions("token expired", "expired token"):
                return self._token_expired(signature)
            return None

        if status == 401:
            if signature.mentions("invalid_token", "expired"):
                return self._token_expired(signature)
            return TOKEN_INVALID_RULE.build(self.domain, signature)

        if status == 403:
            if signature.mentions("insufficient_scope"):
                return INSUFFICIENT_SCOPES_RULE.build(self.domain, signature)
            return AUTH_REQUIRED_RULE.build(self.domain, signature)

        if status == 400:
            if signature.mentions("invalid_grant", "refresh_token"):
                return REFRESH_INVALID_RULE.build(self.domain, signature)
            return TOKEN_INVALID_RULE.build(
                self.domain, signature, message="Invalid authentication request"
            )

        if status >= 500:
            return SERVICE_UNAVAILABLE_RULE.build(self.domain, signature)

        return ClassificationRule(
            kind=ErrorKind.AUTHENTICATION_ERROR,
            message=f"Unknown authentication error: {signature.provider_code or signature.message}",
            retryable=False,
            preserve_state=True,
            requires_user_action=True,
            recovery_options=[REAUTHENTICATE, "Contact support"],
        ).build(self.domain, signature)

    def _classify_unknown(self, signature: FailureSignature) -> ClassifiedError:
        classification = super()._classify_unknown(signature)
        classification.preserve_state = True
        classification.fallback_available = False
        return classification
