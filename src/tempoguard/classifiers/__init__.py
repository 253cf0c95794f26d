"""Domain error classifiers sharing one output shape."""

from typing import Optional

from tempoguard.classifiers.ai_service import AIServiceErrorClassifier
from tempoguard.classifiers.auth import AuthErrorClassifier
from tempoguard.classifiers.base import (
    ClassificationRule,
    ErrorClassifier,
    StatusProvider,
    is_offline,
)
from tempoguard.classifiers.calendar_api import CalendarAPIErrorClassifier, GoogleService
from tempoguard.classifiers.network import NetworkErrorClassifier, offline_classification
from tempoguard.classifiers.signature import FailureSignature
from tempoguard.errors import FailureDomain

_CLASSIFIERS = {
    FailureDomain.NETWORK: NetworkErrorClassifier,
    FailureDomain.AUTHENTICATION: AuthErrorClassifier,
    FailureDomain.AI_SERVICE: AIServiceErrorClassifier,
    FailureDomain.CALENDAR_API: CalendarAPIErrorClassifier,
}


def get_classifier(
    domain: FailureDomain,
    status_provider: Optional[StatusProvider] = None,
    **options,
) -> ErrorClassifier:
    """Build the classifier for a failure domain.

    Args:
        domain: Failure domain.
        status_provider: Callable returning the current network status.
        **options: Domain-specific options (``refresh_available`` for
            authentication, ``service`` for the calendar API).

    Returns:
        A new classifier instance.
    """
    try:
        classifier_cls = _CLASSIFIERS[FailureDomain(domain)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown failure domain: {domain}")
    return classifier_cls(status_provider=status_provider, **options)


__all__ = [
    "AIServiceErrorClassifier",
    "AuthErrorClassifier",
    "CalendarAPIErrorClassifier",
    "ClassificationRule",
    "ErrorClassifier",
    "FailureSignature",
    "GoogleService",
    "NetworkErrorClassifier",
    "StatusProvider",
    "get_classifier",
    "is_offline",
    "offline_classification",
]
