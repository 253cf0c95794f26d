"""Deterministic fallback responses.

Used only after the executor has run out of options and the classification
says a fallback exists. Every method is side-effect free: the same kind and
context always produce the same output.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Pattern

from tempoguard.errors import ClassifiedError, ErrorKind, FailureDomain, FallbacksDisabledError
from tempoguard.logging import get_logger

logger = get_logger(__name__, component="fallbacks")

DEFAULT_MESSAGES: Dict[str, str] = {
    "general": "I'm having trouble processing that right now. Could you try rephrasing your request?",
    "meeting_intent": "I understand you'd like to schedule something. Could you provide more details about the meeting?",
    "title_generation": "Let me help you create a meeting title. What's the main purpose of this meeting?",
    "agenda_generation": "I'll help you create an agenda. What are the main topics you'd like to discuss?",
    "conversation_summary": "Recent conversation about meeting planning and scheduling.",
    "content_filter": "I can't process that request due to content guidelines. Could you rephrase your message?",
    "generation_stopped": "The response was interrupted. Please try asking your question differently.",
    "model_unavailable": "The AI model is temporarily unavailable. Please try again in a moment.",
    "calendar_unavailable": "Calendar service is temporarily unavailable. Please try again later.",
    "gmail_unavailable": (
        "Email service is temporarily unavailable. "
        "The meeting has been created but agenda emails could not be sent."
    ),
    "people_unavailable": (
        "Contact validation service is temporarily unavailable. "
        "Email addresses will be validated using basic format checking."
    ),
    "authentication_required": "Please re-authenticate with Google to continue.",
    "permission_denied": "Additional permissions are required to complete this action.",
    "quota_exceeded": "Google API quota exceeded. Please try again later.",
}

FALLBACK_TITLE_SUGGESTIONS = ["Team Meeting", "Discussion Session", "Project Sync"]

EMAIL_PATTERN: Pattern = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
TRUSTED_DOMAINS = ("gmail.com", "google.com", "googlemail.com")

# Message keyed by the kind of a terminal AI failure
_KIND_MESSAGES = {
    ErrorKind.CONTENT_FILTERED: "content_filter",
    ErrorKind.GENERATION_STOPPED: "generation_stopped",
    ErrorKind.MODEL_UNAVAILABLE: "model_unavailable",
}

FallbackFactory = Callable[[ErrorKind, "FallbackContext"], Any]


@dataclass
class FallbackContext:
    """Small context bundle a fallback is keyed on.

    Attributes:
        domain: Failure domain of the operation.
        operation: Operation name (``agenda_generation``, ``check_availability``...).
        service: External service for the calendar API domain.
        message_key: Message to use for plain-text AI fallbacks.
        data: Partial input (title, purpose, duration, email...).
        reference_time: Anchor for time-based suggestions. Falls back to a
            ``start_time`` datetime in ``data``.
    """

    domain: Optional[FailureDomain] = None
    operation: str = ""
    service: Optional[str] = None
    message_key: str = "general"
    data: Dict[str, Any] = field(default_factory=dict)
    reference_time: Optional[datetime] = None

    def anchor(self) -> Optional[datetime]:
        if self.reference_time is not None:
            return self.reference_time
        start = self.data.get("start_time")
        return start if isinstance(start, datetime) else None


class FallbackProvider:
    """Context-keyed stand-in output for failed operations."""

    def __init__(
        self,
        enabled: bool = True,
        messages: Optional[Dict[str, str]] = None,
        trusted_domains: Optional[List[str]] = None,
    ):
        """Initialize provider.

        Args:
            enabled: Whether fallbacks may be served at all.
            messages: Overrides for the default message catalogue.
            trusted_domains: Mail domains treated as Google accounts.
        """
        self.enabled = enabled
        self.messages = {**DEFAULT_MESSAGES, **(messages or {})}
        self.trusted_domains = tuple(trusted_domains or TRUSTED_DOMAINS)
        self._custom: Dict[str, FallbackFactory] = {}

    def register(self, operation: str, factory: FallbackFactory) -> None:
        """Register a fallback for an operation name.

        The factory must be deterministic; it receives the failure kind and
        the context.
        """
        self._custom[operation] = factory

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise FallbacksDisabledError()

    def has_fallback(self, kind: ErrorKind, context: Optional[FallbackContext] = None) -> bool:
        """Whether ``fallback_for`` would produce a value."""
        if not self.enabled:
            return False
        context = context or FallbackContext()
        if context.operation in self._custom:
            return True
        if context.domain == FailureDomain.AI_SERVICE:
            return True
        if context.domain == FailureDomain.CALENDAR_API:
            return context.operation not in ("", "create_event")
        return False

    def fallback_for(self, kind: ErrorKind, context: Optional[FallbackContext] = None) -> Optional[Any]:
        """Deterministic substitute for a failed operation.

        Args:
            kind: Classification kind of the failure.
            context: Context bundle (domain, operation, partial input).

        Returns:
            The fallback value, or None when this kind/context has none.

        Raises:
            FallbacksDisabledError: If fallbacks are disabled.
        """
        self._require_enabled()
        context = context or FallbackContext()

        custom = self._custom.get(context.operation)
        if custom is not None:
            return custom(kind, context)

        if context.domain == FailureDomain.AI_SERVICE:
            return self._ai_fallback(kind, context)
        if context.domain == FailureDomain.CALENDAR_API:
            return self._calendar_api_fallback(kind, context)
        return None

    def _ai_fallback(self, kind: ErrorKind, context: FallbackContext) -> Any:
        data = context.data
        if context.operation == "intent_extraction":
            return self.intent_extraction()
        if context.operation == "title_generation":
            return self.title_suggestions()
        if context.operation == "agenda_generation" and "purpose" in data:
            return self.agenda(
                data.get("title", "Meeting"),
                data["purpose"],
                int(data.get("duration", 60)),
            )
        if context.operation == "action_items" and "purpose" in data:
            return self.action_items(data["purpose"])

        key = _KIND_MESSAGES.get(kind, context.message_key)
        return self.response(key)

    def _calendar_api_fallback(self, kind: ErrorKind, context: FallbackContext) -> Optional[Any]:
        if context.operation in ("validate_email", "validate_emails"):
            if "emails" in context.data:
                return self.validate_emails(context.data["emails"])
            return self.validate_email(context.data.get("email", ""))
        if context.operation in ("", "create_event"):
            return None
        return self.calendar_fallback(context.operation, context.anchor())

    # ------------------------------------------------------------------
    # Generative AI fallbacks
    # ------------------------------------------------------------------

    def response(self, context_key: str = "general") -> str:
        """Canned reply for a conversational context."""
        self._require_enabled()
        return self.messages.get(context_key, self.messages["general"])

    def intent_extraction(self) -> Dict[str, Any]:
        """Neutral intent result: nothing recognised, zero confidence."""
        self._require_enabled()
        return {
            "intent": "other",
            "confidence": 0,
            "contextual_confidence": 0,
            "fields": {"participants": []},
            "missing": [],
            "extracted_fields": {"participants": []},
            "missing_fields": [],
        }

    def title_suggestions(self) -> Dict[str, Any]:
        self._require_enabled()
        return {"suggestions": list(FALLBACK_TITLE_SUGGESTIONS), "context": "General meeting"}

    def agenda(self, title: str, purpose: str, duration: int) -> str:
        """Templated agenda in Markdown.

        Args:
            title: Meeting title.
            purpose: Meeting purpose.
            duration: Meeting length in minutes.
        """
        self._require_enabled()
        discussion = max(duration - 15, 10)
        return (
            f"# {title}\n"
            f"\n"
            f"**Meeting Purpose:** {purpose}\n"
            f"**Duration:** {duration} minutes\n"
            f"\n"
            f"## Agenda Items\n"
            f"\n"
            f"1. **Welcome & Introductions** (5 minutes)\n"
            f"   - Brief introductions if needed\n"
            f"   - Review meeting objectives\n"
            f"\n"
            f"2. **Main Discussion** ({discussion} minutes)\n"
            f"   - {purpose}\n"
            f"   - Open discussion and questions\n"
            f"\n"
            f"3. **Next Steps & Wrap-up** (10 minutes)\n"
            f"   - Summary of key points\n"
            f"   - Action items and follow-up\n"
            f"   - Schedule next meeting if needed\n"
            f"\n"
            f"*This agenda was generated automatically. Please review and modify as needed.*"
        )

    def action_items(self, purpose: str) -> List[Dict[str, str]]:
        self._require_enabled()
        return [
            {
                "task": f"Follow up on {purpose}",
                "assignee": "TBD",
                "deadline": "Next week",
                "priority": "medium",
            },
            {
                "task": "Schedule follow-up meeting if needed",
                "assignee": "Meeting organizer",
                "deadline": "End of week",
                "priority": "low",
            },
        ]

    # ------------------------------------------------------------------
    # Calendar API fallbacks
    # ------------------------------------------------------------------

    def calendar_fallback(self, operation: str, reference_time: Optional[datetime] = None) -> Dict[str, Any]:
        """Fallback for a calendar operation.

        Args:
            operation: ``check_availability``, ``verify_access``,
                ``suggest_alternatives`` or any other operation name.
            reference_time: Anchor for suggested alternatives. Without one,
                ``suggest_alternatives`` returns no alternatives.

        Raises:
            FallbacksDisabledError: If fallbacks are disabled.
            ValueError: For ``create_event``, which has no meaningful fallback.
        """
        self._require_enabled()
        if operation == "check_availability":
            return {
                "is_available": True,
                "conflicts": [],
                "suggested_alternatives": [],
                "fallback_mode": True,
                "message": "Calendar availability check unavailable - proceeding with assumption of no conflicts",
            }
        if operation == "verify_access":
            return {
                "has_access": False,
                "token_valid": False,
                "needs_refresh": False,
                "scopes": [],
                "fallback_mode": True,
                "message": "Calendar access verification unavailable - continuing without calendar integration",
            }
        if operation == "suggest_alternatives" and reference_time is None:
            return {
                "alternatives": [],
                "fallback_mode": True,
                "message": "Time suggestions unavailable due to calendar service issues",
            }
        if operation == "suggest_alternatives":
            return {
                "alternatives": self.basic_time_alternatives(reference_time),
                "fallback_mode": True,
                "message": "Using basic time suggestions due to calendar service unavailability",
            }
        if operation == "create_event":
            raise ValueError("Calendar event creation has no fallback")
        return {
            "fallback_mode": True,
            "message": f"{operation} unavailable due to calendar service issues",
        }

    def basic_time_alternatives(self, reference_time: datetime) -> List[Dict[str, Any]]:
        """One hour later, two hours later, and the same time tomorrow."""
        offsets = [timedelta(hours=1), timedelta(hours=2), timedelta(days=1)]
        starts = [reference_time + offset for offset in offsets]
        return [
            {
                "start_time": start,
                "end_time": start + timedelta(hours=1),
                "duration": 60,
                "is_available": True,
                "fallback_suggestion": True,
            }
            for start in starts
        ]

    def validate_email(self, email: str) -> Dict[str, Any]:
        """Format-only email validation for when the contacts API is down."""
        self._require_enabled()
        lowered = email.lower()
        return {
            "email": email,
            "is_valid": bool(EMAIL_PATTERN.match(email)),
            "exists": False,
            "is_google_user": any(lowered.endswith(f"@{domain}") for domain in self.trusted_domains),
            "fallback_used": True,
        }

    def validate_emails(self, emails: List[str]) -> List[Dict[str, Any]]:
        return [self.validate_email(email) for email in emails]

    def user_friendly_message(self, error: ClassifiedError, service: Optional[str] = None) -> str:
        """Service-specific message for a classified failure.

        Falls back from the service outage message to the kind message to
        the classification's own message.
        """
        base = None
        if service:
            base = self.messages.get(f"{service}_unavailable")
        if base is None:
            base = self.messages.get(error.kind.value, error.user_feedback or error.message)
        if error.requires_user_action and error.recovery_options:
            return f"{base} {error.recovery_options[0]}"
        return base
