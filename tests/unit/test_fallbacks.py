"""Tests for deterministic fallbacks."""

from datetime import datetime, timedelta, timezone

import pytest

from tempoguard.errors import ClassifiedError, ErrorKind, FailureDomain, FallbacksDisabledError
from tempoguard.fallbacks import DEFAULT_MESSAGES, FallbackContext, FallbackProvider


@pytest.fixture
def provider():
    return FallbackProvider()


def ai_context(operation, **data):
    return FallbackContext(domain=FailureDomain.AI_SERVICE, operation=operation, data=data)


def calendar_context(operation, **data):
    return FallbackContext(domain=FailureDomain.CALENDAR_API, operation=operation, data=data)


class TestAIFallbacks:
    """Test generative AI stand-ins."""

    def test_agenda_for_an_hour(self, provider):
        agenda = provider.agenda("Planning", "Roadmap review", 60)

        assert agenda.startswith("# Planning")
        assert "**Meeting Purpose:** Roadmap review" in agenda
        assert "**Main Discussion** (45 minutes)" in agenda

    def test_short_meeting_keeps_minimum_discussion(self, provider):
        assert "**Main Discussion** (10 minutes)" in provider.agenda("Standup", "Status", 20)

    def test_agenda_is_deterministic(self, provider):
        context = ai_context("agenda_generation", title="Sync", purpose="Q3 goals", duration=30)

        first = provider.fallback_for(ErrorKind.TIMEOUT, context)
        second = provider.fallback_for(ErrorKind.TIMEOUT, context)

        assert first == second
        assert "**Main Discussion** (15 minutes)" in first

    def test_intent_extraction(self, provider):
        result = provider.fallback_for(ErrorKind.SERVICE_UNAVAILABLE, ai_context("intent_extraction"))

        assert result["intent"] == "other"
        assert result["confidence"] == 0
        assert result["missing_fields"] == []

    def test_title_suggestions(self, provider):
        result = provider.fallback_for(ErrorKind.QUOTA_EXCEEDED, ai_context("title_generation"))

        assert result["suggestions"] == ["Team Meeting", "Discussion Session", "Project Sync"]

    def test_action_items(self, provider):
        items = provider.fallback_for(ErrorKind.TIMEOUT, ai_context("action_items", purpose="launch"))

        assert items[0]["task"] == "Follow up on launch"
        assert len(items) == 2

    def test_kind_specific_message(self, provider):
        result = provider.fallback_for(ErrorKind.CONTENT_FILTERED, ai_context("chat"))

        assert result == DEFAULT_MESSAGES["content_filter"]

    def test_context_message(self, provider):
        context = FallbackContext(domain=FailureDomain.AI_SERVICE, operation="chat", message_key="meeting_intent")

        assert provider.fallback_for(ErrorKind.TIMEOUT, context) == DEFAULT_MESSAGES["meeting_intent"]

    def test_unknown_message_key_uses_general(self, provider):
        assert provider.response("nonexistent") == DEFAULT_MESSAGES["general"]

    def test_message_overrides(self):
        provider = FallbackProvider(messages={"general": "Try again soon."})

        assert provider.response() == "Try again soon."
        assert provider.response("content_filter") == DEFAULT_MESSAGES["content_filter"]


class TestCalendarFallbacks:
    """Test calendar API stand-ins."""

    def test_check_availability_assumes_free(self, provider):
        result = provider.fallback_for(ErrorKind.SERVICE_UNAVAILABLE, calendar_context("check_availability"))

        assert result["is_available"] is True
        assert result["conflicts"] == []
        assert result["fallback_mode"] is True

    def test_verify_access(self, provider):
        result = provider.calendar_fallback("verify_access")

        assert result["has_access"] is False
        assert result["token_valid"] is False

    def test_suggest_alternatives(self, provider):
        anchor = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

        result = provider.calendar_fallback("suggest_alternatives", anchor)

        starts = [alt["start_time"] for alt in result["alternatives"]]
        assert starts == [anchor + timedelta(hours=1), anchor + timedelta(hours=2), anchor + timedelta(days=1)]
        assert all(alt["duration"] == 60 for alt in result["alternatives"])

    def test_suggest_alternatives_without_anchor_is_deterministic(self, provider):
        context = calendar_context("suggest_alternatives")

        first = provider.fallback_for(ErrorKind.SERVICE_UNAVAILABLE, context)
        second = provider.fallback_for(ErrorKind.SERVICE_UNAVAILABLE, context)

        assert first == second
        assert first["alternatives"] == []
        assert first["fallback_mode"] is True

    def test_suggest_alternatives_anchored_on_start_time(self, provider):
        start = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)
        context = calendar_context("suggest_alternatives", start_time=start)

        result = provider.fallback_for(ErrorKind.SERVICE_UNAVAILABLE, context)

        assert result == provider.fallback_for(ErrorKind.SERVICE_UNAVAILABLE, context)
        assert result["alternatives"][0]["start_time"] == start + timedelta(hours=1)

    def test_other_operation_gets_generic_notice(self, provider):
        result = provider.calendar_fallback("list_events")

        assert result["message"] == "list_events unavailable due to calendar service issues"

    def test_create_event_has_no_fallback(self, provider):
        with pytest.raises(ValueError):
            provider.calendar_fallback("create_event")

        context = calendar_context("create_event")
        assert provider.has_fallback(ErrorKind.SERVICE_UNAVAILABLE, context) is False
        assert provider.fallback_for(ErrorKind.SERVICE_UNAVAILABLE, context) is None

    @pytest.mark.parametrize(
        "email,valid,google",
        [
            ("alice@gmail.com", True, True),
            ("bob@Example.org", True, False),
            ("carol@GOOGLE.COM", True, True),
            ("not-an-email", False, False),
            ("dave@", False, False),
        ],
    )
    def test_validate_email(self, provider, email, valid, google):
        result = provider.validate_email(email)

        assert result["is_valid"] is valid
        assert result["is_google_user"] is google
        assert result["exists"] is False
        assert result["fallback_used"] is True

    def test_validate_emails_through_context(self, provider):
        context = calendar_context("validate_emails", emails=["a@gmail.com", "broken"])

        results = provider.fallback_for(ErrorKind.SERVICE_UNAVAILABLE, context)

        assert [r["is_valid"] for r in results] == [True, False]


class TestProvider:
    """Test provider-level behavior."""

    def test_disabled_provider(self):
        provider = FallbackProvider(enabled=False)

        assert provider.has_fallback(ErrorKind.TIMEOUT, ai_context("chat")) is False
        with pytest.raises(FallbacksDisabledError):
            provider.fallback_for(ErrorKind.TIMEOUT, ai_context("chat"))
        with pytest.raises(FallbacksDisabledError):
            provider.agenda("t", "p", 30)

    def test_no_fallback_outside_ai_and_calendar(self, provider):
        context = FallbackContext(domain=FailureDomain.NETWORK, operation="sync")

        assert provider.has_fallback(ErrorKind.OFFLINE, context) is False
        assert provider.fallback_for(ErrorKind.OFFLINE, context) is None

    def test_registered_fallback_wins(self, provider):
        provider.register("summarize_thread", lambda kind, context: f"summary unavailable ({kind.value})")
        context = FallbackContext(domain=FailureDomain.NETWORK, operation="summarize_thread")

        assert provider.has_fallback(ErrorKind.TIMEOUT, context) is True
        assert provider.fallback_for(ErrorKind.TIMEOUT, context) == "summary unavailable (timeout)"

    def test_user_friendly_message_prefers_service_outage(self, provider):
        error = ClassifiedError(
            kind=ErrorKind.SERVICE_UNAVAILABLE,
            domain=FailureDomain.CALENDAR_API,
            message="gmail service temporarily unavailable",
            retryable=True,
        )

        assert provider.user_friendly_message(error, service="gmail") == DEFAULT_MESSAGES["gmail_unavailable"]

    def test_user_friendly_message_appends_required_action(self, provider):
        error = ClassifiedError(
            kind=ErrorKind.PERMISSION_DENIED,
            domain=FailureDomain.CALENDAR_API,
            message="Insufficient permissions",
            retryable=False,
            requires_user_action=True,
            recovery_options=["Grant required permissions"],
        )

        message = provider.user_friendly_message(error)

        assert message == f"{DEFAULT_MESSAGES['permission_denied']} Grant required permissions"

    def test_user_friendly_message_falls_back_to_feedback(self, provider):
        error = ClassifiedError(
            kind=ErrorKind.CONNECTION_RESET,
            domain=FailureDomain.NETWORK,
            message="Connection was reset",
            retryable=True,
            user_feedback="The connection was interrupted. Retrying...",
        )

        assert provider.user_friendly_message(error) == "The connection was interrupted. Retrying..."
