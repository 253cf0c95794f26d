"""Tests for the domain error classifiers."""

import errno
import socket

import httpx
import pytest

from tempoguard.classifiers import (
    AIServiceErrorClassifier,
    AuthErrorClassifier,
    CalendarAPIErrorClassifier,
    FailureSignature,
    GoogleService,
    NetworkErrorClassifier,
    get_classifier,
    is_offline,
    offline_classification,
)
from tempoguard.connectivity import ConnectionClass, NetworkStatus
from tempoguard.errors import ClassifiedError, ClassifiedFailure, ErrorKind, FailureDomain
from tempoguard.retry import AttemptTimeoutError


class TestFailureSignature:
    """Test signature extraction."""

    def test_oauth_body(self, http_error):
        signature = FailureSignature.from_exception(
            http_error(400, {"error": "invalid_grant", "error_description": "Token has been revoked."})
        )

        assert signature.status == 400
        assert signature.provider_code == "invalid_grant"
        assert signature.mentions("revoked")

    def test_google_api_body(self, http_error):
        signature = FailureSignature.from_exception(
            http_error(
                403,
                {"error": {"code": 403, "message": "Rate Limit Exceeded", "errors": [{"reason": "rateLimitExceeded"}]}},
            )
        )

        assert signature.provider_code == "rateLimitExceeded"
        assert signature.provider_message == "Rate Limit Exceeded"

    def test_retry_after_header(self, http_error):
        signature = FailureSignature.from_exception(http_error(429, headers={"Retry-After": "7"}))

        assert signature.retry_after_ms == 7000

    def test_retry_info_in_body(self, http_error):
        body = {"error": {"message": "quota", "details": [{"retryDelay": "12s"}]}}
        signature = FailureSignature.from_exception(http_error(429, body))

        assert signature.retry_after_ms == 12000

    @pytest.mark.parametrize(
        "error,code",
        [
            (httpx.ConnectTimeout("timed out"), "ETIMEDOUT"),
            (httpx.ReadTimeout("read timed out"), "ERESPONSETIMEOUT"),
            (ConnectionRefusedError(), "ECONNREFUSED"),
            (ConnectionResetError(), "ECONNRESET"),
            (socket.gaierror(-2, "Name or service not known"), "ENOTFOUND"),
            (OSError(errno.ENETUNREACH, "Network is unreachable"), "ENETUNREACH"),
            (httpx.ConnectError("[Errno 111] Connection refused"), "ECONNREFUSED"),
            (AttemptTimeoutError(100), "ERESPONSETIMEOUT"),
        ],
    )
    def test_transport_codes(self, error, code):
        assert FailureSignature.from_exception(error).code == code

    def test_code_found_in_cause_chain(self):
        try:
            try:
                raise ConnectionResetError()
            except ConnectionResetError as e:
                raise RuntimeError("upload failed") from e
        except RuntimeError as wrapped:
            signature = FailureSignature.from_exception(wrapped)

        assert signature.code == "ECONNRESET"


class TestIsOffline:
    """Test the connectivity predicate."""

    def test_statuses(self):
        assert is_offline(NetworkStatus(is_online=False, connection_class=ConnectionClass.OFFLINE))
        assert is_offline(NetworkStatus(is_online=True, connection_class=ConnectionClass.OFFLINE))
        assert not is_offline(NetworkStatus(is_online=True, connection_class=ConnectionClass.SLOW))
        assert not is_offline(None)


class TestNetworkErrorClassifier:
    """Test the network classifier."""

    @pytest.fixture
    def classifier(self):
        return NetworkErrorClassifier()

    @pytest.mark.parametrize(
        "error,kind,delay",
        [
            (httpx.ConnectTimeout("timed out"), ErrorKind.CONNECTION_TIMEOUT, 3000),
            (ConnectionRefusedError(), ErrorKind.CONNECTION_REFUSED, 5000),
            (socket.gaierror(-2, "Name or service not known"), ErrorKind.DNS_RESOLUTION_FAILED, 5000),
            (OSError(errno.ENETUNREACH, "Network is unreachable"), ErrorKind.NETWORK_UNREACHABLE, 10000),
            (ConnectionResetError(), ErrorKind.CONNECTION_RESET, 2000),
            (AttemptTimeoutError(30000), ErrorKind.REQUEST_TIMEOUT, 5000),
        ],
    )
    def test_transport_failures(self, classifier, error, kind, delay):
        classification = classifier.classify(error)

        assert classification.kind == kind
        assert classification.domain == FailureDomain.NETWORK
        assert classification.retryable is True
        assert classification.preserve_state is True
        assert classification.suggested_delay_ms == delay
        assert classification.retry_after_ms is None
        assert classification.original_error is error

    def test_ssl_failure_is_terminal(self, classifier):
        error = httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed")

        classification = classifier.classify(error)

        assert classification.kind == ErrorKind.SSL_ERROR
        assert classification.retryable is False

    def test_rate_limit_uses_provider_hint(self, classifier, http_error):
        classification = classifier.classify(http_error(429, headers={"Retry-After": "7"}))

        assert classification.kind == ErrorKind.RATE_LIMIT_EXCEEDED
        assert classification.retry_after_ms == 7000

    def test_rate_limit_default_delay(self, classifier, http_error):
        assert classifier.classify(http_error(429)).retry_after_ms == 30000

    @pytest.mark.parametrize("status", [408, 504])
    def test_gateway_timeouts(self, classifier, http_error, status):
        assert classifier.classify(http_error(status)).kind == ErrorKind.REQUEST_TIMEOUT

    def test_server_error_is_outage(self, classifier, http_error):
        classification = classifier.classify(http_error(503))

        assert classification.kind == ErrorKind.SERVICE_UNAVAILABLE
        assert classification.retryable is True
        assert classification.status_code == 503

    def test_client_error_is_terminal(self, classifier, http_error):
        classification = classifier.classify(http_error(418))

        assert classification.kind == ErrorKind.PROVIDER_ERROR
        assert classification.retryable is False

    def test_unrecognised_error_retried_with_caution(self, classifier):
        classification = classifier.classify(ValueError("weird"))

        assert classification.kind == ErrorKind.UNKNOWN
        assert classification.retryable is True
        assert classification.preserve_state is True
        assert classification.message == "weird"

    def test_offline_status_overrides_error_text(self):
        classifier = NetworkErrorClassifier(status_provider=lambda: NetworkStatus.offline("probe failed"))

        classification = classifier.classify(ValueError("anything at all"))

        assert classification.kind == ErrorKind.OFFLINE
        assert classification.is_connectivity_loss
        assert classifier.is_offline()

    def test_classified_failure_passes_through(self, classifier):
        original = ClassifiedError(
            kind=ErrorKind.QUOTA_EXCEEDED,
            domain=FailureDomain.AI_SERVICE,
            message="quota",
            retryable=False,
        )

        assert classifier.classify(ClassifiedFailure(original)) is original

    def test_offline_classification(self):
        classification = offline_classification(FailureDomain.CALENDAR_API)

        assert classification.kind == ErrorKind.OFFLINE
        assert classification.domain == FailureDomain.CALENDAR_API
        assert classification.preserve_state is True


class TestAuthErrorClassifier:
    """Test the authentication classifier."""

    def test_expired_token_with_refresh(self, http_error):
        classifier = AuthErrorClassifier(refresh_available=True)

        classification = classifier.classify(
            http_error(401, {"error": "invalid_token", "error_description": "Token expired"})
        )

        assert classification.kind == ErrorKind.TOKEN_EXPIRED
        assert classification.retryable is True
        assert classification.requires_user_action is False

    def test_expired_token_without_refresh(self, http_error):
        classifier = AuthErrorClassifier(refresh_available=False)

        classification = classifier.classify(http_error(401, {"error": "invalid_token"}))

        assert classification.kind == ErrorKind.TOKEN_EXPIRED
        assert classification.retryable is False
        assert classification.requires_user_action is True
        assert "Re-authenticate with Google" in classification.recovery_options

    @pytest.mark.parametrize(
        "status,body,kind,retryable",
        [
            (401, {"error": "unauthorized"}, ErrorKind.TOKEN_INVALID, False),
            (403, {"error": "insufficient_scope"}, ErrorKind.INSUFFICIENT_SCOPES, False),
            (403, {"error": "access_denied"}, ErrorKind.AUTHENTICATION_REQUIRED, False),
            (400, {"error": "invalid_grant"}, ErrorKind.REFRESH_TOKEN_INVALID, False),
            (400, {"error": "invalid_request"}, ErrorKind.TOKEN_INVALID, False),
            (503, None, ErrorKind.SERVICE_UNAVAILABLE, True),
            (418, None, ErrorKind.AUTHENTICATION_ERROR, False),
        ],
    )
    def test_status_table(self, http_error, status, body, kind, retryable):
        classification = AuthErrorClassifier().classify(http_error(status, body))

        assert classification.kind == kind
        assert classification.retryable is retryable

    def test_transport_failure(self):
        classification = AuthErrorClassifier().classify(httpx.ConnectError("Connection refused"))

        assert classification.kind == ErrorKind.NETWORK_ERROR
        assert classification.retryable is True

    @pytest.mark.parametrize(
        "error",
        [
            httpx.ConnectError("Connection refused"),
            ValueError("opaque"),
            RuntimeError("invalid_grant"),
        ],
    )
    def test_always_preserves_state(self, error):
        classification = AuthErrorClassifier().classify(error)

        assert classification.preserve_state is True
        assert classification.fallback_available is False


class TestAIServiceErrorClassifier:
    """Test the AI service classifier."""

    @pytest.fixture
    def classifier(self):
        return AIServiceErrorClassifier()

    def test_content_filter(self, classifier, http_error):
        error = http_error(
            400,
            {"error": {"message": "Response blocked by safety settings", "status": "INVALID_ARGUMENT"}},
        )

        classification = classifier.classify(error)

        assert classification.kind == ErrorKind.CONTENT_FILTERED
        assert classification.retryable is False
        assert classification.fallback_available is True

    def test_invalid_request(self, classifier, http_error):
        classification = classifier.classify(http_error(400, {"error": {"message": "Malformed JSON payload"}}))

        assert classification.kind == ErrorKind.INVALID_REQUEST

    def test_quota_with_retry_info(self, classifier, http_error):
        body = {
            "error": {
                "message": "Resource has been exhausted (e.g. check quota).",
                "status": "RESOURCE_EXHAUSTED",
                "details": [{"retryDelay": "12s"}],
            }
        }

        classification = classifier.classify(http_error(429, body))

        assert classification.kind == ErrorKind.QUOTA_EXCEEDED
        assert classification.retry_after_ms == 12000

    def test_rate_limit_default(self, classifier, http_error):
        classification = classifier.classify(http_error(429))

        assert classification.kind == ErrorKind.RATE_LIMIT_EXCEEDED
        assert classification.retry_after_ms == 30000

    def test_model_not_found(self, classifier, http_error):
        classification = classifier.classify(
            http_error(404, {"error": {"message": "models/gemini-0 is not found"}})
        )

        assert classification.kind == ErrorKind.MODEL_UNAVAILABLE
        assert classification.retryable is True

    @pytest.mark.parametrize(
        "status,kind,retryable",
        [
            (413, ErrorKind.TOKEN_LIMIT_EXCEEDED, False),
            (401, ErrorKind.AUTHENTICATION_ERROR, False),
            (500, ErrorKind.SERVICE_UNAVAILABLE, True),
        ],
    )
    def test_status_table(self, classifier, http_error, status, kind, retryable):
        classification = classifier.classify(http_error(status))

        assert classification.kind == kind
        assert classification.retryable is retryable

    def test_generation_stopped(self, classifier):
        classification = classifier.classify(RuntimeError("Candidate finished with reason STOP"))

        assert classification.kind == ErrorKind.GENERATION_STOPPED
        assert classification.retryable is False

    def test_read_timeout(self, classifier):
        classification = classifier.classify(httpx.ReadTimeout("read timed out"))

        assert classification.kind == ErrorKind.TIMEOUT
        assert classification.suggested_delay_ms == 2000

    @pytest.mark.parametrize(
        "error",
        [ValueError("opaque"), httpx.ConnectError("Connection refused"), RuntimeError("STOP")],
    )
    def test_fallback_always_available(self, classifier, error):
        assert classifier.classify(error).fallback_available is True


class TestCalendarAPIErrorClassifier:
    """Test the calendar API classifier."""

    @staticmethod
    def google_error(status, reason, message="error"):
        return {"error": {"code": status, "message": message, "errors": [{"reason": reason}]}}

    def test_rate_limit_reason_on_403(self, http_error):
        error = http_error(403, self.google_error(403, "rateLimitExceeded", "Rate Limit Exceeded"))

        classification = CalendarAPIErrorClassifier().classify(error)

        assert classification.kind == ErrorKind.RATE_LIMIT_EXCEEDED
        assert classification.retry_after_ms == 30000

    def test_quota_reason(self, http_error):
        error = http_error(403, self.google_error(403, "quotaExceeded"))

        classification = CalendarAPIErrorClassifier().classify(error)

        assert classification.kind == ErrorKind.QUOTA_EXCEEDED
        assert classification.retry_after_ms == 60000

    def test_permission_denied(self, http_error):
        error = http_error(403, self.google_error(403, "forbidden", "The caller does not have permission"))

        classification = CalendarAPIErrorClassifier().classify(error)

        assert classification.kind == ErrorKind.PERMISSION_DENIED
        assert classification.retryable is False
        assert classification.requires_user_action is True

    def test_not_found_fallback_depends_on_service(self, http_error):
        calendar = CalendarAPIErrorClassifier(GoogleService.CALENDAR).classify(http_error(404))
        people = CalendarAPIErrorClassifier(GoogleService.PEOPLE).classify(http_error(404))

        assert calendar.kind == ErrorKind.RESOURCE_NOT_FOUND
        assert calendar.fallback_available is False
        assert people.fallback_available is True

    @pytest.mark.parametrize(
        "status,kind,retryable",
        [
            (401, ErrorKind.AUTHENTICATION_ERROR, False),
            (400, ErrorKind.INVALID_REQUEST, False),
            (429, ErrorKind.RATE_LIMIT_EXCEEDED, True),
            (502, ErrorKind.SERVICE_UNAVAILABLE, True),
        ],
    )
    def test_status_table(self, http_error, status, kind, retryable):
        classification = CalendarAPIErrorClassifier().classify(http_error(status))

        assert classification.kind == kind
        assert classification.retryable is retryable

    def test_service_named_in_message(self, http_error):
        classification = CalendarAPIErrorClassifier(GoogleService.GMAIL).classify(http_error(503))

        assert "gmail" in classification.message


class TestRegistry:
    """Test get_classifier."""

    @pytest.mark.parametrize(
        "domain,cls",
        [
            (FailureDomain.NETWORK, NetworkErrorClassifier),
            (FailureDomain.AUTHENTICATION, AuthErrorClassifier),
            (FailureDomain.AI_SERVICE, AIServiceErrorClassifier),
            (FailureDomain.CALENDAR_API, CalendarAPIErrorClassifier),
            ("network", NetworkErrorClassifier),
        ],
    )
    def test_domains(self, domain, cls):
        assert isinstance(get_classifier(domain), cls)

    def test_options_forwarded(self):
        classifier = get_classifier(FailureDomain.CALENDAR_API, service="people")

        assert classifier.service == GoogleService.PEOPLE

    def test_unknown_domain(self):
        with pytest.raises(ValueError):
            get_classifier("telepathy")


class TestTransportFailureWhileOffline:
    """Test that every domain treats offline transport failures as connectivity loss."""

    @staticmethod
    def offline():
        return NetworkStatus.offline("probe failed")

    @pytest.mark.parametrize(
        "cls,domain",
        [
            (CalendarAPIErrorClassifier, FailureDomain.CALENDAR_API),
            (AIServiceErrorClassifier, FailureDomain.AI_SERVICE),
            (AuthErrorClassifier, FailureDomain.AUTHENTICATION),
        ],
    )
    def test_connect_error_is_offline(self, cls, domain):
        error = httpx.ConnectError("Network is unreachable")
        classifier = cls(status_provider=self.offline)

        classification = classifier.classify(error)

        assert classification.kind == ErrorKind.OFFLINE
        assert classification.domain == domain
        assert classification.is_connectivity_loss
        assert classification.preserve_state is True
        assert classification.original_error is error

    def test_domain_fallback_kept(self):
        classification = AIServiceErrorClassifier(status_provider=self.offline).classify(
            httpx.ConnectError("Network is unreachable")
        )

        assert classification.kind == ErrorKind.OFFLINE
        assert classification.fallback_available is True

    def test_online_transport_failure_keeps_domain_kind(self):
        classifier = CalendarAPIErrorClassifier(status_provider=lambda: NetworkStatus(is_online=True))

        classification = classifier.classify(httpx.ConnectError("Network is unreachable"))

        assert classification.kind != ErrorKind.OFFLINE

    def test_http_error_while_offline_keeps_domain_kind(self, http_error):
        classifier = CalendarAPIErrorClassifier(status_provider=self.offline)

        classification = classifier.classify(http_error(400))

        assert classification.kind == ErrorKind.INVALID_REQUEST
