"""Tests for model fallback and quota throttling."""

import pytest

from tempoguard.classifiers import AIServiceErrorClassifier
from tempoguard.errors import ClassifiedFailure, ErrorKind
from tempoguard.fallbacks import DEFAULT_MESSAGES, FallbackProvider
from tempoguard.retry import (
    ExecutionContext,
    ModelFallbackExecutor,
    RetryExecutor,
    quota_throttle_delay,
)


class ModelCall:
    """Generation call that fails on the listed models."""

    def __init__(self, http_error, failing=("gemini-1.5-flash",), status=404, body=None):
        self.http_error = http_error
        self.failing = set(failing)
        self.status = status
        self.body = body if body is not None else {"error": {"message": "models/gemini-1.5-flash is not found"}}
        self.models = []

    async def __call__(self, model):
        self.models.append(model)
        if model in self.failing:
            raise self.http_error(self.status, self.body)
        return f"answer from {model}"


def ai_executor(telemetry, sleep, provider=None):
    return RetryExecutor(AIServiceErrorClassifier(), telemetry=telemetry, sleep=sleep, fallback_provider=provider)


class TestModelFallbackExecutor:
    """Test primary/fallback model execution."""

    @pytest.mark.asyncio
    async def test_unavailable_primary_falls_back_to_second_model(self, telemetry, fake_sleep, http_error):
        operation = ModelCall(http_error)
        executor = ModelFallbackExecutor(ai_executor(telemetry, fake_sleep))

        result = await executor.execute(operation)

        assert result == "answer from gemini-1.5-pro"
        assert operation.models == ["gemini-1.5-flash"] * 3 + ["gemini-1.5-pro"]

    @pytest.mark.asyncio
    async def test_primary_success_skips_fallback_model(self, telemetry, fake_sleep, http_error):
        operation = ModelCall(http_error, failing=())
        executor = ModelFallbackExecutor(ai_executor(telemetry, fake_sleep))

        assert await executor.execute(operation) == "answer from gemini-1.5-flash"
        assert operation.models == ["gemini-1.5-flash"]

    @pytest.mark.asyncio
    async def test_both_models_failing(self, telemetry, fake_sleep, http_error):
        operation = ModelCall(http_error, failing=("gemini-1.5-flash", "gemini-1.5-pro"))
        executor = ModelFallbackExecutor(ai_executor(telemetry, fake_sleep))

        with pytest.raises(ClassifiedFailure) as exc_info:
            await executor.execute(operation)

        assert exc_info.value.classification.kind == ErrorKind.MODEL_UNAVAILABLE
        assert operation.models.count("gemini-1.5-pro") == 2

    @pytest.mark.asyncio
    async def test_content_filter_served_canned_response(self, telemetry, fake_sleep, http_error):
        operation = ModelCall(http_error, status=400, body={"error": {"message": "Blocked by safety filters"}})
        executor = ModelFallbackExecutor(ai_executor(telemetry, fake_sleep, FallbackProvider()))

        result = await executor.execute(operation, context=ExecutionContext(operation_name="chat"))

        assert result == DEFAULT_MESSAGES["content_filter"]
        assert operation.models == ["gemini-1.5-flash"]

    @pytest.mark.asyncio
    async def test_content_filter_without_provider_raises(self, telemetry, fake_sleep, http_error):
        operation = ModelCall(http_error, status=400, body={"error": {"message": "Blocked by safety filters"}})
        executor = ModelFallbackExecutor(ai_executor(telemetry, fake_sleep))

        with pytest.raises(ClassifiedFailure) as exc_info:
            await executor.execute(operation)

        assert exc_info.value.classification.kind == ErrorKind.CONTENT_FILTERED

    @pytest.mark.asyncio
    async def test_no_fallback_model_configured(self, telemetry, fake_sleep, http_error):
        operation = ModelCall(http_error)
        executor = ModelFallbackExecutor(ai_executor(telemetry, fake_sleep), fallback_model=None)

        with pytest.raises(ClassifiedFailure):
            await executor.execute(operation)

        assert "gemini-1.5-pro" not in operation.models


class TestQuotaThrottle:
    """Test proactive quota throttling."""

    def test_low_usage_not_throttled(self):
        assert quota_throttle_delay(50, 100) == 0
        assert quota_throttle_delay(90, 100) == 0

    def test_high_usage_throttled_linearly(self):
        assert 2400 <= quota_throttle_delay(95, 100) <= 2500
        assert 4900 <= quota_throttle_delay(99.9, 100) <= 5000

    def test_exhausted_waits_for_near_reset(self):
        assert quota_throttle_delay(100, 100, reset_at=1060.0, now=1000.0) == 60000

    def test_exhausted_with_distant_reset_raises(self):
        with pytest.raises(ClassifiedFailure) as exc_info:
            quota_throttle_delay(100, 100, reset_at=1600.0, now=1000.0)

        assert exc_info.value.classification.kind == ErrorKind.QUOTA_EXCEEDED
        assert exc_info.value.classification.fallback_available is True

    def test_exhausted_without_reset_raises(self):
        with pytest.raises(ClassifiedFailure):
            quota_throttle_delay(120, 100)

    def test_no_limit(self):
        assert quota_throttle_delay(10, 0) == 0
