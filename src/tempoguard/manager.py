"""Resilience manager.

Wires the classifiers, executors, offline queue, state store, connectivity
monitor and fallback provider together from one ``ResilienceConfig``.
"""

from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from tempoguard.classifiers import get_classifier
from tempoguard.config import ResilienceConfig
from tempoguard.connectivity import ConnectivityMonitor, ConnectivityProbe, NetworkStatus
from tempoguard.errors import ClassifiedFailure, FailureDomain, OperationCancelled
from tempoguard.events import LogEventSink, MetricEventSink, TelemetryRecorder
from tempoguard.fallbacks import FallbackProvider
from tempoguard.logging import get_logger
from tempoguard.offline_queue import OfflineQueue
from tempoguard.retry import (
    CredentialRefreshExecutor,
    ExecutionContext,
    ModelFallbackExecutor,
    RetryExecutor,
    RetryPolicy,
    SleepFunc,
)
from tempoguard.state_store import PreservedState, StatePreservationStore

logger = get_logger(__name__, component="manager")

T = TypeVar("T")
C = TypeVar("C")


class ResilienceManager:
    """Single entry point for resilient execution.

    Example:
        >>> manager = ResilienceManager(load_config("tempoguard.yaml"))
        >>> await manager.start()
        >>> events = await manager.execute(fetch_events, FailureDomain.CALENDAR_API)
    """

    def __init__(
        self,
        config: Optional[ResilienceConfig] = None,
        telemetry: Optional[TelemetryRecorder] = None,
        fallback_provider: Optional[FallbackProvider] = None,
        probe_transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        """Initialize manager.

        Args:
            config: Configuration (default: all defaults).
            telemetry: Event recorder (default: log sink, plus metrics if enabled).
            fallback_provider: Fallback provider override.
            probe_transport: httpx transport for the connectivity probe.
            sleep: Coroutine function used for every wait.
        """
        self.config = config or ResilienceConfig()
        self.telemetry = telemetry or self._default_telemetry()
        self._sleep = sleep

        self.state_store = StatePreservationStore(
            default_ttl_seconds=self.config.state.operation_ttl_seconds,
            telemetry=self.telemetry,
        )
        self.offline_queue = OfflineQueue(
            max_size=self.config.queue.max_size,
            default_max_retries=self.config.queue.default_max_retries,
            state_store=self.state_store,
            telemetry=self.telemetry,
            dropped_history=self.config.queue.dropped_history,
        )
        self.fallbacks = fallback_provider or FallbackProvider(
            enabled=self.config.fallbacks.enabled,
            messages=self.config.fallbacks.messages,
        )

        connectivity = self.config.connectivity
        self.monitor = ConnectivityMonitor(
            ConnectivityProbe(
                url=connectivity.probe_url,
                method=connectivity.probe_method,
                timeout_seconds=connectivity.timeout_seconds,
                slow_threshold_ms=connectivity.slow_threshold_ms,
                transport=probe_transport,
            ),
            queue=self.offline_queue,
            interval_seconds=connectivity.interval_seconds,
            drain_debounce_seconds=connectivity.drain_debounce_seconds,
            telemetry=self.telemetry,
            sleep=sleep,
        )

    def _default_telemetry(self) -> TelemetryRecorder:
        recorder = TelemetryRecorder([LogEventSink()])
        if self.config.metrics.enabled:
            recorder.add_sink(MetricEventSink())
        return recorder

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start connectivity monitoring and the state sweeper."""
        if self.config.connectivity.enabled:
            await self.monitor.start()
        await self.state_store.start_sweeping(self.config.state.sweep_interval_seconds)
        logger.info("resilience_manager_started")

    async def stop(self) -> None:
        await self.monitor.stop()
        await self.state_store.stop_sweeping()
        logger.info("resilience_manager_stopped")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def policy(self, domain: FailureDomain) -> RetryPolicy:
        """Configured retry policy for a domain."""
        return self.config.retry.policy_for(domain)

    def executor(self, domain: FailureDomain, **classifier_options: Any) -> RetryExecutor:
        """Build an executor for a domain, sharing this manager's components.

        Args:
            domain: Failure domain.
            **classifier_options: Passed to the domain classifier.
        """
        classifier = get_classifier(domain, status_provider=self.monitor.status, **classifier_options)
        return RetryExecutor(
            classifier,
            telemetry=self.telemetry,
            sleep=self._sleep,
            fallback_provider=self.fallbacks,
            offline_queue=self.offline_queue,
            state_store=self.state_store,
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        domain: FailureDomain,
        context: Optional[ExecutionContext] = None,
        policy: Optional[RetryPolicy] = None,
        allow_fallback: bool = True,
    ) -> T:
        """Run an operation with the domain's retry policy."""
        return await self.executor(domain).execute(
            operation,
            policy or self.policy(domain),
            context,
            allow_fallback=allow_fallback,
        )

    async def execute_with_network_recovery(
        self,
        operation: Callable[[], Awaitable[T]],
        context: Optional[ExecutionContext] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> T:
        """Run a network-bound operation; parks it offline if state preservation was requested."""
        return await self.execute(operation, FailureDomain.NETWORK, context, policy)

    async def execute_with_credential_refresh(
        self,
        operation: Callable[[C], Awaitable[T]],
        credential: C,
        refresh_hook: Callable[[C], Awaitable[C]],
        domain: FailureDomain = FailureDomain.CALENDAR_API,
        context: Optional[ExecutionContext] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> T:
        """Run ``operation(credential)`` with one automatic credential refresh."""
        executor = CredentialRefreshExecutor(
            self.executor(domain),
            refresh_hook,
            refresh_policy=self.policy(FailureDomain.AUTHENTICATION),
        )
        return await executor.execute(operation, credential, policy or self.policy(domain), context)

    async def execute_with_model_fallback(
        self,
        operation: Callable[[str], Awaitable[T]],
        primary_model: str,
        fallback_model: Optional[str],
        context: Optional[ExecutionContext] = None,
    ) -> T:
        """Run ``operation(model)`` on a primary model, then a fallback model."""
        executor = ModelFallbackExecutor(self.executor(FailureDomain.AI_SERVICE), primary_model, fallback_model)
        return await executor.execute(operation, self.policy(FailureDomain.AI_SERVICE), context)

    async def execute_with_auth_recovery(
        self,
        operation: Callable[..., Awaitable[T]],
        user_id: str,
        conversation_id: Optional[str] = None,
        workflow_step: Optional[str] = None,
        meeting_data: Optional[Dict[str, Any]] = None,
        policy: Optional[RetryPolicy] = None,
        credential: Optional[C] = None,
        refresh_hook: Optional[Callable[[C], Awaitable[C]]] = None,
    ) -> T:
        """Run an authentication operation, saving workflow state if it fails.

        Without ``refresh_hook`` the operation takes no arguments and an
        expired credential is surfaced after one attempt. With it, the
        operation is called as ``operation(credential)`` and an expired
        credential is refreshed once before the single retried call.

        Raises:
            ClassifiedFailure: Recovery failed. The workflow state is saved
                under ``user_id`` when the classification preserves state.
        """
        context = ExecutionContext(operation_name="auth_operation", user_id=user_id)
        policy = policy or self.policy(FailureDomain.AUTHENTICATION)
        try:
            if refresh_hook is None:
                return await self.execute(operation, FailureDomain.AUTHENTICATION, context, policy)
            executor = CredentialRefreshExecutor(
                self.executor(FailureDomain.AUTHENTICATION),
                refresh_hook,
                refresh_policy=self.policy(FailureDomain.AUTHENTICATION),
            )
            return await executor.execute(operation, credential, policy, context)
        except OperationCancelled:
            raise
        except ClassifiedFailure as failure:
            if failure.classification.preserve_state:
                self.preserve_workflow(user_id, conversation_id, workflow_step, meeting_data)
            raise

    # ------------------------------------------------------------------
    # Workflow state
    # ------------------------------------------------------------------

    def preserve_workflow(
        self,
        user_id: str,
        conversation_id: Optional[str] = None,
        workflow_step: Optional[str] = None,
        meeting_data: Optional[Dict[str, Any]] = None,
    ) -> PreservedState:
        """Save an interrupted workflow under the user id."""
        return self.state_store.save(
            user_id,
            {
                "conversation_id": conversation_id,
                "workflow_step": workflow_step,
                "meeting_data": meeting_data,
            },
            ttl_seconds=self.config.state.workflow_ttl_seconds,
            user_id=user_id,
            kind="workflow",
        )

    def resume_workflow(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Saved workflow for a user, or None if absent or expired."""
        return self.state_store.load(user_id)

    def clear_workflow(self, user_id: str) -> bool:
        return self.state_store.clear(user_id)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def network_status(self) -> NetworkStatus:
        return self.monitor.status()

    def status(self) -> Dict[str, Any]:
        """Network, queue, state and retry configuration in one mapping."""
        return {
            "network": self.monitor.status().to_dict(),
            "queue": self.offline_queue.status(),
            "preserved_states": self.state_store.count(),
            "fallbacks_enabled": self.fallbacks.enabled,
            "retry": self.config.retry.model_dump(mode="json"),
        }
