"""Retry executor with classification-driven backoff.

``RetryExecutor`` runs an operation, classifies each failure, and decides
between retrying, parking the operation in the offline queue, serving a
fallback, or surfacing the classification. Two wrappers compose on top of it
without changing it: ``CredentialRefreshExecutor`` (one credential refresh,
one retried call) and ``ModelFallbackExecutor`` (primary model, then a
fallback model).
"""

import asyncio
import dataclasses
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Generic, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field

from tempoguard.classifiers import AuthErrorClassifier, ErrorClassifier, offline_classification
from tempoguard.classifiers.signature import ERESPONSETIMEOUT
from tempoguard.errors import (
    ClassifiedError,
    ClassifiedFailure,
    ErrorFamily,
    ErrorKind,
    FailureDomain,
    OperationCancelled,
    OperationQueued,
    QueueFullError,
    cancellation_error,
)
from tempoguard.events import EventType, TelemetryRecorder, get_telemetry_recorder
from tempoguard.fallbacks import FallbackContext, FallbackProvider
from tempoguard.logging import get_logger
from tempoguard.offline_queue import OfflineQueue, OperationPriority
from tempoguard.state_store import StatePreservationStore

logger = get_logger(__name__, component="retry")

T = TypeVar("T")
C = TypeVar("C")

SleepFunc = Callable[[float], Awaitable[Any]]

DEFAULT_RETRYABLE_KINDS: FrozenSet[ErrorKind] = frozenset(
    kind
    for kind in ErrorKind
    if kind.family
    in (ErrorFamily.TRANSIENT_TRANSPORT, ErrorFamily.THROTTLING, ErrorFamily.UNCLASSIFIED)
)

CREDENTIAL_KINDS: FrozenSet[ErrorKind] = frozenset(
    kind for kind in ErrorKind if kind.family == ErrorFamily.CREDENTIAL
)

# Refresh failures that no amount of retrying fixes
TERMINAL_REFRESH_KINDS = frozenset({ErrorKind.REFRESH_TOKEN_INVALID, ErrorKind.REFRESH_TOKEN_EXPIRED})

MODEL_FALLBACK_KINDS = frozenset(
    {
        ErrorKind.MODEL_UNAVAILABLE,
        ErrorKind.RATE_LIMIT_EXCEEDED,
        ErrorKind.QUOTA_EXCEEDED,
        ErrorKind.TOKEN_LIMIT_EXCEEDED,
    }
)

QUOTA_WARNING_RATIO = 0.9
QUOTA_MAX_THROTTLE_MS = 5000
QUOTA_MAX_WAIT_MS = 5 * 60 * 1000


class RetryPolicy(BaseModel):
    """Configuration for retry behavior."""

    model_config = {"extra": "forbid"}

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    base_delay_ms: int = Field(default=1000, ge=0, description="Base delay in milliseconds")
    max_delay_ms: int = Field(default=30000, ge=0, description="Maximum backoff delay in milliseconds")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Exponential backoff base")
    retryable_kinds: FrozenSet[ErrorKind] = Field(
        default=DEFAULT_RETRYABLE_KINDS,
        description="Kinds the executor may retry",
    )
    attempt_timeout_ms: Optional[int] = Field(
        default=None, gt=0, description="Per-attempt timeout in milliseconds"
    )
    max_unclassified_retries: int = Field(
        default=2, ge=0, description="Retries allowed for unrecognised failures"
    )

    def allows(self, kind: ErrorKind) -> bool:
        return kind in self.retryable_kinds


def _policy(
    max_retries: int,
    base_delay_ms: int,
    max_delay_ms: int,
    backoff_multiplier: float,
    kinds,
    attempt_timeout_ms: Optional[int] = None,
) -> RetryPolicy:
    return RetryPolicy(
        max_retries=max_retries,
        base_delay_ms=base_delay_ms,
        max_delay_ms=max_delay_ms,
        backoff_multiplier=backoff_multiplier,
        retryable_kinds=frozenset(kinds),
        attempt_timeout_ms=attempt_timeout_ms,
    )


DOMAIN_POLICIES: Dict[FailureDomain, RetryPolicy] = {
    FailureDomain.NETWORK: _policy(
        5, 1000, 30000, 2.0,
        [
            ErrorKind.CONNECTION_TIMEOUT,
            ErrorKind.CONNECTION_REFUSED,
            ErrorKind.DNS_RESOLUTION_FAILED,
            ErrorKind.NETWORK_UNREACHABLE,
            ErrorKind.REQUEST_TIMEOUT,
            ErrorKind.CONNECTION_RESET,
            ErrorKind.SLOW_NETWORK,
            ErrorKind.OFFLINE,
            ErrorKind.SERVICE_UNAVAILABLE,
            ErrorKind.RATE_LIMIT_EXCEEDED,
            ErrorKind.NETWORK_ERROR,
            ErrorKind.TIMEOUT,
            ErrorKind.UNKNOWN,
        ],
        attempt_timeout_ms=30000,
    ),
    FailureDomain.AUTHENTICATION: _policy(
        3, 2000, 10000, 1.0,
        [
            ErrorKind.NETWORK_ERROR,
            ErrorKind.OFFLINE,
            ErrorKind.SERVICE_UNAVAILABLE,
            ErrorKind.TOKEN_EXPIRED,
            ErrorKind.UNKNOWN,
        ],
    ),
    FailureDomain.AI_SERVICE: _policy(
        3, 1000, 10000, 2.0,
        [
            ErrorKind.NETWORK_ERROR,
            ErrorKind.OFFLINE,
            ErrorKind.RATE_LIMIT_EXCEEDED,
            ErrorKind.QUOTA_EXCEEDED,
            ErrorKind.SERVICE_UNAVAILABLE,
            ErrorKind.TIMEOUT,
            ErrorKind.MODEL_UNAVAILABLE,
            ErrorKind.UNKNOWN,
        ],
    ),
    FailureDomain.CALENDAR_API: _policy(
        3, 1000, 15000, 2.0,
        [
            ErrorKind.RATE_LIMIT_EXCEEDED,
            ErrorKind.QUOTA_EXCEEDED,
            ErrorKind.SERVICE_UNAVAILABLE,
            ErrorKind.NETWORK_ERROR,
            ErrorKind.OFFLINE,
            ErrorKind.TIMEOUT,
            ErrorKind.UNKNOWN,
        ],
    ),
}


def default_policy(domain: FailureDomain) -> RetryPolicy:
    """Default retry policy for a failure domain."""
    return DOMAIN_POLICIES[FailureDomain(domain)].model_copy()


def calculate_delay(attempt: int, policy: RetryPolicy) -> int:
    """Exponential backoff delay.

    Args:
        attempt: Attempt number (0-indexed).
        policy: Retry policy.

    Returns:
        ``min(base * multiplier ** attempt, max)`` in milliseconds.
    """
    if policy.base_delay_ms == 0:
        return 0
    try:
        delay = policy.base_delay_ms * (policy.backoff_multiplier ** attempt)
    except OverflowError:
        return policy.max_delay_ms
    return int(min(delay, policy.max_delay_ms))


def linear_delay(attempt: int, policy: RetryPolicy) -> int:
    """Linear delay ``base * (attempt + 1)``, capped at the policy maximum."""
    return int(min(policy.base_delay_ms * (attempt + 1), policy.max_delay_ms))


def next_delay(classification: ClassifiedError, attempt: int, policy: RetryPolicy) -> int:
    """Delay before the next attempt; a provider retry hint wins over backoff."""
    if classification.retry_after_ms is not None:
        return classification.retry_after_ms
    return calculate_delay(attempt, policy)


class AttemptTimeoutError(TimeoutError):
    """A single attempt exceeded ``policy.attempt_timeout_ms``."""

    code = ERESPONSETIMEOUT

    def __init__(self, timeout_ms: int):
        super().__init__(f"Attempt exceeded {timeout_ms} ms")
        self.timeout_ms = timeout_ms


@dataclass
class ExecutionContext:
    """Per-call metadata for the executor.

    Attributes:
        operation_name: Name used in logs, telemetry and the offline queue.
        operation_id: Key for the operation's preserved state.
        user_id: Owner of the operation.
        priority: Priority if the operation is parked offline.
        preserve_state: Whether the caller wants its snapshot kept on failure.
        state_snapshot: Context needed to resume the operation.
        state_ttl_seconds: TTL of the preserved snapshot (default: store default).
        deadline: Monotonic time after which waiting is aborted.
        cancel_event: Set by the caller to abort a backoff wait.
        fallback: Context bundle for the fallback provider.
    """

    operation_name: str = "operation"
    operation_id: str = field(default_factory=lambda: str(uuid4()))
    user_id: Optional[str] = None
    priority: OperationPriority = OperationPriority.MEDIUM
    preserve_state: bool = False
    state_snapshot: Optional[Any] = None
    state_ttl_seconds: Optional[float] = None
    deadline: Optional[float] = None
    cancel_event: Optional[asyncio.Event] = None
    fallback: Optional[FallbackContext] = None

    @property
    def state_key(self) -> str:
        return self.operation_id

    def with_timeout(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> "ExecutionContext":
        """Set the deadline ``seconds`` from now and return self."""
        self.deadline = clock() + seconds
        return self


class RetryExecutor:
    """Runs operations with classification-driven retries.

    Example:
        >>> executor = RetryExecutor(get_classifier(FailureDomain.AI_SERVICE))
        >>> result = await executor.execute(lambda: client.generate(prompt))
    """

    def __init__(
        self,
        classifier: ErrorClassifier,
        telemetry: Optional[TelemetryRecorder] = None,
        sleep: Optional[SleepFunc] = None,
        fallback_provider: Optional[FallbackProvider] = None,
        offline_queue: Optional[OfflineQueue] = None,
        state_store: Optional[StatePreservationStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize executor.

        Args:
            classifier: Classifier for the operation's failure domain.
            telemetry: Recorder for classification and retry events.
            sleep: Coroutine function used for backoff waits (seconds).
            fallback_provider: Source of fallback values.
            offline_queue: Queue for operations failing on connectivity loss.
            state_store: Store for state snapshots.
            clock: Monotonic clock used for deadlines.
        """
        self.classifier = classifier
        self.telemetry = telemetry or get_telemetry_recorder()
        self._sleep = sleep or asyncio.sleep
        self.fallback_provider = fallback_provider
        self.offline_queue = offline_queue
        self.state_store = state_store
        self._clock = clock

    @property
    def domain(self) -> FailureDomain:
        return self.classifier.domain

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        context: Optional[ExecutionContext] = None,
        allow_fallback: bool = True,
    ) -> T:
        """Run an operation until success, exhaustion or a terminal failure.

        Args:
            operation: Zero-argument coroutine function; must be safe to repeat.
            policy: Retry policy (default: the domain's policy).
            context: Call metadata.
            allow_fallback: Serve a fallback value instead of raising when
                the final classification allows one.

        Returns:
            The operation's result, or a fallback value.

        Raises:
            ClassifiedFailure: Automatic recovery is exhausted or inapplicable.
            OperationQueued: The operation was parked until connectivity returns.
            OperationCancelled: The deadline passed or the caller cancelled.
        """
        policy = policy or default_policy(self.domain)
        context = context or ExecutionContext()

        saved_state = self._save_initial_state(context)
        self._raise_if_cancelled(context, attempts=0)

        if self._offline_now(context):
            queued = self._park(operation, policy, context, offline_classification(self.domain), attempts=0)
            if queued is not None:
                raise queued

        classification: Optional[ClassifiedError] = None
        attempts = 0
        unclassified_retries = 0

        for attempt in range(policy.max_retries + 1):
            attempts = attempt + 1
            try:
                result = await self._invoke(operation, policy)
            except Exception as exc:
                classification = self.classifier.classify(exc)
                self._record_classification(context, classification, attempts)

                if self._should_park(classification, context):
                    queued = self._park(operation, policy, context, classification, attempts)
                    if queued is not None:
                        raise queued from exc

                if not self._should_retry(classification, policy, attempt, unclassified_retries):
                    break
                if classification.kind == ErrorKind.UNKNOWN:
                    unclassified_retries += 1

                delay_ms = next_delay(classification, attempt, policy)
                logger.warning(
                    "retry_scheduled",
                    operation=context.operation_name,
                    domain=self.domain.value,
                    kind=classification.kind.value,
                    attempt=attempts,
                    max_attempts=policy.max_retries + 1,
                    delay_ms=delay_ms,
                )
                self.telemetry.emit(
                    EventType.RETRY_ATTEMPT,
                    operation=context.operation_name,
                    domain=self.domain.value,
                    kind=classification.kind.value,
                    attempt=attempts,
                    data={"delay_ms": delay_ms},
                )
                await self._wait(delay_ms, context, attempts)
            else:
                if saved_state:
                    self.state_store.clear(context.state_key)
                if attempts > 1:
                    logger.info("retry_succeeded", operation=context.operation_name, attempts=attempts)
                self.telemetry.emit(
                    EventType.OPERATION_SUCCEEDED,
                    operation=context.operation_name,
                    domain=self.domain.value,
                    attempt=attempts,
                    success=True,
                )
                return result

        return self._resolve_failure(classification, attempts, context, allow_fallback)

    async def _invoke(self, operation: Callable[[], Awaitable[T]], policy: RetryPolicy) -> T:
        if policy.attempt_timeout_ms is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=policy.attempt_timeout_ms / 1000.0)
        except asyncio.TimeoutError as e:
            raise AttemptTimeoutError(policy.attempt_timeout_ms) from e

    def _should_retry(
        self,
        classification: ClassifiedError,
        policy: RetryPolicy,
        attempt: int,
        unclassified_retries: int,
    ) -> bool:
        if not classification.retryable:
            return False
        if not policy.allows(classification.kind):
            return False
        if attempt >= policy.max_retries:
            return False
        if classification.kind == ErrorKind.UNKNOWN:
            return unclassified_retries < policy.max_unclassified_retries
        return True

    def _record_classification(
        self,
        context: ExecutionContext,
        classification: ClassifiedError,
        attempts: int,
    ) -> None:
        logger.info(
            "attempt_failed",
            operation=context.operation_name,
            domain=self.domain.value,
            kind=classification.kind.value,
            attempt=attempts,
            retryable=classification.retryable,
        )
        self.telemetry.emit(
            EventType.CLASSIFICATION,
            operation=context.operation_name,
            domain=self.domain.value,
            kind=classification.kind.value,
            attempt=attempts,
            success=False,
            data={
                "retryable": classification.retryable,
                "status_code": classification.status_code,
            },
        )

    # ------------------------------------------------------------------
    # Offline parking and state preservation
    # ------------------------------------------------------------------

    def _offline_now(self, context: ExecutionContext) -> bool:
        return self.offline_queue is not None and context.preserve_state and self.classifier.is_offline()

    def _should_park(self, classification: ClassifiedError, context: ExecutionContext) -> bool:
        return (
            self.offline_queue is not None
            and context.preserve_state
            and classification.is_connectivity_loss
        )

    def _park(
        self,
        operation: Callable[[], Awaitable[Any]],
        policy: RetryPolicy,
        context: ExecutionContext,
        classification: ClassifiedError,
        attempts: int,
    ) -> Optional[OperationQueued]:
        remaining = max(1, policy.max_retries - max(attempts - 1, 0))
        try:
            item = self.offline_queue.enqueue(
                operation,
                context.operation_name,
                priority=context.priority,
                state_snapshot=context.state_snapshot,
                preserve_state=True,
                max_retries=remaining,
                state_key=context.state_key,
                user_id=context.user_id,
                ttl_seconds=context.state_ttl_seconds,
            )
        except QueueFullError:
            logger.error("operation_not_queued", operation=context.operation_name, reason="queue_full")
            return None

        logger.warning(
            "operation_parked_offline",
            operation=context.operation_name,
            kind=classification.kind.value,
            attempts=attempts,
            remaining_retries=remaining,
        )
        return OperationQueued(
            classification,
            queued_operation_id=item.id,
            attempts=attempts,
            operation=context.operation_name,
        )

    def _save_initial_state(self, context: ExecutionContext) -> bool:
        if not (context.preserve_state and context.state_snapshot is not None and self.state_store):
            return False
        self.state_store.save(
            context.state_key,
            context.state_snapshot,
            ttl_seconds=context.state_ttl_seconds,
            user_id=context.user_id,
            operation=context.operation_name,
        )
        return True

    def _preserve_on_failure(self, classification: ClassifiedError, context: ExecutionContext) -> None:
        if not classification.preserve_state or context.state_snapshot is None or self.state_store is None:
            return
        if context.state_key in self.state_store:
            return
        self.state_store.save(
            context.state_key,
            context.state_snapshot,
            ttl_seconds=context.state_ttl_seconds,
            user_id=context.user_id,
            operation=context.operation_name,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def _wait(self, delay_ms: int, context: ExecutionContext, attempts: int) -> None:
        seconds = delay_ms / 1000.0
        if context.deadline is not None and context.deadline - self._clock() < seconds:
            raise self._cancelled(context, attempts, "deadline exceeded")

        if context.cancel_event is None:
            await self._sleep(seconds)
        elif await self._interruptible_sleep(seconds, context.cancel_event):
            raise self._cancelled(context, attempts, "cancelled by caller")

        self._raise_if_cancelled(context, attempts)

    async def _interruptible_sleep(self, seconds: float, cancel_event: asyncio.Event) -> bool:
        """Sleep unless the event fires first. Returns True if it fired."""
        sleep_task = asyncio.ensure_future(self._sleep(seconds))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({sleep_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleep_task, cancel_task):
                if not task.done():
                    task.cancel()
        if cancel_task in done:
            return True
        sleep_task.result()
        return False

    def _raise_if_cancelled(self, context: ExecutionContext, attempts: int) -> None:
        if context.cancel_event is not None and context.cancel_event.is_set():
            raise self._cancelled(context, attempts, "cancelled by caller")
        if context.deadline is not None and self._clock() >= context.deadline:
            raise self._cancelled(context, attempts, "deadline exceeded")

    def _cancelled(self, context: ExecutionContext, attempts: int, reason: str) -> OperationCancelled:
        classification = cancellation_error(self.domain, reason)
        self._preserve_on_failure(classification, context)
        logger.warning("operation_cancelled", operation=context.operation_name, reason=reason, attempts=attempts)
        self.telemetry.emit(
            EventType.RETRY_EXHAUSTED,
            operation=context.operation_name,
            domain=self.domain.value,
            kind=classification.kind.value,
            attempt=attempts,
            success=False,
            data={"reason": reason},
        )
        return OperationCancelled(classification, attempts=attempts, operation=context.operation_name)

    # ------------------------------------------------------------------
    # Final outcome
    # ------------------------------------------------------------------

    def fallback_value(self, classification: ClassifiedError, context: ExecutionContext) -> Optional[Any]:
        """Fallback for a final classification, or None if there is none."""
        if not classification.fallback_available or self.fallback_provider is None:
            return None

        fallback_context = context.fallback or FallbackContext(operation=context.operation_name)
        if fallback_context.domain is None:
            fallback_context = dataclasses.replace(fallback_context, domain=self.domain)

        if not self.fallback_provider.has_fallback(classification.kind, fallback_context):
            return None
        value = self.fallback_provider.fallback_for(classification.kind, fallback_context)
        if value is None:
            return None

        logger.info(
            "fallback_used",
            operation=context.operation_name,
            domain=self.domain.value,
            kind=classification.kind.value,
        )
        self.telemetry.emit(
            EventType.FALLBACK_USED,
            operation=context.operation_name,
            domain=self.domain.value,
            kind=classification.kind.value,
            success=True,
        )
        return value

    def _resolve_failure(
        self,
        classification: ClassifiedError,
        attempts: int,
        context: ExecutionContext,
        allow_fallback: bool,
    ) -> Any:
        if allow_fallback:
            value = self.fallback_value(classification, context)
            if value is not None:
                return value

        self._preserve_on_failure(classification, context)

        logger.error(
            "operation_failed",
            operation=context.operation_name,
            domain=self.domain.value,
            kind=classification.kind.value,
            attempts=attempts,
            retryable=classification.retryable,
            error=classification.message,
        )
        self.telemetry.emit(
            EventType.RETRY_EXHAUSTED,
            operation=context.operation_name,
            domain=self.domain.value,
            kind=classification.kind.value,
            attempt=attempts,
            success=False,
        )
        raise ClassifiedFailure(
            classification, attempts=attempts, operation=context.operation_name
        ) from classification.original_error


class CredentialRefreshExecutor(Generic[C]):
    """Refresh-aware wrapper around a ``RetryExecutor``.

    When an attempt fails on an expired credential, the refresh hook runs
    once (its own transient failures are retried on a small linear budget),
    the refreshed credential replaces the old one, and the operation is
    retried once. Anything after that is the base executor's normal
    retry/propagate logic; the stale credential is never used again.
    """

    def __init__(
        self,
        base: RetryExecutor,
        refresh_hook: Callable[[C], Awaitable[C]],
        refresh_policy: Optional[RetryPolicy] = None,
        auth_classifier: Optional[ErrorClassifier] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        """Initialize executor.

        Args:
            base: Executor for the operation's own domain.
            refresh_hook: ``(current_credential) -> refreshed_credential``.
            refresh_policy: Budget for retrying the refresh itself.
            auth_classifier: Classifier for refresh failures.
            sleep: Coroutine function used between refresh attempts.
        """
        self.base = base
        self.refresh_hook = refresh_hook
        self.refresh_policy = refresh_policy or default_policy(FailureDomain.AUTHENTICATION)
        self.auth_classifier = auth_classifier or AuthErrorClassifier(refresh_available=True)
        self._sleep = sleep or base._sleep

    def needs_refresh(self, error: BaseException) -> bool:
        """Whether a failure means the access credential must be refreshed."""
        classification = self.auth_classifier.classify(error)
        return classification.kind == ErrorKind.TOKEN_EXPIRED or (
            classification.status_code == 401 and classification.family == ErrorFamily.CREDENTIAL
        )

    async def execute(
        self,
        operation: Callable[[C], Awaitable[T]],
        credential: C,
        policy: Optional[RetryPolicy] = None,
        context: Optional[ExecutionContext] = None,
    ) -> T:
        """Run ``operation(credential)`` with one automatic refresh.

        Args:
            operation: Coroutine function taking the credential.
            credential: Current credential.
            policy: Retry policy for the base executor.
            context: Call metadata.

        Returns:
            The operation's result.
        """
        policy = policy or default_policy(self.base.domain)
        context = context or ExecutionContext()
        # Credential failures are handled here, never by blind retries
        base_policy = policy.model_copy(update={"retryable_kinds": policy.retryable_kinds - CREDENTIAL_KINDS})

        state = {"credential": credential, "refreshed": False}

        async def attempt() -> T:
            try:
                return await operation(state["credential"])
            except Exception as exc:
                if state["refreshed"] or not self.needs_refresh(exc):
                    raise
                state["refreshed"] = True
                state["credential"] = await self.refresh(state["credential"], context)
                logger.info("credential_refreshed_retrying", operation=context.operation_name)
                return await operation(state["credential"])

        return await self.base.execute(attempt, base_policy, context)

    async def refresh(self, credential: C, context: Optional[ExecutionContext] = None) -> C:
        """Invoke the refresh hook, retrying only transient refresh failures.

        Raises:
            ClassifiedFailure: Refresh failed; re-authentication is required.
        """
        operation_name = context.operation_name if context else "credential_refresh"
        budget = self.refresh_policy.max_retries + 1
        last: Optional[ClassifiedError] = None
        tries = 0

        for attempt in range(budget):
            tries = attempt + 1
            try:
                refreshed = await self.refresh_hook(credential)
            except Exception as exc:
                last = self.auth_classifier.classify(exc)
                logger.warning(
                    "credential_refresh_failed",
                    operation=operation_name,
                    attempt=tries,
                    kind=last.kind.value,
                )
                self._emit_refresh(operation_name, tries, False, last.kind.value)
                if last.kind in TERMINAL_REFRESH_KINDS or not last.retryable:
                    break
                if attempt < budget - 1:
                    await self._sleep(linear_delay(attempt, self.refresh_policy) / 1000.0)
                continue

            self._emit_refresh(operation_name, tries, True, None)
            return refreshed

        options = list(last.recovery_options)
        if "Re-authenticate with Google" not in options:
            options.append("Re-authenticate with Google")
        failed = last.model_copy(
            update={
                "retryable": False,
                "retry_after_ms": None,
                "requires_user_action": True,
                "preserve_state": True,
                "recovery_options": options,
            }
        )
        raise ClassifiedFailure(failed, attempts=tries, operation=operation_name) from last.original_error

    def _emit_refresh(self, operation: str, attempt: int, success: bool, kind: Optional[str]) -> None:
        self.base.telemetry.emit(
            EventType.CREDENTIAL_REFRESH,
            operation=operation,
            domain=FailureDomain.AUTHENTICATION.value,
            kind=kind,
            attempt=attempt,
            success=success,
        )


class ModelFallbackExecutor:
    """Runs an AI operation on a primary model, then on a fallback model.

    The fallback model is tried only for failures another model can fix:
    model unavailable, rate limit, quota and token limit.
    """

    def __init__(
        self,
        base: RetryExecutor,
        primary_model: str = "gemini-1.5-flash",
        fallback_model: Optional[str] = "gemini-1.5-pro",
        primary_retries: int = 2,
        fallback_retries: int = 1,
    ):
        self.base = base
        self.primary_model = primary_model
        self.fallback_model = fallback_model
        self.primary_retries = primary_retries
        self.fallback_retries = fallback_retries

    async def execute(
        self,
        operation: Callable[[str], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        context: Optional[ExecutionContext] = None,
    ) -> T:
        """Run ``operation(model)`` with model fallback.

        Args:
            operation: Coroutine function taking a model name.
            policy: Base retry policy; its retry budget is replaced per model.
            context: Call metadata.

        Returns:
            The result from either model, or a fallback value.
        """
        policy = policy or default_policy(self.base.domain)
        context = context or ExecutionContext()

        try:
            return await self.base.execute(
                lambda: operation(self.primary_model),
                policy.model_copy(update={"max_retries": self.primary_retries}),
                context,
                allow_fallback=False,
            )
        except (OperationQueued, OperationCancelled):
            raise
        except ClassifiedFailure as failure:
            if failure.classification.kind not in MODEL_FALLBACK_KINDS or not self.fallback_model:
                value = self.base.fallback_value(failure.classification, context)
                if value is None:
                    raise
                return value
            logger.warning(
                "model_fallback",
                operation=context.operation_name,
                primary_model=self.primary_model,
                fallback_model=self.fallback_model,
                kind=failure.classification.kind.value,
            )

        return await self.base.execute(
            lambda: operation(self.fallback_model),
            policy.model_copy(update={"max_retries": self.fallback_retries}),
            context,
        )


def quota_throttle_delay(
    used: float,
    limit: float,
    reset_at: Optional[float] = None,
    now: Optional[float] = None,
    domain: FailureDomain = FailureDomain.AI_SERVICE,
) -> int:
    """Delay to apply before a request given current quota usage.

    Above 90% usage the delay grows linearly up to 5 seconds. At 100% the
    caller waits for the reset if it is under 5 minutes away.

    Args:
        used: Units consumed in the current window.
        limit: Units allowed in the window.
        reset_at: Epoch seconds when the window resets.
        now: Current epoch seconds (default: ``time.time()``).
        domain: Domain reported if the quota is exhausted.

    Returns:
        Delay in milliseconds.

    Raises:
        ClassifiedFailure: Quota is exhausted and the reset is too far away.
    """
    if limit <= 0:
        return 0

    usage = used / limit
    if usage >= 1.0:
        now = time.time() if now is None else now
        if reset_at is not None:
            wait_ms = max(0, int((reset_at - now) * 1000))
            if wait_ms <= QUOTA_MAX_WAIT_MS:
                logger.warning("quota_exhausted_waiting", wait_ms=wait_ms)
                return wait_ms
        raise ClassifiedFailure(
            ClassifiedError(
                kind=ErrorKind.QUOTA_EXCEEDED,
                domain=domain,
                message="Quota exhausted until the next reset",
                retryable=False,
                fallback_available=True,
                user_feedback="Usage limits were reached. Please try again later.",
                recovery_options=["Wait for quota reset", "Use fallback response"],
            )
        )

    if usage > QUOTA_WARNING_RATIO:
        return int(min(QUOTA_MAX_THROTTLE_MS, (usage - QUOTA_WARNING_RATIO) * 50000))
    return 0
