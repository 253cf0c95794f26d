"""TempoGuard: resilient execution for calendar assistants.

Classifies failures from network, authentication, AI and calendar API calls,
retries what can be retried, parks work while offline, preserves workflow
state and serves deterministic fallbacks when nothing else works.
"""

__version__ = "0.1.0"

# Logging exports
from tempoguard.logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

# Error exports
from tempoguard.errors import (
    ClassifiedError,
    ClassifiedFailure,
    ConfigurationError,
    ErrorFamily,
    ErrorKind,
    FailureDomain,
    FallbacksDisabledError,
    OperationCancelled,
    OperationQueued,
    QueueFullError,
    TempoGuardError,
)

# Component exports
from tempoguard.classifiers import ErrorClassifier, get_classifier, is_offline
from tempoguard.config import ResilienceConfig, load_config
from tempoguard.connectivity import (
    ConnectionClass,
    ConnectivityMonitor,
    ConnectivityProbe,
    NetworkStatus,
)
from tempoguard.events import (
    BufferedEventSink,
    EventSink,
    EventType,
    ResilienceEvent,
    TelemetryRecorder,
)
from tempoguard.fallbacks import FallbackContext, FallbackProvider
from tempoguard.manager import ResilienceManager
from tempoguard.offline_queue import DrainReport, OfflineQueue, OperationPriority, QueuedOperation
from tempoguard.retry import (
    CredentialRefreshExecutor,
    ExecutionContext,
    ModelFallbackExecutor,
    RetryExecutor,
    RetryPolicy,
    calculate_delay,
    quota_throttle_delay,
)
from tempoguard.state_store import PreservedState, StatePreservationStore

__all__ = [
    "__version__",
    # Logging
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
    # Errors
    "ClassifiedError",
    "ClassifiedFailure",
    "ConfigurationError",
    "ErrorFamily",
    "ErrorKind",
    "FailureDomain",
    "FallbacksDisabledError",
    "OperationCancelled",
    "OperationQueued",
    "QueueFullError",
    "TempoGuardError",
    # Classification
    "ErrorClassifier",
    "get_classifier",
    "is_offline",
    # Execution
    "CredentialRefreshExecutor",
    "ExecutionContext",
    "ModelFallbackExecutor",
    "RetryExecutor",
    "RetryPolicy",
    "calculate_delay",
    "quota_throttle_delay",
    # Queue and state
    "DrainReport",
    "OfflineQueue",
    "OperationPriority",
    "QueuedOperation",
    "PreservedState",
    "StatePreservationStore",
    # Connectivity
    "ConnectionClass",
    "ConnectivityMonitor",
    "ConnectivityProbe",
    "NetworkStatus",
    # Fallbacks and telemetry
    "FallbackContext",
    "FallbackProvider",
    "BufferedEventSink",
    "EventSink",
    "EventType",
    "ResilienceEvent",
    "TelemetryRecorder",
    # Configuration
    "ResilienceConfig",
    "ResilienceManager",
    "load_config",
]
