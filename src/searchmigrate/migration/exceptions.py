"""
Migration-specific exceptions for the searchmigrate reindex system.

This module defines the exceptions that can be raised while a reindex
migration runs, organized by the component that raises them, together with
the error classification, retry and circuit breaker machinery shared by
every component.

Exception Hierarchy:
    MigrationError (base)
    +-- MigrationStateError
    |   +-- InvalidPhaseTransitionError
    +-- ReconciliationMismatch
    +-- OrderingViolation
    +-- BackfillError
    +-- TargetWriteError
    +-- FenceReleaseError
    +-- CircuitBreakerOpenError

Store errors (searchmigrate.exceptions) are not MigrationErrors, but they are
classified here too: TransientStoreError is retried, PermanentStoreError is
surfaced immediately.

Error Classification System:
    - ErrorSeverity: CRITICAL, ERROR, WARNING, INFO levels
    - ErrorRecoverability: RECOVERABLE, TRANSIENT, FATAL categories
    - ErrorClassification: Rich metadata for each error type
    - ErrorHandler: Automatic retry for transient errors with circuit breaker
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from searchmigrate.exceptions import (
    IndexStoreError,
    PermanentStoreError,
    StoreTimeoutError,
    TransientStoreError,
)

if TYPE_CHECKING:
    from searchmigrate.migration.models import MigrationPhase, ReconciliationReport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Used for alerting, logging, and operator notification decisions.
    """

    CRITICAL = "critical"
    """System-level failure requiring immediate attention."""

    ERROR = "error"
    """Significant failure that may require operator intervention."""

    WARNING = "warning"
    """Issue that should be monitored but may self-resolve."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def log_level(self) -> int:
        """Get the corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Determines how the system should respond to errors and whether
    automatic retry is appropriate.

    Attributes:
        RECOVERABLE: Error can be recovered from with operator action.
            Examples: reconciliation mismatch, backfill aborted mid-run.

        TRANSIENT: Temporary error that may resolve on retry.
            Examples: index store timeout, cluster temporarily overloaded.

        FATAL: Unrecoverable error requiring operator intervention.
            Examples: schema mismatch, invalid phase transitions.
    """

    RECOVERABLE = "recoverable"
    """Error can be recovered from with operator action."""

    TRANSIENT = "transient"
    """Temporary error that may resolve on retry."""

    FATAL = "fatal"
    """Unrecoverable error requiring operator intervention."""

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        retry_config: Configuration for automatic retry (if applicable).

    Example:
        >>> classification = ErrorClassification(
        ...     severity=ErrorSeverity.WARNING,
        ...     recoverability=ErrorRecoverability.TRANSIENT,
        ...     error_code="STORE_TRANSIENT",
        ...     category="store",
        ...     suggested_action="Check search cluster health",
        ...     retry_config=RetryConfig(max_attempts=5, base_delay_ms=100),
        ... )
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert classification to dictionary for serialization."""
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        return result


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for automatic error retry.

    Implements exponential backoff with jitter for transient errors.

    Attributes:
        max_attempts: Maximum number of attempts (including the initial one).
        base_delay_ms: Base delay between retries in milliseconds.
        max_delay_ms: Maximum delay between retries in milliseconds.
        exponential_base: Base for exponential backoff (default 2.0).
        jitter_factor: Random jitter factor (0.0 to 1.0, default 0.1).

    Example:
        >>> config = RetryConfig(max_attempts=5, base_delay_ms=100, max_delay_ms=10000)
        >>> config.get_delay_ms(attempt=3)  # 100 * 2^3 = 800ms, plus jitter
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate delay for a specific retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds before the next retry.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)

        if self.jitter_factor > 0:
            jitter = delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
            delay = delay + jitter

        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        """Create from dictionary."""
        return cls(
            max_attempts=data.get("max_attempts", 3),
            base_delay_ms=data.get("base_delay_ms", 100.0),
            max_delay_ms=data.get("max_delay_ms", 30000.0),
            exponential_base=data.get("exponential_base", 2.0),
            jitter_factor=data.get("jitter_factor", 0.1),
        )


# Default retry configurations for different error categories
TRANSIENT_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=100.0,
    max_delay_ms=30000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)

BATCH_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=500.0,
    max_delay_ms=60000.0,
    exponential_base=2.0,
    jitter_factor=0.2,
)

TARGET_WRITE_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay_ms=50.0,
    max_delay_ms=2000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)


class MigrationError(Exception):
    """
    Base exception for all migration-related errors.

    All exceptions raised by the migration system inherit from this class,
    allowing callers to catch all migration errors with a single handler.

    Attributes:
        message: Human-readable error description.
        migration_name: Name of the migration that caused the error, if known.
        record_id: The record involved, if applicable.
        recoverable: Whether this error can be recovered from.
        suggested_action: Suggested action for recovery.
        classification: Rich error classification metadata.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review migration logs before retrying the operation",
    )

    def __init__(
        self,
        message: str,
        *,
        migration_name: str | None = None,
        record_id: str | None = None,
        recoverable: bool = False,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.migration_name = migration_name
        self.record_id = record_id
        self.recoverable = recoverable
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.migration_name:
            parts.append(f"migration={self.migration_name}")
        if self.record_id:
            parts.append(f"record_id={self.record_id}")
        if self.recoverable:
            parts.append("(recoverable)")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """
        Get the error classification for this exception.

        Subclasses override _default_classification to provide
        specific classification metadata for their error type.
        """
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to a dictionary for serialization."""
        return {
            "message": self.message,
            "migration_name": self.migration_name,
            "record_id": self.record_id,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class MigrationStateError(MigrationError):
    """
    Raised when an operation is invalid for the current migration phase.

    Attributes:
        current_phase: The current phase of the migration.
        expected_phases: The phases that would have been valid.
        operation: The operation that was attempted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_STATE_ERROR",
        category="state",
        suggested_action="Ensure the migration is in the correct phase before this operation",
    )

    def __init__(
        self,
        message: str,
        current_phase: MigrationPhase | None = None,
        expected_phases: list[MigrationPhase] | None = None,
        operation: str | None = None,
        migration_name: str | None = None,
    ) -> None:
        self.current_phase = current_phase
        self.expected_phases = expected_phases or []
        self.operation = operation
        super().__init__(
            message=message,
            migration_name=migration_name,
            recoverable=False,
        )


class InvalidPhaseTransitionError(MigrationStateError):
    """
    Raised when attempting an invalid phase transition.

    The phase controller enforces a strict state machine with no skips.
    Only CUTOVER_PENDING -> DUAL_WRITE moves backwards.

    Attributes:
        current_phase: The current phase of the migration.
        target_phase: The phase that was attempted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_PHASE_TRANSITION",
        category="state",
        suggested_action="Review the migration state machine and ensure valid transitions",
    )

    def __init__(
        self,
        current_phase: MigrationPhase,
        target_phase: MigrationPhase,
        migration_name: str | None = None,
    ) -> None:
        self.target_phase = target_phase
        super().__init__(
            message=f"Invalid phase transition: {current_phase.value} -> {target_phase.value}",
            current_phase=current_phase,
            expected_phases=[],
            operation="phase_transition",
            migration_name=migration_name,
        )


class ReconciliationMismatch(MigrationError):
    """
    Raised when post-backfill reconciliation fails.

    Blocks the BACKFILLING -> CUTOVER_PENDING transition. The operator
    decides whether to rerun the backfill, raise the tolerance, or roll back.

    Attributes:
        report: The failing ReconciliationReport.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="RECONCILIATION_MISMATCH",
        category="reconciliation",
        suggested_action=(
            "Legacy and Target did not reconcile after backfill. "
            "Inspect the report, then rerun the backfill or adjust the tolerance."
        ),
    )

    def __init__(
        self,
        report: ReconciliationReport,
        migration_name: str | None = None,
    ) -> None:
        self.report = report
        super().__init__(
            message=f"Reconciliation failed: {'; '.join(report.failures)}",
            migration_name=migration_name,
            recoverable=True,
            suggested_action="Inspect the reconciliation report before advancing",
        )


class OrderingViolation(MigrationError):
    """
    Describes a change event that arrived out of per-record order.

    The dispatcher logs these and still applies the event (last arrival
    wins); it never raises them.

    Attributes:
        last_sequence: Highest sequence token previously seen for the record.
        received_sequence: Sequence token of the late event.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ORDERING_VIOLATION",
        category="dual_write",
        suggested_action="Check that the change feed preserves per-record ordering",
    )

    def __init__(
        self,
        record_id: str,
        last_sequence: int,
        received_sequence: int,
        migration_name: str | None = None,
    ) -> None:
        self.last_sequence = last_sequence
        self.received_sequence = received_sequence
        super().__init__(
            message=(
                f"Out-of-order change event: sequence {received_sequence} "
                f"after {last_sequence}"
            ),
            migration_name=migration_name,
            record_id=record_id,
            recoverable=True,
        )


class BackfillError(MigrationError):
    """
    Raised when a backfill run aborts.

    The backfill position is preserved, so the run can be resumed from the
    last acknowledged batch without rereading completed ones.

    Attributes:
        last_position: Position every document before which was processed.
        snapshot_token: Snapshot the run was reading.
        original_error: The underlying error message.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="BACKFILL_ERROR",
        category="backfill",
        suggested_action=(
            "Backfill aborted but can be resumed from the last checkpoint. "
            "Check Target cluster health, then resume the backfill."
        ),
        retry_config=BATCH_RETRY_CONFIG,
    )

    def __init__(
        self,
        last_position: int,
        error: str,
        snapshot_token: str | None = None,
        migration_name: str | None = None,
    ) -> None:
        self.last_position = last_position
        self.snapshot_token = snapshot_token
        self.original_error = error
        super().__init__(
            message=f"Backfill failed at position {last_position}: {error}",
            migration_name=migration_name,
            recoverable=True,
            suggested_action="Resume the backfill to continue from the last checkpoint",
        )


class TargetWriteError(MigrationError):
    """
    Raised when a write to the Target index fails.

    While Legacy is authoritative a failed Target write is parked for
    independent replay instead of raised. It reaches change feed consumers
    only when the parked write limit is reached, before either side is
    written, so the event is redelivered.

    Attributes:
        operation: Target operation that failed ("upsert" or "delete").
        target_error: The error from the Target store.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="TARGET_WRITE_ERROR",
        category="dual_write",
        suggested_action=(
            "Target write failed and was parked for replay. "
            "Call retry_failed_target_writes() once the Target cluster recovers."
        ),
        retry_config=TRANSIENT_RETRY_CONFIG,
    )

    def __init__(
        self,
        record_id: str,
        operation: str,
        target_error: str,
        migration_name: str | None = None,
    ) -> None:
        self.operation = operation
        self.target_error = target_error
        super().__init__(
            message=f"Target {operation} failed: {target_error}",
            migration_name=migration_name,
            record_id=record_id,
            recoverable=True,
        )


class FenceReleaseError(MigrationError):
    """
    Raised when the delete fence cannot replay a pending delete.

    The failed delete and everything queued behind it stay in the fence.
    Release is idempotent, so it can simply be called again.

    Attributes:
        pending_count: Deletes still waiting in the fence.
        original_error: The underlying error message.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="FENCE_RELEASE_ERROR",
        category="delete_fence",
        suggested_action="Retry the phase advance once the Target cluster recovers",
    )

    def __init__(
        self,
        record_id: str,
        pending_count: int,
        error: str,
        migration_name: str | None = None,
    ) -> None:
        self.pending_count = pending_count
        self.original_error = error
        super().__init__(
            message=f"Delete fence release stopped with {pending_count} pending: {error}",
            migration_name=migration_name,
            record_id=record_id,
            recoverable=True,
        )


# =============================================================================
# Error Handler
# =============================================================================


class CircuitState(Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    """Circuit is closed, operations proceed normally."""

    OPEN = "open"
    """Circuit is open, operations are rejected immediately."""

    HALF_OPEN = "half_open"
    """Circuit is testing if operations can succeed again."""


@dataclass
class CircuitBreakerConfig:
    """
    Configuration for circuit breaker behavior.

    Attributes:
        failure_threshold: Number of failures before opening circuit.
        success_threshold: Number of successes in half-open state to close.
        timeout_seconds: Seconds before trying half-open state.
        excluded_exceptions: Exception types that don't trip the circuit.
    """

    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    excluded_exceptions: tuple[type[Exception], ...] = ()


class CircuitBreakerOpenError(MigrationError):
    """
    Raised when an operation is rejected due to open circuit breaker.

    Attributes:
        operation_name: Name of the operation that was rejected.
        time_until_retry: Seconds until the circuit will try again.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="CIRCUIT_BREAKER_OPEN",
        category="circuit_breaker",
        suggested_action=(
            "Circuit breaker is open due to repeated failures. "
            "Wait for the timeout period before retrying."
        ),
    )

    def __init__(
        self,
        operation_name: str,
        time_until_retry: float,
        migration_name: str | None = None,
    ) -> None:
        self.operation_name = operation_name
        self.time_until_retry = time_until_retry
        super().__init__(
            message=(
                f"Circuit breaker open for '{operation_name}'. Retry after {time_until_retry:.1f}s"
            ),
            migration_name=migration_name,
            recoverable=True,
            suggested_action=f"Wait {time_until_retry:.0f}s before retrying",
        )


class CircuitBreaker:
    """
    Circuit breaker for index store operations.

    Tracks failures and opens the circuit when a threshold is reached,
    so a struggling Target cluster is not hammered by every change event.

    Usage:
        >>> cb = CircuitBreaker(config=CircuitBreakerConfig(failure_threshold=5))
        >>> async with cb.protect("target.upsert"):
        ...     await target.index_or_replace(record_id, doc)
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        name: str = "default",
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    async def _check_state(self) -> None:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            elapsed = time.monotonic() - self._last_failure_time
            if elapsed >= self.config.timeout_seconds:
                logger.info(
                    "Circuit breaker '%s' transitioning to half-open after %.1fs",
                    self.name,
                    elapsed,
                )
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0

    async def _record_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    logger.info(
                        "Circuit breaker '%s' closing after %d successes",
                        self.name,
                        self._success_count,
                    )
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    async def _record_failure(self, exc: Exception) -> None:
        if isinstance(exc, self.config.excluded_exceptions):
            return

        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    "Circuit breaker '%s' opening from half-open after failure",
                    self.name,
                )
                self._state = CircuitState.OPEN
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                logger.warning(
                    "Circuit breaker '%s' opening after %d failures",
                    self.name,
                    self._failure_count,
                )
                self._state = CircuitState.OPEN

    def get_time_until_retry(self) -> float:
        """Get seconds until the circuit will try half-open."""
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return 0.0
        elapsed = time.monotonic() - self._last_failure_time
        return max(0.0, self.config.timeout_seconds - elapsed)

    @asynccontextmanager
    async def protect(
        self,
        operation_name: str,
        migration_name: str | None = None,
    ) -> AsyncIterator[None]:
        """
        Guard one call: its outcome is recorded against the circuit.

        Raises:
            CircuitBreakerOpenError: If the circuit is open.
        """
        await self._check_state()

        if self._state == CircuitState.OPEN:
            raise CircuitBreakerOpenError(
                operation_name=operation_name,
                time_until_retry=self.get_time_until_retry(),
                migration_name=migration_name,
            )

        try:
            yield
        except Exception as e:
            await self._record_failure(e)
            raise
        await self._record_success()

    def reset(self) -> None:
        """Reset the circuit breaker to closed state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = None


class ErrorHandler:
    """
    Error handler with automatic retry and circuit breaker support.

    Retries transient index store errors (TransientStoreError, including
    timeouts) and MigrationErrors classified as TRANSIENT, with exponential
    backoff. Everything else is raised on the first failure.

    Usage:
        >>> handler = ErrorHandler()
        >>> await handler.execute_with_retry(
        ...     lambda: target.insert_if_absent(record_id, doc),
        ...     operation_name="backfill.insert",
        ... )

    Attributes:
        circuit_breaker: Optional circuit breaker checked before every attempt.
    """

    def __init__(self, circuit_breaker: CircuitBreaker | None = None) -> None:
        self.circuit_breaker = circuit_breaker

    async def execute_with_retry(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str,
        *,
        migration_name: str | None = None,
        retry_config: RetryConfig | None = None,
    ) -> T:
        """
        Execute an operation with automatic retry for transient errors.

        Args:
            operation: Async callable to execute (called once per attempt).
            operation_name: Name for logging.
            migration_name: Optional migration name for error context.
            retry_config: Override retry configuration.

        Returns:
            The result of the operation.

        Raises:
            Exception: The last error once retries are exhausted, or the first
                non-transient error.
            CircuitBreakerOpenError: If the circuit breaker is open.
        """
        attempt = 0

        while True:
            try:
                if self.circuit_breaker:
                    async with self.circuit_breaker.protect(operation_name, migration_name):
                        result = await operation()
                else:
                    result = await operation()

                if attempt > 0:
                    logger.info(
                        "Operation '%s' succeeded after %d retries",
                        operation_name,
                        attempt,
                    )
                return result

            except CircuitBreakerOpenError:
                raise

            except (MigrationError, IndexStoreError) as e:
                classification = classify_exception(e)
                logger.log(
                    classification.severity.log_level,
                    "Error in '%s': %s [code=%s, recoverability=%s]",
                    operation_name,
                    e,
                    classification.error_code,
                    classification.recoverability.value,
                )

                if not classification.recoverability.should_retry:
                    raise

                config = retry_config or classification.retry_config or TRANSIENT_RETRY_CONFIG
                if attempt + 1 >= config.max_attempts:
                    logger.error(
                        "Exhausted %d attempts for '%s': %s",
                        config.max_attempts,
                        operation_name,
                        e,
                    )
                    raise

                delay_s = config.get_delay_ms(attempt) / 1000.0
                logger.warning(
                    "Retrying '%s' in %.2fs (attempt %d/%d)",
                    operation_name,
                    delay_s,
                    attempt + 1,
                    config.max_attempts,
                )
                await asyncio.sleep(delay_s)
                attempt += 1


_STORE_TIMEOUT_CLASSIFICATION = ErrorClassification(
    severity=ErrorSeverity.WARNING,
    recoverability=ErrorRecoverability.TRANSIENT,
    error_code="STORE_TIMEOUT",
    category="store",
    suggested_action="Index store call timed out; check cluster load or raise the timeout",
)

_STORE_TRANSIENT_CLASSIFICATION = ErrorClassification(
    severity=ErrorSeverity.WARNING,
    recoverability=ErrorRecoverability.TRANSIENT,
    error_code="STORE_TRANSIENT",
    category="store",
    suggested_action="Index store temporarily unavailable; the operation will be retried",
)

_STORE_PERMANENT_CLASSIFICATION = ErrorClassification(
    severity=ErrorSeverity.ERROR,
    recoverability=ErrorRecoverability.FATAL,
    error_code="STORE_PERMANENT",
    category="store",
    suggested_action="Fix the index store error (schema mismatch, credentials) and retry",
)


def classify_exception(exc: Exception) -> ErrorClassification:
    """
    Classify any exception and return its error classification.

    MigrationErrors carry their own classification. Index store errors are
    classified by kind: transient (including timeouts) or permanent. Anything
    else gets a generic fatal classification.

    Example:
        >>> try:
        ...     await risky_operation()
        ... except Exception as e:
        ...     if classify_exception(e).recoverability.should_retry:
        ...         schedule_retry()
    """
    if isinstance(exc, MigrationError):
        return exc.classification

    if isinstance(exc, StoreTimeoutError):
        return _STORE_TIMEOUT_CLASSIFICATION
    if isinstance(exc, TransientStoreError):
        return _STORE_TRANSIENT_CLASSIFICATION
    if isinstance(exc, (PermanentStoreError, IndexStoreError)):
        return _STORE_PERMANENT_CLASSIFICATION

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs.",
    )


def is_retryable(exc: Exception) -> bool:
    """Check if an exception is classified as transient."""
    return classify_exception(exc).recoverability.should_retry


__all__ = [
    # Classification
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "TRANSIENT_RETRY_CONFIG",
    "BATCH_RETRY_CONFIG",
    "TARGET_WRITE_RETRY_CONFIG",
    # Exceptions
    "MigrationError",
    "MigrationStateError",
    "InvalidPhaseTransitionError",
    "ReconciliationMismatch",
    "OrderingViolation",
    "BackfillError",
    "TargetWriteError",
    "FenceReleaseError",
    "CircuitBreakerOpenError",
    # Circuit breaker and handler
    "CircuitState",
    "CircuitBreakerConfig",
    "CircuitBreaker",
    "ErrorHandler",
    "classify_exception",
    "is_retryable",
]
