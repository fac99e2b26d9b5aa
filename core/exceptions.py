"""
Custom exceptions for the ETL pipeline with structured error context.

Every error raised by the pipeline carries a context dictionary so that a
failed run can be diagnosed (pipeline, run, failed step, underlying cause)
without inspecting partial state. Errors are classified as retryable or
fatal through the RetryableError / NonRetryableError mixins; the pipeline
coordinator retries only the former.

Exception Hierarchy:
    ETLException (base)
    ├── ExtractionError
    │   ├── SourceUnavailable        (retryable)
    │   ├── SourceSchemaError        (fatal)
    │   └── SourceAccessDenied       (fatal)
    ├── TransformationError
    │   └── TransformFatal           (fatal)
    ├── LoadError
    │   ├── LoadConflict             (fatal)
    │   ├── TargetUnavailable        (retryable)
    │   └── ConcurrentWriteError     (retryable)
    ├── WatermarkError               (fatal)
    │   └── StaleAdvance             (fatal)
    ├── CoordinationError
    │   ├── AlreadyRunning           (fatal for the invocation)
    │   ├── RunCancelled             (fatal)
    │   ├── RetriesExhausted         (fatal)
    │   ├── StepTimeout              (retryable)
    │   ├── StepFailed               (fatal)
    │   └── PipelineNotFound         (fatal)
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any, List
from datetime import datetime, timezone


class ETLException(Exception):
    """
    Base exception for all ETL-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (pipeline_id, step, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        self.message = message
        self.context = dict(context or {})
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    @property
    def retryable(self) -> bool:
        return isinstance(self, RetryableError)

    @property
    def step(self) -> Optional[str]:
        return self.context.get("step")

    def add_context(self, **context: Any) -> "ETLException":
        """Attach context without overwriting what the raiser already recorded."""
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "retryable": self.retryable,
            "context": {k: _jsonable(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
            "original_error": (
                f"{type(self.original_exception).__name__}: {self.original_exception}"
                if self.original_exception else None
            )
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Source connectivity failures and timeouts
    - Rate limiting (HTTP 429) and service unavailable (HTTP 503)
    - Temporary warehouse connection issues
    - Lost races on concurrent writes
    """
    pass


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Schema mismatches
    - Non-idempotent replays (LoadConflict)
    - Coordination violations
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for data extraction failures."""
    pass


class SourceUnavailable(RetryableError, ExtractionError):
    """
    The source could not be reached or answered with a transient failure.

    Context should include:
        - source: Table, file or URL that failed
        - status_code: HTTP status code (if applicable)
    """
    pass


class SourceSchemaError(NonRetryableError, ExtractionError):
    """
    Expected fields are missing from the source, or the source broke its
    ordering contract.

    Context should include:
        - missing_fields: Names of the absent fields
        - source_id: Offending record (if applicable)
    """
    pass


class SourceAccessDenied(NonRetryableError, ExtractionError):
    """Authentication or not-found answers (HTTP 401, 403, 404)."""
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for data transformation failures."""
    pass


class TransformFatal(NonRetryableError, TransformationError):
    """
    The shape of the batch cannot be interpreted at all.

    Context should include:
        - source_id: Record that exposed the mismatch
        - field_name: Field carrying the unexpected structure
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for data loading failures."""
    pass


class LoadConflict(NonRetryableError, LoadError):
    """
    A fact already exists under the same fact_key with different measures.

    This signals silent drift in the source and is surfaced for manual
    review; the stored fact is never overwritten.

    Context should include:
        - fact_table: Target fact table
        - fact_keys: Conflicting fact keys
    """

    def __init__(
        self,
        message: str,
        conflicts: Optional[List[Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        super().__init__(message, context, original_exception)
        self.conflicts = list(conflicts or [])
        self.context.setdefault("fact_keys", [c.fact_key for c in self.conflicts])

    @property
    def fact_keys(self) -> List[str]:
        return [c.fact_key for c in self.conflicts]


class TargetUnavailable(RetryableError, LoadError):
    """Warehouse connection errors that should be retried."""
    pass


class ConcurrentWriteError(RetryableError, LoadError):
    """
    A concurrent writer won a race on a unique key (surrogate key allocation,
    natural key or fact key). Retried after re-resolving surrogate keys.
    """
    pass


# ============================================================================
# Watermark Errors
# ============================================================================

class WatermarkError(NonRetryableError):
    """
    Exception raised when watermark management fails.

    Context should include:
        - pipeline_id: Pipeline that owns the watermark
        - stored_boundary / new_boundary: Values involved
    """
    pass


class StaleAdvance(WatermarkError):
    """
    The watermark was not strictly behind the new boundary, or another
    writer advanced it first. Indicates a coordination bug under correct
    locking.
    """
    pass


# ============================================================================
# Coordination Errors
# ============================================================================

class CoordinationError(ETLException):
    """Base exception for pipeline run coordination failures."""
    pass


class AlreadyRunning(NonRetryableError, CoordinationError):
    """
    Another run of the same pipeline is in flight. Expected under concurrent
    triggering; the caller may ignore it or retry later.
    """
    pass


class RunCancelled(NonRetryableError, CoordinationError):
    """The run was cancelled between steps."""
    pass


class RetriesExhausted(NonRetryableError, CoordinationError):
    """
    A retryable failure persisted past the retry limit.

    Context should include:
        - step: Step that kept failing
        - attempts: Number of attempts made
    """
    pass


class StepTimeout(RetryableError, CoordinationError):
    """A blocking step exceeded its per-call timeout."""
    pass


class StepFailed(NonRetryableError, CoordinationError):
    """An unexpected exception escaped a pipeline step."""
    pass


class PipelineNotFound(NonRetryableError, CoordinationError):
    """No pipeline definition exists for the requested pipeline_id."""
    pass
