"""
Structured error types for the job execution engine.

Every failure the engine can diagnose is a ``GpExecError`` carrying a
category, a retry flag, structured context and an optional chained cause.
Per-job failures (bad template, missing input, unusable adapter) are turned
into an ERROR job status plus a stderr diagnostic by the executors; only
systemic failures propagate to callers.

Manifesto:
    - **Typed Error Hierarchy:** One error type per failure domain
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry job/executor ids for logging
    - **Error Chaining:** Original exceptions are preserved as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        GpExecError                               │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │  ConfigurationError     TemplateError         StagingError       │
        │  (CONFIG)               (VALIDATION)          (STAGING)          │
        │                         ParameterValidation                      │
        │                         PlatformError                            │
        │                                                                  │
        │  ExecutionError         DispatchError         RoutingError       │
        │  (EXECUTION)            (DISPATCH)            (ROUTING)          │
        │                                               DuplicateExecutor  │
        │  StoreError                                   ExecutorNotFound   │
        │  (STORE)                                                         │
        │  JobNotFound, TaskNotFound                                       │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = StagingError("input file does not exist").with_context(job_id=12)
    >>> error.context.job_id
    12
    >>> error.retryable
    False

Tags:
    error-handling, exception-hierarchy, error-context, gpexec

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and logging.

    Attributes:
        CONFIG: Missing property, unresolvable adapter, invalid resource hint
        VALIDATION: Template and parameter problems, platform mismatch
        STAGING: Input file missing, download failure, move/copy failure
        EXECUTION: Process could not be spawned or waited on
        DISPATCH: External queue refused a submission
        ROUTING: Executor registry problems
        STORE: Job store / task catalog lookups
        INTERNAL: Bugs, unexpected state
    """

    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    STAGING = "STAGING"
    EXECUTION = "EXECUTION"
    DISPATCH = "DISPATCH"
    ROUTING = "ROUTING"
    STORE = "STORE"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        job_id: Job the failure belongs to
        task_name: Task the job runs
        executor_id: Executor that was handling the job
        external_id: Identifier assigned by an external queueing system
        metadata: Additional key-value pairs
    """

    job_id: int | None = None
    task_name: str | None = None
    executor_id: str | None = None
    external_id: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["job_id", "task_name", "executor_id", "external_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class GpExecError(Exception):
    """
    Base exception for all engine errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override either per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> GpExecError:
        """
        Add context to this error (fluent API).

        Usage:
            raise DispatchError("no id").with_context(job_id=4, executor_id="lsf")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION
# =============================================================================


class ConfigurationError(GpExecError):
    """A required setting is missing or a configured value cannot be used."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# VALIDATION
# =============================================================================


class TemplateError(GpExecError):
    """The command line template cannot be turned into an argv."""

    default_category = ErrorCategory.VALIDATION


class ParameterValidationError(GpExecError):
    """
    One or more parameter problems were found.

    Carries the complete list so callers can report every problem at once
    rather than the first one.
    """

    default_category = ErrorCategory.VALIDATION

    def __init__(self, problems: list[str], message: str | None = None, **kwargs: Any):
        self.problems = list(problems)
        super().__init__(message or "\n".join(self.problems) or "invalid parameters", **kwargs)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["problems"] = list(self.problems)
        return result


class PlatformError(GpExecError):
    """The task declares a CPU or OS this host does not provide."""

    default_category = ErrorCategory.VALIDATION


# =============================================================================
# STAGING / EXECUTION / DISPATCH
# =============================================================================


class StagingError(GpExecError):
    """An input could not be brought into (or returned from) the job directory."""

    default_category = ErrorCategory.STAGING


class ExecutionError(GpExecError):
    """The task process could not be run."""

    default_category = ErrorCategory.EXECUTION


class DispatchError(GpExecError):
    """A job could not be handed to its executor or external queue."""

    default_category = ErrorCategory.DISPATCH


# =============================================================================
# ROUTING
# =============================================================================


class RoutingError(GpExecError):
    """Base class for executor registry failures."""

    default_category = ErrorCategory.ROUTING


class DuplicateExecutorError(RoutingError):
    """An executor id was registered twice."""


class ExecutorNotFoundError(RoutingError):
    """A job resolved to an executor id that is not registered."""


# =============================================================================
# STORES
# =============================================================================


class StoreError(GpExecError):
    """Job store or task catalog failure. Propagates: it is systemic."""

    default_category = ErrorCategory.STORE


class JobNotFoundError(StoreError):
    """No job with the requested id."""


class TaskNotFoundError(StoreError):
    """No task template with the requested id or LSID."""


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "GpExecError",
    "ConfigurationError",
    "TemplateError",
    "ParameterValidationError",
    "PlatformError",
    "StagingError",
    "ExecutionError",
    "DispatchError",
    "RoutingError",
    "DuplicateExecutorError",
    "ExecutorNotFoundError",
    "StoreError",
    "JobNotFoundError",
    "TaskNotFoundError",
]
