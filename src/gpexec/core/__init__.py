"""Core primitives: domain model, errors, logging, settings, persistence."""

from gpexec.core.errors import (
    ConfigurationError,
    DispatchError,
    ErrorCategory,
    ErrorContext,
    ExecutionError,
    ExecutorNotFoundError,
    GpExecError,
    ParameterValidationError,
    StagingError,
    TemplateError,
)
from gpexec.core.models import (
    FormalParameter,
    Job,
    JobStatus,
    Parameter,
    ParameterDirection,
    TaskTemplate,
)

__all__ = [
    "ConfigurationError",
    "DispatchError",
    "ErrorCategory",
    "ErrorContext",
    "ExecutionError",
    "ExecutorNotFoundError",
    "GpExecError",
    "ParameterValidationError",
    "StagingError",
    "TemplateError",
    "FormalParameter",
    "Job",
    "JobStatus",
    "Parameter",
    "ParameterDirection",
    "TaskTemplate",
]
