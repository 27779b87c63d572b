"""Command executors: local processes and composite pipelines.

The DRM executor lives in :mod:`gpexec.execution.drm`.
"""

from gpexec.execution.executors.local import LocalCommandExecutor
from gpexec.execution.executors.pipeline import DEFAULT_PIPELINE_EXECUTOR_ID, PipelineExecutor
from gpexec.execution.executors.protocol import CommandExecutor

__all__ = [
    "CommandExecutor",
    "DEFAULT_PIPELINE_EXECUTOR_ID",
    "LocalCommandExecutor",
    "PipelineExecutor",
]
