"""Job execution: command preparation, executors, routing and completion."""

from gpexec.execution.command import CommandPreparer, PreparedCommand
from gpexec.execution.completion import JobCompletionHandler
from gpexec.execution.factory import build_command_router
from gpexec.execution.router import CommandRouter

__all__ = [
    "CommandPreparer",
    "CommandRouter",
    "JobCompletionHandler",
    "PreparedCommand",
    "build_command_router",
]
