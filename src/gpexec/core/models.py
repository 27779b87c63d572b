"""Domain types: jobs, parameters and task templates.

Architecture:

    .. code-block:: text

        TaskTemplate ──┬── command_line  "<python> <script> <input.file>"
                       └── formal_parameters: [FormalParameter, ...]

        Job ─────────────── parameters: [Parameter, ...]   (actuals, then outputs)
         │                  status: JobStatus
         └── parent_id ───► Job (pipeline)

Tags:
    gpexec, models, job, parameter, task

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Lifecycle status of a job record."""

    PENDING = "Pending"
    DISPATCHING = "Dispatching"
    PROCESSING = "Processing"
    FINISHED = "Finished"
    ERROR = "Error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.FINISHED, JobStatus.ERROR)


# Statuses a restarted server must reconcile with its executors.
RUNNING_STATUSES = (JobStatus.DISPATCHING, JobStatus.PROCESSING)


class ParameterDirection(str, Enum):
    IN = "IN"
    OUT = "OUT"


# Attribute keys stored on Parameter.attributes
ATTR_OPTIONAL = "optional"
ATTR_PREFIX = "prefix_when_specified"
ATTR_DEFAULT = "default_value"
ATTR_ORIGINAL_PATH = "original_path"
ATTR_STAGED_SIZE = "staged_size"
ATTR_STAGED_MTIME = "staged_mtime"
ATTR_DOWNLOADED = "downloaded"


@dataclass
class Parameter:
    """An actual parameter (input value or harvested output) of a job."""

    name: str
    value: str = ""
    direction: ParameterDirection = ParameterDirection.IN
    is_file: bool = False
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def is_output(self) -> bool:
        return self.direction == ParameterDirection.OUT

    @property
    def original_path(self) -> str | None:
        return self.attributes.get(ATTR_ORIGINAL_PATH)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "direction": self.direction.value,
            "is_file": self.is_file,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Parameter:
        return cls(
            name=data["name"],
            value=data.get("value") or "",
            direction=ParameterDirection(data.get("direction", "IN")),
            is_file=bool(data.get("is_file", False)),
            attributes=dict(data.get("attributes") or {}),
        )

    @classmethod
    def output_file(cls, job_id: int, file_name: str) -> Parameter:
        """Output parameter for a file harvested from the job directory."""
        return cls(
            name=file_name,
            value=f"{job_id}/{file_name}",
            direction=ParameterDirection.OUT,
            is_file=True,
        )


@dataclass(frozen=True)
class Choice:
    """One entry of a choice list; matches on either value or label."""

    value: str
    label: str = ""

    def matches(self, candidate: str) -> bool:
        return candidate == self.value or (bool(self.label) and candidate == self.label)


def parse_choices(text: str | None) -> tuple[Choice, ...]:
    """Parse ``"a=Alpha;b=Beta"`` (labels optional) into choices."""
    if not text:
        return ()
    choices = []
    for entry in text.split(";"):
        if not entry:
            continue
        value, _, label = entry.partition("=")
        choices.append(Choice(value=value, label=label))
    return tuple(choices)


@dataclass(frozen=True)
class FormalParameter:
    """A parameter declared by a task template."""

    name: str
    is_file: bool = False
    direction: ParameterDirection = ParameterDirection.IN
    optional: bool = False
    prefix_when_specified: str = ""
    default_value: str = ""
    choices: tuple[Choice, ...] = ()
    description: str = ""

    @property
    def is_input_file(self) -> bool:
        return self.is_file and self.direction != ParameterDirection.OUT

    def accepts(self, value: str) -> bool:
        """True when there is no choice list or ``value`` is in it."""
        return not self.choices or any(c.matches(value) for c in self.choices)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FormalParameter:
        choices = data.get("choices") or ()
        if isinstance(choices, str):
            parsed = parse_choices(choices)
        else:
            parsed = tuple(
                Choice(str(c.get("value", "")), str(c.get("label", "")))
                if isinstance(c, dict) else Choice(str(c))
                for c in choices
            )
        return cls(
            name=data["name"],
            is_file=bool(data.get("is_file", data.get("type") == "file")),
            direction=ParameterDirection(data.get("direction", "IN")),
            optional=bool(data.get("optional", False)),
            prefix_when_specified=data.get("prefix_when_specified") or "",
            default_value="" if data.get("default_value") is None else str(data["default_value"]),
            choices=parsed,
            description=data.get("description") or "",
        )


@dataclass(frozen=True)
class TaskTemplate:
    """Read-only description of an installed task."""

    name: str
    command_line: str
    formal_parameters: tuple[FormalParameter, ...] = ()
    lsid: str = ""
    task_id: int = 0
    cpu_type: str = ""
    os: str = ""
    is_pipeline: bool = False

    def formal(self, name: str) -> FormalParameter | None:
        for formal in self.formal_parameters:
            if formal.name == name:
                return formal
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskTemplate:
        return cls(
            name=data["name"],
            command_line=data.get("command_line") or "",
            formal_parameters=tuple(
                FormalParameter.from_dict(p) for p in data.get("parameters") or ()
            ),
            lsid=data.get("lsid") or "",
            task_id=int(data.get("task_id") or 0),
            cpu_type=data.get("cpu_type") or "",
            os=data.get("os") or "",
            is_pipeline=bool(data.get("is_pipeline", False)),
        )


@dataclass
class Job:
    """A request to run a task with a set of actual parameters."""

    job_id: int
    task_name: str
    parameters: list[Parameter] = field(default_factory=list)
    status: JobStatus = JobStatus.PENDING
    lsid: str = ""
    task_id: int = 0
    user_id: str = ""
    parent_id: int | None = None
    working_dir: Path | None = None
    is_pipeline: bool = False
    submitted_at: datetime = field(default_factory=_utcnow)

    @property
    def input_parameters(self) -> list[Parameter]:
        return [p for p in self.parameters if not p.is_output]

    @property
    def output_parameters(self) -> list[Parameter]:
        return [p for p in self.parameters if p.is_output]

    def parameter(self, name: str) -> Parameter | None:
        for param in self.parameters:
            if param.name == name:
                return param
        return None

    def copy(self) -> Job:
        """Copy with independent parameter objects."""
        return replace(
            self,
            parameters=[replace(p, attributes=dict(p.attributes)) for p in self.parameters],
        )


__all__ = [
    "JobStatus",
    "RUNNING_STATUSES",
    "ParameterDirection",
    "Parameter",
    "Choice",
    "parse_choices",
    "FormalParameter",
    "TaskTemplate",
    "Job",
]
