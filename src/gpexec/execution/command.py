"""Command preparation: everything between "job accepted" and "process spawned".

Shared by the local executor and the DRM executor:

    .. code-block:: text

        platform check ─► defaults ─► stage inputs ─► build environment
              ─► validate (all problems) ─► build argv ─► PreparedCommand

If anything after staging fails, the borrowed inputs are returned before the
error propagates, so a rejected job never keeps a user's files.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from gpexec.core.errors import GpExecError, ParameterValidationError, TemplateError
from gpexec.core.models import FormalParameter, Job, Parameter, ParameterDirection, TaskTemplate
from gpexec.core.settings import GpExecSettings
from gpexec.execution.environment import (
    SubstitutionEnvironment,
    build_environment,
    job_directory,
    process_environment,
    task_library_directory,
)
from gpexec.execution.staging import FileStager
from gpexec.execution.templating import build_command_line, render_command_line
from gpexec.execution.validation import validate_cpu, validate_os, validate_parameters

STDIN_REDIRECT = "<"


@dataclass
class PreparedCommand:
    """A job ready to be spawned or submitted."""

    job: Job
    template: TaskTemplate
    argv: list[str]
    work_dir: Path
    environment: dict[str, str] = field(default_factory=dict)
    substitution_env: SubstitutionEnvironment = field(default_factory=SubstitutionEnvironment)
    stdin_file: Path | None = None

    @property
    def command_line(self) -> str:
        return render_command_line(self.argv)


def apply_defaults(
    parameters: list[Parameter],
    formals: tuple[FormalParameter, ...] | list[FormalParameter],
) -> list[Parameter]:
    """Fill blank or missing input values from the formal defaults."""
    formal_by_name = {f.name: f for f in formals}
    result = []
    supplied = set()
    for param in parameters:
        formal = formal_by_name.get(param.name)
        if formal is not None and not param.is_output:
            supplied.add(param.name)
            value = param.value or formal.default_value
            param = replace(param, value=value, is_file=param.is_file or formal.is_file)
        result.append(param)
    for formal in formals:
        if formal.name in supplied or formal.direction == ParameterDirection.OUT:
            continue
        if formal.optional or formal.default_value:
            result.append(
                Parameter(name=formal.name, value=formal.default_value, is_file=formal.is_file)
            )
    return result


def extract_stdin_redirect(argv: list[str], work_dir: Path) -> tuple[list[str], Path | None]:
    """Remove a ``< file`` pair from argv and return the stdin file."""
    if STDIN_REDIRECT not in argv[1:]:
        return argv, None
    idx = argv.index(STDIN_REDIRECT, 1)
    if idx + 1 >= len(argv):
        raise TemplateError("stdin redirection '<' is not followed by a file name")
    stdin = Path(argv[idx + 1])
    if not stdin.is_absolute():
        stdin = work_dir / stdin
    return argv[:idx] + argv[idx + 2:], stdin


def validation_diagnostic(problems: list[str], command_line: str) -> str:
    return (
        "Error validating input parameters, command line would be:\n"
        + command_line + "\n" + "\n".join(problems)
    )


class CommandPreparer:
    """Turns a job and its task template into a ``PreparedCommand``."""

    def __init__(
        self,
        settings: GpExecSettings,
        stager: FileStager | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._settings = settings
        self.stager = stager or FileStager(settings)
        self._environ = environ

    def prepare(self, job: Job, template: TaskTemplate) -> PreparedCommand:
        """Stage, template and validate.

        Raises:
            ConfigurationError, PlatformError, StagingError,
            ParameterValidationError: the job cannot run.
        """
        settings = self._settings
        work_dir = job_directory(settings, job.job_id)
        work_dir.mkdir(parents=True, exist_ok=True)

        if not settings.command_prefix:
            validate_cpu(template.cpu_type)
            validate_os(template.os)

        formals = template.formal_parameters
        parameters = apply_defaults(job.parameters, formals)
        parameters = self.stager.stage_inputs(parameters, formals, work_dir)
        staged_job = replace(job, parameters=parameters, working_dir=work_dir)

        try:
            return self._build(staged_job, template, work_dir)
        except GpExecError:
            self.stager.restore_inputs(
                parameters, task_name=job.task_name, job_id=job.job_id, warn=False
            )
            raise

    def _build(self, job: Job, template: TaskTemplate, work_dir: Path) -> PreparedCommand:
        settings = self._settings
        environ = dict(os.environ if self._environ is None else self._environ)
        env = build_environment(
            template.name,
            job.job_id,
            template.task_id or job.task_id,
            template.formal_parameters,
            job.parameters,
            environ,
            settings=settings,
            user_id=job.user_id,
            lsid=template.lsid or job.lsid,
        )

        problems = validate_parameters(
            template.name,
            template.command_line,
            job.input_parameters,
            list(template.formal_parameters),
            env,
            runtime=True,
        )
        argv: list[str] = []
        try:
            argv = build_command_line(
                template.command_line,
                env,
                template.formal_parameters,
                command_prefix=settings.command_prefix,
            )
        except TemplateError as e:
            problems.append(e.message)
        if problems:
            rendered = render_command_line(argv) if argv else template.command_line
            raise ParameterValidationError(
                problems, message=validation_diagnostic(problems, rendered)
            ).with_context(job_id=job.job_id, task_name=template.name)

        argv, stdin_file = extract_stdin_redirect(argv, work_dir)
        lib_dir = task_library_directory(settings, template.name, template.lsid or job.lsid)
        return PreparedCommand(
            job=job,
            template=template,
            argv=argv,
            work_dir=work_dir,
            environment=process_environment(environ, lib_dir),
            substitution_env=env,
            stdin_file=stdin_file,
        )


__all__ = [
    "CommandPreparer",
    "PreparedCommand",
    "apply_defaults",
    "extract_stdin_redirect",
    "validation_diagnostic",
]
