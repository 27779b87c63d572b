"""Tests for CommandPreparer and its helpers."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from gpexec.core.errors import ParameterValidationError, PlatformError, TemplateError
from gpexec.core.models import FormalParameter, Job, Parameter, TaskTemplate
from gpexec.core.settings import GpExecSettings
from gpexec.execution.command import (
    CommandPreparer,
    apply_defaults,
    extract_stdin_redirect,
)
from tests._support.jobs import make_job


class TestApplyDefaults:
    def test_blank_value_takes_default(self) -> None:
        formals = (FormalParameter("n", default_value="10"),)
        assert apply_defaults([Parameter("n", "")], formals)[0].value == "10"

    def test_missing_optional_is_added(self) -> None:
        formals = (FormalParameter("a"), FormalParameter("b", optional=True, default_value="x"))
        params = apply_defaults([Parameter("a", "1")], formals)
        assert [(p.name, p.value) for p in params] == [("a", "1"), ("b", "x")]

    def test_file_flag_follows_formal(self) -> None:
        formals = (FormalParameter("f", is_file=True),)
        assert apply_defaults([Parameter("f", "/x")], formals)[0].is_file


class TestStdinRedirect:
    def test_pair_removed(self, tmp_path: Path) -> None:
        argv, stdin = extract_stdin_redirect(["sort", "<", "in.txt", "-r"], tmp_path)
        assert argv == ["sort", "-r"]
        assert stdin == tmp_path / "in.txt"

    def test_absolute_path_kept(self, tmp_path: Path) -> None:
        _, stdin = extract_stdin_redirect(["sort", "<", "/data/in.txt"], tmp_path)
        assert stdin == Path("/data/in.txt")

    def test_no_redirect(self, tmp_path: Path) -> None:
        assert extract_stdin_redirect(["sort"], tmp_path) == (["sort"], None)

    def test_dangling_redirect(self, tmp_path: Path) -> None:
        with pytest.raises(TemplateError):
            extract_stdin_redirect(["sort", "<"], tmp_path)


class TestCommandPreparer:
    def test_prepares_write_upper(
        self, settings: GpExecSettings, write_upper_task: TaskTemplate, input_file: Path
    ) -> None:
        preparer = CommandPreparer(settings, environ={"PATH": "/usr/bin"})
        prepared = preparer.prepare(make_job(5, str(input_file), task=write_upper_task), write_upper_task)

        work_dir = Path(settings.jobs_dir) / "5"
        lib_dir = Path(settings.task_lib_dir) / "WriteUpper.1.00001"
        assert prepared.work_dir == work_dir
        assert prepared.argv == [
            sys.executable,
            str(lib_dir) + os.sep + "write_upper.py",
            str(work_dir / "sample.txt"),
            "sample",
        ]
        assert prepared.environment["PATH"] == str(lib_dir) + os.pathsep + "/usr/bin"
        assert prepared.job.working_dir == work_dir
        assert (work_dir / "sample.txt").exists()
        assert not input_file.exists()

    def test_validation_failure_returns_inputs(
        self, settings: GpExecSettings, input_file: Path
    ) -> None:
        template = TaskTemplate(
            name="Demo",
            command_line="prog <input.file> <b>",
            formal_parameters=(FormalParameter("input.file", is_file=True), FormalParameter("b")),
        )
        preparer = CommandPreparer(settings, environ={})

        with pytest.raises(ParameterValidationError) as exc_info:
            preparer.prepare(make_job(6, str(input_file), task=template), template)

        assert exc_info.value.message.startswith(
            "Error validating input parameters, command line would be:\n"
        )
        assert "non-optional parameter b was not supplied" in exc_info.value.problems
        assert input_file.exists()

    def test_template_error_is_a_validation_problem(self, settings: GpExecSettings) -> None:
        template = TaskTemplate(name="Demo", command_line="prog <x")
        with pytest.raises(ParameterValidationError, match="missing right delimiter"):
            CommandPreparer(settings, environ={}).prepare(Job(7, "Demo"), template)

    def test_platform_mismatch(self, settings: GpExecSettings) -> None:
        template = TaskTemplate(name="Demo", command_line="prog", cpu_type="nonexistent-cpu")
        with pytest.raises(PlatformError):
            CommandPreparer(settings, environ={}).prepare(Job(8, "Demo"), template)

    def test_command_prefix_skips_platform_check(self, settings: GpExecSettings) -> None:
        template = TaskTemplate(name="Demo", command_line="prog", cpu_type="nonexistent-cpu")
        prefixed = settings.model_copy(update={"command_prefix": "bsub -K"})
        prepared = CommandPreparer(prefixed, environ={}).prepare(
            Job(9, "Demo"), template
        )
        assert prepared.argv == ["bsub", "-K", "prog"]
