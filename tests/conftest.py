"""
Shared pytest fixtures for gpexec tests.

This module provides:
- Settings rooted in a per-test temporary directory
- In-memory job store / task catalog
- A small Python task ("WriteUpper") with its library script installed
- (job builders and wait helpers live in tests._support.jobs)

Usage:
    def test_something(settings, job_store, write_upper_task):
        ...
"""

from __future__ import annotations

import sys
from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import Engine

from gpexec.core.models import FormalParameter, TaskTemplate
from gpexec.core.orm import create_gpexec_engine
from gpexec.core.settings import GpExecSettings, clear_settings_cache
from gpexec.core.stores import InMemoryJobStore, InMemoryTaskCatalog
from gpexec.execution.environment import task_directory_name

WRITE_UPPER_SCRIPT = """\
import sys

src, prefix = sys.argv[1], sys.argv[2]
with open(src) as fh:
    data = fh.read()
with open(prefix + ".upper.txt", "w") as out:
    out.write(data.upper())
print("processed", src)
"""


# =============================================================================
# Settings / persistence
# =============================================================================


@pytest.fixture(autouse=True)
def _clear_settings() -> Generator[None, None, None]:
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings(tmp_path: Path) -> GpExecSettings:
    """Settings whose job and task directories live under ``tmp_path``."""
    (tmp_path / "jobs").mkdir()
    (tmp_path / "lib").mkdir()
    return GpExecSettings(
        _env_file=None,
        jobs_dir=tmp_path / "jobs",
        task_lib_dir=tmp_path / "lib",
        python=sys.executable,
        database_url="sqlite://",
        rename_attempts=1,
    )


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = create_gpexec_engine("sqlite://")
    yield eng
    eng.dispose()


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


# =============================================================================
# Sample task
# =============================================================================


@pytest.fixture
def write_upper_task(settings: GpExecSettings) -> TaskTemplate:
    """Task that upper-cases its input into ``<prefix>.upper.txt``.

    ``output.prefix`` defaults to ``<input.file_basename>``, which exercises
    the second substitution pass.
    """
    template = TaskTemplate(
        name="WriteUpper",
        command_line="<python> <libdir>write_upper.py <input.file> <output.prefix>",
        formal_parameters=(
            FormalParameter(name="input.file", is_file=True),
            FormalParameter(
                name="output.prefix", optional=True, default_value="<input.file_basename>"
            ),
        ),
        lsid="urn:lsid:example.org:module:00001:1",
        task_id=1,
    )
    lib_dir = Path(settings.task_lib_dir) / task_directory_name(template.name, template.lsid)
    lib_dir.mkdir(parents=True)
    (lib_dir / "write_upper.py").write_text(WRITE_UPPER_SCRIPT)
    return template


@pytest.fixture
def catalog(write_upper_task: TaskTemplate) -> InMemoryTaskCatalog:
    return InMemoryTaskCatalog([write_upper_task])


@pytest.fixture
def input_file(data_dir: Path) -> Path:
    path = data_dir / "sample.txt"
    path.write_text("hello gp\n")
    return path
