"""Tests for JobConfiguration loading and property lookup."""

from __future__ import annotations

from pathlib import Path

import pytest

from gpexec.core.errors import ConfigurationError
from gpexec.core.job_config import JobConfiguration
from gpexec.core.models import Job

YAML = """\
default.properties:
  executor: RuntimeExec
  pipeline.executor: Pipes
  drm.queue: normal
executors:
  RuntimeExec: local
  LSF:
    kind: drm
    options: {adapter: local}
    default.properties: {drm.queue: lsf-default, drm.walltime: "02:00:00"}
module.properties:
  ConvertLineEndings: {executor: LSF}
  urn:lsid:example.org:module:00002:1: {drm.memory: 2 Gb}
user.properties:
  alice: {drm.queue: priority, drm.workerName: big-mem}
worker.configs:
  big-mem: {drm.memory: 64 Gb, drm.cpuCount: 8}
"""


@pytest.fixture
def config(tmp_path: Path) -> JobConfiguration:
    path = tmp_path / "job_config.yaml"
    path.write_text(YAML)
    return JobConfiguration.from_yaml(path)


def _job(task: str = "Other", user: str = "", lsid: str = "") -> Job:
    return Job(1, task, user_id=user, lsid=lsid)


class TestLoading:
    def test_bare_kind_shorthand(self, config: JobConfiguration) -> None:
        assert config.executors["RuntimeExec"].kind == "local"
        assert config.executors["LSF"].options == {"adapter": "local"}
        assert config.pipeline_executor_id == "Pipes"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="cannot read job configuration"):
            JobConfiguration.from_yaml(tmp_path / "absent.yaml")

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            JobConfiguration.from_yaml(path)

    def test_invalid_executor_definition(self) -> None:
        with pytest.raises(ConfigurationError, match="invalid job configuration"):
            JobConfiguration.from_dict({"executors": {"X": {"kind": "local", "bogus": 1}}})

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert JobConfiguration.from_yaml(path).executor_id_for(_job()) is None


class TestLookup:
    def test_executor_precedence(self, config: JobConfiguration) -> None:
        assert config.executor_id_for(_job()) == "RuntimeExec"
        assert config.executor_id_for(_job("ConvertLineEndings")) == "LSF"

    def test_executor_defaults_layer(self, config: JobConfiguration) -> None:
        props = config.properties_for(_job("ConvertLineEndings"))
        assert props["drm.queue"] == "lsf-default"
        assert props["drm.walltime"] == "02:00:00"

    def test_user_overrides_module(self, config: JobConfiguration) -> None:
        job = _job("ConvertLineEndings", user="alice")
        assert config.value_for(job, "drm.queue") == "priority"
        assert config.value_for(job, "drm.nothing", "fallback") == "fallback"

    def test_lookup_by_lsid(self, config: JobConfiguration) -> None:
        job = _job("Renamed", lsid="urn:lsid:example.org:module:00002:1")
        assert config.value_for(job, "drm.memory") == "2 Gb"

    def test_worker_config(self, config: JobConfiguration) -> None:
        assert config.worker_config_for(_job(user="alice")) == {"drm.memory": "64 Gb", "drm.cpuCount": 8}
        assert config.worker_config_for(_job()) == {}

    def test_inline_worker_config(self) -> None:
        config = JobConfiguration.from_dict({
            "user.properties": {"bob": {"drm.workerConfig": {"drm.cpuCount": 2}}},
        })
        assert config.worker_config_for(_job(user="bob")) == {"drm.cpuCount": 2}
