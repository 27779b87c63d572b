"""Per-task job configuration: which executor runs a job, and with what hints.

Loaded from YAML and validated with pydantic. Properties are looked up per
job with precedence ``user > module > executor defaults > defaults``::

    default.properties:
      executor: RuntimeExec
      pipeline.executor: PipelineExec
    executors:
      RuntimeExec: local
      LSF:
        kind: drm
        options: {adapter: local, lookup_type: db, runner_name: lsf}
        default.properties: {drm.queue: normal}
    module.properties:
      ConvertLineEndings: {executor: LSF, drm.memory: 2 Gb}
    user.properties:
      alice: {drm.queue: priority}
    worker.configs:
      big-mem: {drm.memory: 64 Gb, drm.cpuCount: 8}

Tags:
    gpexec, configuration, yaml, pydantic

Doc-Types:
    api-reference, configuration-guide
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from gpexec.core.errors import ConfigurationError
from gpexec.core.models import Job

EXECUTOR_KEY = "executor"
PIPELINE_EXECUTOR_KEY = "pipeline.executor"
WORKER_NAME_KEY = "drm.workerName"
WORKER_CONFIG_KEY = "drm.workerConfig"


class ExecutorDefinition(BaseModel):
    """An executor instance to construct: a registered kind plus its options."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    kind: str
    options: dict[str, Any] = Field(default_factory=dict)
    default_properties: dict[str, Any] = Field(default_factory=dict, alias="default.properties")


class JobConfiguration(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    default_properties: dict[str, Any] = Field(default_factory=dict, alias="default.properties")
    executors: dict[str, ExecutorDefinition] = Field(default_factory=dict)
    module_properties: dict[str, dict[str, Any]] = Field(
        default_factory=dict, alias="module.properties"
    )
    user_properties: dict[str, dict[str, Any]] = Field(
        default_factory=dict, alias="user.properties"
    )
    worker_configs: dict[str, dict[str, Any]] = Field(
        default_factory=dict, alias="worker.configs"
    )

    @field_validator("executors", mode="before")
    @classmethod
    def _bare_kind(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: {"kind": defn} if isinstance(defn, str) else defn
                for key, defn in value.items()
            }
        return value

    # ── Lookup ───────────────────────────────────────────────────

    def _task_and_user_layers(self, job: Job) -> list[dict[str, Any]]:
        layers = []
        for key in (job.task_name, job.lsid):
            if key and key in self.module_properties:
                layers.append(self.module_properties[key])
        if job.user_id and job.user_id in self.user_properties:
            layers.append(self.user_properties[job.user_id])
        return layers

    def executor_id_for(self, job: Job) -> str | None:
        """Executor id configured for this job, or None."""
        executor_id = self.default_properties.get(EXECUTOR_KEY)
        for layer in self._task_and_user_layers(job):
            executor_id = layer.get(EXECUTOR_KEY, executor_id)
        return executor_id

    def properties_for(self, job: Job) -> dict[str, Any]:
        merged = dict(self.default_properties)
        executor_id = self.executor_id_for(job)
        if executor_id and executor_id in self.executors:
            merged.update(self.executors[executor_id].default_properties)
        for layer in self._task_and_user_layers(job):
            merged.update(layer)
        return merged

    def value_for(self, job: Job, key: str, default: Any = None) -> Any:
        return self.properties_for(job).get(key, default)

    def worker_config_for(self, job: Job) -> dict[str, Any]:
        """Worker config map for the job's ``drm.workerName``, if any."""
        props = self.properties_for(job)
        config: dict[str, Any] = {}
        worker_name = props.get(WORKER_NAME_KEY)
        if worker_name:
            config.update(self.worker_configs.get(str(worker_name), {}))
        inline = props.get(WORKER_CONFIG_KEY)
        if isinstance(inline, dict):
            config.update(inline)
        return config

    @property
    def pipeline_executor_id(self) -> str | None:
        return self.default_properties.get(PIPELINE_EXECUTOR_KEY)

    # ── Loading ──────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobConfiguration:
        try:
            return cls.model_validate(data or {})
        except ValidationError as e:
            raise ConfigurationError(f"invalid job configuration: {e}", cause=e) from e

    @classmethod
    def from_yaml(cls, path: str | Path) -> JobConfiguration:
        import yaml

        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"cannot read job configuration {path}: {e}", cause=e) from e
        if data is not None and not isinstance(data, dict):
            raise ConfigurationError(f"job configuration {path} must be a mapping")
        return cls.from_dict(data or {})


__all__ = [
    "ExecutorDefinition",
    "JobConfiguration",
    "EXECUTOR_KEY",
    "PIPELINE_EXECUTOR_KEY",
]
