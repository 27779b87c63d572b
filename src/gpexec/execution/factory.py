"""Executor factory — builds a ready-to-start ``CommandRouter`` from configuration.

Executor kinds are resolved from a registry filled at import time; there is
no reflective class loading. Adding a kind means registering a builder::

    register_executor_kind("slurm", build_slurm_executor)

ARCHITECTURE
────────────
::

    JobConfiguration.executors
      {id: ExecutorDefinition(kind, options)}
            │
            ▼  _EXECUTOR_KINDS[kind](executor_id, definition, services)
      local     → LocalCommandExecutor(max_workers)
      drm       → DrmJobExecutor(adapter, lookup)    adapter failure → UnavailableAdapter
      pipeline  → PipelineExecutor
            │
            ▼
      CommandRouter.register(id, executor)
      completion.pipeline = router.pipeline_executor  (late binding)

Example:
    >>> router = build_command_router(config, job_store=store, catalog=catalog,
    ...                               settings=get_settings(), engine=engine)
    >>> router.start_all()
    >>> router.recover_running_jobs()
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy import Engine

from gpexec.core.errors import ConfigurationError
from gpexec.core.job_config import ExecutorDefinition, JobConfiguration
from gpexec.core.logging import get_logger
from gpexec.core.settings import GpExecSettings
from gpexec.core.stores import JobStore, TaskCatalog
from gpexec.execution.command import CommandPreparer
from gpexec.execution.completion import JobCompletionHandler
from gpexec.execution.drm.adapters import UnavailableAdapter, create_adapter
from gpexec.execution.drm.executor import DrmJobExecutor
from gpexec.execution.drm.lookup import InMemoryDrmLookup, SqlDrmLookup
from gpexec.execution.executors.local import LocalCommandExecutor
from gpexec.execution.executors.pipeline import PipelineExecutor
from gpexec.execution.executors.protocol import CommandExecutor
from gpexec.execution.router import CommandRouter
from gpexec.execution.staging import FileStager

logger = get_logger(__name__)

DEFAULT_EXECUTOR_ID = "local"


@dataclass
class ExecutorServices:
    """Shared collaborators handed to every executor builder."""

    job_store: JobStore
    catalog: TaskCatalog
    settings: GpExecSettings
    config: JobConfiguration
    preparer: CommandPreparer
    completion: JobCompletionHandler
    engine: Engine | None = None


ExecutorBuilder = Callable[[str, ExecutorDefinition, ExecutorServices], CommandExecutor]

_EXECUTOR_KINDS: dict[str, ExecutorBuilder] = {}


def register_executor_kind(kind: str, builder: ExecutorBuilder) -> None:
    _EXECUTOR_KINDS[kind] = builder


def executor_kinds() -> list[str]:
    return sorted(_EXECUTOR_KINDS)


def _unknown_options(executor_id: str, options: dict[str, Any]) -> None:
    if options:
        raise ConfigurationError(
            f"executor '{executor_id}': unknown options {sorted(options)}"
        ).with_context(executor_id=executor_id)


# ── Builders ─────────────────────────────────────────────────


def _build_local(executor_id: str, definition: ExecutorDefinition, services: ExecutorServices) -> CommandExecutor:
    options = dict(definition.options)
    max_workers = int(options.pop("max_workers", 4))
    _unknown_options(executor_id, options)
    return LocalCommandExecutor(
        executor_id,
        job_store=services.job_store,
        catalog=services.catalog,
        preparer=services.preparer,
        completion=services.completion,
        max_workers=max_workers,
    )


def _build_drm(executor_id: str, definition: ExecutorDefinition, services: ExecutorServices) -> CommandExecutor:
    options = dict(definition.options)
    adapter_name = options.pop("adapter", "local")
    adapter_options = options.pop("adapter_options", None) or {}
    runner_name = options.pop("runner_name", executor_id)
    lookup_type = options.pop("lookup_type", "db" if services.engine is not None else "memory")
    log_filename = options.pop("log_filename", None)
    _unknown_options(executor_id, options)

    try:
        adapter = create_adapter(adapter_name, **adapter_options)
    except Exception as e:
        logger.error(
            "runner_adapter_unavailable",
            executor_id=executor_id,
            adapter=adapter_name,
            error=str(e),
        )
        adapter = UnavailableAdapter(reason=str(e))

    if lookup_type == "db":
        if services.engine is None:
            raise ConfigurationError(
                f"executor '{executor_id}' uses lookup_type 'db' but no database engine was given"
            ).with_context(executor_id=executor_id)
        lookup = SqlDrmLookup(services.engine, runner_name)
    elif lookup_type == "memory":
        lookup = InMemoryDrmLookup(runner_name)
    else:
        raise ConfigurationError(
            f"executor '{executor_id}': lookup_type must be 'db' or 'memory', got '{lookup_type}'"
        ).with_context(executor_id=executor_id)

    return DrmJobExecutor(
        executor_id,
        job_store=services.job_store,
        catalog=services.catalog,
        preparer=services.preparer,
        completion=services.completion,
        adapter=adapter,
        lookup=lookup,
        settings=services.settings,
        config=services.config,
        log_filename=log_filename,
    )


def _build_pipeline(executor_id: str, definition: ExecutorDefinition, services: ExecutorServices) -> CommandExecutor:
    _unknown_options(executor_id, dict(definition.options))
    return PipelineExecutor(executor_id, job_store=services.job_store)


register_executor_kind("local", _build_local)
register_executor_kind("drm", _build_drm)
register_executor_kind("pipeline", _build_pipeline)


# ── Assembly ─────────────────────────────────────────────────


def build_executor(executor_id: str, definition: ExecutorDefinition, services: ExecutorServices) -> CommandExecutor:
    builder = _EXECUTOR_KINDS.get(definition.kind)
    if builder is None:
        raise ConfigurationError(
            f"executor '{executor_id}': unknown kind '{definition.kind}'. "
            f"Available: {', '.join(executor_kinds())}"
        ).with_context(executor_id=executor_id)
    return builder(executor_id, definition, services)


def build_command_router(
    config: JobConfiguration | None = None,
    *,
    job_store: JobStore,
    catalog: TaskCatalog,
    settings: GpExecSettings,
    engine: Engine | None = None,
    http_client: httpx.Client | None = None,
) -> CommandRouter:
    """Construct every configured executor and register it with a new router.

    With no executors configured a single local executor is registered as
    ``"local"``. A pipeline executor is always present.
    """
    config = config or JobConfiguration()
    stager = FileStager(settings, http_client)
    preparer = CommandPreparer(settings, stager)
    completion = JobCompletionHandler(job_store, settings, stager)
    router = CommandRouter(job_store=job_store, completion=completion, config=config)
    services = ExecutorServices(
        job_store=job_store,
        catalog=catalog,
        settings=settings,
        config=config,
        preparer=preparer,
        completion=completion,
        engine=engine,
    )

    definitions = dict(config.executors) or {DEFAULT_EXECUTOR_ID: ExecutorDefinition(kind="local")}
    for executor_id, definition in definitions.items():
        router.register(executor_id, build_executor(executor_id, definition, services))
        if definition.kind == "pipeline" and not config.pipeline_executor_id:
            router.set_pipeline_executor(executor_id)

    pipeline = router.pipeline_executor
    if isinstance(pipeline, PipelineExecutor):
        completion.pipeline = pipeline
    logger.info("command_router_built", executors=router.list_executors())
    return router


__all__ = [
    "ExecutorServices",
    "build_command_router",
    "build_executor",
    "register_executor_kind",
    "executor_kinds",
    "DEFAULT_EXECUTOR_ID",
]
