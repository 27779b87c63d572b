"""Process-wide settings for the job execution engine.

All fields can be set via ``GPEXEC_*`` environment variables (e.g.
``GPEXEC_JOBS_DIR=/data/jobs``) or a ``.env`` file.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    Paths the engine cannot run without (``jobs_dir``, ``task_lib_dir``) are
    optional here and checked where they are needed, so a misconfigured
    server still starts and reports a per-job configuration error.

Tags:
    settings, configuration, pydantic, environment, gpexec

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GpExecSettings(BaseSettings):
    """Engine configuration.

    Fields
    ──────
    jobs_dir          : Root of per-job working directories (``<jobs_dir>/<job_id>``)
    task_lib_dir      : Root of installed task libraries
    resources_dir     : Value of the ``<resources>`` placeholder
    copy_input_files  : Copy staged inputs instead of moving them
    command_prefix    : Prepended to every command line (batch wrappers)
    java_home, perl, python, r_home : Interpreter locations
    database_url      : Job store / DRM lookup database
    job_config_file   : YAML file with executor and per-task properties
    drm_*             : Polling worker limits
    """

    model_config = SettingsConfigDict(
        env_prefix="GPEXEC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Filesystem ───────────────────────────────────────────────
    jobs_dir: Path | None = Field(default=None, description="Root of job working directories")
    task_lib_dir: Path | None = Field(default=None, description="Root of task library directories")
    resources_dir: Path | None = Field(default=None)
    copy_input_files: bool = Field(default=False)

    # ── Command line ─────────────────────────────────────────────
    command_prefix: str | None = Field(default=None)
    java_home: Path | None = Field(default=None)
    perl: str | None = Field(default=None)
    python: str | None = Field(default=None)
    r_home: Path | None = Field(default=None)

    # ── Persistence / configuration ──────────────────────────────
    database_url: str = Field(default="sqlite:///gpexec.db")
    job_config_file: Path | None = Field(default=None)

    # ── DRM polling ──────────────────────────────────────────────
    drm_queue_capacity: int = Field(default=100_000, ge=1)
    drm_max_poll_delay: float = Field(default=60.0, gt=0)

    # ── Staging ──────────────────────────────────────────────────
    download_timeout: float = Field(default=60.0, gt=0)
    rename_attempts: int = Field(default=3, ge=1)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = Field(default="auto", description="auto, json or console")


_settings_cache: dict[str, GpExecSettings] = {}


def get_settings(*, _force_reload: bool = False) -> GpExecSettings:
    """Load, validate, and cache the process settings."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = GpExecSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    _settings_cache.clear()
