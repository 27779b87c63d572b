"""Parameter environment builder.

Builds the immutable name → value mapping that command-line placeholders
are resolved against, and the process environment a task is spawned with.

Architecture:

    .. code-block:: text

        inherited env ─┐
        well-known    ─┼──► SubstitutionEnvironment  (read-only Mapping)
        actual params ─┤       name, job_id, task_id, userid, LSID, libdir,
        file helpers  ─┘       java, perl, python, R, R_HOME, resources,
                               <p>, <p>_path, <p>_file, <p>_basename, <p>_extension

A new environment is built for every execution attempt and is never
persisted or mutated.

Tags:
    gpexec, execution, environment, substitution

Doc-Types:
    api-reference
"""

from __future__ import annotations

import os
import shutil
import sys
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from urllib.parse import unquote

from gpexec.core.errors import ConfigurationError
from gpexec.core.models import FormalParameter, Parameter
from gpexec.core.settings import GpExecSettings

# Well-known environment keys
NAME = "name"
JOB_ID = "job_id"
TASK_ID = "task_id"
USER_ID = "userid"
LSID = "LSID"
LIBDIR = "libdir"
JAVA = "java"
PERL = "perl"
PYTHON = "python"
R = "R"
R_HOME = "R_HOME"
RESOURCES = "resources"

INPUT_PATH = "_path"
INPUT_FILE = "_file"
INPUT_BASENAME = "_basename"
INPUT_EXTENSION = "_extension"

WELL_KNOWN_NAMES = frozenset(
    {NAME, JOB_ID, TASK_ID, USER_ID, LSID, LIBDIR, JAVA, PERL, PYTHON, R, R_HOME, RESOURCES}
)

URL_SCHEMES = ("http://", "https://", "ftp:", "file:")
DEFAULT_URL_FILE_NAME = "index.html"
MAX_DIR_NAME_LENGTH = 255


class SubstitutionEnvironment(Mapping[str, str]):
    """Read-only mapping of placeholder name to value."""

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, str] | Iterable[tuple[str, str]] = ()) -> None:
        self._values = dict(values)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"SubstitutionEnvironment({len(self._values)} entries)"

    def merged(self, extra: Mapping[str, str]) -> SubstitutionEnvironment:
        """New environment with ``extra`` layered on top."""
        return SubstitutionEnvironment({**self._values, **extra})


def is_url(value: str) -> bool:
    return value.lower().startswith(URL_SCHEMES)


def url_file_name(url: str) -> str:
    """File name a downloaded URL is stored under.

    The last path segment, cut at the last ``/``, ``?``, ``&`` or ``=`` so
    query strings such as ``get?file=data.gct`` still yield ``data.gct``.
    """
    name = url
    for sep in ("/", "?", "&", "="):
        name = name[name.rfind(sep) + 1:]
    name = unquote(name)
    return name or DEFAULT_URL_FILE_NAME


def split_extension(file_name: str) -> tuple[str, str]:
    """``"a.b.txt"`` → ``("a.b", "txt")``; no dot → ``(name, "")``."""
    dot = file_name.rfind(".")
    if dot <= 0:
        return file_name, ""
    return file_name[:dot], file_name[dot + 1:]


def job_directory(settings: GpExecSettings, job_id: int) -> Path:
    if settings.jobs_dir is None:
        raise ConfigurationError("jobs_dir is not configured").with_context(job_id=job_id)
    return Path(settings.jobs_dir) / str(job_id)


def task_directory_name(task_name: str, lsid: str = "") -> str:
    """Directory name of a task library: ``<task>.<version>[.<identifier>]``."""
    version, identifier = "1", ""
    parts = lsid.split(":") if lsid else []
    if len(parts) >= 6:
        identifier, version = parts[4], parts[5] or "1"
    elif len(parts) == 5:
        identifier = parts[4]
    suffix = f".{version}" + (f".{identifier}" if identifier else "")
    safe_name = task_name.replace(os.sep, "_")
    return safe_name[: MAX_DIR_NAME_LENGTH - len(suffix)] + suffix


def task_library_directory(settings: GpExecSettings, task_name: str, lsid: str = "") -> Path:
    if settings.task_lib_dir is None:
        raise ConfigurationError("task_lib_dir is not configured").with_context(task_name=task_name)
    return Path(settings.task_lib_dir) / task_directory_name(task_name, lsid)


def _interpreters(settings: GpExecSettings) -> dict[str, str]:
    if settings.java_home is not None:
        java = str(Path(settings.java_home) / "bin" / "java")
    else:
        java = shutil.which("java") or "java"
    if settings.r_home is not None:
        r_cmd = str(Path(settings.r_home) / "bin" / "R")
        r_home = str(settings.r_home)
    else:
        r_cmd = shutil.which("R") or "R"
        r_home = os.environ.get("R_HOME", "")
    return {
        JAVA: java,
        PERL: settings.perl or shutil.which("perl") or "perl",
        PYTHON: settings.python or sys.executable or "python",
        R: r_cmd,
        R_HOME: r_home,
    }


def _file_helpers(name: str, value: str, work_dir: Path) -> dict[str, str]:
    if is_url(value):
        directory, file_name = work_dir, url_file_name(value)
    else:
        path = Path(value)
        directory = path.parent if path.is_absolute() else work_dir / path.parent
        file_name = path.name
    basename, extension = split_extension(file_name)
    return {
        name + INPUT_PATH: str(directory),
        name + INPUT_FILE: file_name,
        name + INPUT_BASENAME: basename,
        name + INPUT_EXTENSION: extension,
    }


def build_environment(
    task_name: str,
    job_id: int,
    task_id: int,
    formals: Iterable[FormalParameter],
    actuals: Iterable[Parameter],
    environ: Mapping[str, str] | None = None,
    *,
    settings: GpExecSettings,
    user_id: str = "",
    lsid: str = "",
) -> SubstitutionEnvironment:
    """Build the substitution environment for one execution attempt.

    Creates the job working directory if it does not exist.

    Raises:
        ConfigurationError: ``jobs_dir`` or ``task_lib_dir`` is not configured.
    """
    work_dir = job_directory(settings, job_id)
    lib_dir = task_library_directory(settings, task_name, lsid)
    work_dir.mkdir(parents=True, exist_ok=True)

    values: dict[str, str] = dict(os.environ if environ is None else environ)
    values.update({
        NAME: task_name,
        JOB_ID: str(job_id),
        TASK_ID: str(task_id),
        USER_ID: user_id,
        LSID: lsid,
        LIBDIR: str(lib_dir) + os.sep,
    })
    values.update(_interpreters(settings))
    if settings.resources_dir is not None:
        values[RESOURCES] = str(Path(settings.resources_dir).resolve())

    formal_by_name = {f.name: f for f in formals}
    for param in actuals:
        if param.is_output:
            continue
        value = param.value or ""
        values[param.name] = value
        formal = formal_by_name.get(param.name)
        if formal is not None and formal.is_input_file and value:
            values.update(_file_helpers(param.name, value, work_dir))

    return SubstitutionEnvironment(values)


def process_environment(environ: Mapping[str, str], lib_dir: Path | str) -> dict[str, str]:
    """Environment a task process is spawned with.

    The task library directory is prepended to ``PATH`` and ``SHELLOPTS`` is
    removed so inherited shell options cannot break task wrapper scripts.
    """
    env = dict(environ)
    env.pop("SHELLOPTS", None)
    path = env.get("PATH", "")
    env["PATH"] = str(lib_dir) + (os.pathsep + path if path else "")
    return env


__all__ = [
    "SubstitutionEnvironment",
    "build_environment",
    "process_environment",
    "job_directory",
    "task_library_directory",
    "task_directory_name",
    "url_file_name",
    "is_url",
    "WELL_KNOWN_NAMES",
]
