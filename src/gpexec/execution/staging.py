"""File stager: brings input files into a job directory and puts them back.

Inputs are *borrowed*: a local input file is moved (or copied, when
``copy_input_files`` is set) into the job directory for the duration of the
run and returned afterwards. URLs (``http``, ``https``, ``ftp``, ``file``)
are downloaded into the job directory and the copy is deleted afterwards.

The original location is kept in the parameter's ``original_path``
attribute, next to the staged size and mtime, so a restore can happen in a
later process (external-queue jobs complete long after submission).

Architecture:

    .. code-block:: text

        stage_inputs(job)                    restore_inputs(job)
        ─────────────────                    ───────────────────
        /data/a.txt ──move──► <job>/a.txt ──move──► /data/a.txt
        http://h/x  ──GET───► <job>/x     ──delete
                       value := staged path    value := original
                       attrs += original_path  attrs -= staging keys
                                               size/mtime changed → WARNING
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import time
import urllib.request
from dataclasses import dataclass, field, replace
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx

from gpexec.core.errors import StagingError
from gpexec.core.models import (
    ATTR_DOWNLOADED,
    ATTR_ORIGINAL_PATH,
    ATTR_STAGED_MTIME,
    ATTR_STAGED_SIZE,
    FormalParameter,
    Parameter,
)
from gpexec.core.settings import GpExecSettings
from gpexec.execution.environment import is_url, url_file_name

logger = logging.getLogger(__name__)

_STAGING_ATTRS = (ATTR_ORIGINAL_PATH, ATTR_STAGED_SIZE, ATTR_STAGED_MTIME, ATTR_DOWNLOADED)


@dataclass
class RestoreResult:
    parameters: list[Parameter]
    warnings: list[str] = field(default_factory=list)


class FileStager:
    """Moves, copies and downloads job inputs."""

    def __init__(
        self,
        settings: GpExecSettings,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._settings = settings
        self._http_client = http_client

    # ------------------------------------------------------------------ #
    # Staging
    # ------------------------------------------------------------------ #

    def stage_inputs(
        self,
        parameters: list[Parameter],
        formals: list[FormalParameter] | tuple[FormalParameter, ...],
        work_dir: Path,
    ) -> list[Parameter]:
        """Return a new parameter list with input files staged into ``work_dir``.

        On failure every input staged so far is returned to its origin
        before ``StagingError`` propagates.
        """
        formal_by_name = {f.name: f for f in formals}
        staged: list[Parameter] = []
        result: list[Parameter] = []
        try:
            for param in parameters:
                formal = formal_by_name.get(param.name)
                if (
                    param.is_output
                    or formal is None
                    or not formal.is_input_file
                    or not param.value
                    or param.original_path  # already staged
                ):
                    result.append(param)
                    continue
                new_param = self._stage_one(param, work_dir)
                result.append(new_param)
                if new_param is not param:
                    staged.append(new_param)
        except StagingError:
            self.restore_inputs(staged, task_name="", job_id=0, warn=False)
            raise
        return result

    def _stage_one(self, param: Parameter, work_dir: Path) -> Parameter:
        value = param.value
        attributes = dict(param.attributes)
        if is_url(value):
            dest = work_dir / url_file_name(value)
            self.download(value, dest)
            attributes[ATTR_DOWNLOADED] = True
        else:
            src = Path(value)
            if not src.is_file():
                raise StagingError(
                    f"input file {value} for parameter {param.name} does not exist"
                )
            if src.resolve().parent == work_dir.resolve():
                return param
            dest = work_dir / src.name
            if dest.exists():
                raise StagingError(
                    f"cannot stage {value} for parameter {param.name}: "
                    f"{dest.name} already exists in the job directory"
                )
            if self._settings.copy_input_files:
                self._copy(src, dest)
            else:
                self._move(src, dest)
        stat = dest.stat()
        attributes[ATTR_ORIGINAL_PATH] = value
        attributes[ATTR_STAGED_SIZE] = stat.st_size
        attributes[ATTR_STAGED_MTIME] = stat.st_mtime_ns
        logger.debug("staged %s -> %s", value, dest)
        return replace(param, value=str(dest), attributes=attributes)

    def download(self, url: str, dest: Path) -> Path:
        """Download ``url`` to ``dest``; raises ``StagingError`` on any failure."""
        scheme = urlparse(url).scheme.lower()
        try:
            if scheme == "file":
                shutil.copy2(url2pathname(urlparse(url).path), dest)
            elif scheme == "ftp":
                with urllib.request.urlopen(url, timeout=self._settings.download_timeout) as src:
                    with open(dest, "wb") as out:
                        shutil.copyfileobj(src, out)
            else:
                self._http_download(url, dest)
        except (OSError, httpx.HTTPError) as e:
            dest.unlink(missing_ok=True)
            raise StagingError(f"error downloading {url}: {e}", cause=e) from e
        logger.info("downloaded %s to %s", url, dest)
        return dest

    def _http_download(self, url: str, dest: Path) -> None:
        client = self._http_client or httpx.Client(
            follow_redirects=True, timeout=self._settings.download_timeout
        )
        try:
            with client.stream("GET", url) as response:
                response.raise_for_status()
                with open(dest, "wb") as out:
                    for chunk in response.iter_bytes():
                        out.write(chunk)
        finally:
            if client is not self._http_client:
                client.close()

    # ------------------------------------------------------------------ #
    # Restore
    # ------------------------------------------------------------------ #

    def restore_inputs(
        self,
        parameters: list[Parameter],
        *,
        task_name: str,
        job_id: int,
        warn: bool = True,
    ) -> RestoreResult:
        """Return borrowed inputs to their original location.

        Returns the parameter list with original values restored, plus one
        warning per input that was modified (or could not be put back).
        """
        result = RestoreResult(parameters=[])
        for param in parameters:
            original = param.original_path
            if original is None:
                result.parameters.append(param)
                continue
            staged = Path(param.value)
            attributes = {k: v for k, v in param.attributes.items() if k not in _STAGING_ATTRS}
            try:
                if param.attributes.get(ATTR_DOWNLOADED):
                    staged.unlink(missing_ok=True)
                elif self._settings.copy_input_files:
                    staged.unlink(missing_ok=True)
                elif staged.exists():
                    if warn and self._was_modified(param, staged):
                        result.warnings.append(
                            f"WARNING: {original} may have been overwritten during execution "
                            f"of task {task_name}, job number {job_id}"
                        )
                    self._move(staged, Path(original))
                else:
                    result.warnings.append(
                        f"WARNING: {original} was removed during execution of task "
                        f"{task_name}, job number {job_id}"
                    )
            except (OSError, StagingError) as e:
                logger.error("cannot restore %s to %s: %s", staged, original, e)
                result.warnings.append(f"WARNING: unable to restore {original}: {e}")
            result.parameters.append(replace(param, value=original, attributes=attributes))
        return result

    @staticmethod
    def _was_modified(param: Parameter, staged: Path) -> bool:
        stat = staged.stat()
        return (
            stat.st_size != param.attributes.get(ATTR_STAGED_SIZE)
            or stat.st_mtime_ns != param.attributes.get(ATTR_STAGED_MTIME)
        )

    # ------------------------------------------------------------------ #
    # Primitives
    # ------------------------------------------------------------------ #

    @staticmethod
    def _copy(src: Path, dest: Path) -> None:
        try:
            shutil.copy2(src, dest)
        except OSError as e:
            raise StagingError(f"cannot copy {src} to {dest}: {e}", cause=e) from e

    def _move(self, src: Path, dest: Path) -> None:
        """Rename, retrying with growing sleeps, then fall back to copy + delete."""
        attempts = self._settings.rename_attempts
        for attempt in range(1, attempts + 1):
            try:
                os.rename(src, dest)
                return
            except OSError as e:
                if e.errno == errno.EXDEV:
                    break
                logger.debug("rename %s -> %s failed (attempt %d): %s", src, dest, attempt, e)
                if attempt < attempts:
                    time.sleep(0.1 * attempt)
        self._copy(src, dest)
        try:
            src.unlink()
        except OSError as e:
            logger.warning("copied %s but could not delete it: %s", src, e)


__all__ = ["FileStager", "RestoreResult"]
