"""Child process runner with concurrent stdout/stderr draining.

stdin is closed at spawn (or bound to a redirect file); stdout and stderr
are drained by two reader threads so a task that fills one pipe cannot
deadlock against the other. Both drains are joined before the exit code is
collected.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from gpexec.core.errors import ExecutionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    stdout: str
    stderr: str


def _drain(stream: IO[bytes], sink: list[bytes]) -> None:
    try:
        for chunk in iter(lambda: stream.read(65536), b""):
            sink.append(chunk)
    finally:
        stream.close()


def run_command(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    stdin_file: Path | None = None,
    on_start: Callable[[subprocess.Popen], None] | None = None,
) -> ProcessResult:
    """Run ``argv`` to completion and capture its output.

    Raises:
        ExecutionError: The process could not be spawned.
    """
    process_env = dict(env)
    process_env.pop("SHELLOPTS", None)
    try:
        stdin = open(stdin_file, "rb") if stdin_file is not None else subprocess.DEVNULL
    except OSError as e:
        raise ExecutionError(f"cannot open stdin file {stdin_file}: {e}", cause=e) from e
    try:
        process = subprocess.Popen(
            list(argv),
            cwd=cwd,
            env=process_env,
            stdin=stdin,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise ExecutionError(f"cannot run {argv[0]}: {e}", cause=e) from e
    finally:
        if stdin is not subprocess.DEVNULL:
            stdin.close()

    logger.debug("started pid %d: %s", process.pid, " ".join(argv))
    if on_start is not None:
        on_start(process)

    out: list[bytes] = []
    err: list[bytes] = []
    readers = [
        threading.Thread(target=_drain, args=(process.stdout, out), name=f"stdout-{process.pid}", daemon=True),
        threading.Thread(target=_drain, args=(process.stderr, err), name=f"stderr-{process.pid}", daemon=True),
    ]
    for reader in readers:
        reader.start()
    for reader in readers:
        reader.join()
    exit_code = process.wait()
    return ProcessResult(
        exit_code=exit_code,
        stdout=b"".join(out).decode("utf-8", errors="replace"),
        stderr=b"".join(err).decode("utf-8", errors="replace"),
    )
