# process.py
from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, IO, Mapping, Optional, Sequence

from . import config
from .policy import SandboxPolicy
from .sandbox import compile_profile

log = logging.getLogger(__name__)

# Lines in flight between the pipe readers and the consumer. When full the
# readers block, the pipes fill up and the child blocks on write.
OUTPUT_QUEUE_SIZE = 256

# How long to keep reading after the step process is gone (exited, timed out
# or cancelled). Background children still holding the pipes are killed then.
DRAIN_GRACE_SECONDS = 2.0

_EOF = object()


@dataclass
class ProcessResult:
    exit_code: int
    timed_out: bool = False
    cancelled: bool = False


def sandbox_available() -> bool:
    exe = config.sandbox_exec()
    return bool(exe) and Path(exe).exists()


def _pump(stream: IO[str], name: str, q: "queue.Queue[object]") -> None:
    try:
        for line in iter(stream.readline, ""):
            q.put((line.rstrip("\r\n"), name))
    finally:
        stream.close()
        q.put(_EOF)


def _flush(q: "queue.Queue[object]", on_output: Callable[[str, str], None]) -> None:
    while True:
        try:
            item = q.get_nowait()
        except queue.Empty:
            return
        if item is not _EOF:
            on_output(*item)  # type: ignore[misc]


def _kill(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def _wrap_command(
    argv: list[str],
    work_dir: str,
    policy: Optional[SandboxPolicy],
    permissive: bool,
    log_destination: str | None,
) -> tuple[list[str], Optional[Path]]:
    """Prefix argv with sandbox-exec when confinement was asked for and is available."""
    if policy is None and not permissive:
        return argv, None

    if not sandbox_available():
        log.debug("running %s unconfined", argv[0])
        return argv, None

    profile = compile_profile(work_dir, policy, permissive=permissive, log_destination=log_destination)
    fd, name = tempfile.mkstemp(prefix="localmost-sandbox-", suffix=".sb")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(profile)
    return [config.sandbox_exec(), "-f", name, *argv], Path(name)


def run_in_sandbox(
    command: str,
    args: Sequence[str],
    *,
    cwd: str | Path,
    env: Mapping[str, str],
    on_output: Callable[[str, str], None],
    work_dir: str | Path | None = None,
    policy: Optional[SandboxPolicy] = None,
    permissive: bool = False,
    log_destination: str | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> ProcessResult:
    """
    Run `command args...` and stream its output line by line to `on_output`
    as it is produced (stdout and stderr interleaved in arrival order).

    The child and anything it started in the background are killed when
    `timeout` seconds pass or `cancel` is set. Background processes still
    holding the output pipes after the child exits are killed once
    DRAIN_GRACE_SECONDS have passed.
    """
    argv, profile_path = _wrap_command(
        [command, *args],
        str(work_dir or cwd),
        policy,
        permissive,
        log_destination,
    )

    q: "queue.Queue[object]" = queue.Queue(maxsize=OUTPUT_QUEUE_SIZE)
    deadline = time.monotonic() + timeout if timeout is not None else None
    timed_out = cancelled = False

    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=dict(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
            start_new_session=True,
        )
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, "stdout", q), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, "stderr", q), daemon=True),
        ]
        for t in readers:
            t.start()

        open_streams = len(readers)
        drain_until: float | None = None
        while open_streams:
            try:
                item = q.get(timeout=0.1)
            except queue.Empty:
                item = None

            if item is _EOF:
                open_streams -= 1
            elif item is not None:
                line, stream = item  # type: ignore[misc]
                on_output(line, stream)

            # deadline and cancel apply to the whole process group, also
            # after the step process itself has exited
            now = time.monotonic()
            if not (timed_out or cancelled):
                if deadline is not None and now > deadline:
                    timed_out = True
                    _kill(proc)
                elif cancel is not None and cancel.is_set():
                    cancelled = True
                    _kill(proc)

            if drain_until is None:
                if timed_out or cancelled or proc.poll() is not None:
                    drain_until = now + DRAIN_GRACE_SECONDS
            elif now > drain_until:
                _kill(proc)
                break

        exit_code = proc.wait()
        _flush(q, on_output)
        for t in readers:
            t.join(timeout=DRAIN_GRACE_SECONDS)
    finally:
        if profile_path is not None:
            profile_path.unlink(missing_ok=True)

    return ProcessResult(exit_code=exit_code, timed_out=timed_out, cancelled=cancelled)
