"""Long-running restic backup, dispatched in the background and polled."""
from __future__ import annotations

import subprocess
import time
from datetime import datetime
from typing import Callable, List, Sequence

from .errors import BackupFailedError
from .executil import info, ok, spawn, trace, wait_job
from .model import BackupRun, RepositoryHandle


def exclude_args(excludes: Sequence[str]) -> List[str]:
    """One ``--exclude`` flag per entry, in order, duplicates kept."""

    args: List[str] = []
    for path in excludes:
        args += ["--exclude", path]
    return args


def backup_command(repo: RepositoryHandle, source: str, excludes: Sequence[str]) -> List[str]:
    return [*repo.base_cmd(), "backup", source, *exclude_args(excludes)]


def run_backup(
    repo: RepositoryHandle,
    source: str,
    excludes: Sequence[str],
    poll_interval: float = 10.0,
    max_wait: float = 360000.0,
    sleep: Callable[[float], None] = time.sleep,
) -> BackupRun:
    record = BackupRun(source=source, excludes=list(excludes), timestamp=datetime.now().isoformat(timespec="seconds"))
    cmd = backup_command(repo, source, excludes)
    info(f"Starting restic backup of {source} ({len(record.excludes)} excludes)")
    job = spawn(cmd, name="restic_backup")
    try:
        result = wait_job(job, poll_interval=poll_interval, max_wait=max_wait, sleep=sleep)
    except subprocess.TimeoutExpired as exc:
        raise BackupFailedError(
            f"restic backup did not finish within {max_wait:.0f}s",
            details={"source": source, "max_wait": max_wait},
        ) from exc
    record.rc = result.rc
    record.duration = result.duration
    record.ok = result.rc == 0
    trace("backup.done", source=source, rc=result.rc, duration=result.duration)
    if not record.ok:
        raise BackupFailedError(
            f"restic backup of {source} failed with rc={result.rc}",
            details={"rc": result.rc, "stderr": (result.err or "")[-2000:], "output": job.out_path},
        )
    ok(f"Backup of {source} completed in {result.duration:.0f}s")
    return record
