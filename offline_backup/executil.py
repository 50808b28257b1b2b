from __future__ import annotations

"""Subprocess wrapper, background jobs and JSONL run log."""

import datetime as _dt
import json
import os
import shlex
import shutil
import subprocess
import sys
import time
from typing import Callable, Sequence

from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "offline_backup.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/offline-backup",
        "/tmp/offline-backup-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration

    @property
    def lines(self) -> list[str]:
        return [line for line in (self.out or "").splitlines() if line.strip()]


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("OFFLINE_BACKUP_LOG_LEVEL", "TRACE").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, default=str) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


# Operator-facing trail. Every line is mirrored into the run log.

def _emit(tag: str, level: str, msg: str, stream=None):
    print(f"[{tag}] {msg}", file=stream or sys.stdout, flush=True)
    log(level, "console", tag=tag, msg=msg)


def info(msg: str):
    _emit("INFO", "INFO", msg)


def ok(msg: str):
    _emit("OK", "INFO", msg)


def warn(msg: str):
    _emit("WARN", "WARN", msg)


def fail(msg: str):
    _emit("FAIL", "ERROR", msg, stream=sys.stderr)


def run(
    cmd: Sequence[str],
    check: bool = True,
    timeout: float | None = 60.0,
    env: dict | None = None,
) -> Result:
    trace("exec.start", cmd=list(cmd))
    started = time.time()
    env2 = (env or os.environ).copy()
    env2.setdefault("OFFLINE_BACKUP_LOG_LEVEL", LOG_LEVEL)
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env2)
    except subprocess.TimeoutExpired:
        # Block devices sometimes stall while udev is still processing events.
        udev_settle()
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env2)
    dur = time.time() - started
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur, out=proc.stdout, err=proc.stderr)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, cmd, proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass


class Job:
    """A command dispatched in the background, with output spooled to files."""

    def __init__(self, cmd: list[str], proc, out_path: str, err_path: str, started: float):
        self.cmd = cmd
        self.proc = proc
        self.out_path = out_path
        self.err_path = err_path
        self.started = started

    def poll(self) -> int | None:
        return self.proc.poll()

    def terminate(self):
        self.proc.terminate()
        try:
            self.proc.wait(timeout=30)
        except subprocess.TimeoutExpired:
            self.proc.kill()

    def read_output(self) -> tuple[str, str]:
        def _read(path: str) -> str:
            try:
                with open(path, "r", encoding="utf-8", errors="replace") as fh:
                    return fh.read()
            except FileNotFoundError:
                return ""

        return _read(self.out_path), _read(self.err_path)


def spawn(cmd: Sequence[str], name: str = "job", env: dict | None = None) -> Job:
    """Start ``cmd`` without waiting for it.

    stdout/stderr go to files next to the run log so a chatty multi-hour
    process cannot fill a pipe buffer while nobody reads it.
    """

    log_path = _ensure_logger()
    spool = os.path.dirname(log_path) if log_path else "/tmp"
    stamp = time.strftime("%Y%m%d_%H%M%S")
    out_path = os.path.join(spool, f"{name}_{stamp}.out")
    err_path = os.path.join(spool, f"{name}_{stamp}.err")
    env2 = (env or os.environ).copy()
    trace("job.start", cmd=list(cmd), out=out_path, err=err_path)
    with open(out_path, "w", encoding="utf-8") as out_fh, open(err_path, "w", encoding="utf-8") as err_fh:
        proc = subprocess.Popen(list(cmd), stdout=out_fh, stderr=err_fh, text=True, env=env2)
    return Job(list(cmd), proc, out_path, err_path, time.time())


def wait_job(
    job: Job,
    poll_interval: float = 10.0,
    max_wait: float = 360000.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Result:
    """Poll ``job`` until it exits; raise ``TimeoutExpired`` past ``max_wait``."""

    deadline = clock() + max_wait
    polls = 0
    while True:
        rc = job.poll()
        if rc is not None:
            break
        if clock() >= deadline:
            trace("job.timeout", cmd=job.cmd, polls=polls, max_wait=max_wait)
            job.terminate()
            raise subprocess.TimeoutExpired(job.cmd, max_wait)
        polls += 1
        sleep(poll_interval)
    out, err = job.read_output()
    dur = time.time() - job.started
    trace("job.done", cmd=job.cmd, rc=rc, polls=polls, dur=dur, err=err)
    return Result(rc, out, err, dur)


def poll_until(
    probe: Callable[[], bool],
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    max_polls: int | None = None,
) -> int:
    """Call ``probe`` every ``interval`` seconds until it returns true.

    Returns the number of sleeps performed. ``max_polls=None`` waits forever.
    """

    polls = 0
    while not probe():
        if max_polls is not None and polls >= max_polls:
            raise TimeoutError(f"condition not met after {polls} polls")
        polls += 1
        sleep(interval)
    return polls


def require_tools(tools: Sequence[str]) -> dict[str, str]:
    """Return ``{tool: path}``; raise ``LookupError`` listing missing tools."""

    found: dict[str, str] = {}
    missing: list[str] = []
    for tool in tools:
        path = shutil.which(tool)
        if path:
            found[tool] = path
        else:
            missing.append(tool)
    trace("tools.check", found=found, missing=missing)
    if missing:
        raise LookupError(", ".join(missing))
    return found


def quote_cmd(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(c) for c in cmd)


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass
