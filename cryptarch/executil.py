from __future__ import annotations

"""Subprocess wrapper, JSONL trace log and readiness polling."""

import datetime as _dt
import json
import os
import shlex
import subprocess
import sys
import time
from typing import Callable, Sequence

from .errors import ToolInvocationError
from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "cryptarch.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/cryptarch",
        "/tmp/cryptarch-logs",
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


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}


def _log_level() -> str:
    return os.environ.get("CRYPTARCH_LOG_LEVEL", "TRACE").upper()


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
    cur = LEVELS.get(_log_level(), 100)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def warn(event: str, **fields):
    log("WARN", event, **fields)


def emit(event: str, **fields):
    """Log at INFO and echo a single JSON line on stderr for the operator."""

    log("INFO", event, **fields)
    rec = {"event": event}
    rec.update(fields)
    print(json.dumps(rec, sort_keys=True, separators=(",", ":"), default=str), file=sys.stderr)


def run(
    cmd: Sequence[str],
    check: bool = True,
    timeout: float | None = 60.0,
    env: dict | None = None,
    input: str | None = None,
    interactive: bool = False,
    retry_on_timeout: bool = False,
) -> Result:
    """Run ``cmd`` and return its :class:`Result`.

    ``interactive`` leaves stdin/stdout attached to the terminal (passphrase
    and password prompts); nothing is captured in that mode.

    A timeout raises at once unless ``retry_on_timeout`` is set; only
    read-only lookups set it, since a mutating tool must never run twice.
    """

    cmd = [str(c) for c in cmd]
    trace("exec.start", cmd=cmd, interactive=interactive)
    started = time.time()
    kwargs: dict = {"text": True, "env": (env or os.environ).copy()}
    if not interactive:
        kwargs["capture_output"] = True
        if input is not None:
            kwargs["input"] = input
    attempts = 2 if retry_on_timeout else 1
    for attempt in range(1, attempts + 1):
        try:
            proc = subprocess.run(cmd, timeout=timeout, **kwargs)
            break
        except subprocess.TimeoutExpired as exc:
            trace("exec.timeout", cmd=cmd, timeout=timeout, attempt=attempt, attempts=attempts)
            if attempt == attempts:
                raise ToolInvocationError(
                    124,
                    cmd,
                    reason=f"{shlex.join(cmd)} did not finish within {timeout}s",
                ) from exc
            udev_settle()
        except FileNotFoundError as exc:
            raise ToolInvocationError(127, cmd, reason=f"{cmd[0]}: command not found") from exc
    dur = time.time() - started
    out = getattr(proc, "stdout", None) or ""
    err = getattr(proc, "stderr", None) or ""
    trace("exec.done", cmd=cmd, rc=proc.returncode, dur=dur, out=out[-4000:], err=err[-4000:])
    if check and proc.returncode != 0:
        raise ToolInvocationError(proc.returncode, cmd, out, err)
    return Result(proc.returncode, out, err, dur)


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass


def wait_for(
    predicate: Callable[[], bool],
    what: str,
    timeout: float = 30.0,
    interval: float = 0.25,
    settle: bool = False,
) -> None:
    """Poll ``predicate`` until it is true or ``timeout`` expires.

    Expiry raises :class:`ToolInvocationError` naming ``what`` was awaited.
    """

    deadline = time.monotonic() + timeout
    trace("wait.start", what=what, timeout=timeout)
    while True:
        if predicate():
            trace("wait.ready", what=what)
            return
        now = time.monotonic()
        if now >= deadline:
            break
        trace("wait.retry", what=what, remaining=max(0.0, deadline - now))
        if settle:
            udev_settle()
        time.sleep(interval)
    raise ToolInvocationError(-1, ["wait", what], reason=f"timed out after {timeout:.1f}s waiting for {what}")


def with_backoff(
    fn,
    tries: int = 3,
    base: float = 0.5,
    max_delay: float = 4.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Callable[[int, BaseException], None] | None = None,
):
    delay = base
    last = None
    attempts = max(1, tries)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            last = e
            if attempt == attempts:
                break
            if on_retry is not None:
                on_retry(attempt, e)
            time.sleep(delay)
            delay = min(max_delay, delay * 2)
    raise last


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass
