"""Persisted pipeline progress, one JSON file per target device."""

from __future__ import annotations

import datetime as _dt
import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import StateInconsistencyError
from .executil import trace

STATE_VERSION = 1


def _now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


@dataclass
class PipelineState:
    device: str
    hostname: str
    username: str
    version: int = STATE_VERSION
    current_stage: Optional[str] = None
    completed_stages: list[str] = field(default_factory=list)
    completed_substeps: list[str] = field(default_factory=list)
    partitions: Optional[Dict[str, Any]] = None
    luks_uuid: Optional[str] = None
    errors: list[Dict[str, Any]] = field(default_factory=list)
    started_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def is_done(self, stage) -> bool:
        return str(getattr(stage, "value", stage)) in self.completed_stages

    def mark_done(self, stage) -> None:
        name = str(getattr(stage, "value", stage))
        if name not in self.completed_stages:
            self.completed_stages.append(name)

    def mark_substep(self, name: str) -> None:
        if name not in self.completed_substeps:
            self.completed_substeps.append(name)

    def record_error(self, stage, error: BaseException) -> None:
        self.errors.append({
            "ts": _now(),
            "stage": str(getattr(stage, "value", stage)),
            "type": type(error).__name__,
            "message": str(error),
        })

    @property
    def last_completed(self) -> Optional[str]:
        return self.completed_stages[-1] if self.completed_stages else None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineState":
        known = {f.name for f in fields(cls)}
        missing = [k for k in ("device", "hostname", "username") if k not in data]
        if missing:
            raise StateInconsistencyError(f"state file lacks {', '.join(missing)}")
        return cls(**{k: v for k, v in data.items() if k in known})


def load_state(path: str, device: str) -> Optional[PipelineState]:
    """Return the saved state for ``device`` or None when there is none."""

    p = Path(path)
    if not p.exists():
        return None
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateInconsistencyError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise StateInconsistencyError(f"{path} must contain a JSON object")
    state = PipelineState.from_dict(data)
    if state.version != STATE_VERSION:
        raise StateInconsistencyError(f"{path} has state version {state.version}, expected {STATE_VERSION}")
    if os.path.realpath(state.device) != os.path.realpath(device):
        raise StateInconsistencyError(f"{path} records device {state.device}, not {device}")
    return state


def save_state(path: str, state: PipelineState) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    state.updated_at = _now()
    tmp = p.with_suffix(p.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as fh:
        fh.write(json.dumps(state.to_dict(), indent=2, sort_keys=True) + "\n")
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, p)


def archive_state(path: str) -> Optional[str]:
    """Rename a finished state file to ``<name>.done-<ts>.json``."""

    p = Path(path)
    if not p.exists():
        return None
    stamp = _dt.datetime.now(_dt.timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    dest = p.with_name(f"{p.stem}.done-{stamp}.json")
    os.replace(p, dest)
    trace("state.archived", path=str(dest))
    return str(dest)


def reset_state(path: str) -> bool:
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    trace("state.reset", path=path)
    return True
