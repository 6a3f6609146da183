from __future__ import annotations

import os
import re
from pathlib import Path

_DEFAULT_BASE = "/var/lib/cryptarch"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for cryptarch state, locks and logs.

    The location can be overridden via the ``CRYPTARCH_BASE_PATH`` environment
    variable.  It must live outside the target root so a half-finished install
    can be resumed after the target has been unmounted.
    """

    override = os.environ.get("CRYPTARCH_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")


def state_dir() -> str:
    return str(Path(base_path()) / "state")


def locks_dir() -> str:
    return str(Path(base_path()) / "locks")


def canonical_device(device: str) -> str:
    """Resolve aliases such as ``/dev/disk/by-id/...`` to the kernel node.

    Locks, state files and lsblk lookups are all keyed on this path, so two
    names for one disk always land on the same lock.
    """

    device = (device or "").strip()
    if not device.startswith("/"):
        return device
    return os.path.realpath(device)


def device_slug(device: str) -> str:
    """``/dev/disk/by-id/nvme-X`` -> ``disk_by-id_nvme-X``."""

    trimmed = device.strip().rstrip("/")
    if trimmed.startswith("/dev/"):
        trimmed = trimmed[len("/dev/"):]
    return re.sub(r"[^A-Za-z0-9._-]", "_", trimmed.strip("/")) or "device"


def default_state_path(device: str) -> str:
    return str(Path(state_dir()) / f"{device_slug(canonical_device(device))}.json")


def default_lock_path(device: str) -> str:
    return str(Path(locks_dir()) / f"{device_slug(canonical_device(device))}.lock")
