"""Preconditions checked before any mutating stage runs.

Nothing in here writes to disk; every check is safe to repeat.
"""

from __future__ import annotations

import os
import re
from typing import Iterable

from .devices import busy_reasons, disk_type, is_block_device, list_partitions, live_disks
from .errors import ValidationError
from .executil import trace

NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,20}")


def _check_name(field: str, value) -> None:
    if not isinstance(value, str) or not value:
        raise ValidationError(field, "must be a non-empty string")
    if len(value) > 20:
        raise ValidationError(field, f"{value!r} is longer than 20 characters")
    if not NAME_PATTERN.fullmatch(value):
        raise ValidationError(field, f"{value!r} may only contain letters, digits, '_' and '-'")


def check_hostname(hostname: str) -> None:
    _check_name("hostname", hostname)


def check_username(username: str, reserved: Iterable[str] = ()) -> None:
    _check_name("username", username)
    if username.lower() in {r.lower() for r in reserved}:
        raise ValidationError("username", f"{username!r} is a reserved system account")


def check_privilege(euid: int) -> None:
    if euid != 0:
        raise ValidationError("privilege", "must run as root to open block devices and chroot")


def check_not_live_disk(device: str) -> None:
    name = os.path.basename(os.path.realpath(device))
    for live in live_disks():
        if live == name:
            raise ValidationError("device", f"{device} backs the running system ({live})")


def check_device(device: str, *, require_clean: bool = True, force: bool = False) -> None:
    if not device or not device.startswith("/dev/"):
        raise ValidationError("device", f"{device!r} is not a /dev path")
    if not is_block_device(device):
        raise ValidationError("device", f"{device} is not a block device")
    kind = disk_type(device)
    if kind != "disk":
        raise ValidationError("device", f"{device} is a {kind or 'unknown device'}, not a whole disk")
    check_not_live_disk(device)
    reasons = busy_reasons(device)
    if reasons:
        raise ValidationError("device", f"{device} is not idle: {'; '.join(reasons)}")
    if not require_clean:
        return
    parts = list_partitions(device)
    if parts and not force:
        raise ValidationError("device", f"{device} already contains partitions (use --force to overwrite)")
    for part in parts:
        reasons = busy_reasons(part["path"])
        if reasons:
            raise ValidationError("device", f"{part['path']} is not idle: {'; '.join(reasons)}")


def validate_names(hostname: str, username: str, reserved: Iterable[str] = ()) -> None:
    check_hostname(hostname)
    check_username(username, reserved)


def validate(
    device: str,
    hostname: str,
    username: str,
    euid: int,
    *,
    reserved: Iterable[str] = (),
    require_clean: bool = True,
    force: bool = False,
) -> None:
    """Run every precondition; raise :class:`ValidationError` on the first failure."""

    validate_names(hostname, username, reserved)
    check_privilege(euid)
    check_device(device, require_clean=require_clean, force=force)
    trace("preflight.ok", device=device, hostname=hostname, username=username, require_clean=require_clean)
