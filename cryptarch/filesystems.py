"""Filesystem creation on the partitions and the opened root volume."""
from __future__ import annotations

from dataclasses import dataclass

from .devices import busy_reasons, is_read_only
from .errors import ToolInvocationError
from .executil import run, trace, udev_settle
from .model import EncryptedVolume, PartitionTable

MKFS_TIMEOUT = 360.0


@dataclass
class FormatSpec:
    device: str
    fstype: str
    label: str


def format_plan(table: PartitionTable, volume: EncryptedVolume) -> list[FormatSpec]:
    return [
        FormatSpec(table.esp.path, "vfat", "EFI"),
        FormatSpec(table.boot.path, "ext4", "boot"),
        FormatSpec(volume.root_device, "ext4", "root"),
    ]


def _mkfs_cmd(spec: FormatSpec) -> list[str]:
    if spec.fstype == "vfat":
        return ["mkfs.fat", "-F", "32", "-n", spec.label, spec.device]
    if spec.fstype == "ext4":
        return ["mkfs.ext4", "-F", "-L", spec.label, spec.device]
    raise ValueError(f"unsupported filesystem {spec.fstype!r}")


def mkfs(spec: FormatSpec):
    problems = busy_reasons(spec.device)
    if is_read_only(spec.device):
        problems.append("device is read-only")
    cmd = _mkfs_cmd(spec)
    if problems:
        raise ToolInvocationError(1, cmd, reason=f"refusing to format {spec.device}: {'; '.join(problems)}")
    run(cmd, check=True, timeout=MKFS_TIMEOUT)
    trace("filesystems.mkfs", device=spec.device, fstype=spec.fstype, label=spec.label)


def format_all(table: PartitionTable, volume: EncryptedVolume) -> list[FormatSpec]:
    specs = format_plan(table, volume)
    for spec in specs:
        mkfs(spec)
    udev_settle()
    return specs
