"""Rewrite the mkinitcpio hook list and rebuild the initramfs in the target root."""

from __future__ import annotations

import glob
import os
import time
from typing import Iterable

from .boot_plumbing import backup_once, read_text, replace_active_line, target_path, write_text
from .chroot import in_target
from .executil import trace, wait_for

MKINITCPIO_CONF = "etc/mkinitcpio.conf"
INITRAMFS_TIMEOUT = 600


def hooks_line(hooks: Iterable[str]) -> str:
    return f"HOOKS=({' '.join(hooks)})"


def active_hooks(root: str) -> list[str]:
    """Return the hook list of the active ``HOOKS=`` line, or [] if none."""

    for line in read_text(target_path(root, MKINITCPIO_CONF)).splitlines():
        if line.startswith("HOOKS="):
            return line.split("=", 1)[1].strip().strip("()").split()
    return []


def rewrite_hooks(root: str, hooks: Iterable[str]) -> str:
    hooks = list(hooks)
    if "encrypt" not in hooks:
        raise ValueError("initramfs hook list must include 'encrypt'")
    path = target_path(root, MKINITCPIO_CONF)
    backup_once(path)
    changed = write_text(path, replace_active_line(read_text(path), "HOOKS", hooks_line(hooks)))
    trace("initramfs.hooks", path=path, hooks=hooks, changed=changed)
    return path


def images(root: str) -> list[str]:
    return sorted(glob.glob(os.path.join(target_path(root, "boot"), "initramfs-*.img")))


def _rebuilt_since(root: str, since: float) -> bool:
    for image in images(root):
        try:
            if os.path.getsize(image) > 0 and os.path.getmtime(image) >= since:
                return True
        except OSError:
            continue
    return False


def rebuild(root: str, config) -> list[str]:
    """Run ``mkinitcpio -P`` in the target and wait for a fresh image."""

    started = time.time() - 1
    res = in_target(root, ["mkinitcpio", "-P"], tool=config.chroot_tool, timeout=INITRAMFS_TIMEOUT)
    wait_for(lambda: _rebuilt_since(root, started), what="/boot/initramfs-*.img",
             timeout=config.settle_timeout, interval=config.poll_interval)
    built = images(root)
    trace("initramfs.rebuilt", images=built, duration=res.duration)
    return built
