"""Run commands inside the target root."""
from __future__ import annotations

from .executil import Result, run


def in_target(
    root: str,
    cmd: list[str],
    *,
    tool: str = "arch-chroot",
    check: bool = True,
    timeout: float | None = 600.0,
    interactive: bool = False,
) -> Result:
    return run([tool, root, *cmd], check=check, timeout=timeout, interactive=interactive)
