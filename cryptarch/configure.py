"""Target configuration: the ordered, individually recorded sub-steps."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from . import boot_plumbing, initramfs, luks, remote
from .boot_plumbing import backup_once, read_text, target_path, write_text
from .chroot import in_target
from .errors import PipelineCancelled, StateInconsistencyError, ToolInvocationError, ValidationError
from .executil import emit, trace, wait_for
from .model import EncryptedVolume, Partition

SUBSTEPS = (
    "timezone",
    "clock",
    "locale",
    "hostname",
    "initramfs",
    "bootloader_config",
    "boot_menu",
    "bootloader_install",
    "daemons",
    "root_password",
    "user",
    "second_stage",
)

LOCALE_GEN = "etc/locale.gen"
LOCALE_CONF = "etc/locale.conf"
LOCALE_ARCHIVE = "usr/lib/locale/locale-archive"
HOSTNAME = "etc/hostname"
LOCALTIME = "etc/localtime"
ZONEINFO = "/usr/share/zoneinfo"


@dataclass
class TargetContext:
    root: str
    hostname: str
    username: str
    volume: EncryptedVolume
    luks_partition: Partition
    config: object
    # UUID recorded right after formatting; the live value must agree with it
    expected_uuid: Optional[str] = None


def _chroot(ctx: TargetContext, cmd: list[str], **kwargs):
    return in_target(ctx.root, cmd, tool=ctx.config.chroot_tool, **kwargs)


def set_timezone(ctx: TargetContext):
    zone = f"{ZONEINFO}/{ctx.config.timezone}"
    if not os.path.isfile(target_path(ctx.root, zone)):
        raise ValidationError("timezone", f"{ctx.config.timezone!r} is not present under {ZONEINFO}")
    link = target_path(ctx.root, LOCALTIME)
    if os.path.islink(link) and os.readlink(link) == zone:
        return
    if os.path.lexists(link):
        os.remove(link)
    os.symlink(zone, link)
    trace("configure.timezone", zone=zone)


def sync_clock(ctx: TargetContext):
    _chroot(ctx, ["hwclock", "--systohc"])


def enable_locale(text: str, locale: str) -> str:
    """Uncomment ``locale`` in locale.gen text; append it when absent."""

    pattern = re.compile(rf"^#\s*({re.escape(locale)}\s.*)$")
    lines = text.splitlines()
    found = any(line.split()[:1] == [locale] for line in lines)
    for i, line in enumerate(lines):
        m = pattern.match(line)
        if m and not found:
            lines[i] = m.group(1)
            found = True
    if not found:
        charset = locale.split(".", 1)[1] if "." in locale else "UTF-8"
        lines.append(f"{locale} {charset}")
    return "\n".join(lines).rstrip("\n") + "\n"


def generate_locale(ctx: TargetContext):
    path = target_path(ctx.root, LOCALE_GEN)
    backup_once(path)
    write_text(path, enable_locale(read_text(path), ctx.config.locale))
    _chroot(ctx, ["locale-gen"])
    archive = target_path(ctx.root, LOCALE_ARCHIVE)
    wait_for(lambda: os.path.isfile(archive), what=f"/{LOCALE_ARCHIVE}",
             timeout=ctx.config.settle_timeout, interval=ctx.config.poll_interval)
    write_text(target_path(ctx.root, LOCALE_CONF), f"LANG={ctx.config.locale}\n")


def write_hostname(ctx: TargetContext):
    write_text(target_path(ctx.root, HOSTNAME), ctx.hostname + "\n")


def configure_initramfs(ctx: TargetContext):
    initramfs.rewrite_hooks(ctx.root, ctx.config.hooks)
    initramfs.rebuild(ctx.root, ctx.config)


def configure_bootloader(ctx: TargetContext):
    uuid = luks.query_uuid(ctx.luks_partition.path)
    if ctx.expected_uuid and uuid != ctx.expected_uuid:
        raise StateInconsistencyError(
            f"LUKS UUID of {ctx.luks_partition.path} is {uuid}, recorded {ctx.expected_uuid}"
        )
    ctx.volume.uuid = uuid
    boot_plumbing.write_grub_cmdline(ctx.root, uuid, ctx.volume)
    boot_plumbing.assert_cmdline_uuid(ctx.root, uuid, ctx.volume)


def add_boot_menu(ctx: TargetContext):
    boot_plumbing.write_menu_entries(ctx.root)


def install_bootloader(ctx: TargetContext):
    boot_plumbing.install_grub(ctx.root, ctx.config)
    boot_plumbing.generate_config(ctx.root, ctx.config)


def enable_daemons(ctx: TargetContext):
    for daemon in ctx.config.daemons:
        _chroot(ctx, ["systemctl", "enable", daemon])


def set_root_password(ctx: TargetContext):
    _chroot(ctx, ["passwd"], interactive=True, timeout=None)


def create_user(ctx: TargetContext):
    user = ctx.username
    if _chroot(ctx, ["id", "-u", user], check=False).rc != 0:
        _chroot(ctx, ["useradd", "-m", "-G", ctx.config.admin_group, user])
    else:
        trace("configure.user_exists", user=user)
    _chroot(ctx, ["passwd", user], interactive=True, timeout=None)


def place_second_stage(ctx: TargetContext):
    rel = f"/home/{ctx.username}/post-install.sh"
    remote.fetch_second_stage(ctx.config.post_install_script_url, target_path(ctx.root, rel),
                              attempts=ctx.config.fetch_attempts)
    _chroot(ctx, ["chown", f"{ctx.username}:{ctx.username}", rel])


STEP_FUNCS: dict[str, Callable[[TargetContext], None]] = {
    "timezone": set_timezone,
    "clock": sync_clock,
    "locale": generate_locale,
    "hostname": write_hostname,
    "initramfs": configure_initramfs,
    "bootloader_config": configure_bootloader,
    "boot_menu": add_boot_menu,
    "bootloader_install": install_bootloader,
    "daemons": enable_daemons,
    "root_password": set_root_password,
    "user": create_user,
    "second_stage": place_second_stage,
}


def planned_steps(config) -> list[str]:
    steps = list(SUBSTEPS)
    if not config.install_second_stage:
        steps.remove("second_stage")
    return steps


class Configurator:
    """Runs the sub-steps in order, skipping those already recorded as done.

    ``on_done`` is called with each sub-step name right after it succeeds so
    the caller can persist progress. ``cancelled`` is checked before every
    sub-step.
    """

    def __init__(
        self,
        ctx: TargetContext,
        done: Iterable[str] = (),
        on_done: Callable[[str], None] | None = None,
        cancelled: Callable[[], bool] | None = None,
    ):
        self.ctx = ctx
        self.done = set(done)
        self.on_done = on_done
        self.cancelled = cancelled
        self.failed: str | None = None

    def run(self) -> list[str]:
        ran: list[str] = []
        for name in planned_steps(self.ctx.config):
            if self.cancelled is not None and self.cancelled():
                raise PipelineCancelled(f"cancelled before configure sub-step {name}")
            if name in self.done:
                trace("configure.skip", substep=name)
                continue
            emit("substep.start", substep=name)
            try:
                STEP_FUNCS[name](self.ctx)
            except ToolInvocationError as exc:
                self.failed = name
                exc.stage = exc.stage or f"configure.{name}"
                raise
            except Exception:
                self.failed = name
                raise
            self.done.add(name)
            ran.append(name)
            if self.on_done is not None:
                self.on_done(name)
            emit("substep.done", substep=name)
        return ran
