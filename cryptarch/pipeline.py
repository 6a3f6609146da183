"""Pipeline controller: runs the stages in order, persists progress, resumes.

The controller is the only owner of :class:`PipelineState`. Stage methods
return a :class:`StageResult` and leave their transient outputs (partition
table, encrypted volume, mount manager) on the controller for later stages.
"""

from __future__ import annotations

import os
import time
from typing import Any, Dict, Optional

from . import filesystems, installer, luks, partitioning, preflight, remote
from .configure import Configurator, TargetContext, planned_steps
from .devices import target_device
from .errors import (
    PipelineCancelled,
    StateInconsistencyError,
    TeardownWarning,
    ToolInvocationError,
    ValidationError,
)
from .executil import emit, trace, warn, with_backoff
from .lock import DeviceLock
from .model import STAGE_ORDER, EncryptedVolume, PartitionPlan, PartitionTable, Stage, StageResult
from .mounts import MountManager, build_plan
from .paths import canonical_device, default_lock_path, default_state_path
from .state import PipelineState, archive_state, load_state, reset_state, save_state

# stages that still need the opened volume / the mounted target
_NEEDS_VOLUME = (Stage.FORMAT, Stage.MOUNT, Stage.INSTALL, Stage.CONFIGURE)
_NEEDS_MOUNTS = (Stage.INSTALL, Stage.CONFIGURE)


def describe_plan(device: str, hostname: str, username: str, config) -> Dict[str, Any]:
    """What a run would do, computed without touching the device."""

    plan = PartitionPlan.default(config.esp_mib, config.boot_mib)
    plan.validate()
    stages = [s.value for s in STAGE_ORDER if s != Stage.TEARDOWN or config.teardown]
    return {
        "device": canonical_device(device),
        "hostname": hostname,
        "username": username,
        "partitions": [
            {"index": e.index, "role": e.role, "size_mib": e.size_mib, "type": e.type_code}
            for e in plan.entries
        ],
        "partition_tool": config.partition_tool,
        "encryption": {
            "mapped_name": config.mapped_name,
            "cipher": config.cipher,
            "key_size": config.key_size,
            "hash": config.hash,
            "pbkdf": config.pbkdf,
            "iter_time_ms": config.iter_time_ms,
            "lvm": f"{config.lvm_vg}/{config.lvm_lv}" if config.lvm else None,
        },
        "target_root": config.target_root,
        "mounts": ["/", "/boot", "/" + config.esp_subpath.strip("/")],
        "packages": config.package_list_url or list(config.core_packages),
        "initramfs_hooks": config.hooks,
        "stages": stages,
        "configure_substeps": planned_steps(config),
        "teardown": config.teardown,
    }


class Controller:
    BACKOFF_BASE = 2.0

    def __init__(
        self,
        device: str,
        hostname: str,
        username: str,
        config,
        *,
        state_path: Optional[str] = None,
        lock_path: Optional[str] = None,
        passphrase_file: Optional[str] = None,
        force: bool = False,
        reset: bool = False,
        euid: Optional[int] = None,
    ):
        if config.teardown is None:
            raise ValidationError("teardown", "choose teardown (release the target) or diagnostic mode explicitly")
        self.requested_device = device
        self.device = canonical_device(device)
        self.hostname = hostname
        self.username = username
        self.config = config
        self.state_path = state_path or default_state_path(self.device)
        self.lock_path = lock_path or default_lock_path(self.device)
        self.passphrase_file = passphrase_file
        self.force = force
        self.reset = reset
        self.euid = euid

        self.state: Optional[PipelineState] = None
        self.table: Optional[PartitionTable] = None
        self.volume: Optional[EncryptedVolume] = None
        self.volume_open = False
        self.mounts: Optional[MountManager] = None
        self.results: list[StageResult] = []
        self.resumed = False
        self.current: Optional[Stage] = None
        self._configurator: Optional[Configurator] = None
        self._cancel = False

    # -- control -------------------------------------------------------

    def request_cancel(self) -> None:
        trace("pipeline.cancel_requested", device=self.device)
        self._cancel = True

    @property
    def cancelled(self) -> bool:
        return self._cancel

    def _check_cancel(self, before: str) -> None:
        if self._cancel:
            raise PipelineCancelled(f"cancelled before {before}")

    def _euid(self) -> int:
        return os.geteuid() if self.euid is None else self.euid

    def _save(self) -> None:
        save_state(self.state_path, self.state)

    # -- entry point ---------------------------------------------------

    def run(self) -> list[StageResult]:
        # checked before the lock or state file is touched
        preflight.validate_names(self.hostname, self.username, self.config.reserved_usernames)
        preflight.check_privilege(self._euid())
        if self.device != self.requested_device:
            trace("pipeline.device_resolved", requested=self.requested_device, device=self.device)
        with DeviceLock(self.lock_path, self.device):
            if self.reset:
                reset_state(self.state_path)
            self._load_state()
            try:
                if self.resumed:
                    self._resume()
                for stage in STAGE_ORDER:
                    self._check_cancel(stage.value)
                    self._step(stage)
            except Exception as exc:
                self._abort(exc)
                raise
            archive_state(self.state_path)
            emit("pipeline.done", device=self.device, resumed=self.resumed,
                 stages=[r.stage.value for r in self.results if r.outcome == "success"])
        return self.results

    def _load_state(self) -> None:
        state = load_state(self.state_path, self.device)
        if state is None:
            # first written when the validate stage commits
            self.state = PipelineState(self.device, self.hostname, self.username)
            return
        if (state.hostname, state.username) != (self.hostname, self.username):
            raise StateInconsistencyError(
                f"saved run for {self.device} was for {state.hostname}/{state.username}, "
                f"not {self.hostname}/{self.username}"
            )
        self.state = state
        self.resumed = bool(state.completed_stages)
        trace("pipeline.state_loaded", path=self.state_path, completed=state.completed_stages)

    def _step(self, stage: Stage) -> None:
        if stage == Stage.TEARDOWN and not self.config.teardown:
            self._record(StageResult(stage, "skipped", "diagnostic mode: target left mounted and open"))
            return
        if self.state.is_done(stage):
            self._record(StageResult(stage, "skipped", "completed in an earlier run"))
            return

        self.current = stage
        self.state.current_stage = stage.value
        if self.state.completed_stages:
            self._save()
        emit("stage.start", stage=stage.value, device=self.device)
        started = time.monotonic()
        try:
            if stage == Stage.INSTALL:
                result = with_backoff(
                    self.install,
                    tries=self.config.install_attempts,
                    base=self.BACKOFF_BASE,
                    max_delay=30.0,
                    retry_on=(ToolInvocationError,),
                    on_retry=lambda n, exc: warn("stage.retry", stage=stage.value, attempt=n, error=str(exc)),
                )
            else:
                result = getattr(self, stage.value)()
        except ToolInvocationError as exc:
            ToolInvocationError.from_called(exc, stage.value)
            self._record(StageResult(stage, "failure", self._failure_detail(stage, exc),
                                     time.monotonic() - started))
            raise
        except Exception as exc:
            self._record(StageResult(stage, "failure", self._failure_detail(stage, exc),
                                     time.monotonic() - started))
            raise
        result.duration = time.monotonic() - started
        self.state.mark_done(stage)
        self.state.current_stage = None
        self._save()
        self._record(result)

    def _failure_detail(self, stage: Stage, exc: BaseException) -> str:
        if stage == Stage.CONFIGURE and self._configurator is not None and self._configurator.failed:
            return f"sub-step {self._configurator.failed}: {exc}"
        return str(exc)

    def _record(self, result: StageResult) -> None:
        self.results.append(result)
        emit(f"stage.{result.outcome}", stage=result.stage.value, detail=result.detail,
             duration=round(result.duration, 3))

    # -- resume --------------------------------------------------------

    def _resume(self) -> None:
        """Re-check the device against the saved state and re-acquire resources."""

        emit("pipeline.resume", device=self.device, completed=self.state.completed_stages)
        # partitions may legitimately be open or mounted at this point
        preflight.validate(
            self.device, self.hostname, self.username, self._euid(),
            reserved=self.config.reserved_usernames, require_clean=False,
        )

        if self.state.is_done(Stage.PARTITION):
            if not self.state.partitions:
                raise StateInconsistencyError("partition stage recorded without a partition table")
            self.table = PartitionTable.from_dict(self.state.partitions)
            problems = partitioning.table_mismatches(self.table)
            if problems:
                raise StateInconsistencyError("partition table changed since it was written: " + "; ".join(problems))

        if self.state.is_done(Stage.ENCRYPT):
            live = luks.query_uuid(self.table.root.path)
            if live != self.state.luks_uuid:
                raise StateInconsistencyError(
                    f"LUKS UUID of {self.table.root.path} is {live}, recorded {self.state.luks_uuid}"
                )
            self.volume = luks.volume_for(self.table.root.path, self.config)
            self.volume.uuid = live

        remaining = [s for s in STAGE_ORDER if not self.state.is_done(s)]
        if self.volume is not None:
            if any(s in remaining for s in _NEEDS_VOLUME):
                self._open_volume()
            elif luks.is_open(self.volume.mapped_name):
                self.volume_open = True
        if self.state.is_done(Stage.MOUNT):
            self.mounts = self._mount_manager()
            if any(s in remaining for s in _NEEDS_MOUNTS):
                self.mounts.mount_all()
            else:
                self.mounts.adopt_mounted()

    def _open_volume(self, create_lv: bool = False) -> None:
        luks.open_luks(self.volume, self.passphrase_file, attempts=self.config.open_attempts,
                       timeout=self.config.settle_timeout)
        self.volume_open = True
        if not self.config.lvm:
            return
        if create_lv:
            luks.make_vg_lv(self.volume, timeout=self.config.settle_timeout)
        else:
            luks.activate_vg(self.volume, timeout=self.config.settle_timeout)

    def _mount_manager(self) -> MountManager:
        plan = build_plan(self.config.target_root, self.table, self.volume, self.config.esp_subpath)
        return MountManager(plan, timeout=self.config.settle_timeout, interval=self.config.poll_interval)

    # -- failure -------------------------------------------------------

    def _abort(self, exc: BaseException) -> None:
        stage = self.current.value if self.current else "resume"
        if self.state is not None:
            self.state.record_error(stage, exc)
            if self.state.completed_stages:
                self._save()
        released = self._release()
        emit(
            "pipeline.cancelled" if isinstance(exc, PipelineCancelled) else "pipeline.failed",
            device=self.device,
            stage=stage,
            last_completed=self.state.last_completed if self.state else None,
            error=str(exc),
            teardown_warnings=[str(w) for w in released],
        )

    def _release(self) -> list[TeardownWarning]:
        warnings: list[TeardownWarning] = []
        if self.mounts is not None:
            warnings.extend(self.mounts.unmount_all())
            self.mounts = None
        if self.volume is not None and self.volume_open:
            if self.config.lvm:
                w = luks.deactivate_vg(self.volume)
                if w is not None:
                    warnings.append(w)
            w = luks.close_luks(self.volume.mapped_name)
            if w is not None:
                warnings.append(w)
            self.volume_open = False
        for w in warnings:
            warn("teardown.warning", target=w.target, reason=w.reason)
        return warnings

    # -- stages --------------------------------------------------------

    def validate(self) -> StageResult:
        preflight.validate(
            self.device, self.hostname, self.username, self._euid(),
            reserved=self.config.reserved_usernames, require_clean=True, force=self.force,
        )
        return StageResult(Stage.VALIDATE, "success", f"{self.device} is idle and names are valid")

    def partition(self) -> StageResult:
        device = target_device(self.device)
        plan = PartitionPlan.default(self.config.esp_mib, self.config.boot_mib)
        self.table = partitioning.apply_plan(
            device, plan, backend=self.config.partition_tool, force=self.force,
            timeout=self.config.settle_timeout,
        )
        self.state.partitions = self.table.to_dict()
        sizes = ", ".join(f"{p.role}={p.size_bytes // (1024 * 1024)}MiB" for p in self.table.partitions)
        return StageResult(Stage.PARTITION, "success", sizes)

    def encrypt(self) -> StageResult:
        self.volume = luks.volume_for(self.table.root.path, self.config)
        luks.format_luks(self.volume, self.passphrase_file, attempts=self.config.format_attempts)
        self._open_volume(create_lv=True)
        self.volume.uuid = luks.query_uuid(self.table.root.path)
        self.state.luks_uuid = self.volume.uuid
        return StageResult(Stage.ENCRYPT, "success", f"{self.volume.backing} UUID={self.volume.uuid}")

    def format(self) -> StageResult:
        specs = filesystems.format_all(self.table, self.volume)
        return StageResult(Stage.FORMAT, "success", ", ".join(f"{s.device}:{s.fstype}" for s in specs))

    def mount(self) -> StageResult:
        self.mounts = self._mount_manager()
        self.mounts.mount_all()
        return StageResult(Stage.MOUNT, "success", " ".join(self.mounts.obligations))

    def install(self) -> StageResult:
        cfg = self.config
        if cfg.package_list_url:
            base = remote.fetch_package_list(cfg.package_list_url, attempts=cfg.fetch_attempts)
        else:
            base = list(cfg.core_packages)
        packages = installer.package_set(base, installer.read_cpuinfo(cfg.cpuinfo_path), cfg)
        installer.install_base(cfg.target_root, packages, cfg)
        installer.write_fstab(cfg.target_root)
        return StageResult(Stage.INSTALL, "success", f"{len(packages)} packages")

    def configure(self) -> StageResult:
        ctx = TargetContext(
            root=self.config.target_root,
            hostname=self.hostname,
            username=self.username,
            volume=self.volume,
            luks_partition=self.table.root,
            config=self.config,
            expected_uuid=self.state.luks_uuid,
        )
        self._configurator = Configurator(
            ctx,
            done=self.state.completed_substeps,
            on_done=self._substep_done,
            cancelled=lambda: self._cancel,
        )
        ran = self._configurator.run()
        return StageResult(Stage.CONFIGURE, "success", f"ran {', '.join(ran) or 'nothing'}")

    def _substep_done(self, name: str) -> None:
        self.state.mark_substep(name)
        self._save()

    def teardown(self) -> StageResult:
        warnings = self._release()
        detail = "; ".join(str(w) for w in warnings) or "target unmounted and closed"
        return StageResult(Stage.TEARDOWN, "success", detail)
