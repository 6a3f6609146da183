"""Error taxonomy for the provisioning pipeline."""

from __future__ import annotations

from subprocess import CalledProcessError
from typing import Sequence


class CryptarchError(RuntimeError):
    """Base class for pipeline failures that are not tool invocations."""


class ValidationError(CryptarchError):
    """Bad input.  Raised before anything on disk has been touched."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


class ToolInvocationError(CalledProcessError):
    """An external tool exited non-zero or a readiness poll expired."""

    def __init__(
        self,
        returncode: int,
        cmd: Sequence[str] | str,
        output: str | None = None,
        stderr: str | None = None,
        *,
        stage: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(returncode, cmd, output, stderr)
        self.stage = stage
        self.reason = reason

    @classmethod
    def from_called(cls, exc: CalledProcessError, stage: str | None = None) -> "ToolInvocationError":
        if isinstance(exc, cls):
            if stage and not exc.stage:
                exc.stage = stage
            return exc
        return cls(exc.returncode, exc.cmd, exc.output, exc.stderr, stage=stage)

    def __str__(self) -> str:
        if self.reason:
            text = self.reason
        else:
            cmd = self.cmd if isinstance(self.cmd, str) else " ".join(str(c) for c in self.cmd)
            text = f"{cmd} exited with status {self.returncode}"
            detail = (self.stderr or self.output or "").strip()
            if detail:
                text = f"{text}: {detail.splitlines()[-1]}"
        if self.stage:
            return f"[{self.stage}] {text}"
        return text


class StateInconsistencyError(CryptarchError):
    """Persisted pipeline state no longer matches the observed system."""


class PartitionLayoutError(CryptarchError):
    """The partition plan is invalid or the device is not clean."""


class PipelineCancelled(CryptarchError):
    """An external abort was requested and honoured between tool calls."""


class TeardownWarning(UserWarning):
    """Best-effort unmount/close did not complete cleanly.

    Returned by teardown helpers rather than raised; it never changes the
    recorded outcome of earlier stages.
    """

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"{target}: {reason}")
        self.target = target
        self.reason = reason
