"""CLI entrypoint for the encrypted Arch installer."""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time
from typing import Any, Dict, Optional

from . import preflight
from .config import load_config
from .errors import (
    PartitionLayoutError,
    PipelineCancelled,
    StateInconsistencyError,
    ToolInvocationError,
    ValidationError,
)
from .executil import append_jsonl, resolve_log_path, trace
from .paths import canonical_device
from .pipeline import Controller, describe_plan

RESULT_CODES: Dict[str, int] = {
    "PLAN_OK": 0,
    "INSTALL_OK": 0,
    "DIAGNOSTIC_OK": 0,
    "FAIL_VALIDATION": 1,
    "FAIL_LAYOUT": 1,
    "FAIL_TOOL": 1,
    "FAIL_STATE": 1,
    "FAIL_CANCELLED": 1,
    "FAIL_UNHANDLED": 1,
}

JSON_OUTPUT_ENABLED = True
_CURRENT_DEVICE: Optional[str] = None
CLI_START_MONO = time.perf_counter()


def _result_log_path() -> Optional[str]:
    return resolve_log_path()


def _emit_result(kind: str, extra: Optional[Dict[str, Any]] = None, exit_code: Optional[int] = None) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    payload.setdefault("device", _CURRENT_DEVICE)
    log_path = _result_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    if JSON_OUTPUT_ENABLED:
        print(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))
    else:
        total_ms = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
        why = str(payload.get("why") or "")
        print(
            f"result={kind} why={why} device={payload.get('device') or ''} "
            f"stage={payload.get('stage') or ''} last_completed={payload.get('last_completed') or ''} "
            f"timing_total_ms={total_ms} log_path={payload.get('log_path') or ''}"
        )
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cryptarch", add_help=True)
    sub = parser.add_subparsers(dest="command", required=True)
    run_p = sub.add_parser("run", help="partition, encrypt and install onto a whole disk")
    run_p.add_argument("device")
    run_p.add_argument("hostname")
    run_p.add_argument("username", nargs="?", default=None)
    mode = run_p.add_mutually_exclusive_group()
    mode.add_argument("--teardown", dest="teardown", action="store_true", default=None)
    mode.add_argument("--diagnostic", dest="teardown", action="store_false", default=None)
    run_p.add_argument("--config", default=None)
    run_p.add_argument("--state", default=None)
    run_p.add_argument("--passphrase-file", default=None)
    run_p.add_argument("--force", action="store_true")
    run_p.add_argument("--reset-state", action="store_true")
    run_p.add_argument("--plan", action="store_true")
    run_p.add_argument("--json", dest="json", action="store_true", default=True)
    run_p.add_argument("--no-json", dest="json", action="store_false")
    return parser


def _install_signal_handlers(controller: Controller) -> dict:
    previous = {}

    def _handler(signum, _frame):
        trace("cli.signal", signal=signum)
        controller.request_cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def _failure_payload(controller: Optional[Controller], exc: BaseException) -> Dict[str, Any]:
    state = controller.state if controller is not None else None
    return {
        "why": str(exc),
        "error": type(exc).__name__,
        "stage": controller.current.value if controller is not None and controller.current else None,
        "last_completed": state.last_completed if state is not None else None,
    }


def _main_impl(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    global JSON_OUTPUT_ENABLED, _CURRENT_DEVICE
    JSON_OUTPUT_ENABLED = bool(args.json)
    _CURRENT_DEVICE = canonical_device(args.device)

    trace(
        "cli.args",
        device=args.device,
        hostname=args.hostname,
        username=args.username,
        teardown=args.teardown,
        config=args.config,
        state=args.state,
        force=args.force,
        reset_state=args.reset_state,
        plan=args.plan,
    )

    controller: Optional[Controller] = None
    try:
        config = load_config(args.config)
        if args.teardown is not None:
            config.teardown = args.teardown
        username = args.username or config.username
        preflight.validate_names(args.hostname, username, config.reserved_usernames)
        if config.teardown is None:
            raise ValidationError("teardown", "pass --teardown or --diagnostic")
        if args.passphrase_file and not os.path.isfile(args.passphrase_file):
            raise ValidationError("passphrase_file", f"{args.passphrase_file} does not exist")

        if args.plan:
            _emit_result("PLAN_OK", {"plan": describe_plan(args.device, args.hostname, username, config)})

        controller = Controller(
            args.device,
            args.hostname,
            username,
            config,
            state_path=args.state,
            passphrase_file=args.passphrase_file,
            force=args.force,
            reset=args.reset_state,
        )
        previous = _install_signal_handlers(controller)
        try:
            results = controller.run()
        finally:
            _restore_signal_handlers(previous)
    except ValidationError as exc:
        _emit_result("FAIL_VALIDATION", {**_failure_payload(controller, exc), "field": exc.field})
    except PartitionLayoutError as exc:
        _emit_result("FAIL_LAYOUT", _failure_payload(controller, exc))
    except StateInconsistencyError as exc:
        payload = _failure_payload(controller, exc)
        payload["hint"] = "rerun with --reset-state to start over"
        _emit_result("FAIL_STATE", payload)
    except PipelineCancelled as exc:
        _emit_result("FAIL_CANCELLED", _failure_payload(controller, exc))
    except ToolInvocationError as exc:
        payload = _failure_payload(controller, exc)
        payload.update({"cmd": exc.cmd, "rc": exc.returncode})
        _emit_result("FAIL_TOOL", payload)

    kind = "INSTALL_OK" if config.teardown else "DIAGNOSTIC_OK"
    _emit_result(
        kind,
        {
            "hostname": args.hostname,
            "username": username,
            "resumed": controller.resumed,
            "stages": [{"stage": r.stage.value, "outcome": r.outcome, "detail": r.detail} for r in results],
            "luks_uuid": controller.volume.uuid if controller.volume else None,
            "why": "target left mounted and open for inspection" if not config.teardown else "",
        },
    )
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        _emit_result("FAIL_UNHANDLED", extra={"why": str(exc), "error": type(exc).__name__})
    return 1


if __name__ == "__main__":
    sys.exit(main())
