"""CLI entrypoint for the offline backup orchestrator."""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
import time
from typing import Any, Callable, Dict, Optional

from .config import load_config
from .errors import FatalError
from .executil import append_jsonl, fail, quote_cmd, resolve_log_path, trace, warn
from .model import identity
from .pipeline import UNSAFE_STATES, Pipeline
from .recovery import recover
from .workflows import operate_workflow, planned_steps, setup_workflow

RESULT_CODES: Dict[str, int] = {
    "PLAN_OK": 0,
    "SETUP_OK": 0,
    "BACKUP_OK": 0,
    "RECOVER_OK": 0,
    "FAIL_CONFIG": 2,
    "FAIL_PRECONDITION": 2,
    "FAIL_DEVICE_NOT_FOUND": 2,
    "FAIL_DEVICE_AMBIGUOUS": 2,
    "FAIL_CREDENTIALS": 2,
    "FAIL_ABORTED": 3,
    "FAIL_HEALTH": 4,
    "FAIL_PROVISION": 5,
    "FAIL_BACKUP": 6,
    "FAIL_NO_ELIGIBLE_FILE": 7,
    "FAIL_RESTORED_MISSING": 8,
    "FAIL_CHECKSUM": 8,
    "FAIL_RESIDUAL_MOUNT": 9,
    "FAIL_STATE": 10,
    "FAIL_COMMAND": 11,
    "FAIL_GENERIC": 1,
    "FAIL_UNHANDLED": 12,
}

CLI_START_MONO = time.perf_counter()


def _emit_result(kind: str, extra: Optional[Dict[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))
    raise SystemExit(RESULT_CODES.get(kind, 1))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="offline-backup", add_help=True)
    parser.add_argument("--config", default=None, help="YAML vars file (default: ./vars.yaml)")
    parser.add_argument("--serial", dest="serial_number", default=None)
    parser.add_argument("--plan", action="store_true", help="print the steps and exit")
    sub = parser.add_subparsers(dest="command", required=True)

    setup = sub.add_parser("setup", help="provision a blank device (pool, dataset, repository)")
    setup.add_argument("--yes", dest="assume_yes", action="store_true")

    sub.add_parser("backup", help="run one backup cycle and eject the device")
    sub.add_parser("recover", help="force the pool out after an aborted backup")
    return parser


def _run(args: argparse.Namespace, pipeline: Pipeline, input_fn: Optional[Callable[[str], str]]) -> None:
    config = load_config(args.config, overrides={"serial_number": args.serial_number})
    ident = identity(config.serial_number, config.dataset_name)
    trace("cli.start", command=args.command, serial=config.serial_number, pool=ident.pool)

    if args.plan:
        _emit_result(
            "PLAN_OK",
            {
                "command": args.command,
                "pool": ident.pool,
                "dataset": ident.dataset_path,
                "steps": planned_steps(args.command),
            },
        )
    if args.command == "setup":
        summary = setup_workflow(config, assume_yes=args.assume_yes, input_fn=input_fn)
        _emit_result("SETUP_OK", summary)
    if args.command == "backup":
        summary = operate_workflow(config, pipeline=pipeline)
        _emit_result("BACKUP_OK", summary)
    report = recover(ident, config.scratch_root, pipeline=pipeline)
    if not report["safe"]:
        fail(f"Pool {ident.pool} could not be released")
        _emit_result("FAIL_RESIDUAL_MOUNT", report)
    _emit_result("RECOVER_OK", report)


def _warn_if_unsafe(pipeline: Pipeline) -> None:
    if pipeline.state in UNSAFE_STATES:
        warn("The pool may still be imported; run 'offline-backup recover' before unplugging")


def main(argv: Optional[list[str]] = None, input_fn: Optional[Callable[[str], str]] = None) -> int:
    args = build_parser().parse_args(argv)
    pipeline = Pipeline()
    try:
        _run(args, pipeline, input_fn)
    except SystemExit:
        raise
    except FatalError as exc:
        extra: Dict[str, Any] = {"why": str(exc), "state": pipeline.state.value, **exc.details}
        fail(str(exc))
        _warn_if_unsafe(pipeline)
        _emit_result(exc.result, extra)
    except subprocess.CalledProcessError as exc:
        fail(f"command failed (rc={exc.returncode}): {quote_cmd(exc.cmd)}")
        _warn_if_unsafe(pipeline)
        _emit_result(
            "FAIL_COMMAND",
            {"cmd": list(exc.cmd), "rc": exc.returncode, "err": (exc.stderr or "")[-2000:], "state": pipeline.state.value},
        )
    except Exception as exc:  # noqa: BLE001
        fail(f"unexpected error: {exc}")
        _warn_if_unsafe(pipeline)
        _emit_result("FAIL_UNHANDLED", {"error": str(exc), "state": pipeline.state.value})
    return 0


if __name__ == "__main__":
    sys.exit(main())
