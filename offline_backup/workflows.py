"""The two top-level runs: one-time device setup and the per-cycle backup."""

from __future__ import annotations

import os
import random
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import devices, eject, health, zfs
from .backup import run_backup
from .config import BackupConfig
from .errors import PreconditionError
from .executil import info, ok, require_tools, trace
from .model import DatasetConfig, PoolIdentity, RepositoryHandle, identity
from .pipeline import Pipeline, State
from .repository import check_credential_file, ensure_repository, repository_exists, repository_path
from .verification import verify_random_file

SETUP_TOOLS = ["lsblk", "udevadm", "umount", "zpool", "zfs", "restic"]
OPERATE_TOOLS = ["lsblk", "udevadm", "zpool", "zfs", "restic", "smartctl", "mount", "udisksctl"]


def preflight(tools: List[str]) -> Dict[str, str]:
    try:
        return require_tools(tools)
    except LookupError as exc:
        raise PreconditionError(f"missing tools: {exc}", details={"missing": str(exc).split(", ")}) from exc


def planned_steps(workflow: str) -> List[str]:
    if workflow == "setup":
        return [
            "preflight(tools)",
            "check_credential_file(restic_password_file)",
            "resolve(serial_number) + operator confirmation",
            "unmount_device(device)",
            "zpool import zpool_<serial> [if exported]",
            "zpool create -f zpool_<serial> <device> [if absent and not importable]",
            "zfs create zpool_<serial>/<dataset> [if absent]",
            "zfs set atime=off compression=on checksum=sha256 dedup=off copies=2",
            "pool_report()",
            "restic init [if <repo>/config absent]",
        ]
    if workflow == "recover":
        return [
            "zpool export zpool_<serial> [if imported; retried with -f]",
            "remove stale restic_restore-* scratch directories",
            "report residual mounts                                 -> exported [if none]",
        ]
    return [
        "preflight(tools)",
        "check dir_to_backup + restic_password_file",
        "locate(serial_number)",
        "zpool import zpool_<serial> [if not imported]          -> imported",
        "check restic repository marker <repo>/config",
        "smartctl -H / -a (policy: warn|block)",
        "zpool scrub + wait until no 'scrub in progress'",
        "restic backup <dir> --exclude ... (background, polled) -> backup_complete",
        "restic ls latest -> sample -> restore -> sha256 compare",
        "zfs snapshot <dataset>@<YYYYmmdd-HHMMSS>                -> snapshotted",
        "zpool export + no residual mounts                      -> exported",
        "udisksctl power-off -b <device>                        -> ejected",
    ]


def _repository(config: BackupConfig, ident: PoolIdentity) -> RepositoryHandle:
    mountpoint = "" if config.restic_repo else zfs.dataset_mountpoint(ident.dataset_path)
    return RepositoryHandle(
        path=repository_path(mountpoint, config.restic_repo),
        password_file=config.restic_password_file,
    )


def setup_workflow(
    config: BackupConfig,
    assume_yes: bool = False,
    input_fn: Optional[Callable[[str], str]] = None,
) -> Dict[str, Any]:
    preflight(SETUP_TOOLS)
    # Checked before the device is touched; ensure_repository checks again.
    check_credential_file(config.restic_password_file)

    handle = devices.resolve(config.serial_number, assume_yes=assume_yes, input_fn=input_fn)
    ident = identity(config.serial_number, config.dataset_name)
    devices.unmount_device(handle.path)

    dataset = DatasetConfig(ident=ident)
    steps = zfs.provision(handle, dataset)
    properties = zfs.verify_properties(ident.dataset_path, dataset.properties)
    report = zfs.pool_report(ident)
    info(f"ZFS pool details:\n{report['pool_properties']}")
    info(f"ZFS pool status:\n{report['pool_status']}")
    info(f"ZFS dataset properties:\n{report['dataset_properties']}")

    repo = _repository(config, ident)
    initialized = ensure_repository(repo)
    ok(f"Device {handle.path} ({handle.serial}) is ready for offline backups")
    return {
        "device": handle.path,
        "serial": handle.serial,
        "pool": ident.pool,
        "dataset": ident.dataset_path,
        "properties": properties,
        "pool_created": steps["pool_created"],
        "pool_imported": steps["pool_imported"],
        "dataset_created": steps["dataset_created"],
        "repository": repo.path,
        "repository_initialized": initialized,
    }


def operate_workflow(
    config: BackupConfig,
    pipeline: Optional[Pipeline] = None,
    now: Optional[datetime] = None,
    sleep: Callable[[float], None] = time.sleep,
    rng=random,
) -> Dict[str, Any]:
    pipeline = pipeline or Pipeline()
    preflight(OPERATE_TOOLS)
    if not config.dir_to_backup or not os.path.isdir(config.dir_to_backup):
        raise PreconditionError(
            f"dir_to_backup {config.dir_to_backup or '<unset>'} is not a directory",
            details={"dir_to_backup": config.dir_to_backup},
        )
    check_credential_file(config.restic_password_file)

    handle = devices.locate(config.serial_number)
    ident = identity(config.serial_number, config.dataset_name)
    info(f"Using {handle.path} for pool {ident.pool}")

    zfs.import_pool(ident.pool)
    pipeline.advance(State.IMPORTED)

    repo = _repository(config, ident)
    if not repository_exists(repo):
        raise PreconditionError(
            f"no restic repository at {repo.path}; run setup first",
            details={"repository": repo.path},
        )

    report = health.audit(handle.path, config.health_policy)

    info(f"Scrubbing pool {ident.pool}")
    zfs.scrub(ident.pool)
    zfs.wait_for_scrub(ident.pool, interval=config.scrub_poll_seconds, sleep=sleep)
    ok(f"Scrub of {ident.pool} finished")

    record = run_backup(
        repo,
        config.dir_to_backup,
        config.exclude_dirs,
        poll_interval=config.backup_poll_seconds,
        max_wait=config.backup_max_wait_seconds,
        sleep=sleep,
    )
    pipeline.advance(State.BACKUP_COMPLETE)

    sample = verify_random_file(
        repo,
        config.scratch_root,
        size=config.sample_size,
        policy=config.sampling,
        rng=rng,
    )
    snapshot = eject.eject(pipeline, handle, ident, now=now)
    trace("operate.done", device=handle.path, snapshot=snapshot.name, state=pipeline.state.value)
    return {
        "device": handle.path,
        "pool": ident.pool,
        "dataset": ident.dataset_path,
        "health": {"passed": report.passed, "errors": report.errors},
        "backup": {"source": record.source, "excludes": record.excludes, "duration_sec": record.duration},
        "verified": {"path": sample.path, "sha256": sample.original_digest},
        "snapshot": snapshot.name,
        "state": pipeline.state.value,
    }
