"""Snapshot, export and power-off: the last steps before the drive is unplugged."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from . import zfs
from .errors import ResidualMountError
from .executil import ok, run, trace
from .model import DeviceHandle, PoolIdentity, Snapshot
from .pipeline import Pipeline, State

LABEL_FORMAT = "%Y%m%d-%H%M%S"


def snapshot_label(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime(LABEL_FORMAT)


def residual_mounts(pool: str) -> List[str]:
    res = run(["mount"], check=True)
    return [line for line in res.lines if pool in line]


def assert_unmounted(pool: str):
    leftovers = residual_mounts(pool)
    if leftovers:
        raise ResidualMountError(
            f"{pool} is still mounted; the device is not safe to remove",
            details={"pool": pool, "mounts": leftovers},
        )


def power_off(device: str):
    run(["udisksctl", "power-off", "-b", device], check=True)


def eject(
    pipeline: Pipeline,
    handle: DeviceHandle,
    ident: PoolIdentity,
    now: Optional[datetime] = None,
) -> Snapshot:
    snapshot = Snapshot(ident=ident, label=snapshot_label(now))
    zfs.take_snapshot(snapshot)
    pipeline.advance(State.SNAPSHOTTED)
    ok(f"Created snapshot {snapshot.name}")

    zfs.export_pool(ident.pool)
    assert_unmounted(ident.pool)
    pipeline.advance(State.EXPORTED)
    ok(f"Exported pool {ident.pool}")

    power_off(handle.path)
    pipeline.advance(State.EJECTED)
    trace("eject.done", device=handle.path, snapshot=snapshot.name)
    ok(f"{handle.path} powered off; safe to unplug")
    return snapshot
