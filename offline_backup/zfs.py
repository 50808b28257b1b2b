"""Pool and dataset lifecycle: query-before-mutate provisioning, scrub, snapshot, export."""
from __future__ import annotations

import time
from typing import Callable, Dict, Optional

from .errors import ProvisionError
from .executil import info, ok, poll_until, run, trace, udev_settle
from .model import DatasetConfig, DeviceHandle, PoolIdentity, Snapshot

SCRUB_IN_PROGRESS = "scrub in progress"


def pool_imported(pool: str) -> bool:
    res = run(["zpool", "list", "-H", "-o", "name"], check=False)
    if res.rc != 0:
        return False
    return pool in [line.strip() for line in res.lines]


def pool_importable(pool: str) -> bool:
    """True when ``pool`` is exported but listed by ``zpool import``."""

    res = run(["zpool", "import"], check=False, timeout=300.0)
    if res.rc != 0:
        return False
    return any(line.strip() == f"pool: {pool}" for line in res.lines)


def import_pool(pool: str) -> bool:
    """Import ``pool`` unless it is already imported. Returns True if imported now."""

    if pool_imported(pool):
        trace("zfs.import.skip", pool=pool)
        return False
    run(["zpool", "import", pool], check=True, timeout=300.0)
    udev_settle()
    trace("zfs.import", pool=pool)
    return True


def create_pool(pool: str, device: str):
    # -f: the operator has already confirmed the device; never wipe beforehand.
    run(["zpool", "create", "-f", pool, device], check=True, timeout=300.0)
    udev_settle()


def dataset_exists(dataset_path: str) -> bool:
    return run(["zfs", "list", dataset_path], check=False).rc == 0


def create_dataset(dataset_path: str):
    run(["zfs", "create", dataset_path], check=True)


def set_properties(dataset_path: str, properties: Dict[str, str]):
    assignments = [f"{key}={value}" for key, value in properties.items()]
    run(["zfs", "set", *assignments, dataset_path], check=True)


def get_properties(dataset_path: str, names) -> Dict[str, str]:
    res = run(["zfs", "get", "-H", "-o", "property,value", ",".join(names), dataset_path], check=True)
    props: Dict[str, str] = {}
    for line in res.lines:
        parts = line.split("\t")
        if len(parts) >= 2:
            props[parts[0].strip()] = parts[1].strip()
    return props


def dataset_mountpoint(dataset_path: str) -> str:
    res = run(["zfs", "get", "-H", "-o", "value", "mountpoint", dataset_path], check=True)
    mountpoint = (res.out or "").strip()
    if not mountpoint.startswith("/"):
        raise ProvisionError(
            f"dataset {dataset_path} has no usable mountpoint ({mountpoint or 'empty'})",
            details={"dataset": dataset_path, "mountpoint": mountpoint},
        )
    return mountpoint


def provision(handle: DeviceHandle, config: DatasetConfig) -> dict:
    """Create the pool and dataset when absent, then converge properties.

    An exported pool counts as present and is imported instead of created.

    Properties are written on every call so drift introduced outside this
    tool is undone by the next setup run.
    """

    ident = config.ident
    steps = {"pool_created": False, "dataset_created": False, "pool_imported": False}
    if pool_imported(ident.pool):
        info(f"Pool {ident.pool} already exists")
    elif pool_importable(ident.pool):
        # Exported by the last backup cycle: import it, never create over it.
        import_pool(ident.pool)
        steps["pool_imported"] = True
        info(f"Pool {ident.pool} already exists; imported it")
    else:
        create_pool(ident.pool, handle.path)
        steps["pool_created"] = True
        ok(f"Created pool {ident.pool} on {handle.path}")
    if dataset_exists(ident.dataset_path):
        info(f"Dataset {ident.dataset_path} already exists")
    else:
        create_dataset(ident.dataset_path)
        steps["dataset_created"] = True
        ok(f"Created dataset {ident.dataset_path}")
    set_properties(ident.dataset_path, config.properties)
    steps["properties"] = dict(config.properties)
    trace("zfs.provision", pool=ident.pool, dataset=ident.dataset_path, **steps)
    return steps


def pool_report(ident: PoolIdentity) -> dict:
    report = {
        "pool_properties": run(["zpool", "get", "all", ident.pool], check=True).out,
        "pool_status": run(["zpool", "status", ident.pool], check=True).out,
        "dataset_properties": run(["zfs", "get", "all", ident.dataset_path], check=True).out,
    }
    trace("zfs.report", pool=ident.pool, **report)
    return report


def scrub_in_progress(pool: str) -> bool:
    res = run(["zpool", "status", pool], check=True)
    return SCRUB_IN_PROGRESS in (res.out or "")


def scrub(pool: str):
    run(["zpool", "scrub", pool], check=True)


def wait_for_scrub(
    pool: str,
    interval: float = 60.0,
    sleep: Callable[[float], None] = time.sleep,
    max_polls: Optional[int] = None,
) -> int:
    """Block until the scrub marker disappears from ``zpool status``.

    There is no default bound: scrub time grows with the data on the device.
    """

    polls = poll_until(lambda: not scrub_in_progress(pool), interval, sleep=sleep, max_polls=max_polls)
    trace("zfs.scrub.done", pool=pool, polls=polls)
    return polls


def take_snapshot(snapshot: Snapshot):
    run(["zfs", "snapshot", snapshot.name], check=True)


def export_pool(pool: str):
    run(["zpool", "export", pool], check=True, timeout=300.0)
    udev_settle()


def verify_properties(dataset_path: str, expected: Dict[str, str]) -> Dict[str, str]:
    actual = get_properties(dataset_path, list(expected))
    drift = {k: actual.get(k) for k, v in expected.items() if actual.get(k) != v}
    if drift:
        raise ProvisionError(
            f"dataset {dataset_path} properties did not converge: {drift}",
            details={"expected": expected, "actual": actual},
        )
    return actual
