from __future__ import annotations

# Manual recovery: force the pool out after an aborted run.
import glob
import os
from typing import Any, Dict

from . import zfs
from .eject import residual_mounts
from .executil import info, run, trace, warn
from .model import PoolIdentity
from .pipeline import Pipeline
from .verification import SCRATCH_PREFIX, cleanup_scratch


def recover(ident: PoolIdentity, scratch_root: str, pipeline: Pipeline | None = None) -> Dict[str, Any]:
    """Export the pool if it is still imported and drop stale scratch dirs.

    Never raises for a failed step; the returned report says what is left.
    """

    pipeline = pipeline or Pipeline()
    report: Dict[str, Any] = {"pool": ident.pool, "was_imported": zfs.pool_imported(ident.pool)}
    if report["was_imported"]:
        res = run(["zpool", "export", ident.pool], check=False, timeout=300.0)
        if res.rc != 0:
            warn(f"zpool export {ident.pool} failed (rc={res.rc}); retrying with -f")
            res = run(["zpool", "export", "-f", ident.pool], check=False, timeout=300.0)
        report["export_rc"] = res.rc
    else:
        info(f"Pool {ident.pool} is not imported")

    stale = sorted(glob.glob(os.path.join(scratch_root, SCRATCH_PREFIX + "*")))
    report["scratch_removed"] = [path for path in stale if cleanup_scratch(path)]

    report["still_imported"] = zfs.pool_imported(ident.pool)
    report["mounts"] = residual_mounts(ident.pool)
    report["safe"] = not report["still_imported"] and not report["mounts"]
    if report["safe"]:
        pipeline.recovered()
    report["state"] = pipeline.state.value
    trace("recovery.done", **report)
    return report
