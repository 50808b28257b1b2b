"""SMART diagnostics for the backup device."""
from __future__ import annotations

import re

from .config import HealthPolicy
from .errors import HealthCheckError
from .executil import ok, run, trace, warn
from .model import HealthReport

_ERROR_RE = re.compile(r"Error: .*")


def smart_health(device: str) -> bool:
    # smartctl encodes findings in its exit bits; any non-zero means "not healthy".
    return run(["smartctl", "-H", device], check=False, timeout=120.0).rc == 0


def smart_errors(device: str) -> list[str]:
    res = run(["smartctl", "-a", device], check=False, timeout=120.0)
    return _ERROR_RE.findall(res.out or "")


def audit(device: str, policy: HealthPolicy = HealthPolicy.WARN) -> HealthReport:
    report = HealthReport(device=device, passed=smart_health(device), errors=smart_errors(device))
    trace("health.audit", device=device, passed=report.passed, errors=report.errors, policy=policy.value)
    if report.healthy:
        ok(f"SMART status for {device} is healthy.")
        return report
    msg = f"Issues detected with {device}. Please check SMART status."
    if policy is HealthPolicy.BLOCK:
        raise HealthCheckError(msg, details={"device": device, "passed": report.passed, "errors": report.errors})
    warn(msg)
    return report
