"""Serial-number to block-device resolution and operator confirmation."""
from __future__ import annotations

import glob
import json
from typing import Callable, Optional

from .errors import AmbiguousDeviceError, ConfirmationDeclined, DeviceNotFoundError, PreconditionError
from .executil import info, run, trace, udev_settle
from .model import DeviceHandle

AFFIRMATIVE = "y"


def _lsblk_disks() -> list[dict]:
    udev_settle()
    result = run(["lsblk", "-J", "-d", "-o", "NAME,PATH,SERIAL"], check=True)
    try:
        payload = json.loads(result.out or "{}")
    except json.JSONDecodeError as exc:
        raise PreconditionError(f"failed to parse lsblk output: {exc}") from exc
    return list(payload.get("blockdevices") or [])


def find_by_serial(serial: str) -> list[str]:
    """Return block-device paths whose serial equals ``serial`` exactly."""

    matches = []
    for entry in _lsblk_disks():
        if (entry.get("serial") or "").strip() != serial:
            continue
        path = entry.get("path") or entry.get("name") or ""
        if path and not path.startswith("/"):
            path = f"/dev/{path}"
        if path:
            matches.append(path)
    trace("devices.find_by_serial", serial=serial, matches=matches)
    return matches


def locate(serial: str) -> DeviceHandle:
    if not serial:
        raise PreconditionError("serial_number is required")
    matches = find_by_serial(serial)
    if not matches:
        raise DeviceNotFoundError(f"No device found with the serial number {serial}", details={"serial": serial})
    if len(matches) > 1:
        raise AmbiguousDeviceError(
            f"Serial number {serial} matches {len(matches)} devices: {', '.join(matches)}",
            details={"serial": serial, "matches": matches},
        )
    return DeviceHandle(serial=serial, path=matches[0])


def describe(path: str) -> dict[str, str]:
    """Device details from the block-device table and from udev."""

    lsblk = run(["lsblk", "-o", "NAME,MODEL,SIZE,VENDOR,SERIAL", path], check=True)
    udev = run(["udevadm", "info", "--query=all", f"--name={path}"], check=True)
    return {"lsblk": (lsblk.out or "").strip(), "udevadm": (udev.out or "").strip()}


def confirm(details: dict[str, str], input_fn: Callable[[str], str] = input) -> bool:
    prompt = (
        "Is this the correct device?\n"
        f"Device details (lsblk):\n{details.get('lsblk', '')}\n"
        f"Device details (udevadm):\n{details.get('udevadm', '')}\n"
        "(y/n) "
    )
    try:
        answer = input_fn(prompt)
    except EOFError:
        answer = ""
    return (answer or "").strip().lower() == AFFIRMATIVE


def resolve(
    serial: str,
    assume_yes: bool = False,
    input_fn: Optional[Callable[[str], str]] = None,
) -> DeviceHandle:
    """Locate the device and require an explicit "y" before returning it."""

    handle = locate(serial)
    details = describe(handle.path)
    info(f"Device details (lsblk):\n{details['lsblk']}")
    info(f"Device details (udevadm):\n{details['udevadm']}")
    if assume_yes:
        trace("devices.confirm.assumed", device=handle.path)
        return handle
    if not confirm(details, input_fn or input):
        raise ConfirmationDeclined("Operation aborted by user.", details={"device": handle.path})
    trace("devices.confirm", device=handle.path, serial=serial)
    return handle


def unmount_device(path: str) -> list[str]:
    """Best-effort ``umount`` of the device and its partitions; failures are ignored."""

    nodes = sorted(set([path] + glob.glob(f"{path}*")))
    for node in nodes:
        run(["umount", node], check=False)
    udev_settle()
    return nodes
