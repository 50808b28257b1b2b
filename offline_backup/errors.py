"""Fatal outcomes of a run, each bound to a CLI result code."""

from __future__ import annotations

from typing import Any, Dict, Optional


class FatalError(RuntimeError):
    result = "FAIL_GENERIC"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details = details or {}


class ConfigError(FatalError):
    result = "FAIL_CONFIG"


class PreconditionError(FatalError):
    result = "FAIL_PRECONDITION"


class DeviceNotFoundError(PreconditionError):
    result = "FAIL_DEVICE_NOT_FOUND"


class AmbiguousDeviceError(PreconditionError):
    result = "FAIL_DEVICE_AMBIGUOUS"


class ConfirmationDeclined(PreconditionError):
    result = "FAIL_ABORTED"


class CredentialFileError(PreconditionError):
    result = "FAIL_CREDENTIALS"


class ProvisionError(FatalError):
    result = "FAIL_PROVISION"


class HealthCheckError(FatalError):
    result = "FAIL_HEALTH"


class BackupFailedError(FatalError):
    result = "FAIL_BACKUP"


class NoEligibleFileError(FatalError):
    """The random sample held no regular file; says nothing about the backup itself."""

    result = "FAIL_NO_ELIGIBLE_FILE"


class RestoredFileMissingError(FatalError):
    result = "FAIL_RESTORED_MISSING"


class ChecksumMismatchError(FatalError):
    result = "FAIL_CHECKSUM"


class ResidualMountError(FatalError):
    result = "FAIL_RESIDUAL_MOUNT"


class InvalidTransitionError(FatalError):
    result = "FAIL_STATE"
