from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

POOL_PREFIX = "zpool_"

# Order matters only for display; ``zfs set`` applies them together.
DATASET_PROPERTIES: Dict[str, str] = {
    "atime": "off",
    "compression": "on",
    "checksum": "sha256",
    "dedup": "off",
    "copies": "2",
}


@dataclass(frozen=True)
class DeviceHandle:
    serial: str
    path: str


@dataclass(frozen=True)
class PoolIdentity:
    pool: str
    dataset: str

    @property
    def dataset_path(self) -> str:
        return f"{self.pool}/{self.dataset}"


def identity(serial: str, dataset_name: str) -> PoolIdentity:
    """Derive pool and dataset names from the device serial.

    Pure function: repeated runs find the same pool without any state file.
    """

    return PoolIdentity(pool=f"{POOL_PREFIX}{serial}", dataset=dataset_name)


@dataclass
class DatasetConfig:
    ident: PoolIdentity
    properties: Dict[str, str] = field(default_factory=lambda: dict(DATASET_PROPERTIES))


@dataclass(frozen=True)
class RepositoryHandle:
    path: str
    password_file: str

    @property
    def marker(self) -> str:
        return f"{self.path.rstrip('/')}/config"

    def base_cmd(self) -> List[str]:
        return ["restic", "-r", self.path, "--password-file", self.password_file]


@dataclass
class BackupRun:
    source: str
    excludes: List[str]
    timestamp: str
    ok: bool = False
    rc: Optional[int] = None
    duration: Optional[float] = None


@dataclass
class SampleFile:
    path: str
    original_digest: Optional[str] = None
    restored_digest: Optional[str] = None

    @property
    def matches(self) -> bool:
        return self.original_digest is not None and self.original_digest == self.restored_digest


@dataclass(frozen=True)
class Snapshot:
    ident: PoolIdentity
    label: str

    @property
    def name(self) -> str:
        return f"{self.ident.dataset_path}@{self.label}"


@dataclass
class HealthReport:
    device: str
    passed: bool
    errors: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.passed and not self.errors
