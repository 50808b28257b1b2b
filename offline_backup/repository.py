"""Encrypted restic repository bound to the backup dataset."""

from __future__ import annotations

import os
import stat
from typing import List

from .errors import CredentialFileError
from .executil import info, ok, run, trace
from .model import RepositoryHandle

CREDENTIAL_MODE = 0o600
REPOSITORY_DIRNAME = "restic"


def check_credential_file(path: str) -> int:
    """Force owner-only mode on the password file and require content.

    Returns the content length. Raises ``CredentialFileError`` before any
    repository command can run.
    """

    if not path:
        raise CredentialFileError("restic_password_file is required")
    if not os.path.isfile(path):
        raise CredentialFileError(
            f"Restic password file {path} does not exist",
            details={"path": path, "reason": "missing"},
        )
    os.chmod(path, CREDENTIAL_MODE)
    mode = stat.S_IMODE(os.stat(path).st_mode)
    if mode != CREDENTIAL_MODE:
        raise CredentialFileError(
            f"Restic password file {path} must have mode 0600, has 0{mode:o}",
            details={"path": path, "reason": "mode"},
        )
    try:
        with open(path, "r", encoding="utf-8") as fh:
            content = fh.read()
    except OSError as exc:
        raise CredentialFileError(
            f"Restic password file {path} is unreadable: {exc}",
            details={"path": path, "reason": "unreadable"},
        ) from exc
    if not content.strip():
        raise CredentialFileError(
            "Restic password file is empty or unreadable!",
            details={"path": path, "reason": "empty"},
        )
    trace("repository.credentials", path=path, length=len(content))
    return len(content)


def repository_path(mountpoint: str, override: str | None = None) -> str:
    if override:
        return override
    return os.path.join(mountpoint, REPOSITORY_DIRNAME)


def repository_exists(repo: RepositoryHandle) -> bool:
    return os.path.exists(repo.marker)


def init_repository(repo: RepositoryHandle):
    run([*repo.base_cmd(), "init"], check=True, timeout=300.0)


def ensure_repository(repo: RepositoryHandle) -> bool:
    """Initialize ``repo`` once. Returns True when ``init`` ran."""

    check_credential_file(repo.password_file)
    if repository_exists(repo):
        info(f"Restic repository already initialized at {repo.path}")
        return False
    init_repository(repo)
    ok(f"Initialized restic repository at {repo.path}")
    return True


def list_latest(repo: RepositoryHandle) -> List[str]:
    """Lines of ``restic ls latest``, unparsed."""

    res = run([*repo.base_cmd(), "ls", "latest"], check=True, timeout=None)
    return (res.out or "").splitlines()


def restore_path(repo: RepositoryHandle, path: str, target: str):
    run(
        [*repo.base_cmd(), "restore", "latest", "--target", target, "--include", path],
        check=True,
        timeout=None,
    )
