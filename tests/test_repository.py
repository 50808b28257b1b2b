import os
import stat

import pytest

from offline_backup import repository
from offline_backup.errors import CredentialFileError
from offline_backup.model import RepositoryHandle


def test_credential_file_is_locked_down(tmp_path, password_file):
    os.chmod(password_file, 0o644)
    assert repository.check_credential_file(str(password_file)) == len("s3cr3t\n")
    assert stat.S_IMODE(os.stat(password_file).st_mode) == 0o600


@pytest.mark.parametrize("content", ["", "\n", "   \n\n"])
def test_empty_credentials_never_reach_restic(tmp_path, host, content):
    pw = tmp_path / "empty.pass"
    pw.write_text(content, encoding="utf-8")
    repo = RepositoryHandle(path=str(tmp_path / "repo"), password_file=str(pw))
    with pytest.raises(CredentialFileError, match="empty") as exc:
        repository.ensure_repository(repo)
    assert exc.value.details["reason"] == "empty"
    assert host.calls == []
    assert not (tmp_path / "repo").exists()


def test_missing_credentials(tmp_path):
    with pytest.raises(CredentialFileError) as exc:
        repository.check_credential_file(str(tmp_path / "absent"))
    assert exc.value.details["reason"] == "missing"
    with pytest.raises(CredentialFileError):
        repository.check_credential_file("")


def test_ensure_repository_initializes_once(tmp_path, host, password_file):
    repo = RepositoryHandle(path=str(tmp_path / "repo"), password_file=str(password_file))
    assert repository.ensure_repository(repo) is True
    assert (tmp_path / "repo" / "config").exists()
    assert repository.ensure_repository(repo) is False
    assert len([c for c in host.calls if c[-1] == "init"]) == 1


def test_repository_path_derivation():
    assert repository.repository_path("/zpool_A/backup") == "/zpool_A/backup/restic"
    assert repository.repository_path("/zpool_A/backup", "/srv/repo") == "/srv/repo"


def test_restore_path_uses_include_filter(host, password_file):
    repo = RepositoryHandle(path="/r", password_file=str(password_file))
    host.skip_restore = True
    repository.restore_path(repo, "/data/notes.txt", "/tmp/scratch")
    assert host.calls[-1][-6:] == ["restore", "latest", "--target", "/tmp/scratch", "--include", "/data/notes.txt"]
