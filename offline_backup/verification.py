"""Round-trip integrity check of the newest restic snapshot.

One file is picked at random from the snapshot listing, restored into a
private scratch directory and its SHA-256 compared with the live copy.

Sampling runs in two separate phases, ``draw_sample`` then ``filter_files``.
With the default ``sample-then-filter`` policy the draw happens over files
and directories alike, so a directory-heavy tree can leave no file in the
sample; that ends in ``NoEligibleFileError``, which is a miss of the check
itself rather than evidence of a damaged backup. ``filter-then-sample``
stats every entry first and never misses while the snapshot holds a file.
"""
from __future__ import annotations

import hashlib
import os
import random
import shutil
import tempfile
from typing import Callable, Iterable, List, Optional, Sequence

from .config import SamplingPolicy
from .errors import ChecksumMismatchError, NoEligibleFileError, RestoredFileMissingError
from .executil import info, ok, trace, warn
from .model import RepositoryHandle, SampleFile
from .repository import list_latest, restore_path

DEFAULT_SAMPLE_SIZE = 20
SCRATCH_PREFIX = "restic_restore-"
_CHUNK = 1024 * 1024


def parse_listing(lines: Iterable[str]) -> List[str]:
    """Keep only path entries; restic prefixes the listing with a snapshot header."""

    entries = []
    for raw in lines:
        line = raw.rstrip("\n")
        if line.startswith("/"):
            entries.append(line)
    return entries


def draw_sample(entries: Sequence[str], size: int = DEFAULT_SAMPLE_SIZE, rng=random) -> List[str]:
    return rng.sample(list(entries), min(size, len(entries)))


def filter_files(entries: Iterable[str], is_dir: Callable[[str], bool] = os.path.isdir) -> List[str]:
    return [item for item in entries if not is_dir(item)]


def choose_file(files: Sequence[str], rng=random) -> str:
    if not files:
        raise NoEligibleFileError("No file was found in the list.")
    return rng.choice(list(files))


def pick_random_file(
    entries: Sequence[str],
    size: int = DEFAULT_SAMPLE_SIZE,
    policy: SamplingPolicy = SamplingPolicy.SAMPLE_THEN_FILTER,
    rng=random,
    is_dir: Callable[[str], bool] = os.path.isdir,
) -> str:
    if policy is SamplingPolicy.FILTER_THEN_SAMPLE:
        candidates = draw_sample(filter_files(entries, is_dir), size, rng)
    else:
        candidates = filter_files(draw_sample(entries, size, rng), is_dir)
    trace("verify.sample", entries=len(entries), size=size, policy=policy.value, files=len(candidates))
    return choose_file(candidates, rng)


def sha256_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def restored_location(scratch: str, path: str) -> str:
    return os.path.join(scratch, path.lstrip("/"))


def cleanup_scratch(scratch: str) -> bool:
    shutil.rmtree(scratch, ignore_errors=True)
    removed = not os.path.exists(scratch)
    trace("verify.cleanup", scratch=scratch, removed=removed)
    if not removed:
        warn(f"Could not remove scratch directory {scratch}")
    return removed


def verify_random_file(
    repo: RepositoryHandle,
    scratch_root: str,
    size: int = DEFAULT_SAMPLE_SIZE,
    policy: SamplingPolicy = SamplingPolicy.SAMPLE_THEN_FILTER,
    rng=random,
    is_dir: Callable[[str], bool] = os.path.isdir,
    entries: Optional[Sequence[str]] = None,
) -> SampleFile:
    if entries is None:
        entries = parse_listing(list_latest(repo))
    sample = SampleFile(path=pick_random_file(entries, size, policy, rng, is_dir))
    info(f"Verifying restore of {sample.path}")
    sample.original_digest = sha256_file(sample.path)

    os.makedirs(scratch_root, exist_ok=True)
    scratch = tempfile.mkdtemp(prefix=SCRATCH_PREFIX, dir=scratch_root)
    try:
        restore_path(repo, sample.path, scratch)
        restored = restored_location(scratch, sample.path)
        if not os.path.isfile(restored):
            raise RestoredFileMissingError(
                "Restored file does not exist!",
                details={"path": sample.path, "restored": restored},
            )
        sample.restored_digest = sha256_file(restored)
        trace(
            "verify.digest",
            path=sample.path,
            original=sample.original_digest,
            restored=sample.restored_digest,
        )
        if not sample.matches:
            raise ChecksumMismatchError(
                "The checksum of the restored file does not match the original file!",
                details={
                    "path": sample.path,
                    "original": sample.original_digest,
                    "restored": sample.restored_digest,
                },
            )
    finally:
        cleanup_scratch(scratch)
    ok(f"Restored copy of {sample.path} matches (sha256 {sample.original_digest[:12]})")
    return sample
