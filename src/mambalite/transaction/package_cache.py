"""Package cache: raw archives and their extracted trees, shared between prefixes.

Layout of a cache directory::

    <pkgs>/<fn>                                 downloaded archive
    <pkgs>/<name>-<version>-<build>/            extracted package
    <pkgs>/<name>-<version>-<build>/info/repodata_record.json
    <pkgs>/cache/                               repodata cache

An extracted tree is only ever published by renaming a fully populated private
directory into place, so a reader sees either nothing or a complete package.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tarfile
import tempfile
import threading
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Union

import zstandard
from filelock import FileLock

from ..common.logging_utils import Timer, extra_context, is_debug_enabled
from ..errors import IntegrityError, MambaliteError
from ..models import PackageRecord
from ..repodata.download import DownloadScheduler, DownloadTarget, verify_file

logger = logging.getLogger(__name__)

REPODATA_RECORD = Path("info") / "repodata_record.json"

_identity_locks: Dict[str, List] = {}
_identity_locks_guard = threading.Lock()


@contextmanager
def _identity_lock(key: str) -> Iterator[None]:
    """Serialize threads working on ``key``; the entry is dropped by its last user."""
    with _identity_locks_guard:
        entry = _identity_locks.get(key)
        if entry is None:
            entry = _identity_locks[key] = [threading.Lock(), 0]
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _identity_locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _identity_locks[key]


def archive_name(record: PackageRecord) -> str:
    if record.fn:
        return record.fn
    if record.url:
        return record.url.rstrip("/").rsplit("/", 1)[-1]
    return f"{record.dist_name}.tar.bz2"


class PackageCache:
    """One package cache directory."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"PackageCache({str(self.path)!r})"

    @property
    def writable(self) -> bool:
        existing = self.path
        while not existing.exists():
            if existing.parent == existing:
                return False
            existing = existing.parent
        return os.access(existing, os.W_OK)

    def extracted_dir(self, record: PackageRecord) -> Path:
        return self.path / record.dist_name

    def archive_path(self, record: PackageRecord) -> Path:
        return self.path / archive_name(record)

    def is_extracted(self, record: PackageRecord) -> bool:
        """True if a complete extraction of exactly this record is present."""
        meta = self.extracted_dir(record) / REPODATA_RECORD
        try:
            with open(meta, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            return False
        if (data.get("name"), data.get("version"), data.get("build")) != record.identity:
            return False
        for key in ("sha256", "md5"):
            expected = getattr(record, key)
            if expected and data.get(key) and data[key].lower() != expected.lower():
                return False
        return True

    def has_valid_archive(self, record: PackageRecord) -> bool:
        """True if the archive is cached and matches the record's size and hash."""
        archive = self.archive_path(record)
        if not archive.is_file():
            return False
        try:
            verify_file(archive, size=record.size, sha256=record.sha256, md5=record.md5)
        except IntegrityError as exc:
            logger.warning("Discarding stale cached archive %s: %s", archive.name, exc)
            return False
        return True

    def ensure_extracted(self, record: PackageRecord, scheduler: Optional[DownloadScheduler] = None) -> Path:
        """Return the extracted directory of ``record``, fetching and extracting at most once.

        Raises:
            FetchError: the archive could not be downloaded.
            IntegrityError: the downloaded archive does not match its hash.
            MambaliteError: no archive is cached and no scheduler was given.
        """
        target = self.extracted_dir(record)
        if self.is_extracted(record):
            return target
        self.path.mkdir(parents=True, exist_ok=True)
        with _identity_lock(str(target)), FileLock(str(self.path / f"{record.dist_name}.lock")):
            if self.is_extracted(record):
                logger.debug("Extracted by a concurrent caller: %s", record.dist_name)
                return target
            archive = self.archive_path(record)
            if not self.has_valid_archive(record):
                _unlink_quietly(archive)
                if scheduler is None:
                    raise MambaliteError(f"{archive.name} is not cached and downloads are disabled")
                self._download(record, scheduler)
            self._extract(record, archive)
        return target

    def _download(self, record: PackageRecord, scheduler: DownloadScheduler) -> None:
        if not record.url:
            raise MambaliteError(f"No URL known for {record.dist_name}")
        logger.info("Downloading %s", archive_name(record))
        scheduler.fetch(DownloadTarget(
            url=record.url,
            dest=self.archive_path(record),
            name=record.dist_name,
            expected_size=record.size,
            sha256=record.sha256,
            md5=record.md5,
        ))

    def _extract(self, record: PackageRecord, archive: Path) -> None:
        target = self.extracted_dir(record)
        staging = Path(tempfile.mkdtemp(dir=str(self.path), prefix=f".{record.dist_name}."))
        try:
            with Timer() as t:
                extract_archive(archive, staging)
                meta = staging / REPODATA_RECORD
                meta.parent.mkdir(parents=True, exist_ok=True)
                with open(meta, "w", encoding="utf-8") as fh:
                    json.dump(record.to_dict(), fh, indent=2, sort_keys=True)
                if target.exists():
                    # incomplete or foreign extraction from an earlier run
                    shutil.rmtree(target)
                os.rename(staging, target)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        if is_debug_enabled(logger):
            logger.debug(
                "Package extracted",
                extra=extra_context(event="extract", component="package_cache", target=record.dist_name,
                                    outcome="success", duration_ms=t.duration_ms()),
            )


class MultiPackageCache:
    """Package caches in priority order; the first valid hit wins.

    Args:
        paths: Cache directories, highest priority first.
        scheduler: Downloader used on a miss; None disables downloads.
    """

    def __init__(self, paths: Sequence[Union[str, Path]], scheduler: Optional[DownloadScheduler] = None):
        if not paths:
            raise MambaliteError("At least one package cache directory is required")
        self.caches: List[PackageCache] = [PackageCache(p) for p in paths]
        self.scheduler = scheduler

    @property
    def first_writable(self) -> PackageCache:
        for cache in self.caches:
            if cache.writable:
                return cache
        raise MambaliteError("No writable package cache: " + ", ".join(str(c.path) for c in self.caches))

    def find_extracted(self, record: PackageRecord) -> Optional[Path]:
        for cache in self.caches:
            if cache.is_extracted(record):
                return cache.extracted_dir(record)
        return None

    def needs_fetch(self, record: PackageRecord) -> bool:
        """True if neither an extraction nor a valid archive is cached anywhere."""
        if self.find_extracted(record) is not None:
            return False
        return not any(c.has_valid_archive(record) for c in self.caches)

    def ensure_extracted(self, record: PackageRecord) -> Path:
        found = self.find_extracted(record)
        if found is not None:
            return found
        for cache in self.caches:
            if cache.writable and cache.archive_path(record).is_file() and cache.has_valid_archive(record):
                return cache.ensure_extracted(record, self.scheduler)
        return self.first_writable.ensure_extracted(record, self.scheduler)


def extract_archive(archive: Path, dest: Path) -> None:
    """Extract a ``.tar.bz2`` or ``.conda`` archive into ``dest``.

    Raises:
        MambaliteError: for unknown formats, corrupt archives or members
            escaping ``dest``.
    """
    name = archive.name
    try:
        if name.endswith(".conda"):
            _extract_conda(archive, dest)
        elif name.endswith((".tar.bz2", ".tar")):
            with tarfile.open(archive, "r:*") as tar:
                _extract_tar(tar, dest)
        else:
            raise MambaliteError(f"Unsupported package format: {name}")
    except (tarfile.TarError, zipfile.BadZipFile, zstandard.ZstdError, EOFError) as exc:
        raise MambaliteError(f"Corrupt package archive {name}: {exc}") from exc


def _extract_conda(archive: Path, dest: Path) -> None:
    with zipfile.ZipFile(archive) as zf:
        inner = sorted(n for n in zf.namelist() if n.endswith(".tar.zst"))
        if not inner:
            raise MambaliteError(f"No tarballs in {archive.name}")
        for member in inner:
            with zf.open(member) as raw, tempfile.TemporaryFile() as tmp:
                dctx = zstandard.ZstdDecompressor()
                dctx.copy_stream(raw, tmp)
                tmp.seek(0)
                with tarfile.open(fileobj=tmp, mode="r:") as tar:
                    _extract_tar(tar, dest)


def _extract_tar(tar: tarfile.TarFile, dest: Path) -> None:
    root = os.path.realpath(dest)
    kwargs = {}
    if hasattr(tarfile, "fully_trusted_filter"):
        # members are checked one by one below; keep symlinks exactly as packaged
        kwargs["filter"] = "fully_trusted"
    for member in tar.getmembers():
        # checked against the tree extracted so far, so earlier symlinks are followed
        _check_member(member, root)
        tar.extract(member, root, **kwargs)


def _check_member(member: tarfile.TarInfo, root: str) -> None:
    parent = os.path.realpath(os.path.join(root, os.path.dirname(member.name)))
    target = os.path.normpath(os.path.join(parent, os.path.basename(member.name)))
    if not _within(root, parent) or not _within(root, target):
        raise MambaliteError(f"Archive member escapes the extraction directory: {member.name}")
    if member.issym():
        link_target = os.path.realpath(os.path.join(parent, member.linkname))
        if not _within(root, link_target):
            raise MambaliteError(f"Symbolic link escapes the extraction directory: {member.name}")
    if member.islnk():
        link_target = os.path.realpath(os.path.join(root, member.linkname))
        if not _within(root, link_target):
            raise MambaliteError(f"Hard link escapes the extraction directory: {member.name}")
    if member.isdev():
        raise MambaliteError(f"Device file in package archive: {member.name}")


def _within(root: str, path: str) -> bool:
    return path == root or os.path.commonpath([root, path]) == root


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


__all__ = [
    "PackageCache",
    "MultiPackageCache",
    "extract_archive",
    "archive_name",
]
