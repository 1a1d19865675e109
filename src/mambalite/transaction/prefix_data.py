"""Installed snapshot of a prefix: one JSON file per package in ``conda-meta``."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..constants import Constants
from ..models import PackageRecord

logger = logging.getLogger(__name__)


class PrefixData:
    """Read and incrementally rewrite ``<prefix>/conda-meta``.

    Every write is a temp file followed by ``os.replace`` so a snapshot entry
    is either the old or the new content. Writers are serialized by a lock.
    """

    def __init__(self, prefix: Path):
        self.prefix = Path(prefix)
        self.meta_dir = self.prefix / Constants.CONDA_META_DIRNAME
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._records: Dict[str, PackageRecord] = {}
        self._lock = threading.Lock()

    def load(self) -> "PrefixData":
        """(Re)read all entries; unreadable files are skipped with a warning."""
        entries: Dict[str, Dict[str, Any]] = {}
        records: Dict[str, PackageRecord] = {}
        if self.meta_dir.is_dir():
            for path in sorted(self.meta_dir.glob("*.json")):
                try:
                    with open(path, "r", encoding="utf-8") as fh:
                        data = json.load(fh)
                    record = PackageRecord.from_dict(data)
                except (OSError, ValueError, KeyError, TypeError) as exc:
                    logger.warning("Ignoring invalid snapshot entry %s: %s", path.name, exc)
                    continue
                if record.name in records:
                    logger.warning("Duplicate snapshot entry for %s in %s", record.name, path.name)
                    continue
                entries[record.name] = data
                records[record.name] = record
        with self._lock:
            self._entries = entries
            self._records = records
        logger.debug("Loaded %d installed record(s) from %s", len(records), self.meta_dir)
        return self

    @property
    def records(self) -> Dict[str, PackageRecord]:
        with self._lock:
            return {name: self._records[name] for name in sorted(self._records)}

    def get(self, name: str) -> Optional[PackageRecord]:
        with self._lock:
            return self._records.get(name)

    def files(self, name: str) -> List[str]:
        with self._lock:
            entry = self._entries.get(name) or {}
        return list(entry.get("files") or [])

    def entry(self, name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(name)
        return dict(entry) if entry is not None else None

    def meta_path(self, record: PackageRecord) -> Path:
        return self.meta_dir / f"{record.dist_name}.json"

    def add(self, record: PackageRecord, files: Sequence[str], extracted_package_dir: Optional[Path] = None,
            link_type: str = "hardlink", requested_spec: Optional[str] = None) -> Path:
        """Write the snapshot entry for ``record``; this is the commit point of a link."""
        data = record.to_dict()
        data["files"] = sorted(files)
        if extracted_package_dir is not None:
            data["extracted_package_dir"] = str(extracted_package_dir)
            data["link"] = {"source": str(extracted_package_dir), "type": link_type}
        if requested_spec:
            data["requested_spec"] = requested_spec
        path = self.meta_path(record)
        with self._lock:
            self.meta_dir.mkdir(parents=True, exist_ok=True)
            _atomic_write_json(path, data)
            self._entries[record.name] = data
            self._records[record.name] = record
        logger.debug("Snapshot entry written: %s", path.name)
        return path

    def remove(self, name: str) -> None:
        """Delete the snapshot entry of ``name``; this is the commit point of an unlink.

        Raises:
            KeyError: if ``name`` is not installed.
        """
        with self._lock:
            record = self._records[name]
            path = self.meta_path(record)
            try:
                path.unlink()
            except FileNotFoundError:
                logger.warning("Snapshot entry %s already gone", path.name)
            del self._records[name]
            self._entries.pop(name, None)
        logger.debug("Snapshot entry removed: %s", path.name)


def _atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, sort_keys=True)
            fh.write("\n")
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
