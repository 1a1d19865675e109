"""Per channel/platform repodata source with a conditionally refreshed cache."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..common.logging_utils import extra_context, is_debug_enabled, safe_url
from ..constants import Constants
from ..errors import FetchError
from ..models import PackageRecord
from .channel import Channel
from .download import DownloadResult, DownloadScheduler, DownloadTarget

logger = logging.getLogger(__name__)


def cache_fn_url(url: str) -> str:
    """Deterministic cache file name for a repodata URL."""
    return hashlib.md5(url.encode("utf-8")).hexdigest()[:8] + ".json"


class SubdirIndex:
    """Repodata of one ``channel/subdir`` backed by a local cache file.

    Args:
        channel: Channel the subdir belongs to.
        subdir: Platform subdir name (``linux-64``, ``noarch``...).
        url: Subdir base URL; ``repodata.json`` is appended.
        cache_dir: Directory holding cached repodata.
        offline: Never touch the network when True.
        repodata_ttl: Seconds during which a cache entry is used without
            revalidation; ``0`` always revalidates.
    """

    def __init__(self, channel: Channel, subdir: str, url: str, cache_dir: Path, *,
                 offline: bool = False, repodata_ttl: int = 0):
        self.channel = channel
        self.subdir = subdir
        self.base_url = url.rstrip("/")
        self.repodata_url = f"{self.base_url}/{Constants.REPODATA_FN}"
        self.cache_dir = Path(cache_dir)
        self.cache_path = self.cache_dir / cache_fn_url(self.repodata_url)
        self.state_path = self.cache_path.with_name(self.cache_path.stem + ".info.json")
        self.offline = offline
        self.repodata_ttl = repodata_ttl

        self.records: Optional[Tuple[PackageRecord, ...]] = None
        self.changed = False
        self.from_cache = False
        self.fingerprint: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.channel.name}/{self.subdir}"

    @property
    def loaded(self) -> bool:
        return self.records is not None

    def __repr__(self) -> str:
        return f"SubdirIndex({self.name!r}, {safe_url(self.repodata_url)!r})"

    def read_state(self) -> Dict[str, Any]:
        """Validators stored next to the cache file (empty when unknown)."""
        try:
            with open(self.state_path, "r", encoding="utf-8") as fh:
                state = json.load(fh)
        except (OSError, json.JSONDecodeError):
            return {}
        if not isinstance(state, dict) or state.get("url") != self.repodata_url:
            return {}
        return state

    def _write_state(self, state: Dict[str, Any]) -> None:
        _atomic_write_text(self.state_path, json.dumps(state, indent=2, sort_keys=True))

    def prepare(self) -> Optional[DownloadTarget]:
        """Return the conditional download for this subdir, or None when no fetch is needed."""
        if self.offline:
            return None
        has_cache = self.cache_path.is_file()
        state = self.read_state() if has_cache else {}
        if has_cache and self.repodata_ttl > 0:
            age = time.time() - float(state.get("fetched_at", 0))
            if age < self.repodata_ttl:
                logger.info("Using cached repodata for %s (age %ds)", self.name, int(age))
                return None

        headers: Dict[str, str] = {}
        if has_cache:
            if state.get("etag"):
                headers["If-None-Match"] = state["etag"]
            if state.get("mod"):
                headers["If-Modified-Since"] = state["mod"]
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        return DownloadTarget(url=self.repodata_url, dest=self.cache_path, name=self.name, headers=headers)

    def finish(self, result: Optional[DownloadResult]) -> Tuple[PackageRecord, ...]:
        """Turn the fetch outcome into records; ``result`` is None when nothing was fetched.

        Raises:
            FetchError: when neither the network nor the cache can provide
                valid repodata.
        """
        has_cache = self.cache_path.is_file()
        if result is None:
            if not has_cache:
                reason = "offline mode" if self.offline else "no cache"
                raise FetchError(f"No cached repodata for {self.name} ({reason})", url=self.repodata_url)
            return self._load_cache(changed=False)

        if result.ok and result.not_modified:
            state = self.read_state()
            state["fetched_at"] = time.time()
            self._write_state(state)
            logger.info("Repodata for %s not modified", self.name)
            return self._load_cache(changed=False)

        if result.ok:
            headers = {k.lower(): v for k, v in result.headers.items()}
            self._write_state({
                "url": self.repodata_url,
                "etag": headers.get("etag"),
                "mod": headers.get("last-modified"),
                "cache_control": headers.get("cache-control"),
                "size": result.bytes_written,
                "fetched_at": time.time(),
            })
            return self._load_cache(changed=True)

        if has_cache:
            logger.warning("Could not fetch %s (%s); using cached repodata",
                           safe_url(self.repodata_url), result.error)
            return self._load_cache(changed=False)
        raise FetchError(
            f"Could not fetch repodata for {self.name}: {result.error}",
            url=self.repodata_url,
            status_code=result.status_code,
        )

    def load(self, scheduler: Optional[DownloadScheduler] = None) -> Tuple[PackageRecord, ...]:
        """Fetch (conditionally) and parse this subdir's repodata."""
        target = self.prepare()
        result = None
        if target is not None:
            if scheduler is None:
                raise FetchError(f"No downloader available for {self.name}", url=self.repodata_url)
            result = scheduler.run([target], require_all=False)[0]
        return self.finish(result)

    def _load_cache(self, changed: bool) -> Tuple[PackageRecord, ...]:
        try:
            with open(self.cache_path, "rb") as fh:
                payload = fh.read()
        except OSError as exc:
            raise FetchError(f"Cannot read cached repodata {self.cache_path}: {exc}",
                             url=self.repodata_url) from exc
        try:
            records = self.parse(payload)
        except ValueError as exc:
            raise FetchError(f"Invalid repodata for {self.name}: {exc}", url=self.repodata_url) from exc
        self.records = records
        self.changed = changed
        self.from_cache = not changed
        self.fingerprint = hashlib.sha256(payload).hexdigest()
        if is_debug_enabled(logger):
            logger.debug(
                "Repodata loaded",
                extra=extra_context(event="repodata_loaded", component="subdir", action="parse",
                                    outcome="changed" if changed else "cached", target=self.name),
            )
        return records

    def parse(self, payload: bytes) -> Tuple[PackageRecord, ...]:
        """Parse and validate a repodata document.

        Invalid entries are skipped with a warning; a ``.conda`` entry replaces
        a ``.tar.bz2`` entry of the same ``name-version-build``.

        Raises:
            ValueError: if the payload is not a repodata JSON object.
        """
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError(f"malformed JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("repodata must be a JSON object")

        by_dist: Dict[str, PackageRecord] = {}
        skipped = 0
        for key in ("packages", "packages.conda"):
            section = data.get(key) or {}
            if not isinstance(section, dict):
                raise ValueError(f"'{key}' must be an object")
            for fn in sorted(section):
                entry = section[fn]
                try:
                    record = PackageRecord.from_dict(
                        entry,
                        channel=self.channel.name,
                        subdir=entry.get("subdir") or self.subdir,
                        fn=fn,
                        url=f"{self.base_url}/{fn}",
                    )
                except (KeyError, TypeError, ValueError, AttributeError) as exc:
                    skipped += 1
                    logger.warning("Skipping invalid repodata entry %s in %s: %s", fn, self.name, exc)
                    continue
                by_dist[record.dist_name] = record
        if skipped and is_debug_enabled(logger):
            logger.debug("Skipped %d invalid entries", skipped,
                         extra=extra_context(event="validation", component="subdir", target=self.name))
        return tuple(by_dist[k] for k in sorted(by_dist))

    def create_repo(self, pool: Any, rank: int):
        """Register the loaded records into ``pool`` with priority ``(rank, subpriority)``."""
        if self.records is None:
            raise FetchError(f"Repodata for {self.name} was not loaded", url=self.repodata_url)
        subpriority = 1 if self.subdir == Constants.NOARCH_SUBDIR else 0
        return pool.add_repo(self.name, self.records, priority=(rank, subpriority))


def load_all(subdirs: Sequence[SubdirIndex], scheduler: Optional[DownloadScheduler]) -> None:
    """Load every subdir with one scheduler batch.

    Every subdir is finished (from network or cache) before this returns, so
    callers never observe a partially loaded set.

    Raises:
        FetchError: the first subdir that could not be loaded, after all
            others were attempted.
    """
    prepared: List[Tuple[SubdirIndex, Optional[DownloadTarget]]] = [(s, s.prepare()) for s in subdirs]
    targets = [t for _, t in prepared if t is not None]
    results: Dict[int, DownloadResult] = {}
    if targets:
        if scheduler is None:
            raise FetchError("No downloader available for repodata")
        for target, result in zip(targets, scheduler.run(targets, require_all=False)):
            results[id(target)] = result

    errors: List[FetchError] = []
    for subdir, target in prepared:
        try:
            subdir.finish(results.get(id(target)) if target is not None else None)
        except FetchError as exc:
            errors.append(exc)
    if errors:
        raise errors[0]


def iter_records(subdirs: Iterable[SubdirIndex]) -> Iterable[PackageRecord]:
    for subdir in subdirs:
        yield from subdir.records or ()


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=path.name, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
