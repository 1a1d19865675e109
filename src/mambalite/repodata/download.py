"""Bounded-concurrency downloader with retries and integrity checks.

Used for both repodata and package archives. Each target is fetched by one
worker thread; transient failures (connection errors, timeouts, 5xx, 429)
are retried with exponential backoff, client errors (4xx) and integrity
mismatches are final.
"""
from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Union

import requests

from ..common.http_client import TRANSIENT_STATUS, HttpClient
from ..common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from ..constants import Constants
from ..errors import FetchError, IntegrityError

logger = logging.getLogger(__name__)


@dataclass
class DownloadTarget:
    """One resource to fetch into ``dest``."""

    url: str
    dest: Path
    name: str = ""
    expected_size: Optional[int] = None
    sha256: Optional[str] = None
    md5: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.dest = Path(self.dest)
        if not self.name:
            self.name = self.dest.name


@dataclass
class DownloadResult:
    """Outcome of one target. ``error`` is set when ``ok`` is False."""

    target: DownloadTarget
    ok: bool
    status_code: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    not_modified: bool = False
    attempts: int = 0
    error: Optional[Exception] = None
    bytes_written: int = 0


class ProgressReporter(Protocol):
    """Advisory progress callbacks; a presentation layer implements these."""

    def on_start(self, target: DownloadTarget, total: Optional[int]) -> None: ...

    def on_advance(self, target: DownloadTarget, nbytes: int) -> None: ...

    def on_finish(self, target: DownloadTarget, result: DownloadResult) -> None: ...


class _TransientError(Exception):
    """Retryable failure (network error or retryable status)."""


class _HardError(Exception):
    """Non-retryable failure, e.g. a 404."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def file_digest(path: Union[str, Path], algorithm: str) -> str:
    h = hashlib.new(algorithm)
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(Constants.CHUNK_SIZE), b""):
            h.update(block)
    return h.hexdigest()


def verify_file(path: Union[str, Path], *, size: Optional[int] = None, sha256: Optional[str] = None,
                md5: Optional[str] = None) -> None:
    """Check ``path`` against the expected size and hash.

    ``sha256`` is preferred over ``md5`` when both are known.

    Raises:
        IntegrityError: on any mismatch.
    """
    if size is not None:
        actual_size = os.path.getsize(path)
        if actual_size != size:
            raise IntegrityError(f"Size mismatch for {path}: expected {size}, got {actual_size}",
                                 path=str(path), expected=str(size), actual=str(actual_size))
    if sha256:
        actual = file_digest(path, "sha256")
        if actual != sha256.lower():
            raise IntegrityError(f"SHA256 mismatch for {path}", path=str(path), expected=sha256, actual=actual)
    elif md5:
        actual = file_digest(path, "md5")
        if actual != md5.lower():
            raise IntegrityError(f"MD5 mismatch for {path}", path=str(path), expected=md5, actual=actual)


class DownloadScheduler:
    """Run download targets on a bounded worker pool.

    Args:
        http: Transport used for every request.
        max_workers: Maximum number of concurrent transfers.
        retries: Retries per target after the first attempt.
        backoff: Base delay in seconds; attempt ``n`` waits ``backoff * 2**n``.
        progress: Optional advisory progress reporter.
    """

    def __init__(self, http: HttpClient, max_workers: int = Constants.DOWNLOAD_THREADS,
                 retries: int = Constants.HTTP_RETRY_MAX, backoff: float = Constants.HTTP_RETRY_BASE_DELAY_SEC,
                 progress: Optional[ProgressReporter] = None):
        self.http = http
        self.max_workers = max(1, int(max_workers))
        self.retries = max(0, int(retries))
        self.backoff = backoff
        self.progress = progress
        self._sleep = time.sleep

    def run(self, targets: Sequence[DownloadTarget], require_all: bool = True) -> List[DownloadResult]:
        """Download all ``targets``; results are returned in input order.

        Args:
            targets: Resources to fetch.
            require_all: When True the first hard failure cancels the pending
                targets and is raised; when False every target is attempted
                and failures are reported in the results.

        Raises:
            FetchError: ``require_all`` and a target failed for network reasons.
            IntegrityError: ``require_all`` and a target failed verification.
        """
        if not targets:
            return []
        cancel = threading.Event()
        results: List[Optional[DownloadResult]] = [None] * len(targets)
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="download") as pool:
            futures: Dict[Future, int] = {
                pool.submit(self._run_one, target, cancel): i for i, target in enumerate(targets)
            }
            pending = set(futures)
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for fut in done:
                    result = fut.result()
                    results[futures[fut]] = result
                    if require_all and not result.ok:
                        cancel.set()
                        for other in pending:
                            other.cancel()
                        self._raise_for(result)
        return [r for r in results if r is not None]

    def fetch(self, target: DownloadTarget) -> DownloadResult:
        """Download one target in the calling thread, raising on failure."""
        result = self._run_one(target, threading.Event())
        if not result.ok:
            self._raise_for(result)
        return result

    @staticmethod
    def _raise_for(result: DownloadResult) -> None:
        err = result.error
        if isinstance(err, (IntegrityError, FetchError)):
            raise err
        raise FetchError(
            f"Download of {safe_url(result.target.url)} failed: {err}",
            url=result.target.url,
            status_code=result.status_code,
        ) from err

    def _run_one(self, target: DownloadTarget, cancel: threading.Event) -> DownloadResult:
        result = DownloadResult(target=target, ok=False)
        last_error: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            if cancel.is_set():
                result.error = FetchError("cancelled", url=target.url)
                break
            result.attempts = attempt + 1
            try:
                with Timer() as t:
                    self._attempt(target, result)
                result.ok = True
                result.error = None
                if is_debug_enabled(logger):
                    logger.debug(
                        "Download finished",
                        extra=extra_context(
                            event="download",
                            component="download",
                            action="fetch",
                            outcome="not_modified" if result.not_modified else "success",
                            target=safe_url(target.url),
                            duration_ms=t.duration_ms(),
                            attempt=attempt + 1,
                        ),
                    )
                break
            except _TransientError as exc:
                last_error = exc
                logger.warning(
                    "Transient error downloading %s (attempt %d/%d): %s",
                    safe_url(target.url), attempt + 1, self.retries + 1, exc,
                )
                if attempt < self.retries:
                    self._sleep(self.backoff * (2 ** attempt))
            except _HardError as exc:
                result.status_code = exc.status_code
                last_error = FetchError(
                    f"Download of {safe_url(target.url)} failed: {exc}",
                    url=target.url, status_code=exc.status_code,
                )
                break
            except IntegrityError as exc:
                last_error = exc
                break
        if not result.ok:
            result.error = result.error or last_error
            if isinstance(last_error, _TransientError):
                result.error = FetchError(
                    f"Download of {safe_url(target.url)} failed after {result.attempts} attempts: {last_error}",
                    url=target.url, status_code=result.status_code,
                )
            if not cancel.is_set():
                logger.error("Failed to download %s: %s", safe_url(target.url), result.error)
        self._notify("on_finish", target, result)
        return result

    def _attempt(self, target: DownloadTarget, result: DownloadResult) -> None:
        part = target.dest.with_name(target.dest.name + ".part")
        try:
            with self.http.open(target.url, headers=target.headers or None) as res:
                result.status_code = res.status_code
                result.headers = res.headers
                if res.status_code == 304:
                    result.not_modified = True
                    return
                if res.status_code in TRANSIENT_STATUS:
                    raise _TransientError(f"HTTP {res.status_code}")
                if res.status_code >= 400:
                    raise _HardError(f"HTTP {res.status_code}", res.status_code)

                target.dest.parent.mkdir(parents=True, exist_ok=True)
                self._notify("on_start", target, res.content_length or target.expected_size)
                written = 0
                with open(part, "wb") as fh:
                    for chunk in res.iter_chunks(Constants.CHUNK_SIZE):
                        if not chunk:
                            continue
                        fh.write(chunk)
                        written += len(chunk)
                        self._notify("on_advance", target, len(chunk))
                result.bytes_written = written
        except requests.RequestException as exc:
            _unlink_quietly(part)
            raise _TransientError(str(exc)) from exc
        except (_TransientError, _HardError):
            _unlink_quietly(part)
            raise
        except OSError as exc:
            _unlink_quietly(part)
            raise _HardError(f"I/O error: {exc}") from exc

        try:
            verify_file(part, size=target.expected_size, sha256=target.sha256, md5=target.md5)
        except IntegrityError:
            _unlink_quietly(part)
            raise
        os.replace(part, target.dest)

    def _notify(self, hook: str, *args) -> None:
        if self.progress is None:
            return
        try:
            getattr(self.progress, hook)(*args)
        except Exception:  # pylint: disable=broad-exception-caught
            # progress is advisory; a broken reporter must not fail downloads
            logger.debug("Progress reporter %s failed", hook, exc_info=True)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
