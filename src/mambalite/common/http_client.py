"""Shared HTTP transport used by the download scheduler.

Encapsulates session setup (TLS verification policy, user agent, timeouts)
and serves ``file://`` URLs from the local filesystem so local channels and
offline tests go through the exact same code path as remote ones.
"""
from __future__ import annotations

import logging
import os
import urllib.parse
import urllib.request
from contextlib import contextmanager
from dataclasses import dataclass, field
from email.utils import formatdate, parsedate_to_datetime
from typing import Any, Callable, Dict, Iterator, Optional, Union

import requests

from ..constants import Constants
from .logging_utils import Timer, extra_context, is_debug_enabled, safe_url

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = frozenset({408, 429, 500, 502, 503, 504})


@dataclass
class TransportResponse:
    """Uniform view over an HTTP or ``file://`` response."""

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    iter_chunks: Callable[[int], Iterator[bytes]] = lambda size: iter(())
    url: str = ""

    @property
    def content_length(self) -> Optional[int]:
        value = self.headers.get("Content-Length")
        try:
            return int(value) if value is not None else None
        except ValueError:
            return None


def is_file_url(url: str) -> bool:
    return url.startswith("file://")


def file_url_to_path(url: str) -> str:
    """Convert ``file:///abs/path`` into a local path."""
    parsed = urllib.parse.urlparse(url)
    return urllib.request.url2pathname(urllib.parse.unquote(parsed.path))


def path_to_file_url(path: Union[str, "os.PathLike[str]"]) -> str:
    return "file://" + urllib.request.pathname2url(os.path.abspath(os.fspath(path)))


class HttpClient:
    """Thin wrapper around a ``requests.Session``.

    Args:
        verify: ``requests`` verification policy: ``True``, ``False`` or a CA
            bundle path.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, verify: Union[bool, str] = True, timeout: float = Constants.REQUEST_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify
        self.session.headers.update({"User-Agent": Constants.USER_AGENT})

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @contextmanager
    def open(self, url: str, headers: Optional[Dict[str, str]] = None) -> Iterator[TransportResponse]:
        """Open ``url`` for streaming.

        Network-level failures surface as ``requests.RequestException``
        (timeouts and connection errors included); callers decide whether
        to retry.
        """
        if is_file_url(url):
            yield _open_local(url, headers or {})
            return

        safe_target = safe_url(url)
        with Timer() as t:
            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP request",
                    extra=extra_context(
                        event="http_request",
                        component="http_client",
                        action="GET",
                        target=safe_target,
                    ),
                )
            res = self.session.get(url, headers=headers, stream=True, timeout=self.timeout)
        try:
            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP response",
                    extra=extra_context(
                        event="http_response",
                        component="http_client",
                        action="GET",
                        outcome="success" if res.status_code < 400 else "error_status",
                        status_code=res.status_code,
                        duration_ms=t.duration_ms(),
                        target=safe_target,
                    ),
                )
            yield TransportResponse(
                status_code=res.status_code,
                headers=dict(res.headers),
                iter_chunks=lambda size: res.iter_content(chunk_size=size),
                url=url,
            )
        finally:
            res.close()


def _open_local(url: str, headers: Dict[str, str]) -> TransportResponse:
    """Serve a ``file://`` URL, honoring ``If-Modified-Since``."""
    path = file_url_to_path(url)
    if not os.path.isfile(path):
        return TransportResponse(status_code=404, url=url)

    stat = os.stat(path)
    last_modified = formatdate(stat.st_mtime, usegmt=True)
    since = {k.lower(): v for k, v in headers.items()}.get("if-modified-since")
    if since:
        try:
            if int(parsedate_to_datetime(since).timestamp()) >= int(stat.st_mtime):
                return TransportResponse(status_code=304, headers={"Last-Modified": last_modified}, url=url)
        except (TypeError, ValueError):
            pass  # unparsable validator: serve the full file

    def _chunks(size: int) -> Iterator[bytes]:
        with open(path, "rb") as fh:
            while True:
                block = fh.read(size)
                if not block:
                    break
                yield block

    return TransportResponse(
        status_code=200,
        headers={"Last-Modified": last_modified, "Content-Length": str(stat.st_size)},
        iter_chunks=_chunks,
        url=url,
    )
