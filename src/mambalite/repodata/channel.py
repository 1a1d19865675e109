"""Channel names, URLs and platform subdirs."""

from __future__ import annotations

import platform as _platform
import sys
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..common.logging_utils import safe_url
from ..constants import Constants

_KNOWN_SCHEMES = ("http://", "https://", "file://")


def context_platform() -> str:
    """Return the conda subdir of the running interpreter, e.g. ``linux-64``."""
    machine = _platform.machine().lower()
    if sys.platform.startswith("linux"):
        os_name = "linux"
    elif sys.platform == "darwin":
        os_name = "osx"
    elif sys.platform.startswith("win"):
        os_name = "win"
    else:
        os_name = sys.platform

    if machine in ("x86_64", "amd64"):
        arch = "64"
    elif machine in ("arm64", "aarch64"):
        arch = "arm64" if os_name in ("osx", "win") else "aarch64"
    elif machine in ("ppc64le", "s390x", "armv7l"):
        arch = machine
    elif machine in ("i386", "i686", "x86"):
        arch = "32"
    else:
        arch = machine or "64"
    return f"{os_name}-{arch}"


@dataclass(frozen=True)
class Channel:
    """A channel: canonical name plus base URL (without platform subdir)."""

    name: str
    base_url: str

    @classmethod
    def from_value(cls, value: str, channel_alias: str = Constants.CHANNEL_ALIAS) -> "Channel":
        """Expand ``conda-forge`` to ``<alias>/conda-forge``; full URLs are kept.

        Raises:
            ValueError: for empty channel values.
        """
        value = (value or "").strip().rstrip("/")
        if not value:
            raise ValueError("Empty channel name")
        if value.startswith(_KNOWN_SCHEMES):
            base = value
            for subdir in (Constants.NOARCH_SUBDIR, context_platform()):
                if base.endswith("/" + subdir):
                    base = base[: -len(subdir) - 1]
            return cls(name=_name_from_url(base), base_url=base)
        return cls(name=value, base_url=f"{channel_alias.rstrip('/')}/{value}")

    def subdir_url(self, subdir: str) -> str:
        return f"{self.base_url}/{subdir}"

    def urls(self, platform: str) -> List[Tuple[str, str]]:
        """``(subdir, url)`` pairs: the platform subdir first, then ``noarch``."""
        subdirs = [platform] if platform == Constants.NOARCH_SUBDIR else [platform, Constants.NOARCH_SUBDIR]
        return [(subdir, self.subdir_url(subdir)) for subdir in subdirs]

    def __str__(self) -> str:
        return self.name


def _name_from_url(url: str) -> str:
    # ".../conda-forge" -> "conda-forge"; keep full safe URL for odd layouts
    tail = url.rstrip("/").rsplit("/", 1)[-1]
    return tail or safe_url(url)


def calculate_channel_urls(channels: List[str], platform: str,
                           channel_alias: Optional[str] = None) -> List[Tuple[Channel, str, str]]:
    """Expand configured channels into ``(channel, subdir, url)`` triples.

    Order is preserved (it determines channel priority) and duplicates are
    dropped.
    """
    seen = set()
    out: List[Tuple[Channel, str, str]] = []
    for value in channels:
        channel = Channel.from_value(value, channel_alias or Constants.CHANNEL_ALIAS)
        for subdir, url in channel.urls(platform):
            if url in seen:
                continue
            seen.add(url)
            out.append((channel, subdir, url))
    return out
