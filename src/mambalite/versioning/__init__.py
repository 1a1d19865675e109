"""Version ordering and match specs."""

from .matchspec import InvalidMatchSpec, MatchSpec, VersionSpec
from .version import InvalidVersion, VersionOrder, parse_version

__all__ = [
    "InvalidMatchSpec",
    "MatchSpec",
    "VersionSpec",
    "InvalidVersion",
    "VersionOrder",
    "parse_version",
]
