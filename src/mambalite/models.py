"""Data models for package records and solver requests."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .versioning.matchspec import MatchSpec
from .versioning.version import VersionOrder, parse_version

_RECORD_FIELDS = (
    "name", "version", "build", "build_number", "depends", "constrains", "channel", "subdir",
    "fn", "url", "size", "md5", "sha256", "timestamp", "license",
)


@dataclass(frozen=True)
class PackageRecord:
    """Immutable description of one concrete package build."""

    name: str
    version: str
    build: str
    build_number: int = 0
    depends: Tuple[str, ...] = ()
    constrains: Tuple[str, ...] = ()
    channel: str = ""
    subdir: str = ""
    fn: str = ""
    url: str = ""
    size: Optional[int] = None
    md5: Optional[str] = None
    sha256: Optional[str] = None
    timestamp: Optional[int] = None
    license: Optional[str] = None
    version_order: VersionOrder = field(init=False, repr=False, compare=False, hash=False)

    def __post_init__(self) -> None:
        # Raises InvalidVersion for unparsable versions
        object.__setattr__(self, "version_order", parse_version(self.version))
        object.__setattr__(self, "depends", tuple(self.depends))
        object.__setattr__(self, "constrains", tuple(self.constrains))

    @property
    def dist_name(self) -> str:
        """``name-version-build``, the extracted directory and snapshot file stem."""
        return f"{self.name}-{self.version}-{self.build}"

    @property
    def identity(self) -> Tuple[str, str, str]:
        return (self.name, self.version, self.build)

    @property
    def depends_specs(self) -> Tuple[MatchSpec, ...]:
        return tuple(MatchSpec.parse(d) for d in self.depends)

    @property
    def constrains_specs(self) -> Tuple[MatchSpec, ...]:
        return tuple(MatchSpec.parse(c) for c in self.constrains)

    def __str__(self) -> str:
        return f"{self.channel}/{self.subdir}::{self.dist_name}" if self.channel else self.dist_name

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key in _RECORD_FIELDS:
            value = getattr(self, key)
            if isinstance(value, tuple):
                value = list(value)
            if value is not None:
                out[key] = value
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **overrides: Any) -> "PackageRecord":
        """Build a record from repodata/snapshot JSON; unknown keys are ignored.

        Raises:
            KeyError: if ``name``, ``version`` or ``build`` is missing.
            ValueError: if the version or dependency lists are malformed.
        """
        values = {k: data[k] for k in _RECORD_FIELDS if k in data}
        values.update(overrides)
        for key in ("name", "version", "build"):
            if not values.get(key):
                raise KeyError(key)
        for key in ("depends", "constrains"):
            seq = values.get(key) or ()
            if isinstance(seq, str) or not all(isinstance(d, str) for d in seq):
                raise ValueError(f"{key} must be a list of strings")
            values[key] = tuple(seq)
        values["name"] = str(values["name"]).lower()
        values["version"] = str(values["version"])
        values["build"] = str(values["build"])
        values["build_number"] = int(values.get("build_number") or 0)
        return cls(**values)


class JobKind(Enum):
    """Kinds of requested operations."""
    INSTALL = "install"
    UPDATE = "update"
    REMOVE = "remove"


@dataclass(frozen=True)
class Job:
    """A single requested change with its modifiers."""

    kind: JobKind
    spec: MatchSpec
    allow_downgrade: bool = False
    exact_pin: bool = False

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def effective_spec(self) -> MatchSpec:
        return self.spec.exact() if self.exact_pin else self.spec

    @classmethod
    def install(cls, spec: str, *, allow_downgrade: bool = False, exact_pin: bool = False) -> "Job":
        return cls(JobKind.INSTALL, MatchSpec.parse(spec), allow_downgrade, exact_pin)

    @classmethod
    def parse_install(cls, text: str, **modifiers: bool) -> "Job":
        """Parse a user-supplied spec string into an install job."""
        return cls.install(text, **modifiers)

    @classmethod
    def update(cls, spec: str, *, allow_downgrade: bool = False) -> "Job":
        return cls(JobKind.UPDATE, MatchSpec.parse(spec), allow_downgrade)

    @classmethod
    def remove(cls, name: str) -> "Job":
        return cls(JobKind.REMOVE, MatchSpec.parse(name))

    def __str__(self) -> str:
        return f"{self.kind.value} {self.effective_spec}"
