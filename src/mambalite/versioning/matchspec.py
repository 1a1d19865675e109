"""Match specs: ``[channel::]name [version [build]]`` predicates over records.

Examples of accepted inputs::

    numpy
    numpy 1.21.*
    numpy >=1.20,<2|1.19.5
    numpy==1.21.0
    numpy=1.21            (fuzzy, same as 1.21.*)
    numpy 1.21.0 py39h*   (version and build glob)
    conda-forge::numpy[version='>=1.20', build=py39*]
"""
from __future__ import annotations

import fnmatch
import re
from typing import Any, Callable, Dict, Optional, Tuple

from .version import InvalidVersion, VersionOrder, parse_version


class InvalidMatchSpec(ValueError):
    """Raised when a match spec or version expression cannot be parsed."""


_OPERATORS = ("==", "!=", ">=", "<=", "~=", ">", "<", "=")
_NAME_RE = re.compile(r"^([A-Za-z0-9_.\-]+)")
_BRACKET_RE = re.compile(r"\[(.*)\]\s*$")
_KV_RE = re.compile(r"""\s*([a-z_]+)\s*=\s*(?:'([^']*)'|"([^"]*)"|([^,\]]*))\s*,?""")
_SEP_SPACE_RE = re.compile(r"\s*([,|])\s*")
_OP_SPACE_RE = re.compile(r"(==|!=|>=|<=|~=|>|<)\s+")


def _parse_single(term: str) -> Callable[[VersionOrder], bool]:
    """Compile one comparison term (``>=1.2``, ``1.2.*``, ``1.2``) into a predicate."""
    term = term.strip()
    if term in ("", "*"):
        return lambda v: True

    op = ""
    for candidate in _OPERATORS:
        if term.startswith(candidate):
            op = candidate
            term = term[len(candidate):].strip()
            break
    if not term:
        raise InvalidMatchSpec(f"Missing version after operator {op!r}")

    glob = False
    if term.endswith(".*"):
        term, glob = term[:-2], True
    elif term.endswith("*"):
        term, glob = term[:-1], True
    if "*" in term:
        raise InvalidMatchSpec(f"Unsupported wildcard position in {term!r}")
    if op == "=":
        # fuzzy equality
        op, glob = "", True

    try:
        ref = parse_version(term)
    except InvalidVersion as exc:
        raise InvalidMatchSpec(str(exc)) from exc

    if glob:
        if op in ("", "=="):
            return lambda v: v.startswith(ref)
        if op == "!=":
            return lambda v: not v.startswith(ref)
        # ">=1.2.*" behaves like ">=1.2"
    if op in ("", "=="):
        return lambda v: v == ref
    if op == "!=":
        return lambda v: v != ref
    if op == ">=":
        return lambda v: v >= ref
    if op == "<=":
        return lambda v: v <= ref
    if op == ">":
        return lambda v: v > ref
    if op == "<":
        return lambda v: v < ref
    if op == "~=":
        if len(ref.version) < 2:
            raise InvalidMatchSpec(f"'~=' needs at least two components: {term!r}")
        prefix = parse_version(".".join(term.split(".")[:-1]))
        return lambda v: v >= ref and v.startswith(prefix)
    raise InvalidMatchSpec(f"Unknown operator {op!r}")


class VersionSpec:
    """A version expression: ``|``-separated alternatives of ``,``-joined terms."""

    __slots__ = ("spec", "_alternatives")

    def __init__(self, spec: str):
        self.spec = (spec or "*").strip() or "*"
        if "(" in self.spec or ")" in self.spec:
            raise InvalidMatchSpec(f"Parenthesized version expressions are not supported: {self.spec!r}")
        alternatives = []
        for alt in self.spec.split("|"):
            terms = [t for t in alt.split(",")]
            if any(not t.strip() for t in terms):
                raise InvalidMatchSpec(f"Empty term in version expression {self.spec!r}")
            alternatives.append(tuple(_parse_single(t) for t in terms))
        self._alternatives = tuple(alternatives)

    @property
    def is_any(self) -> bool:
        return self.spec == "*"

    def match(self, version: VersionOrder) -> bool:
        return any(all(term(version) for term in alt) for alt in self._alternatives)

    def __str__(self) -> str:
        return self.spec

    def __repr__(self) -> str:
        return f"VersionSpec({self.spec!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, VersionSpec) and other.spec == self.spec

    def __hash__(self) -> int:
        return hash(self.spec)


def _split_version_operator(name_part: str) -> Tuple[str, str]:
    """Split ``foo>=1.0`` into ``("foo", ">=1.0")``."""
    m = _NAME_RE.match(name_part)
    if not m:
        raise InvalidMatchSpec(f"Invalid package name in {name_part!r}")
    name = m.group(1)
    rest = name_part[len(name):]
    if rest and not rest.startswith(tuple(_OPERATORS)):
        raise InvalidMatchSpec(f"Invalid characters after package name in {name_part!r}")
    return name, rest


class MatchSpec:
    """Parsed request/dependency expression.

    Attributes:
        name: Lower-cased package name.
        version: ``VersionSpec`` (``*`` when unconstrained).
        build: Build glob or None.
        channel: Optional channel restriction from ``channel::name``.
    """

    __slots__ = ("raw", "name", "version", "build", "channel")

    def __init__(self, name: str, version: Optional[str] = None, build: Optional[str] = None,
                 channel: Optional[str] = None, raw: Optional[str] = None):
        if not name:
            raise InvalidMatchSpec("Match spec without a package name")
        self.name = name.lower()
        self.version = VersionSpec(version or "*")
        self.build = build or None
        self.channel = channel or None
        self.raw = raw if raw is not None else self._render()

    @classmethod
    def parse(cls, text: str) -> "MatchSpec":
        """Parse a spec string; raises ``InvalidMatchSpec`` on bad input."""
        return _parse_cached(text.strip())

    def _render(self) -> str:
        out = f"{self.channel}::{self.name}" if self.channel else self.name
        if not self.version.is_any or self.build:
            out += f" {self.version}"
        if self.build:
            out += f" {self.build}"
        return out

    def match(self, record: Any) -> bool:
        """Return True if ``record`` (anything with name/version/build/channel) satisfies the spec."""
        if record.name != self.name:
            return False
        if not self.version.is_any and not self.version.match(record.version_order):
            return False
        if self.build and not fnmatch.fnmatchcase(record.build, self.build):
            return False
        if self.channel and not _channel_matches(self.channel, getattr(record, "channel", "")):
            return False
        return True

    def exact(self) -> "MatchSpec":
        """Return a copy pinning the version with ``==`` (used by ``exact_pin`` jobs)."""
        spec = self.version.spec
        if spec.startswith(("=", "!", "<", ">", "~")) or "*" in spec or "," in spec or "|" in spec:
            return self
        return MatchSpec(self.name, f"=={spec}", self.build, self.channel)

    def __str__(self) -> str:
        return self._render()

    def __repr__(self) -> str:
        return f"MatchSpec({self._render()!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, MatchSpec) and str(other) == str(self)

    def __hash__(self) -> int:
        return hash(str(self))


def _channel_matches(wanted: str, channel: str) -> bool:
    if not channel:
        return False
    wanted = wanted.rstrip("/")
    channel = channel.rstrip("/")
    return channel == wanted or channel.endswith("/" + wanted)


def _parse_brackets(body: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    pos = 0
    while pos < len(body):
        m = _KV_RE.match(body, pos)
        if not m or m.end() == pos:
            raise InvalidMatchSpec(f"Invalid bracket expression [{body}]")
        key = m.group(1)
        value = next(g for g in m.groups()[1:] if g is not None)
        out[key] = value.strip()
        pos = m.end()
    return out


_CACHE: Dict[str, MatchSpec] = {}


def _parse_cached(text: str) -> MatchSpec:
    cached = _CACHE.get(text)
    if cached is not None:
        return cached
    spec = _parse(text)
    if len(_CACHE) < 65536:
        _CACHE[text] = spec
    return spec


def _parse(text: str) -> MatchSpec:
    if not text:
        raise InvalidMatchSpec("Empty match spec")
    raw = text
    channel = None
    if "::" in text:
        channel, _, text = text.rpartition("::")
        channel = channel.strip() or None

    brackets: Dict[str, str] = {}
    m = _BRACKET_RE.search(text)
    if m:
        brackets = _parse_brackets(m.group(1))
        text = text[:m.start()]

    text = _SEP_SPACE_RE.sub(r"\1", text)
    text = _OP_SPACE_RE.sub(r"\1", text)
    parts = text.split()
    if not parts:
        raise InvalidMatchSpec(f"Empty match spec {raw!r}")
    name, attached = _split_version_operator(parts[0])
    rest = parts[1:]

    version: Optional[str] = None
    build: Optional[str] = None
    if attached:
        version = attached
        if rest:
            build = rest[0]
            rest = rest[1:]
    else:
        if rest:
            version = rest[0]
            rest = rest[1:]
        if rest:
            build = rest[0]
            rest = rest[1:]
    if rest:
        raise InvalidMatchSpec(f"Unexpected trailing tokens in {raw!r}")

    if version and version.startswith("=") and not version.startswith("=="):
        # "foo=1.2=py39_0" carries the build after a second "="
        body = version[1:]
        if "=" in body and not body.startswith("="):
            body, _, build_part = body.partition("=")
            build = build or build_part or None
            version = f"=={body}"

    version = brackets.pop("version", version)
    build = brackets.pop("build", build)
    if brackets:
        raise InvalidMatchSpec(f"Unsupported keys {sorted(brackets)} in {raw!r}")
    return MatchSpec(name, version, build, channel, raw=raw)
