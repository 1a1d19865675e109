"""Conda-style version ordering.

Versions are split into an epoch, a main part and an optional local part
(``1!2.0.1+local``). Each part is a list of components separated by ``.``
(``_`` and ``-`` are accepted as separators too); every component is split into
runs of digits and non-digits, e.g. ``1rc2`` -> ``[1, 'rc', 2]``.

Ordering rules:

* components starting with a letter get an implicit leading ``0`` so numbers
  and strings stay in phase (``1.1.a1 == 1.1.0a1``),
* ``dev`` sorts before any other string and ``post`` after everything,
* strings sort before numbers (``1.1a1 < 1.1``), case-insensitively,
* missing components and sub-elements count as ``0`` (``1.1 == 1.1.0``).
"""
from __future__ import annotations

import functools
import re
from typing import List, Tuple, Union

_SPLIT_RE = re.compile(r"([0-9]+|[^0-9]+)")
_VALID_RE = re.compile(r"^[.+!_0-9a-z]+$")

Element = Union[int, float, str]
Component = List[Element]

_INF = float("inf")


class InvalidVersion(ValueError):
    """Raised when a version string cannot be parsed."""


def _parse_part(text: str, original: str) -> List[Component]:
    components: List[Component] = []
    for raw in text.split("."):
        if raw == "":
            raise InvalidVersion(f"Empty version component in {original!r}")
        elements: Component = []
        for run in _SPLIT_RE.findall(raw):
            elements.append(int(run) if run.isdigit() else run)
        if isinstance(elements[0], str):
            elements.insert(0, 0)
        for i, element in enumerate(elements):
            if element == "post":
                elements[i] = _INF
            elif element == "dev":
                elements[i] = "DEV"
        components.append(elements)
    return components


def _cmp_element(a: Element, b: Element) -> int:
    a_str = isinstance(a, str)
    b_str = isinstance(b, str)
    if a_str and b_str:
        return (a > b) - (a < b)
    if a_str:
        return -1
    if b_str:
        return 1
    return (a > b) - (a < b)


def _cmp_part(left: List[Component], right: List[Component]) -> int:
    for i in range(max(len(left), len(right))):
        a = left[i] if i < len(left) else [0]
        b = right[i] if i < len(right) else [0]
        for j in range(max(len(a), len(b))):
            c = _cmp_element(a[j] if j < len(a) else 0, b[j] if j < len(b) else 0)
            if c:
                return c
    return 0


@functools.total_ordering
class VersionOrder:
    """Comparable, hashable parsed version.

    Equality follows the ordering (``VersionOrder("1.0") == VersionOrder("1.0.0")``)
    and the hash is derived from a normalized form so equal versions hash
    equally.
    """

    __slots__ = ("raw", "epoch", "version", "local", "_norm")

    def __init__(self, vstr: str):
        self.raw = str(vstr).strip()
        text = self.raw.lower()
        if not text:
            raise InvalidVersion("Empty version string")
        if not _VALID_RE.match(text.replace("-", "_")):
            raise InvalidVersion(f"Invalid character(s) in version {self.raw!r}")

        epoch = 0
        if "!" in text:
            epoch_str, _, text = text.partition("!")
            if not epoch_str.isdigit() or "!" in text:
                raise InvalidVersion(f"Invalid epoch in version {self.raw!r}")
            epoch = int(epoch_str)

        local = ""
        if "+" in text:
            text, _, local = text.partition("+")
            if not local or "+" in local:
                raise InvalidVersion(f"Invalid local version in {self.raw!r}")

        if "-" in text:
            if "_" in text:
                raise InvalidVersion(f"Mixed '-' and '_' separators in {self.raw!r}")
            text = text.replace("-", "_")
        text = text.replace("_", ".")
        if not text or text.startswith(".") or text.endswith("."):
            raise InvalidVersion(f"Invalid version {self.raw!r}")

        self.epoch = epoch
        self.version = _parse_part(text, self.raw)
        self.local = _parse_part(local.replace("_", "."), self.raw) if local else []
        self._norm = self._normalized()

    def _normalized(self) -> Tuple:
        def strip(part: List[Component]) -> Tuple:
            comps = [list(c) for c in part]
            for c in comps:
                while len(c) > 1 and c[-1] == 0:
                    c.pop()
            while comps and comps[-1] == [0]:
                comps.pop()
            return tuple(tuple(c) for c in comps)

        return (self.epoch, strip(self.version), strip(self.local))

    def _cmp(self, other: "VersionOrder") -> int:
        if self.epoch != other.epoch:
            return (self.epoch > other.epoch) - (self.epoch < other.epoch)
        c = _cmp_part(self.version, other.version)
        if c:
            return c
        return _cmp_part(self.local, other.local)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VersionOrder):
            return NotImplemented
        return self._cmp(other) == 0

    def __lt__(self, other: "VersionOrder") -> bool:
        if not isinstance(other, VersionOrder):
            return NotImplemented
        return self._cmp(other) < 0

    def __hash__(self) -> int:
        return hash(self._norm)

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f"VersionOrder({self.raw!r})"

    def startswith(self, prefix: "VersionOrder") -> bool:
        """True if ``prefix``'s components are a leading run of this version's.

        Used for ``1.2.*`` matching: ``1.2.3`` and ``1.2`` start with ``1.2``
        while ``1.20`` does not.
        """
        if self.epoch != prefix.epoch:
            return False
        if prefix.local:
            return _cmp_part(self.version, prefix.version) == 0 and _is_prefix(self.local, prefix.local)
        return _is_prefix(self.version, prefix.version)


def _is_prefix(full: List[Component], prefix: List[Component]) -> bool:
    last = len(prefix) - 1
    for i, comp in enumerate(prefix):
        other = full[i] if i < len(full) else [0]
        if i == last:
            # only the leading sub-elements of the last component must agree
            other = other[:len(comp)]
        if _cmp_part([other], [comp]) != 0:
            return False
    return True


@functools.lru_cache(maxsize=8192)
def parse_version(vstr: str) -> VersionOrder:
    """Parse ``vstr`` with memoization; repodata repeats versions heavily."""
    return VersionOrder(vstr)
