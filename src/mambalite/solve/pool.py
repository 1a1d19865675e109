"""Arena of repos and records for one resolution run."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from ..common.logging_utils import extra_context, is_debug_enabled
from ..models import PackageRecord
from ..versioning.matchspec import MatchSpec

logger = logging.getLogger(__name__)

INSTALLED_REPO_NAME = "installed"
# Rank given to the installed repo; channels rank 0, 1, 2... from the config
INSTALLED_RANK = 1 << 30

Priority = Tuple[int, int]


@dataclass(frozen=True)
class Repo:
    """A prioritized group of records from one provenance.

    ``record_ids`` index into the owning ``Pool``.
    """

    id: int
    name: str
    priority: Priority
    record_ids: Tuple[int, ...]
    installed: bool = False

    def __len__(self) -> int:
        return len(self.record_ids)


class Pool:
    """Owns every repo and record of an invocation, addressed by integer id."""

    def __init__(self) -> None:
        self._repos: List[Repo] = []
        self._records: List[PackageRecord] = []
        self._record_repo: List[int] = []
        self._by_name: Dict[str, List[int]] = {}
        self._installed_repo: Optional[int] = None

    def add_repo(self, name: str, records: Iterable[PackageRecord], priority: Priority = (0, 0),
                 installed: bool = False) -> Repo:
        """Register ``records`` under a new repo and return it.

        Raises:
            ValueError: if a second installed repo is added.
        """
        if installed:
            if self._installed_repo is not None:
                raise ValueError("Pool already has an installed repo")
            priority = (INSTALLED_RANK, 0)
        repo_id = len(self._repos)
        ids: List[int] = []
        for record in records:
            record_id = len(self._records)
            self._records.append(record)
            self._record_repo.append(repo_id)
            self._by_name.setdefault(record.name, []).append(record_id)
            ids.append(record_id)
        repo = Repo(repo_id, name, tuple(priority), tuple(ids), installed)
        self._repos.append(repo)
        if installed:
            self._installed_repo = repo_id
        if is_debug_enabled(logger):
            logger.debug(
                "Repo added",
                extra=extra_context(event="repo_added", component="pool", target=name,
                                    count=len(ids), outcome="installed" if installed else "channel"),
            )
        return repo

    @property
    def repos(self) -> Tuple[Repo, ...]:
        return tuple(self._repos)

    @property
    def installed_repo(self) -> Optional[Repo]:
        if self._installed_repo is None:
            return None
        return self._repos[self._installed_repo]

    def repo(self, repo_id: int) -> Repo:
        return self._repos[repo_id]

    def record(self, record_id: int) -> PackageRecord:
        return self._records[record_id]

    def repo_of(self, record_id: int) -> Repo:
        return self._repos[self._record_repo[record_id]]

    def priority(self, record_id: int) -> Priority:
        return self.repo_of(record_id).priority

    def is_installed(self, record_id: int) -> bool:
        return self.repo_of(record_id).installed

    def __len__(self) -> int:
        return len(self._records)

    def names(self) -> List[str]:
        return sorted(self._by_name)

    def candidates(self, name: str) -> Tuple[int, ...]:
        """All record ids for ``name``, best repo first, newest first within a repo."""
        ids = self._by_name.get(name.lower(), ())
        return tuple(sorted(ids, key=self._rank_key))

    def installed_ids(self, name: str) -> Tuple[int, ...]:
        return tuple(i for i in self.candidates(name) if self.is_installed(i))

    def select(self, spec: MatchSpec) -> Tuple[int, ...]:
        """Record ids matching ``spec`` in ``candidates`` order.

        A ``channel::`` restriction never matches installed records, except when
        the installed record came from that channel.
        """
        return tuple(i for i in self.candidates(spec.name) if spec.match(self._records[i]))

    def _rank_key(self, record_id: int):
        record = self._records[record_id]
        rank, subpriority = self.priority(record_id)
        return (rank, _Descending(record.version_order), -record.build_number,
                _Descending(record.build), subpriority, record_id)


class _Descending:
    """Sort key wrapper inverting the natural order."""

    __slots__ = ("value",)

    def __init__(self, value):
        self.value = value

    def __eq__(self, other):
        return self.value == other.value

    def __lt__(self, other):
        return other.value < self.value
