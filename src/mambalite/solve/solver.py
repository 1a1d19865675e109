"""SAT based dependency resolution over a ``Pool``.

Every candidate record is a boolean variable. Hard clauses encode "at most one
record per name", "a chosen record has each dependency provided" and
"``constrains`` of a chosen record hold". Jobs and the no-downgrade policy are
guarded by selector literals passed as assumptions, so an unsatisfiable request
yields a core of selectors that is shrunk to a minimal set and explained.

A satisfiable request is then resolved by greedy decisions in a fixed order,
each tested with an incremental SAT call, which makes the result both
deterministic and preference-ordered.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pysat.card import CardEnc, EncType
from pysat.formula import IDPool
from pysat.solvers import Solver as SatSolver

from ..common.logging_utils import Timer, extra_context, is_debug_enabled
from ..errors import ConflictError
from ..models import Job, JobKind, PackageRecord
from .pool import Pool

logger = logging.getLogger(__name__)

SAT_BACKEND = "g3"
_PAIRWISE_LIMIT = 6
_MAX_DIAGNOSTICS = 5


class ResolvedSet(Mapping):
    """Immutable ``name -> PackageRecord`` mapping iterating in name order.

    ``requested`` maps explicitly requested names to the spec the user gave.
    """

    def __init__(self, records: Mapping, requested: Optional[Mapping] = None):
        self._records: Dict[str, PackageRecord] = {k: records[k] for k in sorted(records)}
        self.requested: Dict[str, str] = dict(requested or {})

    def __getitem__(self, name: str) -> PackageRecord:
        return self._records[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"ResolvedSet({', '.join(r.dist_name for r in self._records.values())})"

    def identities(self) -> Tuple[Tuple[str, str, str], ...]:
        return tuple(r.identity for r in self._records.values())


@dataclass(frozen=True)
class Conflict:
    """Minimal set of requests and policies that cannot hold together."""

    jobs: Tuple[Job, ...]
    policies: Tuple[str, ...] = ()
    problems: Tuple[str, ...] = ()
    reason: str = ""

    def explain(self) -> str:
        lines = [self.reason or "Could not solve for the requested packages."]
        if self.jobs:
            lines.append("The following requests cannot be satisfied together:" if len(self.jobs) > 1
                         else "The following request cannot be satisfied:")
            lines.extend(f"  - {job}" for job in self.jobs)
        if self.policies:
            lines.append("Policies involved:")
            lines.extend(f"  - {policy}" for policy in self.policies)
        if self.problems:
            lines.append("Details:")
            lines.extend(f"  - {problem}" for problem in self.problems)
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.explain()


class Solver:
    """Resolve jobs against a pool.

    Args:
        pool: Records to choose from, including the installed repo.
        config: Any object with an ``allow_downgrade`` attribute (normally a
            ``Context``); None means defaults.
    """

    def __init__(self, pool: Pool, config: Optional[Any] = None):
        self.pool = pool
        self.allow_downgrade = bool(getattr(config, "allow_downgrade", False))

        self._ids = IDPool()
        self._clauses: List[List[int]] = []
        self._universe: List[str] = []
        self._selectors: Dict[int, Tuple[str, Any]] = {}
        self._missing: Dict[int, List[str]] = {}

    def _var(self, record_id: int) -> int:
        return self._ids.id(("record", record_id))

    def solve(self, jobs: Sequence[Job]) -> ResolvedSet:
        """Return the resolved set for ``jobs``.

        Raises:
            ConflictError: when the jobs cannot be satisfied together, or a
                package name is requested more than once.
        """
        jobs = list(jobs)
        with Timer() as t:
            self._encode(jobs)
            assumptions = sorted(self._selectors)
            with SatSolver(name=SAT_BACKEND, bootstrap_with=self._clauses) as sat:
                if not sat.solve(assumptions=assumptions):
                    core = self._minimize(sat, sat.get_core() or assumptions)
                    raise ConflictError(self._conflict(core))
                duplicated = self._duplicates(jobs)
                if duplicated:
                    names = sorted({job.name for job in duplicated})
                    raise ConflictError(Conflict(
                        jobs=tuple(duplicated),
                        reason=f"Package requested more than once: {', '.join(names)}",
                    ))
                chosen = self._decide(sat, jobs, list(assumptions))

        requested = {job.name: str(job.spec) for job in jobs if job.kind is not JobKind.REMOVE}
        resolved = ResolvedSet({self.pool.record(i).name: self.pool.record(i) for i in chosen}, requested)
        logger.info("Solved %d job(s): %d package(s) in %d ms", len(jobs), len(resolved), t.duration_ms())
        return resolved

    # Encoding

    def _encode(self, jobs: Sequence[Job]) -> None:
        pool = self.pool
        installed_repo = pool.installed_repo
        installed_names = sorted({pool.record(i).name for i in installed_repo.record_ids}) if installed_repo else []

        seen = set()
        queue = deque()
        for name in [job.name for job in jobs] + installed_names:
            if name not in seen:
                seen.add(name)
                queue.append(name)
        while queue:
            name = queue.popleft()
            self._universe.append(name)
            for record_id in pool.candidates(name):
                self._var(record_id)
                for dep in pool.record(record_id).depends_specs:
                    if dep.name not in seen:
                        seen.add(dep.name)
                        queue.append(dep.name)
        universe = set(self._universe)

        for name in self._universe:
            for record_id in pool.candidates(name):
                record = pool.record(record_id)
                lit = self._var(record_id)
                for dep in record.depends_specs:
                    providers = [self._var(i) for i in pool.select(dep)]
                    if not providers:
                        self._missing.setdefault(record_id, []).append(str(dep))
                    self._clauses.append([-lit] + providers)
                for constraint in record.constrains_specs:
                    if constraint.name not in universe:
                        continue
                    for other in pool.candidates(constraint.name):
                        if not constraint.match(pool.record(other)):
                            self._clauses.append([-lit, -self._var(other)])

        for index, job in enumerate(jobs):
            sel = self._ids.id(("job", index))
            self._selectors[sel] = ("job", job)
            if job.kind is JobKind.REMOVE:
                for record_id in pool.candidates(job.name):
                    self._clauses.append([-sel, -self._var(record_id)])
                if not pool.installed_ids(job.name):
                    logger.warning("Package %s is not installed, nothing to remove", job.name)
            else:
                self._clauses.append([-sel] + [self._var(i) for i in pool.select(job.effective_spec)])

        if not self.allow_downgrade:
            exempt = {job.name for job in jobs if job.allow_downgrade}
            for name in installed_names:
                if name in exempt:
                    continue
                installed = pool.record(pool.installed_ids(name)[0])
                lower = [i for i in pool.candidates(name)
                         if pool.record(i).version_order < installed.version_order]
                if not lower:
                    continue
                sel = self._ids.id(("policy", name))
                self._selectors[sel] = ("policy", installed)
                self._clauses.extend([-sel, -self._var(i)] for i in lower)

        for name in self._universe:
            lits = [self._var(i) for i in pool.candidates(name)]
            if len(lits) < 2:
                continue
            encoding = EncType.pairwise if len(lits) <= _PAIRWISE_LIMIT else EncType.seqcounter
            self._clauses.extend(CardEnc.atmost(lits=lits, bound=1, vpool=self._ids, encoding=encoding).clauses)

        if is_debug_enabled(logger):
            logger.debug(
                "Problem encoded",
                extra=extra_context(event="encode", component="solver", count=len(self._clauses),
                                    names=len(self._universe), jobs=len(jobs)),
            )

    @staticmethod
    def _duplicates(jobs: Sequence[Job]) -> List[Job]:
        counts: Dict[str, int] = {}
        for job in jobs:
            counts[job.name] = counts.get(job.name, 0) + 1
        return [job for job in jobs if counts[job.name] > 1]

    # Decisions

    def _decide(self, sat: SatSolver, jobs: Sequence[Job], assumptions: List[int]) -> List[int]:
        pool = self.pool
        job_for: Dict[str, Job] = {}
        for job in jobs:
            job_for.setdefault(job.name, job)
        installed_repo = pool.installed_repo
        installed_names = sorted({pool.record(i).name for i in installed_repo.record_ids}) if installed_repo else []

        chosen: List[int] = []
        seen = set()
        pending = deque()
        for job in jobs:
            if job.name not in seen:
                seen.add(job.name)
                pending.append(job.name)
        remaining_installed = deque(installed_names)

        while pending or remaining_installed:
            if not pending:
                name = remaining_installed.popleft()
                if name in seen:
                    continue
                seen.add(name)
                pending.append(name)
            name = pending.popleft()
            record_id = self._choose(sat, name, self._options(name, job_for.get(name)), assumptions)
            if record_id is None:
                continue
            chosen.append(record_id)
            for dep in pool.record(record_id).depends_specs:
                if dep.name not in seen:
                    seen.add(dep.name)
                    pending.append(dep.name)
        return chosen

    def _options(self, name: str, job: Optional[Job]) -> List[Optional[int]]:
        """Candidate order for ``name``; ``None`` stands for "not installed"."""
        pool = self.pool
        candidates = list(pool.candidates(name))
        installed = [i for i in candidates if pool.is_installed(i)]
        available = [i for i in candidates if not pool.is_installed(i)]
        if job is not None and job.kind is JobKind.REMOVE:
            return [None]
        if job is not None and job.kind is JobKind.UPDATE:
            ordered = available + installed
        else:
            ordered = installed + available
        if job is not None:
            spec = job.effective_spec
            ordered = [i for i in ordered if spec.match(pool.record(i))]
        return ordered + [None]

    def _choose(self, sat: SatSolver, name: str, options: Sequence[Optional[int]],
                assumptions: List[int]) -> Optional[int]:
        for option in options:
            if option is None:
                lits = [-self._var(i) for i in self.pool.candidates(name)]
            else:
                lits = [self._var(option)]
            if sat.solve(assumptions=assumptions + lits):
                assumptions.extend(lits)
                if is_debug_enabled(logger):
                    target = self.pool.record(option).dist_name if option is not None else name
                    logger.debug(
                        "Decision",
                        extra=extra_context(event="decide", component="solver", target=target,
                                            outcome="install" if option is not None else "skip"),
                    )
                return option
        # Options cover every candidate plus "none", one of which holds in any model
        raise AssertionError(f"no satisfiable option for {name}")

    # Conflicts

    def _minimize(self, sat: SatSolver, core: Sequence[int]) -> List[int]:
        core = sorted(set(core))
        index = 0
        while index < len(core):
            trial = core[:index] + core[index + 1:]
            if not sat.solve(assumptions=trial):
                core = trial
            else:
                index += 1
        return core

    def _conflict(self, core: Sequence[int]) -> Conflict:
        jobs: List[Job] = []
        policies: List[str] = []
        problems: List[str] = []
        for sel in core:
            kind, value = self._selectors[sel]
            if kind == "job":
                jobs.append(value)
                problems.extend(self._diagnose(value))
            else:
                policies.append(
                    f"{value.name} is installed at {value.version} and may not be downgraded "
                    "(pass --allow-downgrade to lift this)"
                )
        logger.debug("Minimal conflict: %d job(s), %d policy(ies)", len(jobs), len(policies))
        return Conflict(jobs=tuple(jobs), policies=tuple(policies), problems=tuple(problems))

    def _diagnose(self, job: Job) -> List[str]:
        pool = self.pool
        if job.kind is JobKind.REMOVE:
            return []
        spec = job.effective_spec
        matches = pool.select(spec)
        if not matches:
            known = pool.candidates(job.name)
            if not known:
                return [f"nothing provides {job.name}"]
            versions = sorted({pool.record(i).version_order for i in known})
            return [f"nothing provides {spec} (available versions: {', '.join(str(v) for v in versions)})"]
        out: List[str] = []
        for record_id in matches[:_MAX_DIAGNOSTICS]:
            record = pool.record(record_id)
            missing = self._missing.get(record_id)
            if missing:
                out.append(f"{record.dist_name} requires {', '.join(missing)}, but nothing provides it")
            elif record.depends:
                out.append(f"{record.dist_name} requires {', '.join(record.depends)}")
        return out
