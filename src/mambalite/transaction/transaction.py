"""Diff a resolved set against a prefix and apply the resulting plan."""

from __future__ import annotations

import heapq
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..common.logging_utils import Timer, extra_context, is_debug_enabled
from ..constants import Constants
from ..errors import ExecutionError, MambaliteError
from ..models import PackageRecord
from . import link
from .package_cache import MultiPackageCache
from .prefix_data import PrefixData

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    """Lifecycle of a transaction."""
    PLANNED = "planned"
    CONFIRMED = "confirmed"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Unlink:
    """Remove an installed package from the prefix."""
    record: PackageRecord

    def __str__(self) -> str:
        return f"unlink {self.record.dist_name}"


@dataclass(frozen=True)
class Link:
    """Place a resolved package into the prefix."""
    record: PackageRecord

    def __str__(self) -> str:
        return f"link {self.record.dist_name}"


Step = Union[Unlink, Link]


def _components(graph: Mapping[str, List[str]]) -> List[List[str]]:
    """Strongly connected components of ``graph`` (iterative Tarjan), members sorted."""
    index: Dict[str, int] = {}
    low: Dict[str, int] = {}
    stack: List[str] = []
    on_stack = set()
    out: List[List[str]] = []
    for start in sorted(graph):
        if start in index:
            continue
        index[start] = low[start] = len(index)
        stack.append(start)
        on_stack.add(start)
        work = [(start, iter(graph[start]))]
        while work:
            node, edges = work[-1]
            for nxt in edges:
                if nxt not in index:
                    index[nxt] = low[nxt] = len(index)
                    stack.append(nxt)
                    on_stack.add(nxt)
                    work.append((nxt, iter(graph[nxt])))
                    break
                if nxt in on_stack:
                    low[node] = min(low[node], index[nxt])
            else:
                work.pop()
                if work:
                    parent = work[-1][0]
                    low[parent] = min(low[parent], low[node])
                if low[node] == index[node]:
                    component = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    out.append(sorted(component))
    return out


def _topological(records: Mapping[str, PackageRecord]) -> List[str]:
    """Names of ``records`` with dependencies before dependents.

    Only edges between the given records count. Packages that depend on each
    other in a cycle are emitted together, in alphabetical order, once every
    dependency outside the cycle has been emitted.
    """
    graph: Dict[str, List[str]] = {}
    for name in records:
        deps = {spec.name for spec in records[name].depends_specs}
        graph[name] = sorted(dep for dep in deps if dep in records and dep != name)

    components = _components(graph)
    owner = {name: i for i, members in enumerate(components) for name in members}
    dependents: Dict[int, set] = {i: set() for i in range(len(components))}
    indegree = [0] * len(components)
    for name, deps in graph.items():
        for dep in deps:
            if owner[dep] != owner[name] and owner[name] not in dependents[owner[dep]]:
                dependents[owner[dep]].add(owner[name])
                indegree[owner[name]] += 1

    ready = [(members[0], i) for i, members in enumerate(components) if indegree[i] == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        _, i = heapq.heappop(ready)
        if len(components[i]) > 1:
            logger.debug("Dependency cycle between %s", ", ".join(components[i]))
        order.extend(components[i])
        for dependent in dependents[i]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, (components[dependent][0], dependent))
    return order


def plan_steps(resolved: Mapping[str, PackageRecord],
               installed: Mapping[str, PackageRecord]) -> Tuple[Step, ...]:
    """Compute the ordered plan turning ``installed`` into ``resolved``.

    Records are compared by ``(name, version, build)``. Unlinks come first,
    dependents before their dependencies; links follow, dependencies first.
    """
    to_unlink = {name: record for name, record in installed.items()
                 if name not in resolved or resolved[name].identity != record.identity}
    to_link = {name: record for name, record in resolved.items()
               if name not in installed or installed[name].identity != record.identity}
    steps: List[Step] = [Unlink(to_unlink[name]) for name in reversed(_topological(to_unlink))]
    steps.extend(Link(to_link[name]) for name in _topological(to_link))
    return tuple(steps)


class Transaction:
    """A planned change to one prefix.

    The plan is computed on construction without any I/O beyond what
    ``prefix_data`` already loaded.

    Args:
        resolved: Solver output for the prefix.
        prefix_data: Loaded installed snapshot of the target prefix.
        package_caches: Where package archives are found or downloaded to.
        config: Object with ``dry_run``, ``always_yes`` and ``extract_threads``
            (normally a ``Context``).
    """

    def __init__(self, resolved: Mapping[str, PackageRecord], prefix_data: PrefixData,
                 package_caches: MultiPackageCache, config: Optional[Any] = None):
        self.resolved = resolved
        self.prefix_data = prefix_data
        self.prefix = prefix_data.prefix
        self.package_caches = package_caches
        self.dry_run = bool(getattr(config, "dry_run", False))
        self.always_yes = bool(getattr(config, "always_yes", False))
        self.extract_threads = max(1, int(getattr(config, "extract_threads", Constants.EXTRACT_THREADS)))
        self.requested: Dict[str, str] = dict(getattr(resolved, "requested", {}) or {})

        installed = prefix_data.records
        for name in installed:
            entry = prefix_data.entry(name) or {}
            if entry.get("requested_spec") and name in resolved:
                self.requested.setdefault(name, entry["requested_spec"])
        self.steps: Tuple[Step, ...] = plan_steps(resolved, installed)
        self.state = TransactionState.PLANNED
        self.committed: List[Step] = []

    @property
    def empty(self) -> bool:
        return not self.steps

    @property
    def unlinks(self) -> List[PackageRecord]:
        return [s.record for s in self.steps if isinstance(s, Unlink)]

    @property
    def links(self) -> List[PackageRecord]:
        return [s.record for s in self.steps if isinstance(s, Link)]

    def to_fetch(self) -> List[PackageRecord]:
        return [r for r in self.links if self.package_caches.needs_fetch(r)]

    def report(self) -> Dict[str, Any]:
        """Machine-readable plan, emitted before execution."""
        return {
            "prefix": str(self.prefix),
            "dry_run": self.dry_run,
            "actions": {
                "FETCH": [r.to_dict() for r in self.to_fetch()],
                "UNLINK": [r.to_dict() for r in self.unlinks],
                "LINK": [r.to_dict() for r in self.links],
            },
        }

    def summary(self) -> List[str]:
        """Human-readable plan lines."""
        if self.empty:
            return [f"Transaction in {self.prefix}", "  All requested packages already installed"]
        removed = {r.name: r for r in self.unlinks}
        added = {r.name: r for r in self.links}
        lines = [f"Transaction in {self.prefix}", ""]
        counts = {"Install": 0, "Remove": 0, "Upgrade": 0, "Downgrade": 0, "Change": 0}
        for name in sorted(set(removed) | set(added)):
            old, new = removed.get(name), added.get(name)
            if old is None:
                counts["Install"] += 1
                lines.append(f"  + {name} {new.version} {new.build} ({new.channel or 'local'})")
            elif new is None:
                counts["Remove"] += 1
                lines.append(f"  - {name} {old.version} {old.build}")
            else:
                if new.version_order > old.version_order:
                    kind, mark = "Upgrade", "^"
                elif new.version_order < old.version_order:
                    kind, mark = "Downgrade", "v"
                else:
                    kind, mark = "Change", "~"
                counts[kind] += 1
                lines.append(f"  {mark} {name} {old.version} {old.build} -> {new.version} {new.build}"
                             f" ({new.channel or 'local'})")
        lines.append("")
        lines.append("  Summary: " + ", ".join(f"{k}: {v}" for k, v in counts.items() if v))
        return lines

    def prompt(self, confirm: Optional[Callable[[], bool]] = None) -> bool:
        """Move to CONFIRMED or ABORTED; True means ``execute`` may run.

        Dry runs stay PLANNED and return False. Declining writes nothing.
        """
        self._require(TransactionState.PLANNED)
        if self.dry_run:
            logger.info("Dry run: not executing the transaction")
            return False
        if self.empty or self.always_yes:
            self.state = TransactionState.CONFIRMED
            return True
        accepted = bool(confirm()) if confirm is not None else False
        self.state = TransactionState.CONFIRMED if accepted else TransactionState.ABORTED
        if not accepted:
            logger.info("Transaction declined")
        return accepted

    def execute(self) -> None:
        """Run the plan in order.

        Archives are fetched and extracted ahead on a bounded pool while steps
        are applied strictly in plan order. Each step commits by writing (link)
        or deleting (unlink) its snapshot entry; a failing step is undone and
        earlier steps stay applied.

        Raises:
            ExecutionError: on the first failing step; the transaction is then
                ABORTED.
            MambaliteError: if the transaction was not confirmed.
        """
        self._require(TransactionState.CONFIRMED)
        self.state = TransactionState.EXECUTING
        if self.empty:
            self.state = TransactionState.COMPLETED
            return

        futures: Dict[int, Future] = {}
        executor = ThreadPoolExecutor(max_workers=self.extract_threads, thread_name_prefix="extract")
        try:
            with Timer() as t:
                for index, step in enumerate(self.steps):
                    if isinstance(step, Link):
                        futures[index] = executor.submit(self.package_caches.ensure_extracted, step.record)
                for index, step in enumerate(self.steps):
                    try:
                        if isinstance(step, Unlink):
                            self._unlink(step.record)
                        else:
                            self._link(step.record, futures[index].result())
                    except Exception as exc:
                        for future in futures.values():
                            future.cancel()
                        self.state = TransactionState.ABORTED
                        logger.error("Step '%s' failed: %s", step, exc)
                        raise ExecutionError(step, self.committed, self.steps[index + 1:], exc) from exc
                    self.committed.append(step)
                    logger.info("%s done", str(step).capitalize())
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        self.state = TransactionState.COMPLETED
        if is_debug_enabled(logger):
            logger.debug(
                "Transaction completed",
                extra=extra_context(event="transaction", component="transaction", action="execute",
                                    outcome="success", count=len(self.steps), duration_ms=t.duration_ms()),
            )

    def _require(self, state: TransactionState) -> None:
        if self.state is not state:
            raise MambaliteError(f"Transaction is {self.state.value}, expected {state.value}")

    def _unlink(self, record: PackageRecord) -> None:
        files = self.prefix_data.files(record.name)
        trash = self.prefix / Constants.TRASH_DIRNAME / record.dist_name
        moved = link.move_to_trash(self.prefix, files, trash)
        try:
            self.prefix_data.remove(record.name)
        except BaseException:
            link.restore_from_trash(moved)
            raise
        link.purge_trash(self.prefix, trash, moved)

    def _link(self, record: PackageRecord, pkg_dir) -> None:
        trash = self.prefix / Constants.TRASH_DIRNAME / record.dist_name
        files, link_type, clobbered = link.link_package(pkg_dir, self.prefix, trash_dir=trash)
        try:
            self.prefix_data.add(record, files, extracted_package_dir=pkg_dir, link_type=link_type,
                                 requested_spec=self.requested.get(record.name))
        except BaseException:
            link.remove_files(self.prefix, files)
            link.restore_from_trash(clobbered)
            raise
        link.purge_trash(self.prefix, trash, clobbered)

