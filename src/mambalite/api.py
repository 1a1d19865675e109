"""High level operations: create, install, update and remove.

Each operation validates the context, loads repodata for every configured
channel, solves, and returns a planned ``Transaction``. ``apply`` confirms and
executes it. Nothing here exits the process; errors propagate as
``MambaliteError`` subclasses.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

from .common.http_client import HttpClient
from .common.logging_utils import extra_context, is_debug_enabled, new_correlation_id
from .config import Context
from .constants import Constants
from .errors import ConfigError
from .models import Job
from .repodata.channel import calculate_channel_urls
from .repodata.download import DownloadScheduler, ProgressReporter
from .repodata.subdir import SubdirIndex, load_all
from .solve.pool import INSTALLED_REPO_NAME, Pool
from .solve.solver import Solver
from .transaction.package_cache import MultiPackageCache
from .transaction.prefix_data import PrefixData
from .transaction.transaction import Transaction

logger = logging.getLogger(__name__)

Confirm = Callable[[], bool]


def make_scheduler(ctx: Context, progress: Optional[ProgressReporter] = None) -> DownloadScheduler:
    """Downloader configured from ``ctx`` (TLS policy, timeout, retries, workers)."""
    http = HttpClient(verify=ctx.resolve_ssl_verify(), timeout=ctx.timeout)
    return DownloadScheduler(http, max_workers=ctx.download_threads, retries=ctx.retries,
                             backoff=ctx.retry_backoff, progress=progress)


def load_subdirs(ctx: Context, scheduler: Optional[DownloadScheduler]) -> List[List[SubdirIndex]]:
    """Load repodata for every configured channel; one inner list per channel, in rank order."""
    cache_dir = ctx.repodata_cache_dir
    by_channel: List[List[SubdirIndex]] = []
    ranks = {}
    for channel, subdir, url in calculate_channel_urls(ctx.channels, ctx.platform, ctx.channel_alias):
        if channel.name not in ranks:
            ranks[channel.name] = len(by_channel)
            by_channel.append([])
        by_channel[ranks[channel.name]].append(
            SubdirIndex(channel, subdir, url, cache_dir, offline=ctx.offline, repodata_ttl=ctx.repodata_ttl)
        )
    load_all([s for group in by_channel for s in group], None if ctx.offline else scheduler)
    return by_channel


def build_pool(prefix_data: PrefixData, channels: Sequence[Sequence[SubdirIndex]]) -> Pool:
    """Pool with the installed repo plus one repo per loaded subdir."""
    pool = Pool()
    pool.add_repo(INSTALLED_REPO_NAME, prefix_data.records.values(), installed=True)
    for rank, subdirs in enumerate(channels):
        for subdir in subdirs:
            subdir.create_repo(pool, rank)
    return pool


def _prepare_cache(ctx: Context) -> None:
    try:
        ctx.repodata_cache_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"Cannot create package cache {ctx.repodata_cache_dir}: {exc}") from exc


def plan(ctx: Context, jobs: Sequence[Job], create_env: bool = False,
         scheduler: Optional[DownloadScheduler] = None, use_channels: bool = True) -> Transaction:
    """Solve ``jobs`` for ``ctx.target_prefix`` and return the planned transaction.

    Raises:
        ConfigError: invalid prefixes or unusable cache directories.
        FetchError: repodata could not be obtained.
        ConflictError: the jobs cannot be satisfied.
    """
    new_correlation_id()
    ctx.validate(create_env=create_env)
    _prepare_cache(ctx)
    if scheduler is None and use_channels and not ctx.offline:
        scheduler = make_scheduler(ctx)

    prefix_data = PrefixData(ctx.target_prefix).load()
    channels = load_subdirs(ctx, scheduler) if use_channels else []
    pool = build_pool(prefix_data, channels)
    if is_debug_enabled(logger):
        logger.debug(
            "Pool built",
            extra=extra_context(event="pool", component="api", action="build", count=len(pool),
                                target=str(ctx.target_prefix)),
        )

    resolved = Solver(pool, ctx).solve(jobs)
    caches = MultiPackageCache(ctx.pkgs_cache_dirs, None if ctx.offline else scheduler)
    return Transaction(resolved, prefix_data, caches, ctx)


def apply(ctx: Context, txn: Transaction, confirm: Optional[Confirm] = None, create_env: bool = False) -> bool:
    """Confirm and execute ``txn``; returns True when it ran.

    Raises:
        ExecutionError: a step failed; earlier steps stay applied.
    """
    if not txn.prompt(confirm):
        return False
    if create_env:
        try:
            (ctx.target_prefix / Constants.CONDA_META_DIRNAME).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"Cannot create environment {ctx.target_prefix}: {exc}") from exc
    txn.execute()
    logger.info("Transaction finished in %s", ctx.target_prefix)
    return True


def install_jobs(ctx: Context, specs: Sequence[str]) -> List[Job]:
    return [Job.parse_install(spec, allow_downgrade=ctx.allow_downgrade) for spec in specs]


def create(ctx: Context, specs: Sequence[str], confirm: Optional[Confirm] = None) -> Transaction:
    txn = plan(ctx, install_jobs(ctx, specs), create_env=True)
    apply(ctx, txn, confirm, create_env=True)
    return txn


def install(ctx: Context, specs: Sequence[str], confirm: Optional[Confirm] = None) -> Transaction:
    txn = plan(ctx, install_jobs(ctx, specs))
    apply(ctx, txn, confirm)
    return txn


def update_jobs(ctx: Context, specs: Sequence[str], update_all: bool = False) -> List[Job]:
    """Update jobs for ``specs``, or for every installed package with ``update_all``."""
    if update_all:
        ctx.validate()
        specs = list(PrefixData(ctx.target_prefix).load().records)
    return [Job.update(spec, allow_downgrade=ctx.allow_downgrade) for spec in specs]


def update(ctx: Context, specs: Sequence[str], update_all: bool = False,
           confirm: Optional[Confirm] = None) -> Transaction:
    txn = plan(ctx, update_jobs(ctx, specs, update_all))
    apply(ctx, txn, confirm)
    return txn


def remove(ctx: Context, names: Sequence[str], confirm: Optional[Confirm] = None) -> Transaction:
    """Remove ``names`` and whatever only they kept installable.

    Only the installed repo is consulted, so removal never touches the network.
    """
    txn = plan(ctx, [Job.remove(name) for name in names], use_channels=False)
    apply(ctx, txn, confirm)
    return txn
