"""Repodata acquisition: channels, downloads and cached subdir indexes."""

from .channel import Channel, calculate_channel_urls, context_platform
from .download import DownloadResult, DownloadScheduler, DownloadTarget, ProgressReporter
from .subdir import SubdirIndex, cache_fn_url, load_all

__all__ = [
    "Channel",
    "calculate_channel_urls",
    "context_platform",
    "DownloadResult",
    "DownloadScheduler",
    "DownloadTarget",
    "ProgressReporter",
    "SubdirIndex",
    "cache_fn_url",
    "load_all",
]
