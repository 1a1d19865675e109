"""Transaction engine, installed snapshot and package cache."""

from .package_cache import MultiPackageCache, PackageCache, extract_archive
from .prefix_data import PrefixData
from .transaction import Link, Transaction, TransactionState, Unlink, plan_steps

__all__ = [
    "MultiPackageCache",
    "PackageCache",
    "extract_archive",
    "PrefixData",
    "Link",
    "Unlink",
    "Transaction",
    "TransactionState",
    "plan_steps",
]
