"""Runtime configuration passed explicitly to the pool, solver and transaction.

Precedence, highest first: explicit overrides (CLI), environment variables,
the YAML rc file, built-in defaults. Nothing here is process-global; two
``Context`` values can drive two independent invocations in one process.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .constants import Constants
from .errors import ConfigError
from .repodata.channel import context_platform

logger = logging.getLogger(__name__)

_PATH_KEYS = ("root_prefix", "target_prefix", "cacert_path")
_LIST_KEYS = ("channels", "pkgs_dirs")
_BOOL_KEYS = ("always_yes", "dry_run", "offline", "json", "quiet", "ssl_verify", "allow_downgrade")
_INT_KEYS = ("verbosity", "download_threads", "extract_threads", "retries", "repodata_ttl")
_FLOAT_KEYS = ("retry_backoff", "timeout")


@dataclass
class Context:
    """All settings of one invocation."""

    root_prefix: Optional[Path] = None
    target_prefix: Optional[Path] = None
    channels: List[str] = field(default_factory=lambda: list(Constants.DEFAULT_CHANNELS))
    channel_alias: str = Constants.CHANNEL_ALIAS
    platform: str = field(default_factory=context_platform)
    pkgs_dirs: List[Path] = field(default_factory=list)

    always_yes: bool = False
    dry_run: bool = False
    offline: bool = False
    json: bool = False
    quiet: bool = False
    verbosity: int = 0

    ssl_verify: bool = True
    cacert_path: Optional[Path] = None

    allow_downgrade: bool = False
    download_threads: int = Constants.DOWNLOAD_THREADS
    extract_threads: int = Constants.EXTRACT_THREADS
    retries: int = Constants.HTTP_RETRY_MAX
    retry_backoff: float = Constants.HTTP_RETRY_BASE_DELAY_SEC
    timeout: float = Constants.REQUEST_TIMEOUT
    repodata_ttl: int = 0

    @classmethod
    def from_sources(
        cls,
        overrides: Optional[Mapping[str, Any]] = None,
        config_path: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Context":
        """Build a context from defaults, rc file, environment and overrides.

        Args:
            overrides: Highest-precedence values (typically parsed CLI flags);
                ``None`` values are ignored.
            config_path: Explicit rc file. Without it ``<root_prefix>/.mambarc``
                and then ``~/.mambarc`` are tried.
            environ: Environment mapping, defaults to ``os.environ``.

        Raises:
            ConfigError: if the rc file is unreadable or holds invalid values.
        """
        environ = os.environ if environ is None else environ
        overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

        env_values: Dict[str, Any] = {}
        if environ.get(Constants.ENV_ROOT_PREFIX):
            env_values["root_prefix"] = environ[Constants.ENV_ROOT_PREFIX]
        if environ.get(Constants.ENV_TARGET_PREFIX):
            env_values["target_prefix"] = environ[Constants.ENV_TARGET_PREFIX]

        root_hint = overrides.get("root_prefix") or env_values.get("root_prefix")
        rc_values = load_rc_file(config_path, root_hint)

        merged: Dict[str, Any] = {}
        merged.update(rc_values)
        merged.update(env_values)
        merged.update(overrides)
        return cls()._with(merged)

    def _with(self, values: Mapping[str, Any]) -> "Context":
        known = {f.name for f in fields(self)}
        unknown = sorted(set(values) - known)
        if unknown:
            logger.warning("Ignoring unknown configuration keys: %s", ", ".join(unknown))
        coerced = {k: _coerce(k, v) for k, v in values.items() if k in known}
        return replace(self, **coerced)

    @property
    def pkgs_cache_dirs(self) -> List[Path]:
        """Package caches in priority order (``<root>/pkgs`` unless configured)."""
        if self.pkgs_dirs:
            return list(self.pkgs_dirs)
        if self.root_prefix is None:
            return []
        return [self.root_prefix / Constants.PKGS_DIRNAME]

    @property
    def repodata_cache_dir(self) -> Path:
        dirs = self.pkgs_cache_dirs
        if not dirs:
            raise ConfigError("No package cache directory configured (set a root prefix)")
        return dirs[0] / Constants.CACHE_DIRNAME

    def validate(self, create_env: bool = False) -> None:
        """Check prefixes before any I/O.

        Raises:
            ConfigError: when the root prefix or target prefix is unset, the
                target does not exist (install) or already exists (create).
        """
        if self.root_prefix is None:
            raise ConfigError(
                f"No root prefix set. Set the {Constants.ENV_ROOT_PREFIX} environment "
                "variable or pass --root-prefix."
            )
        if self.target_prefix is None:
            raise ConfigError("No target prefix. Activate an environment or pass --prefix.")
        exists = self.target_prefix.exists()
        if create_env and exists:
            raise ConfigError(f"Prefix already exists: {self.target_prefix}")
        if not create_env and not exists:
            raise ConfigError(f"Prefix does not exist: {self.target_prefix}")
        if self.download_threads < 1 or self.extract_threads < 1:
            raise ConfigError("Thread counts must be at least 1")
        if self.retries < 0:
            raise ConfigError("retries must be >= 0")

    def resolve_ssl_verify(self) -> Union[bool, str]:
        """Return the ``requests`` ``verify`` value for this context.

        ``ssl_verify: false`` disables verification, an explicit CA path wins,
        otherwise the first well-known system bundle is used and, when none is
        found, ``requests``' bundled certificates.
        """
        if not self.ssl_verify:
            return False
        if self.cacert_path is not None:
            if not self.cacert_path.exists():
                raise ConfigError(f"CA certificate path does not exist: {self.cacert_path}")
            return str(self.cacert_path)
        for location in Constants.CA_BUNDLE_LOCATIONS:
            if os.path.exists(location):
                return location
        logger.warning("No system CA certificates found, using the bundled certificates")
        return True


def load_rc_file(config_path: Optional[Union[str, Path]], root_prefix: Optional[Any] = None) -> Dict[str, Any]:
    """Load a YAML rc file; returns ``{}`` when no candidate exists.

    Raises:
        ConfigError: when an explicitly given file is missing, or any rc file
            is not valid YAML or not a mapping.
    """
    candidates: List[Path] = []
    if config_path:
        path = Path(config_path).expanduser()
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        candidates.append(path)
    else:
        if root_prefix:
            candidates.append(Path(root_prefix).expanduser() / Constants.RC_FILENAME)
        candidates.append(Path.home() / Constants.RC_FILENAME)

    for path in candidates:
        if not path.is_file():
            continue
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Failed to load config {path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        logger.info("Loaded configuration from %s", path)
        return dict(data)
    return {}


def _coerce(key: str, value: Any) -> Any:
    try:
        if key in _PATH_KEYS:
            return Path(os.path.expandvars(str(value))).expanduser().resolve() if value else None
        if key in _LIST_KEYS:
            items = [value] if isinstance(value, str) else list(value)
            if key == "pkgs_dirs":
                return [Path(os.path.expandvars(str(i))).expanduser().resolve() for i in items]
            return [str(i) for i in items]
        if key in _BOOL_KEYS:
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in ("1", "true", "yes", "on"):
                    return True
                if lowered in ("0", "false", "no", "off"):
                    return False
                raise ValueError(f"not a boolean: {value!r}")
            return bool(value)
        if key in _INT_KEYS:
            return int(value)
        if key in _FLOAT_KEYS:
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {key}: {value!r} ({exc})") from exc
    return value
