"""Command line entry point: builds a Context, runs one operation, maps errors to exit codes."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, List, Optional

from . import api
from .args import parse_args
from .common.logging_utils import configure_logging, extra_context, is_debug_enabled, level_for_verbosity
from .config import Context
from .constants import ExitCodes
from .models import Job
from .errors import (
    ConfigError,
    ConflictError,
    ExecutionError,
    FetchError,
    IntegrityError,
    MambaliteError,
)
from .versioning.matchspec import InvalidMatchSpec

logger = logging.getLogger(__name__)

EXIT_CODE_FOR = (
    (ConfigError, ExitCodes.CONFIG_ERROR),
    (FetchError, ExitCodes.CONNECTION_ERROR),
    (ConflictError, ExitCodes.CONFLICT),
    (IntegrityError, ExitCodes.INTEGRITY_ERROR),
    (ExecutionError, ExitCodes.EXECUTION_ERROR),
)


def exit_code_for(exc: BaseException) -> ExitCodes:
    """Exit code of an error; a failed step caused by a hash mismatch counts as an integrity error."""
    if isinstance(exc, ExecutionError) and isinstance(exc.cause, IntegrityError):
        return ExitCodes.INTEGRITY_ERROR
    if isinstance(exc, InvalidMatchSpec):
        return ExitCodes.CONFIG_ERROR
    for error_type, code in EXIT_CODE_FOR:
        if isinstance(exc, error_type):
            return code
    return ExitCodes.EXECUTION_ERROR


def overrides_from_args(args) -> Dict[str, Any]:
    """Translate parsed flags into ``Context`` overrides (unset flags are None)."""
    overrides: Dict[str, Any] = {
        "root_prefix": args.ROOT_PREFIX,
        "channels": args.CHANNELS,
        "always_yes": args.ALWAYS_YES,
        "dry_run": args.DRY_RUN,
        "offline": args.OFFLINE,
        "json": args.JSON,
        "quiet": args.QUIET,
        "verbosity": args.VERBOSITY or None,
        "allow_downgrade": args.ALLOW_DOWNGRADE,
        "ssl_verify": args.SSL_VERIFY,
        "cacert_path": args.CACERT_PATH,
        "repodata_ttl": args.REPODATA_TTL,
        "platform": args.PLATFORM,
        "target_prefix": args.TARGET_PREFIX,
    }
    return overrides


def build_context(args, environ=None) -> Context:
    ctx = Context.from_sources(overrides_from_args(args), config_path=args.RC_FILE, environ=environ)
    if args.ENV_NAME:
        if ctx.root_prefix is None:
            raise ConfigError("--name needs a root prefix")
        ctx.target_prefix = ctx.root_prefix / "envs" / args.ENV_NAME
    return ctx


def ask_confirmation() -> bool:
    try:
        answer = input("Confirm changes: [Y/n] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("", "y", "yes")


def _emit(ctx: Context, lines: List[str]) -> None:
    if ctx.json or ctx.quiet:
        return
    for line in lines:
        print(line)


def run(args, environ=None) -> ExitCodes:
    """Run the parsed command, printing the plan and outcome."""
    ctx = build_context(args, environ)
    configure_logging(level_for_verbosity(ctx.verbosity, ctx.quiet))
    if is_debug_enabled(logger):
        logger.debug("CLI start", extra=extra_context(event="function_entry", component="cli",
                                                     action=args.COMMAND))

    command = args.COMMAND
    create_env = command == "create"
    if command in ("create", "install"):
        jobs = api.install_jobs(ctx, args.SPECS)
        txn = api.plan(ctx, jobs, create_env=create_env)
    elif command == "update":
        txn = api.plan(ctx, api.update_jobs(ctx, args.SPECS, args.UPDATE_ALL))
    else:
        txn = api.plan(ctx, [Job.remove(name) for name in args.SPECS], use_channels=False)

    report = txn.report() if ctx.json else None
    _emit(ctx, txn.summary())
    executed = api.apply(ctx, txn, ask_confirmation, create_env=create_env)
    if report is not None:
        report["success"] = executed or ctx.dry_run or txn.empty
        print(json.dumps(report, indent=2))
    elif executed and not txn.empty:
        _emit(ctx, ["", "Transaction finished"])
    elif not executed and not ctx.dry_run:
        _emit(ctx, ["Aborted"])
    return ExitCodes.SUCCESS


def main(argv: Optional[List[str]] = None, environ=None) -> int:
    """Main function of the program; returns the process exit code."""
    args = parse_args(argv)
    configure_logging(level_for_verbosity(args.VERBOSITY or 0, bool(args.QUIET)))
    try:
        return run(args, environ).value
    except (MambaliteError, InvalidMatchSpec) as exc:
        code = exit_code_for(exc)
        if getattr(args, "JSON", False):
            print(json.dumps({"success": False, "error": str(exc), "error_type": type(exc).__name__}, indent=2))
        elif isinstance(exc, ExecutionError):
            for line in exc.report_lines():
                logger.error(line)
        else:
            logger.error("%s", exc)
        return code.value


def console_main() -> None:
    sys.exit(main())


__all__ = ["main", "console_main", "exit_code_for"]
