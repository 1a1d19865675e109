"""Placing extracted package files into a prefix and taking them out again."""

from __future__ import annotations

import logging
import os
import re
import shlex
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..constants import Constants
from ..errors import MambaliteError

logger = logging.getLogger(__name__)

LINK_HARD = "hardlink"
LINK_COPY = "copy"


def read_paths(pkg_dir: Path) -> List[str]:
    """Relative paths a package places, from ``info/files`` or a directory walk."""
    listing = pkg_dir / "info" / "files"
    if listing.is_file():
        with open(listing, "r", encoding="utf-8") as fh:
            return [line.strip() for line in fh if line.strip()]
    out: List[str] = []
    for root, dirs, files in os.walk(pkg_dir):
        rel_root = Path(root).relative_to(pkg_dir)
        if rel_root.parts[:1] == ("info",):
            continue
        for name in files + [d for d in dirs if (Path(root) / d).is_symlink()]:
            rel = (rel_root / name).as_posix()
            if rel.startswith("info/"):
                continue
            out.append(rel)
    return sorted(out)


def read_has_prefix(pkg_dir: Path) -> Dict[str, Tuple[str, str]]:
    """Parse ``info/has_prefix`` into ``{path: (placeholder, mode)}``.

    Lines are either ``<path>`` (text mode, default placeholder) or
    ``<placeholder> <text|binary> <path>``.
    """
    path = pkg_dir / "info" / "has_prefix"
    out: Dict[str, Tuple[str, str]] = {}
    if not path.is_file():
        return out
    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            parts = shlex.split(line)
            if len(parts) == 1:
                out[parts[0]] = (Constants.PREFIX_PLACEHOLDER, "text")
            elif len(parts) == 3:
                out[parts[2]] = (parts[0], parts[1])
            else:
                logger.warning("Ignoring malformed has_prefix line in %s: %r", pkg_dir.name, line)
    return out


def replace_prefix(data: bytes, placeholder: str, new_prefix: str, mode: str) -> bytes:
    """Replace ``placeholder`` with ``new_prefix`` in file content.

    Binary mode keeps every string the same length by NUL padding, so the new
    prefix may not be longer than the placeholder.

    Raises:
        ValueError: for an unknown mode or a too long prefix in binary mode.
    """
    old = placeholder.encode("utf-8")
    new = new_prefix.encode("utf-8")
    if mode == "text":
        return data.replace(old, new)
    if mode != "binary":
        raise ValueError(f"Unknown prefix replacement mode {mode!r}")
    if len(new) > len(old):
        raise ValueError(f"Prefix {new_prefix!r} is longer than the placeholder; cannot patch binary file")
    padding = len(old) - len(new)
    pattern = re.compile(re.escape(old) + b"([^\0]*?)\0")
    return pattern.sub(lambda m: new + m.group(1) + b"\0" * (padding + 1), data)


def contained_path(root: Path, rel: str) -> Path:
    """``root / rel``, refusing paths that do not stay inside ``root``.

    Symlinks already present under ``root`` are followed when checking the
    parent directory, so a path cannot leave ``root`` through one either.

    Raises:
        MambaliteError: for empty or absolute paths and paths escaping ``root``.
    """
    if not rel or os.path.isabs(rel):
        raise MambaliteError(f"Package path outside {root}: {rel!r}")
    base = os.path.realpath(root)
    path = root / rel
    parent = os.path.realpath(path.parent)
    target = os.path.normpath(os.path.join(parent, path.name))
    if not _within(base, parent) or target == base or not _within(base, target):
        raise MambaliteError(f"Package path outside {root}: {rel!r}")
    return path


def _within(base: str, path: str) -> bool:
    return path == base or os.path.commonpath([base, path]) == base


def link_package(pkg_dir: Path, prefix: Path, link_type: str = LINK_HARD,
                 trash_dir: Optional[Path] = None) -> Tuple[List[str], str, List[Tuple[Path, Path]]]:
    """Link every file of an extracted package into ``prefix``.

    Returns the placed relative paths, the link type actually used (``copy``
    as soon as one hard link fell back to copying) and the ``(original,
    trashed)`` pairs of files that were in the way. Those are moved into
    ``trash_dir`` (default ``<prefix>/.trash/<package dir name>``); the caller
    restores them with ``restore_from_trash`` or drops them with
    ``purge_trash``. On failure the files placed so far are removed and the
    displaced ones put back before the error propagates.
    """
    if trash_dir is None:
        trash_dir = prefix / Constants.TRASH_DIRNAME / pkg_dir.name
    has_prefix = read_has_prefix(pkg_dir)
    placed: List[str] = []
    clobbered: List[Tuple[Path, Path]] = []
    used = link_type
    try:
        for rel in read_paths(pkg_dir):
            src = contained_path(pkg_dir, rel)
            dst = contained_path(prefix, rel)
            dst.parent.mkdir(parents=True, exist_ok=True)
            if os.path.lexists(dst):
                logger.warning("Clobbering existing file %s", dst)
                clobbered.extend(move_to_trash(prefix, [rel], trash_dir))
            if src.is_symlink():
                os.symlink(os.readlink(src), dst)
            elif rel in has_prefix:
                placeholder, mode = has_prefix[rel]
                with open(src, "rb") as fh:
                    data = fh.read()
                with open(dst, "wb") as fh:
                    fh.write(replace_prefix(data, placeholder, str(prefix), mode))
                shutil.copymode(src, dst)
            elif used == LINK_HARD:
                try:
                    os.link(src, dst)
                except OSError:
                    logger.debug("Hard link failed for %s, copying instead", rel)
                    used = LINK_COPY
                    shutil.copy2(src, dst)
            else:
                shutil.copy2(src, dst)
            placed.append(rel)
    except BaseException:
        remove_files(prefix, placed)
        restore_from_trash(clobbered)
        raise
    return placed, used, clobbered


def remove_files(prefix: Path, files: Sequence[str]) -> None:
    """Remove ``files`` (relative to ``prefix``) and any directories left empty.

    Entries pointing outside ``prefix`` are skipped with a warning.
    """
    dirs = set()
    for rel in files:
        try:
            path = contained_path(prefix, rel)
        except MambaliteError:
            logger.warning("Not removing %r: outside %s", rel, prefix)
            continue
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        dirs.update(_parents_within(prefix, path))
    _prune_dirs(prefix, dirs)


def move_to_trash(prefix: Path, files: Sequence[str], trash_dir: Path) -> List[Tuple[Path, Path]]:
    """Move ``files`` into ``trash_dir`` keeping their layout.

    Returns ``(original, trashed)`` pairs for ``restore_from_trash``. Missing
    files are skipped. On failure, including an entry pointing outside
    ``prefix``, the files moved so far are put back.
    """
    moved: List[Tuple[Path, Path]] = []
    try:
        for rel in files:
            src = contained_path(prefix, rel)
            if not os.path.lexists(src):
                logger.debug("File %s already missing", src)
                continue
            dst = trash_dir / rel
            dst.parent.mkdir(parents=True, exist_ok=True)
            os.replace(src, dst)
            moved.append((src, dst))
    except BaseException:
        restore_from_trash(moved)
        raise
    return moved


def restore_from_trash(moved: Sequence[Tuple[Path, Path]]) -> None:
    for original, trashed in reversed(moved):
        original.parent.mkdir(parents=True, exist_ok=True)
        os.replace(trashed, original)


def purge_trash(prefix: Path, trash_dir: Path, moved: Sequence[Tuple[Path, Path]]) -> None:
    """Delete the trash area and prune directories the move left empty."""
    shutil.rmtree(trash_dir, ignore_errors=True)
    try:
        trash_dir.parent.rmdir()
    except OSError:
        pass
    dirs = set()
    for original, _ in moved:
        dirs.update(_parents_within(prefix, original))
    _prune_dirs(prefix, dirs)


def _parents_within(prefix: Path, path: Path) -> List[Path]:
    out = []
    parent = path.parent
    while parent != prefix and prefix in parent.parents:
        out.append(parent)
        parent = parent.parent
    return out


def _prune_dirs(prefix: Path, dirs) -> None:
    # deepest first
    for directory in sorted(dirs, key=lambda p: len(p.parts), reverse=True):
        try:
            directory.rmdir()
        except OSError:
            pass
