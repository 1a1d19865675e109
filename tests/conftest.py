"""Shared fixtures: local file:// channels with real package archives."""

import hashlib
import io
import json
import os
import tarfile
import time
import zipfile
from pathlib import Path

import pytest
import zstandard

from mambalite.common.http_client import path_to_file_url
from mambalite.config import Context
from mambalite.models import PackageRecord

PLATFORM = "linux-64"


def _tar_bytes(members, mode="w"):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode=mode) as tar:
        for rel, data in sorted(members.items()):
            info = tarfile.TarInfo(rel)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def build_archive(path, index, files, has_prefix=None):
    """Write a .tar.bz2 or .conda package at ``path`` and return its bytes."""
    info = {
        "info/index.json": json.dumps(index).encode(),
        "info/files": ("\n".join(sorted(files)) + "\n").encode(),
    }
    if has_prefix:
        info["info/has_prefix"] = ("\n".join(has_prefix) + "\n").encode()
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.name.endswith(".conda"):
        stem = path.name[: -len(".conda")]
        cctx = zstandard.ZstdCompressor()
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("metadata.json", json.dumps({"conda_pkg_format_version": 2}))
            zf.writestr(f"info-{stem}.tar.zst", cctx.compress(_tar_bytes(info)))
            zf.writestr(f"pkg-{stem}.tar.zst", cctx.compress(_tar_bytes(files)))
    else:
        members = dict(files)
        members.update(info)
        path.write_bytes(_tar_bytes(members, mode="w:bz2"))
    return path.read_bytes()


class LocalChannel:
    """A channel directory served through file:// URLs.

    ``repodata.json`` of every subdir is rewritten after each ``add`` with a
    strictly increasing whole-second mtime, so conditional requests always see
    the change.
    """

    def __init__(self, root, subdirs=(PLATFORM, "noarch")):
        self.root = Path(root)
        self._stamp = int(time.time())
        self.repodata = {s: {"info": {"subdir": s}, "packages": {}, "packages.conda": {}} for s in subdirs}
        self.write()

    @property
    def url(self):
        return path_to_file_url(self.root)

    def add(self, name, version, build="0", *, depends=(), constrains=(), build_number=0,
            subdir=PLATFORM, files=None, fmt=".tar.bz2", has_prefix=None):
        fn = f"{name}-{version}-{build}{fmt}"
        if files is None:
            files = {f"lib/{name}.txt": f"{name} {version}\n".encode()}
        index = {"name": name, "version": version, "build": build, "build_number": build_number,
                 "depends": list(depends), "subdir": subdir}
        data = build_archive(self.root / subdir / fn, index, files, has_prefix)
        entry = dict(index)
        entry.update({
            "constrains": list(constrains),
            "size": len(data),
            "md5": hashlib.md5(data).hexdigest(),
            "sha256": hashlib.sha256(data).hexdigest(),
        })
        key = "packages.conda" if fmt == ".conda" else "packages"
        self.repodata[subdir][key][fn] = entry
        self.write()
        return self.record(fn, subdir)

    def record(self, fn, subdir=PLATFORM):
        key = "packages.conda" if fn.endswith(".conda") else "packages"
        entry = self.repodata[subdir][key][fn]
        return PackageRecord.from_dict(entry, channel=self.root.name, subdir=subdir, fn=fn,
                                       url=f"{self.url}/{subdir}/{fn}")

    def write(self):
        self._stamp += 2
        for subdir, data in self.repodata.items():
            target = self.root / subdir / "repodata.json"
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(json.dumps(data, indent=1, sort_keys=True))
            os.utime(target, (self._stamp, self._stamp))


def rec(name, version, build="0", depends=(), **kwargs):
    """Shorthand for an in-memory record."""
    kwargs.setdefault("channel", "test")
    kwargs.setdefault("subdir", PLATFORM)
    return PackageRecord(name=name, version=version, build=build, depends=tuple(depends), **kwargs)


@pytest.fixture
def channel(tmp_path):
    return LocalChannel(tmp_path / "channel")


@pytest.fixture
def make_context(tmp_path):
    """Factory for a Context rooted in ``tmp_path``."""

    def _make(channels, **overrides):
        values = dict(
            root_prefix=tmp_path / "root",
            target_prefix=tmp_path / "env",
            channels=[c.url if isinstance(c, LocalChannel) else c for c in channels],
            platform=PLATFORM,
            always_yes=True,
            retries=0,
            retry_backoff=0.0,
        )
        values.update(overrides)
        return Context(**values)

    return _make
