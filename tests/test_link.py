"""Tests for file placement and the installed snapshot."""

import json
import logging
import os

import pytest

from mambalite.constants import Constants
from mambalite.errors import MambaliteError
from mambalite.transaction import link
from mambalite.transaction.prefix_data import PrefixData

from conftest import rec

PLACEHOLDER = Constants.PREFIX_PLACEHOLDER


def _package(root, files, has_prefix=None):
    for rel, data in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    (root / "info").mkdir(parents=True, exist_ok=True)
    (root / "info" / "files").write_text("\n".join(sorted(files)) + "\n")
    if has_prefix:
        (root / "info" / "has_prefix").write_text("\n".join(has_prefix) + "\n")
    return root


class TestReplacePrefix:
    """Relocation of the build-time placeholder."""

    def test_text_mode(self):
        data = f"prefix={PLACEHOLDER}\nlib={PLACEHOLDER}/lib\n".encode()
        out = link.replace_prefix(data, PLACEHOLDER, "/envs/x", "text")
        assert out == b"prefix=/envs/x\nlib=/envs/x/lib\n"

    def test_binary_mode_keeps_length(self):
        data = b"\x7fELF" + PLACEHOLDER.encode() + b"/lib\0tail"
        out = link.replace_prefix(data, PLACEHOLDER, "/p", "binary")
        assert len(out) == len(data)
        assert out.startswith(b"\x7fELF/p/lib\0")
        assert out.endswith(b"\0tail")

    def test_binary_mode_rejects_longer_prefix(self):
        with pytest.raises(ValueError):
            link.replace_prefix(PLACEHOLDER.encode() + b"\0", PLACEHOLDER, "/" + "x" * 64, "binary")

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            link.replace_prefix(b"", PLACEHOLDER, "/p", "magic")


class TestReadPackageInfo:
    """Parsing of the info/ metadata."""

    def test_has_prefix_forms(self, tmp_path):
        pkg = _package(tmp_path / "pkg", {}, has_prefix=[
            "bin/script",
            f'{PLACEHOLDER} binary "lib/with space.so"',
            "only two",
        ])
        assert link.read_has_prefix(pkg) == {
            "bin/script": (PLACEHOLDER, "text"),
            "lib/with space.so": (PLACEHOLDER, "binary"),
        }

    def test_paths_fall_back_to_walking(self, tmp_path):
        pkg = tmp_path / "pkg"
        (pkg / "lib").mkdir(parents=True)
        (pkg / "lib" / "a.txt").write_text("a")
        (pkg / "info").mkdir()
        (pkg / "info" / "index.json").write_text("{}")
        assert link.read_paths(pkg) == ["lib/a.txt"]


class TestLinkPackage:
    """Placing files into a prefix."""

    def test_links_files_and_symlinks(self, tmp_path):
        pkg = _package(tmp_path / "pkg", {"lib/libfoo.so.1": b"elf"})
        os.symlink("libfoo.so.1", pkg / "lib" / "libfoo.so")
        (pkg / "info" / "files").write_text("lib/libfoo.so\nlib/libfoo.so.1\n")
        prefix = tmp_path / "env"

        placed, used, clobbered = link.link_package(pkg, prefix)

        assert sorted(placed) == ["lib/libfoo.so", "lib/libfoo.so.1"]
        assert used == link.LINK_HARD
        assert clobbered == []
        assert os.readlink(prefix / "lib" / "libfoo.so") == "libfoo.so.1"
        assert (prefix / "lib" / "libfoo.so.1").read_bytes() == b"elf"

    def test_failure_removes_placed_files(self, tmp_path):
        pkg = _package(tmp_path / "pkg", {"a/first.txt": b"1"})
        (pkg / "info" / "files").write_text("a/first.txt\nb/missing.txt\n")
        prefix = tmp_path / "env"

        with pytest.raises(OSError):
            link.link_package(pkg, prefix, link_type=link.LINK_COPY)

        assert not (prefix / "a" / "first.txt").exists()
        assert not (prefix / "a").exists()

    def test_clobbered_file_is_kept_in_trash(self, tmp_path):
        pkg = _package(tmp_path / "pkg-1.0-0", {"share/common.txt": b"new"})
        prefix = tmp_path / "env"
        (prefix / "share").mkdir(parents=True)
        (prefix / "share" / "common.txt").write_bytes(b"old")

        _, _, clobbered = link.link_package(pkg, prefix)

        trash = prefix / Constants.TRASH_DIRNAME / "pkg-1.0-0"
        assert clobbered == [(prefix / "share" / "common.txt", trash / "share" / "common.txt")]
        assert (prefix / "share" / "common.txt").read_bytes() == b"new"
        assert (trash / "share" / "common.txt").read_bytes() == b"old"

    def test_failure_restores_clobbered_file(self, tmp_path):
        pkg = _package(tmp_path / "pkg", {"share/common.txt": b"new"})
        (pkg / "info" / "files").write_text("share/common.txt\nshare/missing.txt\n")
        prefix = tmp_path / "env"
        (prefix / "share").mkdir(parents=True)
        (prefix / "share" / "common.txt").write_bytes(b"old")

        with pytest.raises(OSError):
            link.link_package(pkg, prefix, link_type=link.LINK_COPY)

        assert (prefix / "share" / "common.txt").read_bytes() == b"old"

    @pytest.mark.parametrize("entry", ["../outside.txt", "lib/../../outside.txt", "/tmp/outside.txt"])
    def test_paths_outside_the_package_are_rejected(self, tmp_path, entry):
        pkg = _package(tmp_path / "pkg", {"lib/ok.txt": b"ok"})
        (pkg / "info" / "files").write_text(f"lib/ok.txt\n{entry}\n")
        (tmp_path / "outside.txt").write_bytes(b"secret")
        prefix = tmp_path / "env"

        with pytest.raises(MambaliteError, match="outside"):
            link.link_package(pkg, prefix)

        assert not (prefix / "lib" / "ok.txt").exists()
        assert (tmp_path / "outside.txt").read_bytes() == b"secret"

    def test_prefix_symlink_leading_outside_is_rejected(self, tmp_path):
        pkg = _package(tmp_path / "pkg", {"lib/x.txt": b"x"})
        prefix = tmp_path / "env"
        prefix.mkdir()
        (tmp_path / "elsewhere").mkdir()
        os.symlink(tmp_path / "elsewhere", prefix / "lib")

        with pytest.raises(MambaliteError, match="outside"):
            link.link_package(pkg, prefix)

        assert not (tmp_path / "elsewhere" / "x.txt").exists()

    def test_remove_files_skips_paths_outside_prefix(self, tmp_path, caplog):
        prefix = tmp_path / "env"
        prefix.mkdir()
        victim = tmp_path / "victim.txt"
        victim.write_text("keep")

        with caplog.at_level(logging.WARNING):
            link.remove_files(prefix, ["../victim.txt"])

        assert victim.read_text() == "keep"
        assert "outside" in caplog.text

    def test_trash_rejects_paths_outside_prefix(self, tmp_path):
        prefix = tmp_path / "env"
        (prefix / "lib").mkdir(parents=True)
        (prefix / "lib" / "x.txt").write_text("x")
        (tmp_path / "victim.txt").write_text("keep")
        trash = prefix / Constants.TRASH_DIRNAME / "pkg-1.0-0"

        with pytest.raises(MambaliteError):
            link.move_to_trash(prefix, ["lib/x.txt", "../victim.txt"], trash)

        assert (prefix / "lib" / "x.txt").read_text() == "x"
        assert (tmp_path / "victim.txt").read_text() == "keep"

    def test_trash_round_trip(self, tmp_path):
        prefix = tmp_path / "env"
        (prefix / "lib").mkdir(parents=True)
        (prefix / "lib" / "x.txt").write_text("x")
        trash = prefix / Constants.TRASH_DIRNAME / "pkg-1.0-0"

        moved = link.move_to_trash(prefix, ["lib/x.txt", "lib/gone.txt"], trash)
        assert not (prefix / "lib" / "x.txt").exists()
        link.restore_from_trash(moved)
        assert (prefix / "lib" / "x.txt").read_text() == "x"

        moved = link.move_to_trash(prefix, ["lib/x.txt"], trash)
        link.purge_trash(prefix, trash, moved)
        assert not (prefix / Constants.TRASH_DIRNAME).exists()
        assert not (prefix / "lib").exists()


class TestPrefixData:
    """The conda-meta snapshot."""

    def test_add_and_reload(self, tmp_path):
        data = PrefixData(tmp_path)
        data.add(rec("foo", "1.0"), ["lib/b", "lib/a"], extracted_package_dir=tmp_path / "pkgs" / "foo-1.0-0",
                 link_type="copy", requested_spec="foo >=1")

        loaded = PrefixData(tmp_path).load()

        assert list(loaded.records) == ["foo"]
        assert loaded.files("foo") == ["lib/a", "lib/b"]
        entry = loaded.entry("foo")
        assert entry["requested_spec"] == "foo >=1"
        assert entry["link"] == {"source": str(tmp_path / "pkgs" / "foo-1.0-0"), "type": "copy"}
        assert loaded.meta_path(loaded.get("foo")).name == "foo-1.0-0.json"

    def test_invalid_entries_are_skipped(self, tmp_path, caplog):
        meta = tmp_path / "conda-meta"
        meta.mkdir()
        (meta / "broken.json").write_text("{")
        (meta / "noname.json").write_text(json.dumps({"version": "1.0", "build": "0"}))
        PrefixData(tmp_path).add(rec("ok", "1.0"), [])

        with caplog.at_level(logging.WARNING):
            loaded = PrefixData(tmp_path).load()

        assert list(loaded.records) == ["ok"]
        assert caplog.text.count("Ignoring invalid snapshot entry") == 2

    def test_remove(self, tmp_path):
        data = PrefixData(tmp_path)
        data.add(rec("foo", "1.0"), [])
        data.remove("foo")
        assert data.get("foo") is None
        assert not (tmp_path / "conda-meta" / "foo-1.0-0.json").exists()
        with pytest.raises(KeyError):
            data.remove("foo")
