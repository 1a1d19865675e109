"""End to end tests of the command line against a file:// channel."""

import json
import shutil

import pytest

from mambalite.args import parse_args
from mambalite.cli import build_context, exit_code_for, main
from mambalite.constants import ExitCodes
from mambalite.errors import ConfigError, ExecutionError, FetchError, IntegrityError
from mambalite.versioning.matchspec import InvalidMatchSpec


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))


@pytest.fixture
def run(tmp_path, channel):
    """Run the CLI with the test channel, root and prefix; returns the exit code."""

    def _run(command, *args, channels=None):
        argv = [command, "-p", str(tmp_path / "env"), "-r", str(tmp_path / "root"), "--platform", "linux-64"]
        for url in channels or [channel.url]:
            argv += ["-c", url]
        return main(argv + list(args), environ={})

    return _run


class TestArgs:
    """Parser behaviour."""

    def test_install_requires_specs(self):
        with pytest.raises(SystemExit):
            parse_args(["install"])

    def test_update_requires_specs_or_all(self):
        with pytest.raises(SystemExit):
            parse_args(["update"])
        assert parse_args(["update", "--all"]).UPDATE_ALL

    def test_prefix_and_name_are_exclusive(self):
        with pytest.raises(SystemExit):
            parse_args(["install", "-p", "/x", "-n", "env", "foo"])

    def test_unset_flags_are_none(self):
        args = parse_args(["install", "foo"])
        assert args.ALWAYS_YES is None
        assert args.CHANNELS is None
        assert args.SPECS == ["foo"]

    def test_name_resolves_under_root(self, tmp_path):
        args = parse_args(["create", "-n", "work", "-r", str(tmp_path)])
        ctx = build_context(args, environ={})
        assert ctx.target_prefix == tmp_path.resolve() / "envs" / "work"

    def test_name_without_root(self):
        args = parse_args(["create", "-n", "work"])
        with pytest.raises(ConfigError):
            build_context(args, environ={})


class TestExitCodes:
    """Mapping of errors onto process exit codes."""

    @pytest.mark.parametrize("exc,code", [
        (ConfigError("x"), ExitCodes.CONFIG_ERROR),
        (FetchError("x"), ExitCodes.CONNECTION_ERROR),
        (IntegrityError("x"), ExitCodes.INTEGRITY_ERROR),
        (ExecutionError("link foo", [], [], OSError("disk full")), ExitCodes.EXECUTION_ERROR),
        (ExecutionError("link foo", [], [], IntegrityError("bad hash")), ExitCodes.INTEGRITY_ERROR),
        (InvalidMatchSpec("x"), ExitCodes.CONFIG_ERROR),
    ])
    def test_mapping(self, exc, code):
        assert exit_code_for(exc) is code

    def test_missing_root_prefix(self, tmp_path):
        assert main(["install", "-p", str(tmp_path), "foo"], environ={}) == 1

    def test_invalid_spec(self, run):
        assert run("create", "-y", "foo >=") == 1

    def test_unreachable_channel(self, run, tmp_path):
        assert run("create", "-y", "foo", channels=["file://" + str(tmp_path / "nowhere")]) == 2

    def test_conflict(self, run, channel):
        channel.add("foo", "1.0")
        channel.add("foo", "2.0")
        assert run("create", "-y", "foo==1.0", "foo==2.0") == 3

    def test_unknown_package(self, run, channel, capsys):
        channel.add("foo", "1.0")
        assert run("create", "-y", "ghost", "--json") == 3
        out = json.loads(capsys.readouterr().out)
        assert out["success"] is False
        assert out["error_type"] == "ConflictError"
        assert "nothing provides ghost" in out["error"]


class TestCommands:
    """Full create/install/update/remove cycles."""

    def test_create_install_update_remove(self, run, channel, tmp_path):
        env = tmp_path / "env"
        channel.add("foo", "1.0", depends=["bar"])
        channel.add("bar", "1.0")

        assert run("create", "-y", "foo") == 0
        assert (env / "lib" / "foo.txt").read_text() == "foo 1.0\n"
        assert (env / "lib" / "bar.txt").is_file()

        channel.add("baz", "0.1", subdir="noarch")
        assert run("install", "-y", "baz") == 0
        assert (env / "lib" / "baz.txt").is_file()

        channel.add("foo", "2.0", depends=["bar"])
        assert run("update", "-y", "foo") == 0
        assert (env / "lib" / "foo.txt").read_text() == "foo 2.0\n"

        assert run("remove", "-y", "bar") == 0
        assert not (env / "lib" / "foo.txt").exists()
        assert not (env / "lib" / "bar.txt").exists()
        assert (env / "lib" / "baz.txt").is_file()

    def test_install_is_idempotent(self, run, channel, capsys):
        channel.add("foo", "1.0")
        assert run("create", "-y", "foo") == 0
        capsys.readouterr()

        assert run("install", "-y", "foo") == 0
        assert "All requested packages already installed" in capsys.readouterr().out

    def test_dry_run_changes_nothing(self, run, channel, tmp_path, capsys):
        channel.add("foo", "1.0")

        assert run("create", "--dry-run", "foo") == 0

        assert "+ foo 1.0 0 (channel)" in capsys.readouterr().out
        assert not (tmp_path / "env").exists()

    def test_declined_prompt_aborts(self, run, channel, tmp_path, capsys, monkeypatch):
        channel.add("foo", "1.0")
        monkeypatch.setattr("builtins.input", lambda prompt: "n")

        assert run("create", "foo") == 0

        assert "Aborted" in capsys.readouterr().out
        assert not (tmp_path / "env").exists()

    def test_json_report(self, run, channel, capsys):
        channel.add("foo", "1.0")

        assert run("create", "-y", "--json", "foo") == 0

        report = json.loads(capsys.readouterr().out)
        assert report["success"] is True
        assert [r["name"] for r in report["actions"]["LINK"]] == ["foo"]
        assert [r["name"] for r in report["actions"]["FETCH"]] == ["foo"]

    def test_offline_install_uses_caches(self, run, channel, tmp_path):
        channel.add("foo", "1.0")
        channel.add("bar", "1.0")
        assert run("create", "-y", "foo", "bar") == 0
        assert run("remove", "-y", "foo") == 0
        shutil.rmtree(channel.root)

        assert run("install", "-y", "--offline", "foo") == 0
        assert (tmp_path / "env" / "lib" / "foo.txt").is_file()
