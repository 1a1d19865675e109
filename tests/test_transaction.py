"""Tests for transaction planning and execution."""

import dataclasses
import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from mambalite.common.http_client import HttpClient
from mambalite.constants import Constants
from mambalite.errors import ExecutionError, IntegrityError, MambaliteError
from mambalite.repodata.download import DownloadScheduler
from mambalite.solve.solver import ResolvedSet
from mambalite.transaction import (
    Link,
    MultiPackageCache,
    PrefixData,
    Transaction,
    TransactionState,
    Unlink,
    plan_steps,
)

from conftest import rec


@pytest.fixture
def scheduler():
    sched = DownloadScheduler(HttpClient(), retries=2, backoff=0)
    sched._sleep = lambda _seconds: None
    return sched


@pytest.fixture
def env(tmp_path, scheduler):
    """Empty prefix plus a package cache that downloads through ``scheduler``."""
    return SimpleNamespace(
        prefix=tmp_path / "env",
        caches=MultiPackageCache([tmp_path / "pkgs"], scheduler),
    )


def _config(**overrides):
    values = dict(dry_run=False, always_yes=True, extract_threads=2)
    values.update(overrides)
    return SimpleNamespace(**values)


def _transaction(env, records, requested=None, **config):
    prefix_data = PrefixData(env.prefix).load()
    resolved = ResolvedSet({r.name: r for r in records}, requested)
    return Transaction(resolved, prefix_data, env.caches, _config(**config))


def _apply(env, records, requested=None):
    txn = _transaction(env, records, requested)
    assert txn.prompt()
    txn.execute()
    return txn


class TestPlan:
    """Diffing a resolved set against the installed snapshot."""

    def test_upgrade_plan_order(self):
        installed = {"foo": rec("foo", "1.0")}
        resolved = {"foo": rec("foo", "2.0", depends=["bar >=1.5"]), "bar": rec("bar", "1.5")}

        steps = plan_steps(resolved, installed)

        assert [str(s) for s in steps] == ["unlink foo-1.0-0", "link bar-1.5-0", "link foo-2.0-0"]

    def test_identical_state_plans_nothing(self):
        records = {"foo": rec("foo", "1.0")}
        assert plan_steps(records, dict(records)) == ()

    def test_channel_change_alone_is_not_a_change(self):
        assert plan_steps({"foo": rec("foo", "1.0", channel="other")}, {"foo": rec("foo", "1.0")}) == ()

    def test_build_change_relinks(self):
        steps = plan_steps({"foo": rec("foo", "1.0", "1")}, {"foo": rec("foo", "1.0", "0")})
        assert steps == (Unlink(rec("foo", "1.0", "0")), Link(rec("foo", "1.0", "1")))

    def test_unlinks_remove_dependents_first(self):
        installed = {
            "app": rec("app", "1.0", depends=["lib"]),
            "lib": rec("lib", "1.0", depends=["base"]),
            "base": rec("base", "1.0"),
        }
        steps = plan_steps({}, installed)
        assert [s.record.name for s in steps] == ["app", "lib", "base"]

    def test_dependency_cycle_is_linked_alphabetically(self):
        resolved = {"b": rec("b", "1.0", depends=["a"]), "a": rec("a", "1.0", depends=["b"]), "c": rec("c", "1.0")}
        assert [s.record.name for s in plan_steps(resolved, {})] == ["a", "b", "c"]

    def test_dependent_of_a_cycle_waits_for_it(self):
        resolved = {
            "x": rec("x", "1.0", depends=["y"]),
            "y": rec("y", "1.0", depends=["x"]),
            "c": rec("c", "1.0", depends=["x"]),
        }
        assert [s.record.name for s in plan_steps(resolved, {})] == ["x", "y", "c"]
        assert [s.record.name for s in plan_steps({}, resolved)] == ["c", "y", "x"]

    def test_cycle_depending_on_another_package(self):
        resolved = {
            "a": rec("a", "1.0", depends=["b", "z"]),
            "b": rec("b", "1.0", depends=["a"]),
            "z": rec("z", "1.0"),
            "m": rec("m", "1.0", depends=["b"]),
        }
        assert [s.record.name for s in plan_steps(resolved, {})] == ["z", "a", "b", "m"]


class TestLifecycle:
    """State machine around prompting."""

    def test_dry_run_stays_planned(self, env):
        txn = _transaction(env, [rec("foo", "1.0")], dry_run=True)

        assert txn.prompt(lambda: True) is False
        assert txn.state is TransactionState.PLANNED
        with pytest.raises(MambaliteError):
            txn.execute()
        assert not env.prefix.exists()

    def test_declined_transaction_writes_nothing(self, env):
        txn = _transaction(env, [rec("foo", "1.0")], always_yes=False)

        assert txn.prompt(lambda: False) is False
        assert txn.state is TransactionState.ABORTED
        assert not env.prefix.exists()

    def test_accepted_prompt_confirms(self, env):
        txn = _transaction(env, [rec("foo", "1.0")], always_yes=False)
        assert txn.prompt(lambda: True) is True
        assert txn.state is TransactionState.CONFIRMED

    def test_empty_transaction_completes(self, env):
        txn = _transaction(env, [])
        assert txn.empty
        assert txn.prompt()
        txn.execute()
        assert txn.state is TransactionState.COMPLETED
        assert txn.summary()[-1].strip() == "All requested packages already installed"

    def test_prompt_twice_is_rejected(self, env):
        txn = _transaction(env, [])
        txn.prompt()
        with pytest.raises(MambaliteError):
            txn.prompt()


class TestExecute:
    """Linking, unlinking and failure handling against a real prefix."""

    def test_install_writes_files_and_snapshot(self, env, channel):
        foo = channel.add("foo", "1.0", depends=["bar"])
        bar = channel.add("bar", "1.0")

        txn = _apply(env, [foo, bar], requested={"foo": "foo"})

        assert txn.state is TransactionState.COMPLETED
        assert (env.prefix / "lib" / "foo.txt").read_bytes() == b"foo 1.0\n"
        assert (env.prefix / "lib" / "bar.txt").is_file()
        entry = json.loads((env.prefix / "conda-meta" / "foo-1.0-0.json").read_text())
        assert entry["files"] == ["lib/foo.txt"]
        assert entry["requested_spec"] == "foo"
        assert entry["link"]["type"] in ("hardlink", "copy")
        assert set(PrefixData(env.prefix).load().records) == {"bar", "foo"}

    def test_remove_deletes_files_and_snapshot(self, env, channel):
        foo = channel.add("foo", "1.0")
        _apply(env, [foo])

        txn = _apply(env, [])

        assert [str(s) for s in txn.steps] == ["unlink foo-1.0-0"]
        assert not (env.prefix / "lib").exists()
        assert not (env.prefix / "conda-meta" / "foo-1.0-0.json").exists()
        assert not (env.prefix / Constants.TRASH_DIRNAME).exists()

    def test_upgrade_keeps_requested_spec(self, env, channel):
        foo1 = channel.add("foo", "1.0")
        foo2 = channel.add("foo", "2.0")
        _apply(env, [foo1], requested={"foo": "foo"})

        _apply(env, [foo2])

        entry = json.loads((env.prefix / "conda-meta" / "foo-2.0-0.json").read_text())
        assert entry["requested_spec"] == "foo"
        assert (env.prefix / "lib" / "foo.txt").read_bytes() == b"foo 2.0\n"

    def test_prefix_placeholder_is_replaced(self, env, channel):
        script = f"#!{Constants.PREFIX_PLACEHOLDER}/bin/python\n".encode()
        tool = channel.add("tool", "1.0", files={"bin/tool": script}, has_prefix=["bin/tool"])

        _apply(env, [tool])

        content = (env.prefix / "bin" / "tool").read_text()
        assert content == f"#!{env.prefix}/bin/python\n"

    def test_hash_mismatch_aborts_after_committed_steps(self, env, channel, scheduler):
        foo1 = channel.add("foo", "1.0")
        bar = channel.add("bar", "1.5")
        foo2 = dataclasses.replace(channel.add("foo", "2.0", depends=["bar >=1.5"]), sha256="0" * 64)
        _apply(env, [foo1])

        txn = _transaction(env, [foo2, bar])
        assert [str(s) for s in txn.steps] == ["unlink foo-1.0-0", "link bar-1.5-0", "link foo-2.0-0"]
        txn.prompt()
        with patch.object(scheduler.http, "open", wraps=scheduler.http.open) as opened:
            with pytest.raises(ExecutionError) as exc:
                txn.execute()

        error = exc.value
        assert isinstance(error.cause, IntegrityError)
        assert str(error.failed) == "link foo-2.0-0"
        assert [str(s) for s in error.committed] == ["unlink foo-1.0-0", "link bar-1.5-0"]
        assert error.pending == []
        assert txn.state is TransactionState.ABORTED
        foo_urls = [c.args[0] for c in opened.call_args_list if c.args[0].endswith("foo-2.0-0.tar.bz2")]
        assert len(foo_urls) == 1
        assert set(PrefixData(env.prefix).load().records) == {"bar"}
        assert not (env.prefix / "lib" / "foo.txt").exists()

    def test_shared_file_is_taken_over(self, env, channel):
        foo = channel.add("foo", "1.0", files={"share/common.txt": b"foo\n"})
        bar = channel.add("bar", "1.0", files={"share/common.txt": b"bar\n"})
        _apply(env, [foo])

        _apply(env, [foo, bar])

        assert (env.prefix / "share" / "common.txt").read_bytes() == b"bar\n"
        assert not (env.prefix / Constants.TRASH_DIRNAME).exists()

    def test_snapshot_failure_restores_shared_file(self, env, channel):
        foo = channel.add("foo", "1.0", files={"share/common.txt": b"foo\n"})
        bar = channel.add("bar", "1.0", files={"share/common.txt": b"bar\n"})
        _apply(env, [foo])
        txn = _transaction(env, [foo, bar])
        txn.prompt()

        with patch.object(PrefixData, "add", side_effect=OSError("disk full")):
            with pytest.raises(ExecutionError):
                txn.execute()

        assert (env.prefix / "share" / "common.txt").read_bytes() == b"foo\n"
        assert set(PrefixData(env.prefix).load().records) == {"foo"}

    def test_execute_requires_confirmation(self, env):
        txn = _transaction(env, [rec("foo", "1.0")])
        with pytest.raises(MambaliteError, match="expected confirmed"):
            txn.execute()


class TestReporting:
    """Human and machine readable plan output."""

    def test_summary_marks_changes(self, env, channel):
        foo1 = channel.add("foo", "1.0")
        old = channel.add("old", "1.0")
        _apply(env, [foo1, old])
        foo2 = channel.add("foo", "2.0")
        new = channel.add("new", "0.1")

        lines = _transaction(env, [foo2, new]).summary()

        assert "  ^ foo 1.0 0 -> 2.0 0 (channel)" in lines
        assert "  + new 0.1 0 (channel)" in lines
        assert "  - old 1.0 0" in lines
        assert lines[-1] == "  Summary: Install: 1, Remove: 1, Upgrade: 1"

    def test_downgrade_marker(self, env, channel):
        foo2 = channel.add("foo", "2.0")
        _apply(env, [foo2])
        lines = _transaction(env, [channel.add("foo", "1.0")]).summary()
        assert "  v foo 2.0 0 -> 1.0 0 (channel)" in lines

    def test_report_lists_fetches(self, env, channel):
        cached = channel.add("cached", "1.0")
        env.caches.ensure_extracted(cached)
        fresh = channel.add("fresh", "1.0")

        report = _transaction(env, [cached, fresh]).report()

        assert report["prefix"] == str(env.prefix)
        assert [r["name"] for r in report["actions"]["FETCH"]] == ["fresh"]
        assert [r["name"] for r in report["actions"]["LINK"]] == ["cached", "fresh"]
        assert report["actions"]["UNLINK"] == []
