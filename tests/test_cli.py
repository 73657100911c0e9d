"""
Tests for the sitelayer command line.

Runs the real entry point against the in-memory provider and a temporary
SQLite state database.
"""

import asyncio
import json

import pytest
from conftest import SITE_YAML
from sitelayer.cli.main import build_parser, main, settings_from_args
from sitelayer.core.errors import ExitCode
from sitelayer.state.store import StateStore


@pytest.fixture
def state_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'cli-state.db'}"


@pytest.fixture
def run(state_url):
    """Invoke ``main`` and return its exit code."""

    def _run(*argv):
        with pytest.raises(SystemExit) as exc_info:
            main(["--state-url", state_url, "--provider", "memory", *argv])
        return exc_info.value.code

    return _run


def lock_state(state_url, holder):
    async def _lock():
        store = StateStore(state_url)
        await store.initialize()
        try:
            await store._acquire_lock(holder)
        finally:
            await store.close()

    asyncio.run(_lock())


class TestParser:
    """Tests for argument parsing."""

    def test_overrides(self):
        args = build_parser().parse_args(
            ["--provider", "memory", "--concurrency", "0", "plan", "site.yaml"]
        )
        settings = settings_from_args(args)
        assert settings.provider == "memory"
        assert settings.concurrency == 1
        assert args.output == "text"

    def test_unknown_provider_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--provider", "gcp", "plan", "site.yaml"])

    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 0
        assert "usage: sitelayer" in capsys.readouterr().out


class TestValidate:
    """Tests for the validate command."""

    def test_valid(self, run, write_document, capsys):
        assert run("validate", str(write_document()), "--verbose") == 0
        out = capsys.readouterr().out
        assert "5 resources" in out
        assert "storage_bucket.site" in out

    def test_invalid(self, run, write_document):
        path = write_document("resources:\n  - {kind: lambda, name: x}\n", name="bad.yaml")
        assert run("validate", str(path)) == ExitCode.VALIDATION_ERROR

    def test_missing_file(self, run, tmp_path):
        assert run("validate", str(tmp_path / "nope.yaml")) == ExitCode.VALIDATION_ERROR


class TestPlanApply:
    """Tests for plan, apply and state commands."""

    def test_plan_json(self, run, write_document, capsys):
        assert run("plan", str(write_document()), "--output", "json") == 0
        output = json.loads(capsys.readouterr().out)
        assert output["has_changes"] is True
        assert output["summary"] == {"create": 5}
        assert output["entries"][0]["address"] == "storage_bucket.site"

    def test_plan_text(self, run, write_document, capsys):
        assert run("plan", str(write_document())) == 0
        assert "5 to create" in capsys.readouterr().out

    def test_apply_then_plan_is_clean(self, run, write_document, capsys):
        document = str(write_document())
        assert run("apply", document, "--output", "json") == 0
        applied = json.loads(capsys.readouterr().out)
        assert applied["success"] is True
        assert set(applied["outcomes"].values()) == {"created"}
        assert applied["sync"]["uploaded"] == ["css/site.css", "index.html"]

        assert run("plan", document, "--output", "json") == 0
        assert json.loads(capsys.readouterr().out)["has_changes"] is False

    def test_sync_failure_exits_zero(self, run, write_document, capsys):
        document = write_document(SITE_YAML.replace("source: public", "source: missing"))
        assert run("apply", str(document), "--output", "json") == 0
        applied = json.loads(capsys.readouterr().out)
        assert applied["success"] is True
        assert applied["sync"] is None
        assert "not a directory" in applied["sync_error"]

    def test_state_list_and_taint(self, run, write_document, capsys):
        assert run("apply", str(write_document())) == 0
        capsys.readouterr()

        assert run("state", "list", "--output", "json") == 0
        records = json.loads(capsys.readouterr().out)
        assert len(records) == 5
        assert {r["status"] for r in records} == {"ready"}

        assert run("state", "taint", "certificate.site") == 0
        assert run("state", "taint", "certificate.missing") == ExitCode.CONFIG_ERROR

    def test_locked_state(self, run, write_document, state_url):
        lock_state(state_url, "ci-runner:7")
        assert run("apply", str(write_document())) == ExitCode.BLOCKED
        assert run("state", "unlock") == 0
        assert run("apply", str(write_document())) == 0

    def test_destroy(self, run, write_document, capsys):
        document = str(write_document())
        assert run("apply", document) == 0
        assert run("apply", document, "--destroy") == 0
        capsys.readouterr()
        assert run("state", "list", "--output", "json") == 0
        assert json.loads(capsys.readouterr().out) == []
