"""Tests for the provisionctl command line."""
import pytest
from click.testing import CliRunner

from cli import cli
from models import RecordStatus, StepFlags
from records import RecordStore
from storage import Storage


@pytest.fixture(autouse=True)
def _no_log_handlers(monkeypatch):
    # CliRunner swaps stderr per invocation; keep handlers off the root logger
    monkeypatch.setattr("cli.init_logging", lambda *args, **kwargs: None)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


@pytest.fixture
def invoke(db_path):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(cli, ["--db", db_path, *args])

    return _invoke


PROVISION_ARGS = [
    "provision",
    "--domain", "Example.com",
    "--site-user", "example",
    "--site-user-password", "s3cret-pass",
    "--database-name", "example_db",
    "--database-user", "example_user",
    "--database-password", "db-pass-123",
]


def test_provision_enqueues_job(invoke):
    result = invoke(*PROVISION_ARGS)
    assert result.exit_code == 0, result.output
    assert "Job 1 enqueued (full_provision, domain=example.com, priority=1)" in result.output

    listed = invoke("list")
    assert "1 | full_provision | example.com | status=pending" in listed.output


def test_provision_rejects_invalid_input(invoke):
    result = invoke(*PROVISION_ARGS[:-1], "short")
    assert result.exit_code == 1
    assert "Invalid provisioning request" in result.output
    assert "No jobs found." in invoke("list").output


def test_sync_and_status(invoke):
    assert invoke("sync", "--domain", "example.com", "--site-user", "example").exit_code == 0
    result = invoke("status")
    assert "pending: 1" in result.output
    assert "repo_sync=1" in result.output


def test_status_when_empty(invoke):
    assert "No jobs in the system yet." in invoke("status").output


def test_show_and_cancel(invoke):
    invoke(*PROVISION_ARGS)
    shown = invoke("show", "1")
    assert "Status: pending" in shown.output
    assert "Domain: example.com" in shown.output

    cancelled = invoke("cancel", "1")
    assert cancelled.exit_code == 0
    assert "Job 1 cancelled." in cancelled.output
    again = invoke("cancel", "1")
    assert again.exit_code == 1
    assert "not pending" in again.output
    assert "status=failed" in invoke("list", "--status", "failed").output


def test_show_unknown_job(invoke):
    result = invoke("show", "99")
    assert result.exit_code == 1
    assert "Job 99 not found" in result.output


def test_retry_step(invoke, db_path, params):
    missing = invoke("retry-step", "5", "create_site")
    assert missing.exit_code == 1
    assert "Provisioning record 5 not found" in missing.output

    bad_step = invoke("retry-step", "5", "reboot")
    assert bad_step.exit_code == 2

    storage = Storage(db_path)
    record = RecordStore(storage).upsert_for_domain(
        "example.com", StepFlags(site_created=True), RecordStatus.FAILED, params=params
    )
    storage.close()
    result = invoke("retry-step", str(record.id), "create_database")
    assert result.exit_code == 0, result.output
    assert f"retry create_database on record {record.id}" in result.output


def test_records(invoke, db_path):
    assert "No provisioning records found." in invoke("records").output

    storage = Storage(db_path)
    record = RecordStore(storage).upsert_for_domain("example.com", StepFlags(site_created=True), RecordStatus.FAILED)
    storage.close()
    assert "example.com | status=failed | steps=1/6" in invoke("records").output
    detail = invoke("record", str(record.id))
    assert "✅ create_site" in detail.output
    assert "❌ create_database" in detail.output
    assert invoke("record", "404").exit_code == 1


def test_config_commands(invoke):
    assert "poll_interval=3.0 (default)" in invoke("config", "get", "poll_interval").output
    assert invoke("config", "set", "max_attempts", "5").exit_code == 0
    assert "max_attempts=5" in invoke("config", "get", "max_attempts").output
    assert "max_attempts=5" in invoke("config", "list").output
    assert invoke("config", "set", "bogus", "1").exit_code == 2


def test_cleanup(invoke):
    result = invoke("cleanup", "--days", "1")
    assert "Removed 0 job(s)." in result.output
