from datetime import datetime, timedelta, timezone

import pytest

from gateway import CommandResult
from job_store import JobStore
from orchestrator import Orchestrator
from records import RecordStore
from storage import Storage


class FrozenClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeGateway:
    """Records commands; fails those containing any registered marker."""

    def __init__(self):
        self.commands = []
        self.failures = {}
        self.outputs = {}
        self.secrets = []

    def fail_on(self, marker, stderr="boom"):
        self.failures[marker] = stderr

    def respond(self, marker, stdout):
        self.outputs[marker] = stdout

    def ran(self, marker):
        return [c for c in self.commands if marker in c]

    def run(self, command, timeout=None, secrets=()):
        self.commands.append(command)
        self.secrets.extend(secrets)
        for marker, stderr in self.failures.items():
            if marker in command:
                return CommandResult(command, 1, "", stderr)
        stdout = next((out for marker, out in self.outputs.items() if marker in command), "ok")
        return CommandResult(command, 0, stdout, "")


# clpctl actions and shell fragments that identify each step's command
SITE = "site:add:php"
DELETE_SITE = "site:delete"
DATABASE = "db:add"
CREDENTIALS = "/root/.ssh/id_ed25519"
CLONE = "git clone"
ENVIRONMENT = "cp .env.example .env"
INSTALL = "php artisan migrate"


@pytest.fixture
def storage(tmp_path):
    db = Storage(str(tmp_path / "queue.db"))
    yield db
    db.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def job_store(storage, clock):
    return JobStore(storage, max_attempts=3, backoff_base=30, backoff_max=3600, clock=clock)


@pytest.fixture
def record_store(storage, clock):
    return RecordStore(storage, clock=clock)


@pytest.fixture
def orchestrator(record_store, gateway):
    return Orchestrator(record_store, gateway)


@pytest.fixture
def params():
    return {
        "domain": "example.com",
        "site_user": "example",
        "site_user_password": "s3cret-pass",
        "database_name": "example_db",
        "database_user": "example_user",
        "database_password": "db-pass-123",
        "repository_url": "git@github.com:acme/example.git",
    }
