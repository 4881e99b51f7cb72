# models.py
import json
import re
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from errors import InvalidStep, PayloadError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    # Fixed width so timestamps compare correctly as TEXT in SQLite
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


class JobType(str, Enum):
    FULL_PROVISION = "full_provision"
    SINGLE_STEP_RETRY = "single_step_retry"
    REPO_SYNC = "repo_sync"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class RecordStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    MANUAL = "manual"


class Step(str, Enum):
    """Provisioning steps, declared in pipeline order."""

    CREATE_SITE = "create_site"
    CREATE_DATABASE = "create_database"
    COPY_CREDENTIALS = "copy_credentials"
    CLONE_REPOSITORY = "clone_repository"
    CONFIGURE_ENVIRONMENT = "configure_environment"
    RUN_INSTALL_COMMANDS = "run_install_commands"

    @property
    def flag(self) -> str:
        return STEP_FLAGS[self]

    @property
    def label(self) -> str:
        return STEP_LABELS[self]

    @classmethod
    def parse(cls, name) -> "Step":
        try:
            return cls(name)
        except ValueError:
            raise InvalidStep(name) from None


STEP_FLAGS = {
    Step.CREATE_SITE: "site_created",
    Step.CREATE_DATABASE: "database_created",
    Step.COPY_CREDENTIALS: "credentials_copied",
    Step.CLONE_REPOSITORY: "repository_cloned",
    Step.CONFIGURE_ENVIRONMENT: "environment_configured",
    Step.RUN_INSTALL_COMMANDS: "install_completed",
}

STEP_LABELS = {
    Step.CREATE_SITE: "Site creation",
    Step.CREATE_DATABASE: "Database creation",
    Step.COPY_CREDENTIALS: "SSH key copy",
    Step.CLONE_REPOSITORY: "Repository clone",
    Step.CONFIGURE_ENVIRONMENT: "Environment configuration",
    Step.RUN_INSTALL_COMMANDS: "Install commands",
}


@dataclass(frozen=True)
class StepFlags:
    site_created: bool = False
    database_created: bool = False
    credentials_copied: bool = False
    repository_cloned: bool = False
    environment_configured: bool = False
    install_completed: bool = False

    def is_set(self, step: Step) -> bool:
        return getattr(self, step.flag)

    def mark(self, step: Step, value: bool = True) -> "StepFlags":
        return replace(self, **{step.flag: value})

    def merge(self, other: "StepFlags") -> "StepFlags":
        """Logical OR of both flag sets; never clears a flag."""
        return StepFlags(**{f.name: getattr(self, f.name) or getattr(other, f.name) for f in fields(self)})

    def all_done(self) -> bool:
        return all(getattr(self, f.name) for f in fields(self))

    def as_dict(self) -> Dict[str, bool]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data) -> "StepFlags":
        data = data or {}
        return cls(**{f.name: bool(data[f.name]) for f in fields(cls) if f.name in data.keys()})


# ---------------- Job payloads ----------------
DOMAIN_RE = re.compile(r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z][a-z0-9-]{0,62}$", re.IGNORECASE)
SYSTEM_USER_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
IDENT_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")


def _require_str(data, key, pattern=None, min_length=1):
    value = data.get(key)
    if not isinstance(value, str) or len(value) < min_length:
        if min_length > 1:
            raise PayloadError(f"'{key}' must be a string of at least {min_length} characters")
        raise PayloadError(f"'{key}' is required")
    if pattern is not None and not pattern.match(value):
        raise PayloadError(f"'{key}' has an invalid value: {value!r}")
    return value


def _optional_str(data, key):
    value = data.get(key)
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise PayloadError(f"'{key}' must be a string")
    return value


@dataclass(frozen=True)
class InstallOptions:
    run_migrations: bool = True
    run_seeders: bool = False
    optimize_cache: bool = True
    install_dependencies: bool = True

    @classmethod
    def from_dict(cls, data) -> "InstallOptions":
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise PayloadError(f"unknown install options: {', '.join(sorted(unknown))}")
        return cls(**{k: bool(v) for k, v in data.items()})


@dataclass(frozen=True)
class ProvisionParams:
    """Parameters of a full provisioning run for one domain."""

    domain: str
    site_user: str
    site_user_password: str
    database_name: str
    database_user: str
    database_password: str
    php_version: str = "8.3"
    vhost_template: str = "Laravel 12"
    repository_url: Optional[str] = None
    database_host: str = "localhost"
    install: InstallOptions = field(default_factory=InstallOptions)

    @property
    def site_root(self) -> str:
        return f"/home/{self.site_user}/htdocs/{self.domain}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data) -> "ProvisionParams":
        if not isinstance(data, dict):
            raise PayloadError("provisioning parameters must be an object")
        return cls(
            domain=_require_str(data, "domain", DOMAIN_RE).lower(),
            site_user=_require_str(data, "site_user", SYSTEM_USER_RE),
            site_user_password=_require_str(data, "site_user_password", min_length=6),
            database_name=_require_str(data, "database_name", IDENT_RE),
            database_user=_require_str(data, "database_user", IDENT_RE),
            database_password=_require_str(data, "database_password", min_length=6),
            php_version=_optional_str(data, "php_version") or "8.3",
            vhost_template=_optional_str(data, "vhost_template") or "Laravel 12",
            repository_url=_optional_str(data, "repository_url"),
            database_host=_optional_str(data, "database_host") or "localhost",
            install=InstallOptions.from_dict(data.get("install")),
        )


@dataclass(frozen=True)
class SingleStepPayload:
    record_id: int
    step: Step
    params: ProvisionParams
    baseline: StepFlags = field(default_factory=StepFlags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "step": self.step.value,
            "params": self.params.to_dict(),
            "baseline": self.baseline.as_dict(),
        }

    @classmethod
    def from_dict(cls, data) -> "SingleStepPayload":
        record_id = data.get("record_id")
        if not isinstance(record_id, int) or isinstance(record_id, bool):
            raise PayloadError("'record_id' must be an integer")
        return cls(
            record_id=record_id,
            step=Step.parse(data.get("step")),
            params=ProvisionParams.from_dict(data.get("params")),
            baseline=StepFlags.from_mapping(data.get("baseline")),
        )


@dataclass(frozen=True)
class RepoSyncPayload:
    domain: str
    site_user: str
    site_path: Optional[str] = None

    @property
    def path(self) -> str:
        return self.site_path or f"/home/{self.site_user}/htdocs/{self.domain}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data) -> "RepoSyncPayload":
        return cls(
            domain=_require_str(data, "domain", DOMAIN_RE).lower(),
            site_user=_require_str(data, "site_user", SYSTEM_USER_RE),
            site_path=_optional_str(data, "site_path"),
        )


PAYLOAD_TYPES = {
    JobType.FULL_PROVISION: ProvisionParams,
    JobType.SINGLE_STEP_RETRY: SingleStepPayload,
    JobType.REPO_SYNC: RepoSyncPayload,
}


def parse_payload(job_type, data):
    """Validate a raw payload against the schema of its job type."""
    try:
        job_type = JobType(job_type)
    except ValueError:
        raise PayloadError(f"unknown job type: {job_type!r}") from None
    if hasattr(data, "to_dict"):
        data = data.to_dict()
    if not isinstance(data, dict):
        raise PayloadError("payload must be an object")
    return PAYLOAD_TYPES[job_type].from_dict(data)


# ---------------- Persisted rows ----------------
@dataclass
class Job:
    id: int
    type: JobType
    payload: Dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    scheduled_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def domain(self) -> Optional[str]:
        return self.payload.get("domain") or self.payload.get("params", {}).get("domain")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            type=JobType(row["type"]),
            payload=json.loads(row["payload"]),
            status=JobStatus(row["status"]),
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            scheduled_at=row["scheduled_at"],
            result=json.loads(row["result"]) if row["result"] else None,
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )


@dataclass
class ProvisioningRecord:
    id: int
    domain: str
    flags: StepFlags = field(default_factory=StepFlags)
    status: RecordStatus = RecordStatus.IN_PROGRESS
    job_id: Optional[int] = None
    error_message: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        params = dict(self.params or {})
        for secret in ("site_user_password", "database_password"):
            if secret in params:
                params[secret] = "***"
        return {
            "id": self.id,
            "job_id": self.job_id,
            "domain": self.domain,
            "status": self.status.value,
            "steps": self.flags.as_dict(),
            "error_message": self.error_message,
            "params": params,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row) -> "ProvisioningRecord":
        return cls(
            id=row["id"],
            domain=row["domain"],
            flags=StepFlags.from_mapping(row),
            status=RecordStatus(row["status"]),
            job_id=row["job_id"],
            error_message=row["error_message"],
            params=json.loads(row["params"]) if row["params"] else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
