# orchestrator.py
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from errors import RecordNotFound, RollbackFailed, StepFailed
from models import (
    JobType,
    ProvisionParams,
    RecordStatus,
    Step,
    StepFlags,
    parse_payload,
)
from records import resolve_status, status_from_flags
from steps import StepRunner

logger = logging.getLogger(__name__)

NO_REPOSITORY_MESSAGE = "No repository URL supplied; clone, environment and install steps were skipped"

# Pull output that means the checkout was updated (or already current)
PULL_OK_MARKERS = ("Already up to date", "Fast-forward", "Updating")


@dataclass
class Outcome:
    """What one job attempt produced; stored as the job's result."""

    success: bool
    job_type: JobType
    domain: Optional[str] = None
    record_id: Optional[int] = None
    status: Optional[str] = None
    flags: Optional[StepFlags] = None
    error: Optional[str] = None
    elapsed_ms: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        data = {
            "success": self.success,
            "type": self.job_type.value,
            "domain": self.domain,
            "record_id": self.record_id,
            "status": self.status,
            "error": self.error,
            "elapsed_ms": self.elapsed_ms,
        }
        if self.flags is not None:
            data["steps"] = self.flags.as_dict()
        data.update(self.details)
        return data


class Orchestrator:
    def __init__(self, records, gateway, clpctl_path="clpctl"):
        self.records = records
        self.steps = StepRunner(gateway, clpctl_path=clpctl_path)

    def process(self, job):
        """Dispatch a claimed job to the pipeline for its type."""
        payload = parse_payload(job.type, job.payload)
        logger.info("Processing job %s of type %s", job.id, job.type.value)
        if job.type is JobType.FULL_PROVISION:
            return self.run_full_pipeline(payload, job_id=job.id)
        if job.type is JobType.SINGLE_STEP_RETRY:
            return self.run_single_step(payload, job_id=job.id)
        return self.run_repo_sync(payload)

    def _attempt(self, step, params):
        logger.info("Step %s starting for %s", step.value, params.domain)
        result = self.steps.run(step, params)
        if not result.success:
            raise StepFailed(step, result.error or "Unknown error")
        logger.info("Step %s succeeded for %s", step.value, params.domain)
        return result

    def _rollback_site(self, domain):
        logger.warning("Rolling back site %s after database failure", domain)
        result = self.steps.delete_site(domain)
        if not result.success:
            raise RollbackFailed(result.error or "Unknown error")

    # ---------------- Full pipeline ----------------
    def run_full_pipeline(self, params: ProvisionParams, job_id=None) -> Outcome:
        started = time.monotonic()
        flags = StepFlags()
        fatal = None
        rollback_error = None
        notes = []

        try:
            self._attempt(Step.CREATE_SITE, params)
            flags = flags.mark(Step.CREATE_SITE)
            try:
                self._attempt(Step.CREATE_DATABASE, params)
            except StepFailed:
                try:
                    self._rollback_site(params.domain)
                    flags = flags.mark(Step.CREATE_SITE, False)
                except RollbackFailed as e:
                    rollback_error = str(e)
                    logger.error("%s (site %s left in place)", e, params.domain)
                raise
            flags = flags.mark(Step.CREATE_DATABASE)
        except StepFailed as e:
            fatal = e
            logger.error("Provisioning of %s aborted: %s", params.domain, e)
        else:
            flags = self._run_optional_chain(params, flags, notes)

        status = status_from_flags(flags)
        error = str(fatal) if fatal else ("; ".join(notes) or None)
        if rollback_error:
            error = f"{error} ({rollback_error})"
        record = self.records.upsert_for_domain(
            params.domain, flags, status, error, job_id=job_id, params=params.to_dict()
        )
        outcome = Outcome(
            success=fatal is None,
            job_type=JobType.FULL_PROVISION,
            domain=params.domain,
            record_id=record.id,
            status=record.status.value,
            flags=flags,
            error=error,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        if rollback_error:
            outcome.details["rollback_error"] = rollback_error
        logger.info(
            "Provisioning of %s finished in %sms (record %s, status=%s)",
            params.domain, outcome.elapsed_ms, record.id, record.status.value,
        )
        return outcome

    def _run_optional_chain(self, params, flags, notes):
        # Steps 3-6 never abort the run; each failure is noted and the flag left false
        try:
            self._attempt(Step.COPY_CREDENTIALS, params)
            flags = flags.mark(Step.COPY_CREDENTIALS)
        except StepFailed as e:
            logger.warning("%s; continuing with setup", e)
            notes.append(str(e))

        if not params.repository_url:
            notes.append(NO_REPOSITORY_MESSAGE)
            return flags

        for step in (Step.CLONE_REPOSITORY, Step.CONFIGURE_ENVIRONMENT, Step.RUN_INSTALL_COMMANDS):
            try:
                self._attempt(step, params)
            except StepFailed as e:
                logger.warning("%s; skipping the remaining steps", e)
                notes.append(str(e))
                break
            flags = flags.mark(step)
        return flags

    # ---------------- Single step ----------------
    def run_single_step(self, payload, job_id=None) -> Outcome:
        started = time.monotonic()
        step = payload.step
        record = self.records.get_by_id(payload.record_id)
        if record is None:
            raise RecordNotFound(payload.record_id)

        flags = payload.baseline
        error = None
        try:
            self._attempt(step, payload.params)
            flags = flags.mark(step)
        except StepFailed as e:
            error = str(e)
            logger.error("Retry of step %s for record %s failed: %s", step.value, record.id, e)

        status = resolve_status(flags, RecordStatus.FAILED, prior=record.status)
        updated = self.records.update_by_id(record.id, flags, status, error, job_id=job_id)
        return Outcome(
            success=error is None,
            job_type=JobType.SINGLE_STEP_RETRY,
            domain=updated.domain,
            record_id=updated.id,
            status=updated.status.value,
            flags=updated.flags,
            error=error,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            details={"step": step.value, "all_steps_completed": updated.flags.all_done()},
        )

    # ---------------- Repository sync ----------------
    def run_repo_sync(self, payload) -> Outcome:
        started = time.monotonic()
        info = self.steps.git_info(payload)
        if not info.success:
            return Outcome(
                success=False,
                job_type=JobType.REPO_SYNC,
                domain=payload.domain,
                error=f"Repository sync failed: {info.error}",
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )

        pull = self.steps.git_pull(payload)
        pull_output = pull.output if pull.success else f"{pull.output}\n{pull.error}".strip()
        refresh = self.steps.refresh_dependencies(payload)
        after = self.steps.git_status(payload)

        lowered = pull_output.lower()
        clean = any(m in pull_output for m in PULL_OK_MARKERS) or ("error" not in lowered and "fatal" not in lowered)
        status = "completed" if clean else "completed_with_issues"
        logger.info("Repository sync for %s %s", payload.domain, status.replace("_", " "))
        return Outcome(
            success=True,
            job_type=JobType.REPO_SYNC,
            domain=payload.domain,
            status=status,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            details={
                "site_path": payload.path,
                "git_info": info.output.strip(),
                "pull_output": pull_output.strip(),
                "optimization_output": (refresh.output if refresh.success else f"Optimization error: {refresh.error}").strip(),
                "status_after": after.output.strip(),
            },
        )
