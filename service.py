# service.py
from errors import RecordNotFound
from gateway import LocalGateway
from job_store import JobStore
from models import JobType, ProvisionParams, RepoSyncPayload, SingleStepPayload, Step
from orchestrator import Orchestrator
from records import RecordStore
from settings import load_settings
from worker import Worker

# Setup jobs jump ahead of routine repository syncs
PROVISION_PRIORITY = 1
SYNC_PRIORITY = 0


class ProvisioningService:
    """Wires the stores, orchestrator and worker around one Storage."""

    def __init__(self, storage, gateway=None, settings=None, clock=None):
        self.storage = storage
        self.settings = settings or load_settings(storage)
        self.gateway = gateway or LocalGateway(default_timeout=self.settings.command_timeout)
        self.jobs = JobStore(
            storage,
            max_attempts=self.settings.max_attempts,
            backoff_base=self.settings.backoff_base,
            backoff_max=self.settings.backoff_max,
            clock=clock,
        )
        self.records = RecordStore(storage, clock=clock)
        self.orchestrator = Orchestrator(self.records, self.gateway, clpctl_path=self.settings.clpctl_path)
        self.worker = Worker(self.jobs, self.orchestrator, poll_interval=self.settings.poll_interval)

    # ---------------- Enqueue ----------------
    def enqueue_full_provision(self, parameters, priority=PROVISION_PRIORITY):
        params = parameters if isinstance(parameters, ProvisionParams) else ProvisionParams.from_dict(parameters)
        return self.jobs.enqueue(JobType.FULL_PROVISION, params, priority).id

    def enqueue_single_step_retry(self, record_id, step_name, priority=PROVISION_PRIORITY):
        step = Step.parse(step_name)
        record = self.records.get_by_id(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        payload = SingleStepPayload(
            record_id=record.id,
            step=step,
            params=ProvisionParams.from_dict(record.params or {"domain": record.domain}),
            baseline=record.flags,
        )
        return self.jobs.enqueue(JobType.SINGLE_STEP_RETRY, payload, priority).id

    def enqueue_repo_sync(self, domain, site_user, site_path=None, priority=SYNC_PRIORITY):
        payload = RepoSyncPayload.from_dict({"domain": domain, "site_user": site_user, "site_path": site_path})
        return self.jobs.enqueue(JobType.REPO_SYNC, payload, priority).id

    # ---------------- Jobs ----------------
    def get_job_status(self, job_id):
        return self.jobs.get(job_id)

    def list_jobs(self, status=None, type=None, limit=None):
        return self.jobs.list(status=status, type=type, limit=limit)

    def cancel_job(self, job_id):
        return self.jobs.cancel(job_id)

    def job_stats(self):
        return self.jobs.stats()

    def cleanup_jobs(self, days=30):
        return self.jobs.cleanup(days)

    # ---------------- Records ----------------
    def get_record(self, record_id):
        record = self.records.get_by_id(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def list_records(self, domain=None, limit=None):
        return self.records.list(domain=domain, limit=limit)

    # ---------------- Worker ----------------
    def start_worker(self, interval=None):
        return self.worker.start(interval)

    def stop_worker(self, timeout=None):
        return self.worker.stop(timeout)

    def worker_status(self):
        return self.worker.status()
