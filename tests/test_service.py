"""End-to-end tests through the service facade."""
import pytest

from conftest import CLONE
from errors import InvalidStep, PayloadError, RecordNotFound
from models import JobStatus, JobType, RecordStatus, Step
from service import ProvisioningService


@pytest.fixture
def service(storage, gateway, clock):
    return ProvisioningService(storage, gateway=gateway, clock=clock)


def test_settings_come_from_config_table(storage, gateway):
    storage.set_config("max_attempts", "5")
    storage.set_config("poll_interval", "0.5")
    service = ProvisioningService(storage, gateway=gateway)
    assert service.jobs.max_attempts == 5
    assert service.worker.poll_interval == 0.5


def test_enqueue_full_provision_validates(service, params):
    params["database_password"] = "123"
    with pytest.raises(PayloadError):
        service.enqueue_full_provision(params)
    assert service.list_jobs() == []


def test_provisioning_outranks_sync(service, params):
    sync_id = service.enqueue_repo_sync("example.com", "example")
    provision_id = service.enqueue_full_provision(params)
    assert service.jobs.claim_next().id == provision_id
    assert service.jobs.claim_next().id == sync_id


def test_provision_then_retry_failed_step(service, gateway, params):
    gateway.fail_on(CLONE, "Permission denied (publickey)")
    job_id = service.enqueue_full_provision(params)
    service.worker.tick()

    job = service.get_job_status(job_id)
    assert job.status is JobStatus.COMPLETED
    record = service.get_record(job.result["record_id"])
    assert record.status is RecordStatus.FAILED
    assert not record.flags.repository_cloned

    gateway.failures.clear()
    retry_id = service.enqueue_single_step_retry(record.id, "clone_repository")
    retry = service.get_job_status(retry_id)
    assert retry.type is JobType.SINGLE_STEP_RETRY
    assert retry.payload["baseline"] == record.flags.as_dict()
    assert retry.payload["params"]["database_password"] == params["database_password"]

    service.worker.tick()
    updated = service.get_record(record.id)
    assert updated.flags.repository_cloned
    assert not updated.flags.environment_configured
    assert updated.status is RecordStatus.FAILED
    assert service.get_job_status(retry_id).result["step"] == Step.CLONE_REPOSITORY.value


def test_retry_validation(service, params):
    with pytest.raises(RecordNotFound):
        service.enqueue_single_step_retry(42, "create_site")

    service.enqueue_full_provision(params)
    service.worker.tick()
    record = service.list_records(domain="example.com")[0]
    with pytest.raises(InvalidStep):
        service.enqueue_single_step_retry(record.id, "reboot")
    assert len(service.list_jobs()) == 1


def test_cancel_and_stats(service, params):
    job_id = service.enqueue_full_provision(params)
    assert service.cancel_job(job_id) is True
    stats = service.job_stats()
    assert stats["failed"] == 1
    assert stats["by_type"]["full_provision"] == 1
    assert service.worker.tick() is None


def test_cleanup_jobs(service, clock, params):
    service.enqueue_full_provision(params)
    service.worker.tick()
    clock.advance(31 * 86400)
    assert service.cleanup_jobs(days=30) == 1
    assert service.list_jobs() == []
    assert len(service.list_records()) == 1


def test_get_record_missing(service):
    with pytest.raises(RecordNotFound):
        service.get_record(1)


def test_worker_controls(service):
    assert service.worker_status()["state"] == "idle"
    assert service.start_worker(interval=0.01) is True
    assert service.worker_status()["state"] == "running"
    assert service.stop_worker(timeout=5) is True
    assert service.worker_status()["state"] == "idle"
