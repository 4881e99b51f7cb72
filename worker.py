# worker.py
import logging
import threading

from errors import ProvisionerError
from models import JobStatus

logger = logging.getLogger(__name__)

IDLE = "idle"
RUNNING = "running"


class Worker:
    """Single polling loop: claims at most one ready job per tick.

    Only one Worker may run per deployment.
    """

    def __init__(self, job_store, orchestrator, poll_interval=3.0):
        self.jobs = job_store
        self.orchestrator = orchestrator
        self.poll_interval = poll_interval
        self.stop_event = threading.Event()
        self.current_job_id = None
        self.processed = 0
        self._thread = None

    @property
    def state(self):
        alive = self._thread is not None and self._thread.is_alive()
        return RUNNING if alive and not self.stop_event.is_set() else IDLE

    def start(self, interval=None):
        if self._thread is not None and self._thread.is_alive():
            if self.stop_event.is_set():
                logger.warning("Queue worker is still finishing job %s", self.current_job_id)
            else:
                logger.warning("Queue worker is already running")
            return False
        if interval is not None:
            self.poll_interval = interval
        self.stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="provision-worker", daemon=True)
        self._thread.start()
        logger.info("Queue worker started with %ss interval", self.poll_interval)
        return True

    def stop(self, timeout=None):
        """Stop claiming new jobs; an in-flight job is allowed to finish."""
        if self._thread is None:
            return False
        self.stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Queue worker still finishing job %s", self.current_job_id)
        else:
            self._thread = None
        logger.info("Queue worker stopped")
        return True

    def status(self):
        return {
            "state": self.state,
            "poll_interval": self.poll_interval,
            "current_job_id": self.current_job_id,
            "processed": self.processed,
        }

    def run(self):
        while not self.stop_event.is_set():
            try:
                job = self.tick()
            except Exception:
                logger.exception("Error in queue worker")
                job = None
            if job is None:
                self.stop_event.wait(self.poll_interval)

    def tick(self):
        """Claim and process one ready job. Returns the job, or None if idle."""
        job = self.jobs.claim_next()
        if job is None:
            return None

        self.current_job_id = job.id
        try:
            outcome = self.orchestrator.process(job)
        except ProvisionerError as e:
            if e.retryable:
                logger.exception("Job %s failed", job.id)
                self.jobs.reschedule(job.id, str(e))
            else:
                logger.error("Job %s rejected: %s", job.id, e)
                self.jobs.mark_terminal(job.id, JobStatus.FAILED, error=str(e))
        except Exception as e:
            logger.exception("Job %s failed", job.id)
            self.jobs.reschedule(job.id, str(e) or e.__class__.__name__)
        else:
            if outcome.success:
                self.jobs.mark_terminal(job.id, JobStatus.COMPLETED, result=outcome.to_dict())
            else:
                self.jobs.reschedule(job.id, outcome.error, result=outcome.to_dict())
        finally:
            self.current_job_id = None
            self.processed += 1
        return job
