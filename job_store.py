# job_store.py
import json
import logging
from datetime import timedelta

from errors import JobNotFound
from models import Job, JobStatus, JobType, parse_payload, to_iso, utcnow

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Job cancelled by user"


def backoff_delay(attempts, base=30, maximum=3600):
    """Seconds to wait before the next try: base * 2^attempts, capped."""
    return min(base * (2 ** attempts), maximum)


def log_transition(job_id, old_state, new_state, extra=""):
    logger.info("Job %s: %s → %s %s", job_id, old_state, new_state, extra)


class JobStore:
    def __init__(self, storage, max_attempts=3, backoff_base=30, backoff_max=3600, clock=None):
        self.db = storage
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock or utcnow

    def _now(self):
        return self._clock()

    def _fetch(self, job_id):
        row = self.db.conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        if not row:
            raise JobNotFound(job_id)
        return Job.from_row(row)

    # ---------------- Enqueue ----------------
    def enqueue(self, job_type, payload, priority=0, max_attempts=None):
        job_type = JobType(job_type)
        payload = parse_payload(job_type, payload)
        now = to_iso(self._now())
        with self.db.lock:
            cur = self.db.conn.execute("""
                INSERT INTO jobs (type, payload, status, priority, attempts, max_attempts, scheduled_at, created_at, updated_at)
                VALUES (?, ?, 'pending', ?, 0, ?, ?, ?, ?)
            """, (job_type.value, json.dumps(payload.to_dict()), int(priority), max_attempts or self.max_attempts, now, now, now))
            self.db.conn.commit()
            job = self._fetch(cur.lastrowid)
        logger.info("Job %s enqueued (type=%s, priority=%s, domain=%s)", job.id, job.type.value, job.priority, job.domain)
        return job

    # ---------------- Claim ----------------
    def claim_next(self):
        """
        Atomically claim the best-ranked ready job:
        - status = 'pending' and scheduled_at <= now
        Preference: highest priority first, then oldest.
        Returns None when nothing is ready.
        """
        now_iso = to_iso(self._now())
        with self.db.lock:
            self.db.conn.execute("BEGIN IMMEDIATE")
            try:
                row = self.db.conn.execute("""
                    SELECT id FROM jobs
                    WHERE status='pending' AND scheduled_at <= ?
                    ORDER BY priority DESC, created_at ASC, id ASC
                    LIMIT 1
                """, (now_iso,)).fetchone()
                if not row:
                    self.db.conn.execute("COMMIT")
                    return None

                updated = self.db.conn.execute("""
                    UPDATE jobs
                    SET status='processing', started_at=?, updated_at=?
                    WHERE id=? AND status='pending'
                """, (now_iso, now_iso, row["id"])).rowcount
                self.db.conn.execute("COMMIT")
            except Exception:
                self.db.conn.rollback()
                raise

            if updated != 1:
                return None  # lost the race to another worker
            job = self._fetch(row["id"])
        log_transition(job.id, "pending", "processing", f"(attempt {job.attempts + 1}/{job.max_attempts})")
        return job

    # ---------------- Terminal / retry ----------------
    def mark_terminal(self, job_id, status, result=None, error=None):
        status = JobStatus(status)
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal job status")
        now_iso = to_iso(self._now())
        completed_at = now_iso if status is JobStatus.COMPLETED else None
        with self.db.lock:
            old = self._fetch(job_id)
            self.db.conn.execute("""
                UPDATE jobs
                SET status=?, result=?, error=?, completed_at=?, updated_at=?
                WHERE id=?
            """, (status.value, json.dumps(result) if result is not None else None, error, completed_at, now_iso, job_id))
            self.db.conn.commit()
            job = self._fetch(job_id)
        log_transition(job_id, old.status.value, status.value, f"(error={error})" if error else "")
        return job

    def reschedule(self, job_id, error, result=None):
        now = self._now()
        now_iso = to_iso(now)
        with self.db.lock:
            job = self._fetch(job_id)
            attempts = job.attempts + 1
            result_json = json.dumps(result) if result is not None else None
            if attempts >= job.max_attempts:
                self.db.conn.execute("""
                    UPDATE jobs
                    SET status='failed', attempts=?, error=?, result=COALESCE(?, result), updated_at=?
                    WHERE id=?
                """, (attempts, error, result_json, now_iso, job_id))
                self.db.conn.commit()
                log_transition(job_id, job.status.value, "failed", f"(attempts={attempts}, error={error})")
            else:
                delay = backoff_delay(attempts, self.backoff_base, self.backoff_max)
                scheduled_at = to_iso(now + timedelta(seconds=delay))
                self.db.conn.execute("""
                    UPDATE jobs
                    SET status='pending', attempts=?, error=?, result=COALESCE(?, result), scheduled_at=?, updated_at=?
                    WHERE id=?
                """, (attempts, error, result_json, scheduled_at, now_iso, job_id))
                self.db.conn.commit()
                log_transition(job_id, job.status.value, "pending",
                               f"(attempts={attempts}/{job.max_attempts}, retry_in={delay}s, error={error})")
            return self._fetch(job_id)

    def cancel(self, job_id):
        """Fail a job that has not been claimed yet. Returns False otherwise."""
        now_iso = to_iso(self._now())
        with self.db.lock:
            self._fetch(job_id)
            updated = self.db.conn.execute("""
                UPDATE jobs SET status='failed', error=?, updated_at=?
                WHERE id=? AND status='pending'
            """, (CANCELLED_MESSAGE, now_iso, job_id)).rowcount
            self.db.conn.commit()
        if updated:
            log_transition(job_id, "pending", "failed", f"({CANCELLED_MESSAGE})")
        return updated == 1

    # ---------------- Read side ----------------
    def get(self, job_id):
        with self.db.lock:
            return self._fetch(job_id)

    def list(self, status=None, type=None, limit=None):
        clauses, args = [], []
        if status:
            clauses.append("status=?")
            args.append(JobStatus(status).value)
        if type:
            clauses.append("type=?")
            args.append(JobType(type).value)
        query = "SELECT * FROM jobs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id DESC"
        if limit:
            query += " LIMIT ?"
            args.append(int(limit))
        with self.db.lock:
            rows = self.db.conn.execute(query, args).fetchall()
        return [Job.from_row(r) for r in rows]

    def stats(self):
        with self.db.lock:
            by_status = self.db.conn.execute("SELECT status, COUNT(*) AS c FROM jobs GROUP BY status").fetchall()
            by_type = self.db.conn.execute("SELECT type, COUNT(*) AS c FROM jobs GROUP BY type").fetchall()
        stats = {s.value: 0 for s in JobStatus}
        stats.update({r["status"]: r["c"] for r in by_status})
        stats["total"] = sum(r["c"] for r in by_status)
        stats["by_type"] = {t.value: 0 for t in JobType}
        stats["by_type"].update({r["type"]: r["c"] for r in by_type})
        return stats

    def cleanup(self, days=30):
        """Delete completed/failed jobs created more than `days` days ago."""
        cutoff = to_iso(self._now() - timedelta(days=days))
        with self.db.lock:
            deleted = self.db.conn.execute("""
                DELETE FROM jobs WHERE status IN ('completed', 'failed') AND created_at < ?
            """, (cutoff,)).rowcount
            self.db.conn.commit()
        logger.info("Removed %s finished job(s) older than %s days", deleted, days)
        return deleted
