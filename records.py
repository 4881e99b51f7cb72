# records.py
"""Provisioning records and the rules that reconcile them.

The pure functions at the top decide *what* a record should become; the
RecordStore applies those decisions to the database. Rules:

1. A completed record for a domain is never downgraded by a full-pipeline
   run; a failing run forks a new record instead (or reuses the failed
   record an earlier run already forked).
2. A failed or in-progress record is updated in place by later runs.
3. A single-step retry updates its record by id, only ever sets flags, and
   keeps a completed record completed.
"""
import json
import logging

from errors import RecordNotFound
from models import STEP_FLAGS, ProvisioningRecord, RecordStatus, StepFlags, to_iso, utcnow

logger = logging.getLogger(__name__)

# Most relevant first when picking the record a full run should touch
UPSERT_PREFERENCE = (RecordStatus.COMPLETED, RecordStatus.IN_PROGRESS, RecordStatus.FAILED)

FLAG_COLUMNS = tuple(STEP_FLAGS.values())


def status_from_flags(flags):
    return RecordStatus.COMPLETED if flags.all_done() else RecordStatus.FAILED


def resolve_status(flags, requested, prior=None):
    """Overall status after a single-step retry."""
    if flags.all_done():
        return RecordStatus.COMPLETED
    if prior is RecordStatus.COMPLETED:
        return RecordStatus.COMPLETED
    requested = RecordStatus(requested)
    if requested is RecordStatus.COMPLETED:
        return RecordStatus.FAILED
    return requested


def pick_upsert_target(records):
    """The record a full run for the domain should reconcile against, if any.

    `records` is expected newest first.
    """
    for status in UPSERT_PREFERENCE:
        for record in records:
            if record.status is status:
                return record
    return None


def must_fork(existing, incoming_status):
    return existing.status is RecordStatus.COMPLETED and RecordStatus(incoming_status) is not RecordStatus.COMPLETED


def pick_fork_target(records, completed):
    """The newest failed or in-progress record created after `completed`, if any."""
    for record in records:
        if record.id == completed.id:
            break
        if record.status in (RecordStatus.IN_PROGRESS, RecordStatus.FAILED):
            return record
    return None


class RecordStore:
    def __init__(self, storage, clock=None):
        self.db = storage
        self._clock = clock or utcnow

    def _fetch(self, record_id):
        row = self.db.conn.execute("SELECT * FROM provisioning_records WHERE id=?", (record_id,)).fetchone()
        return ProvisioningRecord.from_row(row) if row else None

    def _insert(self, domain, flags, status, error, job_id, params):
        now = to_iso(self._clock())
        cur = self.db.conn.execute(f"""
            INSERT INTO provisioning_records (job_id, domain, params, {", ".join(FLAG_COLUMNS)}, status, error_message, created_at, updated_at)
            VALUES (?, ?, ?, {", ".join("?" for _ in FLAG_COLUMNS)}, ?, ?, ?, ?)
        """, (job_id, domain, json.dumps(params) if params is not None else None,
              *[int(getattr(flags, c)) for c in FLAG_COLUMNS], status.value, error, now, now))
        self.db.conn.commit()
        return self._fetch(cur.lastrowid)

    def _update(self, record_id, flags, status, error, job_id, params=None):
        now = to_iso(self._clock())
        assignments = ", ".join(f"{c}=?" for c in FLAG_COLUMNS)
        self.db.conn.execute(f"""
            UPDATE provisioning_records
            SET {assignments}, status=?, error_message=?, job_id=COALESCE(?, job_id),
                params=COALESCE(?, params), updated_at=?
            WHERE id=?
        """, (*[int(getattr(flags, c)) for c in FLAG_COLUMNS], status.value, error, job_id,
              json.dumps(params) if params is not None else None, now, record_id))
        self.db.conn.commit()
        return self._fetch(record_id)

    # ---------------- Writes ----------------
    def upsert_for_domain(self, domain, flags, status, error=None, job_id=None, params=None):
        status = RecordStatus(status)
        domain = domain.lower()
        with self.db.lock:
            existing = self.list(domain=domain)
            target = pick_upsert_target(existing)
            if target is not None and must_fork(target, status):
                logger.info("Completed record %s for %s left untouched by a %s run", target.id, domain, status.value)
                target = pick_fork_target(existing, target)
            if target is None:
                record = self._insert(domain, flags, status, error, job_id, params)
                logger.info("Provisioning record %s created for %s (status=%s)", record.id, domain, status.value)
            else:
                record = self._update(target.id, flags, status, error, job_id, params)
                logger.info(
                    "Provisioning record %s for %s updated in place (%s → %s)",
                    record.id, domain, target.status.value, status.value,
                )
        return record

    def update_by_id(self, record_id, flags, status, error=None, job_id=None):
        with self.db.lock:
            existing = self._fetch(record_id)
            if existing is None:
                raise RecordNotFound(record_id)
            merged = existing.flags.merge(flags)
            final = resolve_status(merged, status, prior=existing.status)
            record = self._update(record_id, merged, final, error, job_id)
        logger.info(
            "Provisioning record %s for %s updated by id (%s → %s)",
            record_id, existing.domain, existing.status.value, final.value,
        )
        return record

    # ---------------- Reads ----------------
    def get_by_id(self, record_id):
        with self.db.lock:
            return self._fetch(record_id)

    def get_by_domain(self, domain):
        return pick_upsert_target(self.list(domain=domain)) or next(iter(self.list(domain=domain, limit=1)), None)

    def list(self, domain=None, limit=None):
        query = "SELECT * FROM provisioning_records"
        args = []
        if domain:
            query += " WHERE domain=?"
            args.append(domain.lower())
        query += " ORDER BY created_at DESC, id DESC"
        if limit:
            query += " LIMIT ?"
            args.append(int(limit))
        with self.db.lock:
            rows = self.db.conn.execute(query, args).fetchall()
        return [ProvisioningRecord.from_row(r) for r in rows]
