# dashboard.py
import html
import json
import os
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse

from errors import JobNotFound
from job_store import JobStore
from models import JobStatus, JobType, Step
from records import RecordStore
from storage import Storage

app = FastAPI(title="Provisioning queue dashboard")


@lru_cache(maxsize=1)
def get_storage() -> Storage:
    return Storage(os.environ.get("PROVISIONER_DB", "queue.db"))


def get_jobs(storage: Storage = Depends(get_storage)) -> JobStore:
    return JobStore(storage)


def get_records(storage: Storage = Depends(get_storage)) -> RecordStore:
    return RecordStore(storage)


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(180px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{html.escape(title)}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{html.escape(title)}</h1>
      <div class="navbar">
        <a href="/">🏠 Jobs</a>
        <a href="/records">📦 Records</a>
        <a href="/metrics/json">📈 Metrics</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _cell(value) -> str:
    return html.escape(str(value)) if value not in (None, "") else "-"


# ---------- Jobs ----------
@app.get("/", response_class=HTMLResponse)
def home(jobs: JobStore = Depends(get_jobs)):
    stats = jobs.stats()
    cards = "".join(
        f'<div class="card"><h3>{s.value}</h3><p>{stats[s.value]}</p></div>' for s in JobStatus
    )
    rows = "".join(
        f"<tr><td><a href='/job/{j.id}'>{j.id}</a></td><td>{j.type.value}</td><td>{_cell(j.domain)}</td>"
        f"<td>{j.status.value}</td><td>{j.attempts}/{j.max_attempts}</td><td>{j.priority}</td>"
        f"<td>{_cell(j.scheduled_at)}</td><td>{_cell(j.error)}</td></tr>"
        for j in jobs.list(limit=50)
    )
    body = f"""
      <div class="cards">{cards}</div>
      <h2>Recent jobs</h2>
      <table>
        <tr><th>ID</th><th>Type</th><th>Domain</th><th>Status</th><th>Attempts</th><th>Priority</th><th>Scheduled</th><th>Error</th></tr>
        {rows}
      </table>
    """
    if not rows:
        body += "<p class='muted'>No jobs yet.</p>"
    return page("📊 Provisioning Queue", body)


@app.get("/job/{job_id}", response_class=HTMLResponse)
def job_detail(job_id: int, jobs: JobStore = Depends(get_jobs)):
    try:
        job = jobs.get(job_id)
    except JobNotFound:
        return HTMLResponse(page("❌ Job not found", f"<p>Job {job_id} not found.</p>"), status_code=404)

    payload = dict(job.payload)
    for source in (payload, payload.get("params") or {}):
        for secret in ("site_user_password", "database_password"):
            if secret in source:
                source[secret] = "***"

    body = f"""
      <div class="cards">
        <div class="card"><b>Type</b><p>{job.type.value}</p></div>
        <div class="card"><b>Status</b><p>{job.status.value}</p></div>
        <div class="card"><b>Attempts</b><p>{job.attempts}/{job.max_attempts}</p></div>
        <div class="card"><b>Priority</b><p>{job.priority}</p></div>
      </div>
      <h3>Timestamps</h3>
      <table>
        <tr><th>Created</th><td>{_cell(job.created_at)}</td></tr>
        <tr><th>Scheduled</th><td>{_cell(job.scheduled_at)}</td></tr>
        <tr><th>Started</th><td>{_cell(job.started_at)}</td></tr>
        <tr><th>Completed</th><td>{_cell(job.completed_at)}</td></tr>
      </table>
      <h3>Payload</h3>
      <pre>{html.escape(json.dumps(payload, indent=2))}</pre>
      <h3>Error</h3>
      <pre>{_cell(job.error)}</pre>
      <h3>Result</h3>
      <pre>{html.escape(json.dumps(job.result, indent=2)) if job.result else "(no result)"}</pre>
    """
    return page(f"🔎 Job {job.id}", body)


@app.get("/api/jobs", response_class=JSONResponse)
def api_jobs(status: Optional[JobStatus] = None, type: Optional[JobType] = None, limit: Optional[int] = None,
             jobs: JobStore = Depends(get_jobs)):
    listed = jobs.list(status=status, type=type, limit=limit)
    return {"jobs": [_public_job(j) for j in listed], "stats": jobs.stats()}


@app.get("/api/jobs/{job_id}", response_class=JSONResponse)
def api_job(job_id: int, jobs: JobStore = Depends(get_jobs)):
    try:
        return _public_job(jobs.get(job_id))
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


def _public_job(job):
    data = job.to_dict()
    data.pop("payload")
    data["domain"] = job.domain
    return data


# ---------- Records ----------
@app.get("/records", response_class=HTMLResponse)
def records_page(domain: Optional[str] = None, records: RecordStore = Depends(get_records)):
    header = "".join(f"<th>{s.value}</th>" for s in Step)
    rows = ""
    for r in records.list(domain=domain, limit=100):
        flags = "".join(f"<td>{'✅' if r.flags.is_set(s) else '❌'}</td>" for s in Step)
        rows += (f"<tr><td>{r.id}</td><td>{html.escape(r.domain)}</td><td>{r.status.value}</td>{flags}"
                 f"<td>{_cell(r.job_id)}</td><td>{_cell(r.error_message)}</td></tr>")
    body = f"""
      <h2>Provisioning records</h2>
      <table>
        <tr><th>ID</th><th>Domain</th><th>Status</th>{header}<th>Job</th><th>Error</th></tr>
        {rows}
      </table>
    """
    if not rows:
        body += "<p class='muted'>No provisioning records found.</p>"
    return page("📦 Provisioning Records", body)


@app.get("/api/records/{record_id}", response_class=JSONResponse)
def api_record(record_id: int, records: RecordStore = Depends(get_records)):
    record = records.get_by_id(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Provisioning record {record_id} not found")
    return record.to_dict()


# ---------- Metrics ----------
@app.get("/metrics/json", response_class=JSONResponse)
def metrics_json(storage: Storage = Depends(get_storage), jobs: JobStore = Depends(get_jobs)):
    stats = jobs.stats()
    with storage.lock:
        row = storage.conn.execute("""
            SELECT COUNT(*) AS c,
                   SUM(CASE WHEN status='completed' THEN 1 ELSE 0 END) AS completed
            FROM provisioning_records
        """).fetchone()
    stats["records"] = {"total": row["c"], "completed": row["completed"] or 0}
    return stats
