# cli.py
import json
import time

import click

from errors import JobNotFound, PayloadError, ProvisionerError
from logutil import init_logging
from models import JobStatus, JobType, Step
from service import PROVISION_PRIORITY, SYNC_PRIORITY, ProvisioningService
from settings import Settings, load_settings
from storage import Storage


def _service(ctx, **overrides):
    storage = ctx.obj["storage"]
    return ProvisioningService(storage, settings=load_settings(storage, **overrides))


def _fail(message):
    raise click.ClickException(message)


@click.group()
@click.option("--db", "db_path", default="queue.db", envvar="PROVISIONER_DB", show_default=True, help="SQLite database path")
@click.option("--log-level", default="WARNING", help="Console log level")
@click.option("--log-file", default=None, help="Also write DEBUG logs to this file")
@click.pass_context
def cli(ctx, db_path, log_level, log_file):
    """provisionctl - queue and run hosted site provisioning jobs"""
    init_logging(log_level, log_file)
    ctx.ensure_object(dict)
    ctx.obj["storage"] = Storage(db_path)


# ---------------- Enqueue ----------------
@cli.command()
@click.option("--domain", required=True, help="Domain of the site to provision")
@click.option("--site-user", required=True, help="Runtime user owning the site")
@click.option("--site-user-password", required=True, help="Password for the site user")
@click.option("--database-name", required=True)
@click.option("--database-user", required=True)
@click.option("--database-password", required=True)
@click.option("--php-version", default="8.3", show_default=True)
@click.option("--vhost-template", default="Laravel 12", show_default=True)
@click.option("--repository-url", default=None, help="Git URL to clone into the site root")
@click.option("--migrations/--no-migrations", default=True, show_default=True)
@click.option("--seeders/--no-seeders", default=False, show_default=True)
@click.option("--optimize-cache/--no-optimize-cache", default=True, show_default=True)
@click.option("--install-dependencies/--no-install-dependencies", default=True, show_default=True)
@click.option("--priority", default=PROVISION_PRIORITY, type=int, show_default=True, help="Job priority (higher runs first)")
@click.pass_context
def provision(ctx, domain, site_user, site_user_password, database_name, database_user, database_password,
              php_version, vhost_template, repository_url, migrations, seeders, optimize_cache,
              install_dependencies, priority):
    """Queue a full provisioning run for a domain"""
    parameters = {
        "domain": domain,
        "site_user": site_user,
        "site_user_password": site_user_password,
        "database_name": database_name,
        "database_user": database_user,
        "database_password": database_password,
        "php_version": php_version,
        "vhost_template": vhost_template,
        "repository_url": repository_url,
        "install": {
            "run_migrations": migrations,
            "run_seeders": seeders,
            "optimize_cache": optimize_cache,
            "install_dependencies": install_dependencies,
        },
    }
    try:
        job_id = _service(ctx).enqueue_full_provision(parameters, priority)
    except PayloadError as e:
        _fail(f"Invalid provisioning request: {e}")
    click.echo(f"✅ Job {job_id} enqueued (full_provision, domain={domain.lower()}, priority={priority}).")


@cli.command("retry-step")
@click.argument("record_id", type=int)
@click.argument("step", type=click.Choice([s.value for s in Step]))
@click.option("--priority", default=PROVISION_PRIORITY, type=int, show_default=True)
@click.pass_context
def retry_step(ctx, record_id, step, priority):
    """Queue a retry of one provisioning step for a record"""
    try:
        job_id = _service(ctx).enqueue_single_step_retry(record_id, step, priority)
    except ProvisionerError as e:
        _fail(str(e))
    click.echo(f"♻️ Job {job_id} enqueued (retry {step} on record {record_id}).")


@cli.command()
@click.option("--domain", required=True)
@click.option("--site-user", required=True)
@click.option("--site-path", default=None, help="Checkout path (default /home/<user>/htdocs/<domain>)")
@click.option("--priority", default=SYNC_PRIORITY, type=int, show_default=True)
@click.pass_context
def sync(ctx, domain, site_user, site_path, priority):
    """Queue a repository sync (git pull) for a site"""
    try:
        job_id = _service(ctx).enqueue_repo_sync(domain, site_user, site_path, priority)
    except PayloadError as e:
        _fail(f"Invalid sync request: {e}")
    click.echo(f"✅ Job {job_id} enqueued (repo_sync, domain={domain.lower()}).")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--status", type=click.Choice([s.value for s in JobStatus]), default=None, help="Filter jobs by status")
@click.option("--type", "job_type", type=click.Choice([t.value for t in JobType]), default=None, help="Filter jobs by type")
@click.option("--limit", type=int, default=None)
@click.pass_context
def list_jobs(ctx, status, job_type, limit):
    """List jobs in the queue"""
    jobs = _service(ctx).list_jobs(status=status, type=job_type, limit=limit)
    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        click.echo(f"{job.id} | {job.type.value} | {job.domain or '-'} | status={job.status.value} | "
                   f"attempts={job.attempts}/{job.max_attempts} | priority={job.priority} | scheduled_at={job.scheduled_at}")


# ---------------- Status ----------------
@cli.command()
@click.pass_context
def status(ctx):
    """Show summary of job statuses"""
    stats = _service(ctx).job_stats()
    if not stats["total"]:
        click.echo("No jobs in the system yet.")
        return
    click.echo("📊 Job Status Summary:")
    for s in JobStatus:
        click.echo(f"  {s.value}: {stats[s.value]}")
    click.echo("  by type: " + ", ".join(f"{k}={v}" for k, v in stats["by_type"].items()))


@cli.command()
@click.argument("job_id", type=int)
@click.pass_context
def show(ctx, job_id):
    """Show details of a single job"""
    try:
        job = _service(ctx).get_job_status(job_id)
    except JobNotFound as e:
        _fail(str(e))

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Type: {job.type.value}")
    click.echo(f"  Domain: {job.domain or '-'}")
    click.echo(f"  Status: {job.status.value}")
    click.echo(f"  Attempts: {job.attempts}/{job.max_attempts}")
    click.echo(f"  Priority: {job.priority}")
    click.echo(f"  Scheduled at: {job.scheduled_at}")
    click.echo(f"  Created: {job.created_at}")
    click.echo(f"  Started: {job.started_at or '-'}")
    click.echo(f"  Completed: {job.completed_at or '-'}")
    click.echo(f"  Error: {job.error or '-'}")
    click.echo("  Result:")
    click.echo(json.dumps(job.result, indent=2) if job.result else "(no result)")


@cli.command()
@click.argument("job_id", type=int)
@click.pass_context
def cancel(ctx, job_id):
    """Cancel a job that has not started yet"""
    try:
        cancelled = _service(ctx).cancel_job(job_id)
    except JobNotFound as e:
        _fail(str(e))
    if not cancelled:
        _fail(f"Job {job_id} is not pending; only jobs that have not started can be cancelled.")
    click.echo(f"🛑 Job {job_id} cancelled.")


@cli.command()
@click.option("--days", default=30, show_default=True, help="Remove finished jobs older than N days")
@click.pass_context
def cleanup(ctx, days):
    """Delete old completed/failed jobs"""
    deleted = _service(ctx).cleanup_jobs(days)
    click.echo(f"🧹 Removed {deleted} job(s).")


# ---------------- Records ----------------
@cli.command()
@click.option("--domain", default=None)
@click.option("--limit", type=int, default=None)
@click.pass_context
def records(ctx, domain, limit):
    """List provisioning records"""
    rows = _service(ctx).list_records(domain=domain, limit=limit)
    if not rows:
        click.echo("No provisioning records found.")
        return
    for r in rows:
        done = sum(r.flags.as_dict().values())
        click.echo(f"{r.id} | {r.domain} | status={r.status.value} | steps={done}/6 | job={r.job_id or '-'} | created={r.created_at}")


@cli.command()
@click.argument("record_id", type=int)
@click.pass_context
def record(ctx, record_id):
    """Show one provisioning record with its step flags"""
    try:
        r = _service(ctx).get_record(record_id)
    except ProvisionerError as e:
        _fail(str(e))
    click.echo(f"🔎 Record {r.id} ({r.domain})")
    click.echo(f"  Status: {r.status.value}")
    click.echo(f"  Job: {r.job_id or '-'}")
    for step in Step:
        mark = "✅" if r.flags.is_set(step) else "❌"
        click.echo(f"  {mark} {step.value}")
    click.echo(f"  Error: {r.error_message or '-'}")


# ---------------- Worker ----------------
@cli.command()
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval (seconds) (uses config if set)")
@click.option("--backoff-base", default=None, type=int, help="Retry backoff base in seconds (uses config if set)")
@click.pass_context
def worker(ctx, poll_interval, backoff_base):
    """Start the provisioning worker (one per host)"""
    service = _service(ctx, poll_interval=poll_interval, backoff_base=backoff_base)
    service.start_worker()
    click.echo(f"🚀 Worker started (poll={service.settings.poll_interval}s, "
               f"backoff_base={service.settings.backoff_base}s, max_attempts={service.settings.max_attempts})")
    click.echo("Press Ctrl+C to stop the worker gracefully.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping worker (waiting for the current job) ...")
        service.stop_worker()
        click.echo(f"✅ Worker stopped after {service.worker_status()['processed']} job(s).")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for the worker and defaults"""
    pass


@config.command("set")
@click.argument("key", type=click.Choice(list(Settings.__dataclass_fields__)))
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    ctx.obj["storage"].set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.pass_context
def config_get(ctx, key):
    """Get a config key (falls back to the built-in default)"""
    value = ctx.obj["storage"].get_config(key)
    if value is not None:
        click.echo(f"{key}={value}")
        return
    default = getattr(Settings(), key, None)
    if default is None:
        click.echo(f"{key} not set")
    else:
        click.echo(f"{key}={default} (default)")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    rows = ctx.obj["storage"].list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
