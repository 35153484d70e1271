"""CLI tools for mailbox administration."""

import uuid

import anyio
import click

from mailgraph.core.errors import SyncError
from mailgraph.core.structured_logging import configure_logging
from mailgraph.db.session import SessionLocal
from mailgraph.services import job_service, sync_orchestrator
from mailgraph.services.gmail_client import get_mailbox_client


@click.group()
def cli():
    """Mailgraph CLI tools."""
    configure_logging()


@cli.command()
@click.option("--user-id", required=True, type=click.UUID, help="Owning user ID")
@click.option("--email", required=True, help="Gmail address of the mailbox")
@click.option("--refresh-token", required=True, help="OAuth refresh token with gmail.readonly scope")
@click.option("--display-name", default=None, help="Optional display name")
def link_account(user_id: uuid.UUID, email: str, refresh_token: str, display_name: str | None):
    """
    Link a Gmail mailbox and queue its initial sync.

    Example:
        mailgraph-cli link-account --user-id 5f0c... --email "me@example.com" --refresh-token "1//0g..."
    """
    db = SessionLocal()
    try:
        account = sync_orchestrator.link_account(
            db,
            user_id=user_id,
            email_address=email,
            refresh_token=refresh_token,
            display_name=display_name,
        )
        click.echo(f"✓ Linked {account.email_address}")
        click.echo(f"  Account ID: {account.id}")
        click.echo(f"  Status: {account.sync_status}")
    except SyncError as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--account-id", required=True, type=click.UUID, help="Account to unlink")
def unlink_account(account_id: uuid.UUID):
    """Disable an account and cancel its queued work. Stored mail and contacts are kept."""
    db = SessionLocal()
    try:
        account = sync_orchestrator.get_account(db, account_id)
        if not account:
            click.echo(f"❌ Account not found: {account_id}")
            return
        result = sync_orchestrator.unlink_account(db, account)
        click.echo(f"✓ Unlinked {account.email_address}")
        click.echo(f"  Jobs cancelled: {result['cancelled']}, in-flight flagged: {result['flagged']}")
    finally:
        db.close()


@cli.command()
def schedule_sync():
    """Run the fallback poll once (what the cron endpoint does)."""
    db = SessionLocal()
    try:
        result = sync_orchestrator.schedule_incremental_sync_jobs(db)
        click.echo(
            f"✓ Checked {result['accounts_checked']} accounts: "
            f"{result['jobs_created']} sync jobs queued, "
            f"{result['duplicates_skipped']} already queued, "
            f"{result['watch_jobs_queued']} watch renewals"
        )
    finally:
        db.close()


@cli.command()
@click.option("--account-id", required=True, type=click.UUID, help="Account whose push watch to renew")
def refresh_watch(account_id: uuid.UUID):
    """Renew the Gmail push subscription for one account now."""
    db = SessionLocal()
    try:
        account = sync_orchestrator.get_account(db, account_id)
        if not account:
            click.echo(f"❌ Account not found: {account_id}")
            return
        try:
            result = anyio.run(sync_orchestrator.refresh_watch, db, account, get_mailbox_client())
        except SyncError as e:
            db.rollback()
            click.echo(f"❌ Error: {e}")
            return
        click.echo(f"✓ Watch refresh: {result}")
    finally:
        db.close()


@cli.command()
@click.option("--job-id", required=True, type=click.UUID, help="Dead job to requeue")
@click.option("--max-attempts", default=None, type=int, help="Override the attempt budget")
def requeue_job(job_id: uuid.UUID, max_attempts: int | None):
    """Return a dead job to the queue."""
    db = SessionLocal()
    try:
        job = job_service.requeue_dead_job(db, job_id, max_attempts=max_attempts)
        if not job:
            click.echo(f"❌ No dead job with ID {job_id}")
            return
        click.echo(f"✓ Requeued {job.job_type} job {job.id}")
    finally:
        db.close()


@cli.command()
@click.option("--concurrency", default=None, type=int, help="Claim loops to run (default: WORKER_CONCURRENCY)")
@click.option("--job-types", default=None, help="Comma-separated job types to claim")
def run_worker(concurrency: int | None, job_types: str | None):
    """Run the job worker in the foreground."""
    import asyncio

    from mailgraph.core.structured_logging import setup_error_reporting
    from mailgraph.worker import parse_worker_job_types, run_worker as _run_worker

    setup_error_reporting("mailgraph-worker")
    try:
        types = parse_worker_job_types(job_types)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--job-types")
    try:
        asyncio.run(_run_worker(concurrency=concurrency, job_types=types))
    except KeyboardInterrupt:
        click.echo("Worker stopped")


if __name__ == "__main__":
    cli()
