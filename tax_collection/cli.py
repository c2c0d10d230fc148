"""
Command line entry point

    tax-collection serve
    tax-collection scheduler
    tax-collection run-accrual --as-of 2024-07-31
    tax-collection generate-tasks --date 2024-07-31
    tax-collection verify-audit
"""

import json
import sys

import click
import uvicorn

from .config import get_config
from .logging_config import setup_logging
from .directory import SYSTEM_ACTOR
from .errors import CollectionError


def _system():
    from .system import get_system
    return get_system()


@click.group()
def cli():
    """Tax collection arrears engine"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to configuration)")
@click.option("--port", default=None, type=int, help="Port (defaults to configuration)")
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host, port, reload):
    """Run the HTTP API"""
    config = get_config()
    host = host or config.api_host
    port = port or config.api_port
    click.echo(f"Starting tax collection API on http://{host}:{port} (docs at /docs)")
    uvicorn.run(
        "tax_collection.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=config.log_level.lower()
    )


@cli.command()
def scheduler():
    """Run the daily accrual and task generation jobs"""
    from .jobs import run_scheduler_loop

    config = get_config()
    if not config.enable_scheduler:
        click.echo("Scheduler is disabled (TAXCOL_ENABLE_SCHEDULER=false)")
        return

    click.echo(
        f"Scheduler running: accrual at {config.accrual_run_time}, "
        f"tasks at {config.task_generation_time} ({config.timezone})"
    )
    try:
        run_scheduler_loop(_system(), config)
    except KeyboardInterrupt:
        click.echo("Scheduler stopped")


@cli.command("run-accrual")
@click.option("--as-of", "as_of", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="Civil date to accrue as of (default: today)")
def run_accrual(as_of):
    """Run penalty and interest accrual once"""
    try:
        report = _system().accrual_scheduler.run(as_of=as_of.date() if as_of else None)
    except CollectionError as e:
        click.echo(f"Accrual failed: {e}", err=True)
        sys.exit(1)

    click.echo(
        f"Processed {report.demands_processed} demands, updated {report.demands_updated}; "
        f"penalty {report.total_penalty_applied}, interest {report.total_interest_applied}"
    )
    for group in report.skipped_groups:
        click.echo(f"  skipped FY {group['financial_year']}: {group['reason']}")
    for error in report.errors:
        click.echo(f"  error {error.demand_number}: {error.reason}")


@cli.command("generate-tasks")
@click.option("--date", "task_date", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="Task date (default: today)")
def generate_tasks(task_date):
    """Generate collector tasks for every active collector"""
    summary = _system().task_synthesizer.generate_for_all(
        target_date=task_date.date() if task_date else None
    )
    click.echo(
        f"Generated {summary['tasks_generated']} tasks for {summary['collectors']} collectors "
        f"on {summary['task_date']}"
    )
    for result in summary['results']:
        click.echo(
            f"  {result['collector_id']}: {result['tasks_generated']} new, "
            f"{len(result['skipped'])} skipped"
        )


@cli.command("verify-audit")
def verify_audit():
    """Verify the audit hash chain"""
    result = _system().audit_trail.check_integrity(SYSTEM_ACTOR.id, SYSTEM_ACTOR.role.value)
    click.echo(json.dumps(result, indent=2, default=str))
    if not result['valid']:
        sys.exit(1)


if __name__ == '__main__':
    cli()
