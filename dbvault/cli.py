"""
Flask CLI commands.

    flask backup run <data_source_id>
    flask backup cleanup [--data-source ID]
"""

import click
from flask.cli import AppGroup

backup_cli = AppGroup('backup', help='Run backups and retention cleanup.')


@backup_cli.command('run')
@click.argument('data_source_id', type=int)
@click.option('--allow-inactive', is_flag=True, help='Back up a data source that is not active.')
def run_backup_command(data_source_id, allow_inactive):
    """Back up one data source now and wait for the result."""
    from dbvault.backup.executor import execute_backup_for_data_source

    try:
        run = execute_backup_for_data_source(data_source_id, run_type='manual', allow_inactive=allow_inactive)
    except ValueError as e:
        raise click.ClickException(str(e))

    click.echo(f"Run {run.id}: {run.status}")
    for destination_id, outcome in sorted((run.destination_outcomes or {}).items()):
        if outcome.get('success'):
            click.echo(f"  {destination_id}: stored at {outcome.get('stored_path')}")
        else:
            click.echo(f"  {destination_id}: failed after {outcome.get('retry_count', 0)} retries: {outcome.get('error')}")
    for error in run.errors or []:
        if not error.get('context', {}).get('destination_id'):
            click.echo(f"  error: {error.get('message')}")

    if run.status == 'failed':
        raise click.exceptions.Exit(1)


@backup_cli.command('cleanup')
@click.option('--data-source', 'data_source_id', type=int, default=None, help='Only clean up this data source.')
def cleanup_command(data_source_id):
    """Delete backups outside the retention windows."""
    from dbvault.backup.retention import enforce_retention_policies

    try:
        summary = enforce_retention_policies(data_source_id)
    except ValueError as e:
        raise click.ClickException(str(e))

    click.echo(
        f"Data sources: {summary['data_sources_processed']}, "
        f"runs cleaned: {summary['runs_deleted']}, "
        f"files deleted: {summary['files_deleted']}"
    )
    for error in summary['errors']:
        click.echo(f"  error: {error}", err=True)

    if summary['errors']:
        raise click.exceptions.Exit(1)


def register_cli(app):
    app.cli.add_command(backup_cli)
