"""Command-line interface for dirbackup."""

import sys
import logging
from typing import Optional

import click

from dirbackup import configure_logging
from dirbackup.config import load_config
from dirbackup.errors import ConfigInvalid, ConnectFailed
from dirbackup.backup.executor import execute_backup
from dirbackup.backup.notifier import Notifier
from dirbackup.backup.storage import SFTPStorage


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _load(ctx):
    try:
        return load_config(ctx.obj.get('config_path'))
    except ConfigInvalid as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG)


@click.group()
@click.option('--config', '-c', 'config_path',
              help='Path to configuration file (default: $DIRBACKUP_CONFIG_PATH)')
@click.option('--log-level', default='INFO',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Logging level')
@click.option('--log-file',
              help='Log file path')
@click.pass_context
def cli(ctx, config_path: Optional[str], log_level: str, log_file: Optional[str]):
    """dirbackup - archive a directory and ship it to an SFTP server."""
    ctx.ensure_object(dict)

    configure_logging(log_level, log_file)

    ctx.obj['config_path'] = config_path


@cli.command()
@click.pass_context
def run(ctx):
    """Run one backup now."""
    config = _load(ctx)

    report = execute_backup(config)

    if report.no_files:
        click.echo(f"No files to back up in {report.source_dir}")
        sys.exit(EXIT_OK)

    if report.success:
        click.echo(f"Backup uploaded to {config.host}:{report.remote_path} ({report.size} bytes)")
        sys.exit(EXIT_OK)

    click.echo(f"Backup failed: {report.error_message}", err=True)
    sys.exit(EXIT_FAILED)


@cli.command()
@click.pass_context
def schedule(ctx):
    """Run backups on the configured crontab schedule."""
    from dirbackup.scheduler import init_scheduler, start_scheduler

    config = _load(ctx)

    try:
        init_scheduler(config)
    except ConfigInvalid as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG)

    click.echo(f"Scheduling backups of {config.source_dir} ({config.schedule})")
    start_scheduler()


@cli.command('validate-config')
@click.option('--check-connection/--no-check-connection', default=False,
              help='Also open an SFTP session to the remote host')
@click.pass_context
def validate_config(ctx, check_connection: bool):
    """Validate configuration file."""
    config = _load(ctx)

    click.echo("Configuration loaded successfully")
    click.echo(f"   Source: {config.source_dir} (policy: {config.policy})")
    click.echo(f"   Destination: {config.username}@{config.host}:{config.port}{config.remote_dir}")
    click.echo(f"   Format: {config.compression_format}")
    click.echo(f"   Recipient: {config.recipient}")
    click.echo(f"   Schedule: {config.schedule or 'not configured'}")

    if check_connection:
        try:
            SFTPStorage.from_config(config).test_connection()
        except ConnectFailed as e:
            click.echo(f"Connection failed: {e}", err=True)
            sys.exit(EXIT_FAILED)
        click.echo("SFTP connection successful")


@cli.command('test-email')
@click.pass_context
def test_email(ctx):
    """Send a test email to verify notification settings."""
    config = _load(ctx)

    notifier = Notifier.from_config(config)
    if notifier.send_test_email():
        click.echo(f"Test email sent to {config.recipient}")
    else:
        click.echo("Failed to send test email", err=True)
        sys.exit(EXIT_FAILED)


def main():
    """Main CLI entry point."""
    cli()


if __name__ == '__main__':
    main()
