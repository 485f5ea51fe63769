"""Command line interface for box-backup."""

import os
import sys
import logging

import click

from boxbackup import configure_logging, __version__
from boxbackup.config import (
    get_config, load_settings, initialize_settings, ConfigurationError, SETTINGS_FILENAME
)
from boxbackup.models import BackupJob
from boxbackup.backup.executor import execute_backup_job
from boxbackup import scheduler as backup_scheduler


logger = logging.getLogger(__name__)


def build_config(config_dir=None):
    """
    Select the configuration class, pointing it at config_dir when given.

    Args:
        config_dir: Directory holding config.json and logs (default: CONFIG_DIR)

    Returns:
        Config class
    """
    base = get_config()
    if not config_dir:
        return base

    config_dir = os.path.abspath(os.path.expanduser(config_dir))
    return type('CliConfig', (base,), {
        'CONFIG_DIR': config_dir,
        'LOG_DIR': os.path.join(config_dir, 'logs'),
    })


def build_job(ctx, inputs, output_directory, schedule_cron=None):
    """Load settings and assemble the BackupJob for a command."""
    config = ctx.obj['config']

    try:
        settings = load_settings(config.CONFIG_DIR)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    job = BackupJob(
        inputs=list(inputs),
        output_directory=output_directory,
        backup_limit=settings.backup_limit,
        folder_name=settings.box.backup_folder_name,
        schedule_cron=schedule_cron
    )
    return job, settings


@click.group()
@click.option('--config-dir', default=None, envvar='BOXBACKUP_CONFIG_DIR',
              help='Directory holding config.json and logs')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.version_option(__version__, prog_name='box-backup')
@click.pass_context
def cli(ctx, config_dir, verbose):
    """Archive files and back them up to a Box folder."""
    ctx.ensure_object(dict)

    config = build_config(config_dir)
    ctx.obj['config'] = config

    configure_logging(config, verbose=verbose)


@cli.command()
@click.option('--output-directory', '--outputDirectory', '-o', 'output_directory', required=True,
              type=click.Path(file_okay=False), help='Directory where archives are kept locally')
@click.argument('inputs', nargs=-1, required=True)
@click.pass_context
def box(ctx, output_directory, inputs):
    """Archive INPUTS and upload the archive to Box."""
    job, settings = build_job(ctx, inputs, output_directory)

    result = execute_backup_job(job, settings, ctx.obj['config'])

    if result.status != 'success':
        raise click.ClickException(result.error_message or 'Backup failed')

    click.echo(f"Backup complete: {result.archive_path} (Box file id {result.remote_file_id})")
    if result.local_deleted or result.remote_deleted:
        click.echo(f"Removed {len(result.local_deleted)} local and "
                   f"{len(result.remote_deleted)} Box backup(s) over the limit")


@cli.command()
@click.option('--output-directory', '--outputDirectory', '-o', 'output_directory', required=True,
              type=click.Path(file_okay=False), help='Directory where archives are kept locally')
@click.option('--cron', 'schedule_cron', default=None,
              help='Crontab expression (default: schedule_cron from config.json)')
@click.option('--run-now', is_flag=True, help='Also run one backup as soon as the scheduler starts')
@click.argument('inputs', nargs=-1, required=True)
@click.pass_context
def schedule(ctx, output_directory, schedule_cron, run_now, inputs):
    """Run the backup of INPUTS on a cron schedule."""
    job, settings = build_job(ctx, inputs, output_directory, schedule_cron)

    try:
        backup_scheduler.init_scheduler(job, settings, ctx.obj['config'])
    except ValueError as e:
        raise click.ClickException(str(e))

    if run_now:
        backup_scheduler.trigger_backup_now()

    for scheduled in backup_scheduler.get_scheduled_jobs():
        click.echo(f"Scheduled {scheduled['name']} ({scheduled['trigger']})")

    try:
        backup_scheduler.start_scheduler()
    except (KeyboardInterrupt, SystemExit):
        backup_scheduler.stop_scheduler()


@cli.command('init-config')
@click.option('--force', is_flag=True, help='Overwrite an existing config.json')
@click.pass_context
def init_config(ctx, force):
    """Write config.json with default values."""
    config_dir = ctx.obj['config'].CONFIG_DIR
    settings_path = os.path.join(config_dir, SETTINGS_FILENAME)

    if os.path.exists(settings_path) and not force:
        click.echo(f"Config file already exists: {settings_path}")
        return

    click.echo(f"Config file written: {initialize_settings(config_dir)}")


def main():
    """Console script entry point."""
    cli(obj={})


if __name__ == '__main__':
    sys.exit(main())
