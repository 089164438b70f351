"""Command-line interface for stackbackup."""

import signal
import sys
import json
from contextlib import contextmanager, nullcontext
from typing import Optional

import click
import yaml

from .config import Config
from .backup_engine import BackupEngine
from .errors import BackupError
from .lock import BackupLock
from .runner import CommandRunner
from .snapshots import KIND_ORDER, SnapshotKind
from .sources import source_for_kind
from .storage_manager import StorageManager
from .utils import NotificationManager, ensure_directory, format_size


def initialize_config(config_file: Optional[str] = None) -> tuple:
    """Initialize configuration and notification manager."""
    try:
        config = Config(config_file)
        notifier = NotificationManager(config)
        return config, notifier
    except (BackupError, yaml.YAMLError, OSError) as e:
        click.echo(f"Error: Failed to initialize configuration: {e}", err=True)
        sys.exit(1)


@contextmanager
def terminate_as_interrupt():
    """Turn SIGTERM into KeyboardInterrupt so a cancelled run is marked failed."""
    def handler(signum, frame):
        raise KeyboardInterrupt(f"received signal {signum}")

    previous = None
    if hasattr(signal, 'SIGTERM'):
        previous = signal.signal(signal.SIGTERM, handler)
    try:
        yield
    finally:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)


def print_available(storage_manager: StorageManager) -> None:
    listing = storage_manager.list_all()
    click.echo("\n📊 Available backups:")
    found = False
    for entries in listing.values():
        for entry in entries:
            found = True
            click.echo(f"{entry['name']} - {entry['file_size_human']}")
    if not found:
        click.echo("No backups found.")


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--verbose', '-v', is_flag=True,
              help='Enable verbose output')
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool):
    """stackbackup - snapshot a database, a data volume and a config file.

    Each run dumps the database, archives the persistent volume, copies the
    configuration file and keeps only the most recent snapshots of each kind.
    """
    ctx.ensure_object(dict)

    config_obj, notifier_obj = initialize_config(config)

    if verbose:
        config_obj.set('notifications.level', 'DEBUG')
        notifier_obj = NotificationManager(config_obj)

    ctx.obj['config'] = config_obj
    ctx.obj['notifier'] = notifier_obj


@cli.command()
@click.option('--destination', '-d', default=None,
              help='Backup destination directory')
@click.option('--output', '-o', default='stackbackup.yaml', type=click.Path(),
              help='Where to write the configuration file')
@click.pass_context
def init(ctx, destination: Optional[str], output: str):
    """Write a starter configuration file."""
    config_obj = ctx.obj['config']
    notifier_obj = ctx.obj['notifier']

    try:
        if destination:
            config_obj.set('backup.destination', destination)
        ensure_directory(config_obj.backup_destination)
        config_obj.save(output)

        notifier_obj.success("stackbackup initialized successfully!")
        click.echo(f"Configuration saved to: {output}")
        click.echo(f"Backup destination: {config_obj.backup_destination}")

        database = source_for_kind(config_obj, notifier_obj, CommandRunner(notifier_obj), SnapshotKind.DATABASE)
        if not database.is_available():
            click.echo(f"Container runtime '{database.runtime}' not found; "
                       "database and volume capture will fail.")

    except OSError as e:
        notifier_obj.error(f"Initialization failed: {e}")
        sys.exit(1)


@cli.command()
@click.option('--json', 'output_json', is_flag=True, help='Print the run report as JSON')
@click.option('--timestamp', help='Override the run timestamp (YYYYMMDD_HHMMSS)')
@click.pass_context
def run(ctx, output_json: bool, timestamp: Optional[str]):
    """Capture all sources, then enforce retention."""
    config_obj = ctx.obj['config']
    notifier_obj = ctx.obj['notifier']

    engine = BackupEngine(config_obj, notifier_obj, runner=CommandRunner(notifier_obj))
    try:
        with terminate_as_interrupt():
            report = engine.run(timestamp)
    except BackupError as e:
        notifier_obj.error(f"Backup failed: {e}")
        if output_json and engine.last_report:
            click.echo(engine.last_report.to_json())
        sys.exit(1)
    except KeyboardInterrupt:
        if output_json and engine.last_report:
            click.echo(engine.last_report.to_json())
        sys.exit(130)

    if output_json:
        click.echo(report.to_json())
        return

    print_available(engine.storage)
    if report.deletion_errors:
        click.echo(f"\n⚠️  {report.deletion_errors} old snapshot(s) could not be deleted:")
        for result in report.retention.values():
            for error in result.errors:
                click.echo(f"  - {error}")
    click.echo(f"\n✅ Backup completed successfully: {report.timestamp}")
    click.echo(f"📁 Backup location: {report.destination}")


@cli.command('list')
@click.option('--kind', '-k', type=click.Choice([k.value for k in KIND_ORDER]),
              help='Only list one kind of snapshot')
@click.option('--format', '-f', 'output_format', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
@click.pass_context
def list_snapshots(ctx, kind: Optional[str], output_format: str):
    """List snapshots, newest first."""
    config_obj = ctx.obj['config']
    notifier_obj = ctx.obj['notifier']

    storage_manager = StorageManager(config_obj, notifier_obj)
    kinds = [SnapshotKind(kind)] if kind else None
    listing = storage_manager.list_all(kinds)

    if output_format == 'json':
        click.echo(json.dumps(listing, indent=2))
        return

    if not any(listing.values()):
        click.echo("No backups found.")
        return

    click.echo("\n📋 Available Backups:")
    click.echo("-" * 72)
    click.echo(f"{'Name':<36} {'Kind':<10} {'Created':<20} {'Size':<10}")
    click.echo("-" * 72)
    for entries in listing.values():
        for entry in entries:
            created = entry['created_at'][:19].replace('T', ' ')
            click.echo(f"{entry['name']:<36} {entry['kind']:<10} {created:<20} {entry['file_size_human']:<10}")


@cli.command()
@click.option('--dry-run', is_flag=True, help='Show what would be deleted without actually deleting')
@click.option('--keep', type=click.IntRange(min=0), default=None,
              help='Snapshots to keep per kind (defaults to backup.retention.count)')
@click.pass_context
def cleanup(ctx, dry_run: bool, keep: Optional[int]):
    """Delete old snapshots beyond the retention count."""
    config_obj = ctx.obj['config']
    notifier_obj = ctx.obj['notifier']

    try:
        config_obj.validate()
        destination = config_obj.backup_destination
        # A dry run only reads the directory; a missing directory has nothing to delete
        lock = BackupLock(destination) if not dry_run and destination.is_dir() else nullcontext()
        with lock:
            storage_manager = StorageManager(config_obj, notifier_obj)
            results = storage_manager.cleanup_old_snapshots(keep=keep, dry_run=dry_run)
    except BackupError as e:
        notifier_obj.error(f"Cleanup failed: {e}")
        sys.exit(1)

    click.echo("\n🔍 Dry run - nothing deleted:" if dry_run else "\n🧹 Cleanup Summary:")
    errors = 0
    for kind_name, result in results.items():
        verb = "would delete" if dry_run else "deleted"
        click.echo(f"{kind_name}: kept {len(result.kept)}, {verb} {len(result.deleted)}")
        for path in result.deleted:
            click.echo(f"  - {path.name}")
        for error in result.errors:
            errors += 1
            click.echo(f"  ! {error}")

    if errors:
        sys.exit(1)


@cli.command()
@click.option('--json', 'output_json', is_flag=True, help='Output in JSON format')
@click.pass_context
def status(ctx, output_json: bool):
    """Show backup directory statistics."""
    config_obj = ctx.obj['config']
    notifier_obj = ctx.obj['notifier']

    storage_status = StorageManager(config_obj, notifier_obj).get_storage_status()

    if output_json:
        click.echo(json.dumps(storage_status, indent=2))
        return

    click.echo("\n📊 stackbackup Status")
    click.echo("=" * 50)
    click.echo(f"  Destination: {storage_status['destination']}")
    click.echo(f"  Retention: last {storage_status['retention_count']} per kind")
    click.echo(f"  Snapshots: {storage_status['snapshot_count']}")
    click.echo(f"  Total Size: {storage_status['total_snapshot_size_human']}")
    click.echo(f"  Directory Size: {storage_status['directory_size_human']}")
    for kind_name, info in storage_status['kinds'].items():
        newest = (info['newest'] or '-')[:19].replace('T', ' ')
        click.echo(f"  {kind_name:<10} {info['count']:>3} snapshot(s), "
                   f"{info['total_size_human']}, newest {newest}")


@cli.command()
@click.argument('snapshot_name')
@click.pass_context
def verify(ctx, snapshot_name: str):
    """Verify the integrity of one snapshot file."""
    config_obj = ctx.obj['config']
    notifier_obj = ctx.obj['notifier']

    snapshot = StorageManager(config_obj, notifier_obj).find_snapshot(snapshot_name)
    if snapshot is None:
        sys.exit(1)

    source = source_for_kind(config_obj, notifier_obj, CommandRunner(notifier_obj), snapshot.kind)
    click.echo(f"🔍 Verifying backup: {snapshot.name}")
    try:
        details = source.verify(snapshot)
    except BackupError as e:
        notifier_obj.failure(str(e))
        sys.exit(1)

    notifier_obj.success(f"Backup verification successful: {snapshot.name}")
    for key, value in details.items():
        click.echo(f"  {key}: {value}")


@cli.command()
@click.argument('snapshot_name')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def restore(ctx, snapshot_name: str, yes: bool):
    """Restore one snapshot into its live service."""
    config_obj = ctx.obj['config']
    notifier_obj = ctx.obj['notifier']

    snapshot = StorageManager(config_obj, notifier_obj).find_snapshot(snapshot_name)
    if snapshot is None:
        sys.exit(1)

    source = source_for_kind(config_obj, notifier_obj, CommandRunner(notifier_obj), snapshot.kind)
    if not yes:
        click.confirm(f"Overwrite {source.description} with {snapshot.name}?", abort=True)

    click.echo(f"🔄 Restoring {snapshot.name} ({format_size(snapshot.size)})...")
    try:
        source.restore(snapshot, timeout=config_obj.timeout_seconds)
    except BackupError as e:
        notifier_obj.failure(str(e))
        sys.exit(1)

    notifier_obj.success(f"Restored {snapshot.name} into {source.description}")


def main():
    """Main entry point for CLI."""
    cli()


if __name__ == '__main__':
    main()
