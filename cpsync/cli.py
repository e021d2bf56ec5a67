import json
from pathlib import Path

import click

from .config import DEFAULT_CONFIG_PATH, DEFAULT_ENVIRONMENT, VALID_ENVIRONMENTS
from .sync.config import create_example_config
from .sync.error_tracker import SyncException
from .sync.models import IDENTIFIER_FIELDS, ObjectIdentifiers, SyncType
from .sync.orchestrator import load_orchestrator

SYNC_CHOICES = [t.value for t in SyncType] + ['all']


def _config_option(fn):
    return click.option('--config', 'config_path', type=click.Path(dir_okay=False), default=str(DEFAULT_CONFIG_PATH),
                        show_default=True, help='Broker configuration YAML')(fn)


def _identifier_options(fn):
    for name in reversed(IDENTIFIER_FIELDS):
        fn = click.option(f"--{name.replace('_', '-')}", name, default='', help=name.replace('_', ' '))(fn)
    return fn


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


@click.group()
def cli():
    """Document broker between SharePoint libraries and blob storage."""
    pass


# Sync command, receives the environment and the feed to run ('new'/'updated'/'deleted' or 'all')
@cli.command(name='sync')
@click.argument('environment', type=click.Choice(VALID_ENVIRONMENTS))
@click.argument('feed', type=click.Choice(SYNC_CHOICES))
@_config_option
def sync(environment, feed, config_path):
    """Export new, updated or deleted documents."""
    click.echo(f"Synchronising {feed} documents in {environment}")
    orchestrator = load_orchestrator(config_path, environment)
    sync_types = list(SyncType) if feed == 'all' else [SyncType(feed)]
    summary = orchestrator.run_sync(sync_types)
    _echo_json(summary.to_dict())
    if summary.failed_runs:
        raise click.ClickException(f"{summary.failed_runs} feed(s) failed")


@cli.command(name='publish')
@click.argument('environment', type=click.Choice(VALID_ENVIRONMENTS))
@click.option('--date', 'today', type=click.DateTime(formats=['%Y-%m-%d']), default=None,
              help='Publish entries due on or before this date (default: today)')
@_config_option
def publish(environment, today, config_path):
    """Export documents whose publication date has come."""
    orchestrator = load_orchestrator(config_path, environment)
    result = orchestrator.drain_publication(today.date() if today else None)
    click.echo(f"Published {len(result.succeeded)} documents, {len(result.failed)} failed")
    for object_id in result.failed:
        click.echo(f"  failed: {object_id}")


@cli.group(name='webhook')
def webhook_group():
    """Drop-off list webhooks."""
    pass


@webhook_group.command(name='subscribe')
@click.argument('environment', type=click.Choice(VALID_ENVIRONMENTS))
@click.option('--list-id', type=str, default=None, help='Only subscribe this list (id or configured feed id)')
@_config_option
def subscribe(environment, list_id, config_path):
    """Create SharePoint webhook subscriptions for the configured drop-off lists."""
    orchestrator = load_orchestrator(config_path, environment)
    try:
        states = orchestrator.subscribe(list_id)
    except SyncException as e:
        raise click.ClickException(e.message)
    for state in states:
        click.echo(f"{state.feed}: subscription {state.subscription_id} expires {state.expiration.isoformat()}")


@webhook_group.command(name='process-queue')
@click.argument('environment', type=click.Choice(VALID_ENVIRONMENTS))
@click.option('--max-messages', type=click.INT, default=16, show_default=True)
@_config_option
def process_queue(environment, max_messages, config_path):
    """Process queued webhook notifications."""
    orchestrator = load_orchestrator(config_path, environment)
    stats = orchestrator.process_notifications(max_messages)
    click.echo(
        f"Received {stats['received']}, processed {stats['processed']}, "
        f"failed {stats['failed']}, dropped {stats['dropped']}"
    )


@cli.group(name='ids')
def ids_group():
    """Object ids."""
    pass


@ids_group.command(name='mint')
@click.argument('environment', type=click.Choice(VALID_ENVIRONMENTS))
@_identifier_options
@_config_option
def mint(environment, config_path, **coordinates):
    """Mint (or look up) the object id of a document."""
    orchestrator = load_orchestrator(config_path, environment)
    try:
        object_id = orchestrator.mint(ObjectIdentifiers(**coordinates))
    except SyncException as e:
        raise click.ClickException(e.message)
    click.echo(object_id)


@ids_group.command(name='resolve')
@click.argument('environment', type=click.Choice(VALID_ENVIRONMENTS))
@_identifier_options
@_config_option
def resolve(environment, config_path, **coordinates):
    """Fill in every known coordinate of a document."""
    orchestrator = load_orchestrator(config_path, environment)
    try:
        ids = orchestrator.resolve(ObjectIdentifiers(**coordinates))
    except SyncException as e:
        raise click.ClickException(e.message)
    _echo_json(ids.to_dict())


@cli.command(name='status')
@click.option('--environment', type=click.Choice(VALID_ENVIRONMENTS), default=DEFAULT_ENVIRONMENT)
@_config_option
def status(environment, config_path):
    """Show checkpoints, queue sizes and the sequence counter."""
    orchestrator = load_orchestrator(config_path, environment)
    _echo_json(orchestrator.get_status())


@cli.command(name='init-config')
@click.argument('output', type=click.Path(dir_okay=False), default=str(DEFAULT_CONFIG_PATH))
@click.option('--force', is_flag=True, default=False, help='Overwrite an existing file')
def init_config(output, force):
    """Write an example broker configuration."""
    if Path(output).exists() and not force:
        raise click.ClickException(f"{output} exists, use --force to overwrite")
    create_example_config().to_yaml(output)
    click.echo(f"Wrote example configuration to {output}")


def main():
    cli()

if __name__ == '__main__':
    main()
