"""
Command Line Interface for tierup.
"""
import logging
import os

import click

from ..CONFIG.settings import Settings
from ..errors import TierupError, VolumeInUse
from ..MANAGERS.network_manager import NetworkManager
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MANAGERS.volume_manager import VolumeManager
from ..MODELS.runtime_state import StateChange
from ..PARSERS.compose_parser import ComposeParser
from ..RUNNERS.deployment_validator import DeploymentValidator

DEFAULT_FILES = ('compose.yaml', 'compose.yml', 'docker-compose.yaml', 'docker-compose.yml')


@click.group()
@click.option('--file', '-f', default=None, help='Compose file path')
@click.option('--env-file', default=None, help='.env file with TIERUP_* settings')
@click.option('--verbose', '-v', is_flag=True, help='Log every state change')
@click.pass_context
def cli(ctx, file, env_file, verbose):
    """
    tierup - dependency-gated service orchestrator.

    Starts Compose services in dependency order, waiting for health checks
    where a service depends on another being healthy.
    """
    ctx.ensure_object(dict)
    settings = Settings.from_env(env_file)
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    if file is None:
        file = next((name for name in DEFAULT_FILES if os.path.exists(name)), DEFAULT_FILES[-1])
    ctx.obj['file'] = file
    ctx.obj['project_dir'] = os.path.dirname(os.path.abspath(file))
    ctx.obj['settings'] = settings


def _load_deployment(ctx):
    file = ctx.obj['file']
    if not os.path.exists(file):
        click.echo(f"Error: {file} not found.")
        ctx.exit(1)
    try:
        return ComposeParser().parse(file)
    except TierupError as e:
        click.echo(f"Error: {e}")
        ctx.exit(1)


@cli.command()
@click.pass_context
def config(ctx):
    """Validate the compose file and summarize it."""
    deployment = _load_deployment(ctx)
    try:
        DeploymentValidator().validate(deployment)
    except TierupError as e:
        click.echo(f"Error: {e}")
        ctx.exit(1)

    click.echo(f"{'SERVICE':15} {'IMAGE':40} {'RESTART':22} DEPENDS ON")
    click.echo("-" * 90)
    for name, svc in deployment.services.items():
        deps = ', '.join(f"{d.service} ({d.condition.value})" for d in svc.depends_on) or '-'
        click.echo(f"{name:15} {svc.image:40} {svc.restart_policy.mode.value:22} {deps}")
    click.echo(f"Networks: {', '.join(deployment.networks) or '-'}")
    click.echo(f"Volumes: {', '.join(deployment.volumes) or '-'}")


@cli.command()
@click.pass_context
def plan(ctx):
    """Show the start batches."""
    deployment = _load_deployment(ctx)
    try:
        batches = DeploymentValidator().validate(deployment)
    except TierupError as e:
        click.echo(f"Error: {e}")
        ctx.exit(1)
    for number, batch in enumerate(batches, start=1):
        click.echo(f"{number}: {', '.join(sorted(batch))}")


@cli.command()
@click.argument('service')
@click.pass_context
def peers(ctx, service):
    """List the names a service can resolve."""
    deployment = _load_deployment(ctx)
    if service not in deployment.services:
        click.echo(f"Error: no such service: {service}")
        ctx.exit(1)
    try:
        network_manager = NetworkManager(deployment)
    except TierupError as e:
        click.echo(f"Error: {e}")
        ctx.exit(1)

    click.echo(f"{'NAME':20} SERVICE")
    for alias, canonical in sorted(network_manager.resolvable_names(service).items()):
        if canonical != service:
            click.echo(f"{alias:20} {canonical}")


@cli.command()
@click.pass_context
def up(ctx):
    """
    Start services defined in the compose file.

    Stays in the foreground supervising them until they have all finished or
    Ctrl+C stops them.
    """
    deployment = _load_deployment(ctx)
    orchestrator = ServiceOrchestrator(deployment, settings=ctx.obj['settings'],
                                       base_dir=ctx.obj['project_dir'])

    def echo_change(change: StateChange):
        suffix = f" ({change.detail})" if change.detail else ""
        click.echo(f"{change.service:15} | {change.kind} {change.old} -> {change.new}{suffix}")

    orchestrator.subscribe(echo_change)
    try:
        orchestrator.up()
    except TierupError as e:
        click.echo(f"Error: {e}")
        ctx.exit(1)

    click.echo("Services started.")
    click.echo("Running... Press Ctrl+C to stop.")
    try:
        # short waits keep Ctrl+C responsive
        while not orchestrator.wait(timeout=1):
            pass
    except KeyboardInterrupt:
        click.echo("\nStopping services...")
    orchestrator.down()


@cli.group()
def volume():
    """Manage named volumes."""


@volume.command('ls')
@click.pass_context
def volume_ls(ctx):
    """List named volumes."""
    manager = VolumeManager(ctx.obj['project_dir'], ctx.obj['settings'].state_dir)
    click.echo(f"{'VOLUME':20} {'ID':34} CREATED")
    for vol in manager.list_volumes():
        click.echo(f"{vol.name:20} {vol.id:34} {vol.created_at}")


@volume.command('rm')
@click.argument('name')
@click.option('--force', is_flag=True, help='Remove even if mounted')
@click.pass_context
def volume_rm(ctx, name, force):
    """Remove a named volume and its contents."""
    manager = VolumeManager(ctx.obj['project_dir'], ctx.obj['settings'].state_dir)
    try:
        removed = manager.remove_volume(name, force=force)
    except VolumeInUse as e:
        click.echo(f"Error: {e}")
        ctx.exit(1)
    if not removed:
        click.echo(f"Error: no such volume: {name}")
        ctx.exit(1)
    click.echo(name)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
