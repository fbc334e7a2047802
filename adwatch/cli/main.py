"""
Main CLI entry point for AdWatch
"""

import click
import uvicorn

from .. import __version__
from .alerts import alerts_group
from .fatigue import fatigue_group
from .monitor import monitor_group


@click.group()
@click.version_option(version=__version__)
def cli():
    """
    AdWatch - Ad account monitoring and alerting

    Runs health checks and creative fatigue detection across Google Ads
    and Meta accounts, and manages the resulting alerts.
    """
    pass


@cli.command('serve')
@click.option('--host', default='0.0.0.0', show_default=True)
@click.option('--port', type=int, default=8000, show_default=True)
@click.option('--reload', is_flag=True, help='Reload on code changes (development)')
def serve(host: str, port: int, reload: bool):
    """
    Start the REST API

    Examples:
        adwatch serve --port 8080
    """
    uvicorn.run("adwatch.api.app:app", host=host, port=port, reload=reload)


# Register command groups
cli.add_command(monitor_group)
cli.add_command(alerts_group)
cli.add_command(fatigue_group)


if __name__ == '__main__':
    cli()
