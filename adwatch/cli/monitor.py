"""
Monitoring CLI Commands

Run checks and fatigue detection from the command line (manual runs,
system cron, CI smoke tests).
"""

import asyncio
import logging
import sys
from datetime import datetime
from typing import Optional, Tuple

import click

from ..core.config import Config
from ..core.observability import setup_logfire, setup_logging
from ..services.monitoring.access import AllowAllPolicy, Principal
from ..services.monitoring.config_provider import StaticConfigProvider
from ..services.monitoring.exceptions import MonitoringError
from ..services.monitoring.models import MonitoringRunResult
from ..services.monitoring.service import build_monitoring_service

logger = logging.getLogger(__name__)


@click.group('monitor')
def monitor_group():
    """Run monitoring checks"""
    pass


@monitor_group.command('run')
@click.option('--client', '-c', 'clients', multiple=True, help='Client id to monitor (repeatable, default: all enabled)')
@click.option('--check', 'checks', multiple=True, help='Check id to run (repeatable, default: all)')
@click.option('--date', 'as_of', type=click.DateTime(formats=['%Y-%m-%d']), help='Anchor date (YYYY-MM-DD, default: today)')
@click.option('--dry-run', '--dry', is_flag=True, help='Evaluate without creating alerts or storing signals')
@click.option('--debug', is_flag=True, help='Debug logging')
@click.option('--concurrency', type=int, default=None, help=f'Clients processed in parallel (default: {Config.MONITORING_MAX_CONCURRENCY})')
@click.option('--timeout', type=float, default=None, help=f'Per-client timeout in seconds (default: {Config.MONITORING_CLIENT_TIMEOUT:.0f})')
@click.option('--clients-file', type=click.Path(exists=True, dir_okay=False), help='YAML client list to use instead of the clients table')
def run_monitoring(
    clients: Tuple[str, ...],
    checks: Tuple[str, ...],
    as_of: Optional[datetime],
    dry_run: bool,
    debug: bool,
    concurrency: Optional[int],
    timeout: Optional[float],
    clients_file: Optional[str],
):
    """
    Run all checks and fatigue detection once

    Exits with status 1 when any error was recorded.

    Examples:
        adwatch monitor run
        adwatch monitor run --dry-run --debug
        adwatch monitor run -c acme -c northwind --date 2025-03-10
        adwatch monitor run --check cpc_spike --check meta_cpc_spike
    """
    setup_logging(debug=debug)
    setup_logfire()

    click.echo("")
    click.echo("╔══════════════════════════════════════════╗")
    click.echo("║          AdWatch Monitoring Runner       ║")
    click.echo("╚══════════════════════════════════════════╝")
    click.echo("")

    if dry_run:
        click.echo("🔍 DRY RUN MODE - No alerts will be created")
        click.echo("")

    try:
        config_provider = StaticConfigProvider.from_yaml(clients_file) if clients_file else None
        service = build_monitoring_service(
            config_provider=config_provider,
            policy=AllowAllPolicy(),
            max_concurrency=concurrency,
            client_timeout_seconds=timeout,
        )

        result = asyncio.run(service.run_now(
            Principal.service("cli"),
            client_ids=list(clients) or None,
            as_of=as_of.date() if as_of else None,
            check_ids=list(checks) or None,
            dry_run=dry_run,
        ))
    except (MonitoringError, ValueError) as e:
        click.echo("", err=True)
        click.echo("❌ Monitoring failed with error:", err=True)
        click.echo(str(e), err=True)
        click.echo("", err=True)
        sys.exit(1)

    _print_summary(result)

    if not result.success:
        sys.exit(1)


def _print_summary(result: MonitoringRunResult) -> None:
    click.echo("")
    click.echo("═══════════════════════════════════════")
    click.echo("               SUMMARY")
    click.echo("═══════════════════════════════════════")
    click.echo(f"Success:          {'✅' if result.success else '❌'}")
    click.echo(f"Date:             {result.as_of.isoformat()}")
    click.echo(f"Clients:          {result.clients_processed}"
               f" ({result.clients_failed} failed, {result.clients_skipped} skipped)")
    click.echo(f"Checks run:       {result.checks_run}")
    click.echo(f"Alerts created:   {result.alerts_created}")
    click.echo(f"Alerts skipped:   {result.alerts_skipped}")
    click.echo(f"Alerts resolved:  {result.alerts_resolved}")
    click.echo(f"Fatigue signals:  {result.fatigue_signals}")
    click.echo(f"Errors:           {len(result.errors)}")

    for error in result.errors:
        click.echo(f"   - {error}")

    skipped = [c for c in result.clients if c.skipped]
    if skipped:
        click.echo("\n⚠️  Skipped clients (manual setup needed):")
        for client in skipped:
            click.echo(f"   - {client.client_name or client.client_id}: {client.skip_reason}")
    click.echo("")
