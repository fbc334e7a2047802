"""
Alert management commands for AdWatch CLI
"""

import asyncio
from typing import Optional, Tuple

import click

from ..services.monitoring.access import AllowAllPolicy, Principal
from ..services.monitoring.models import (
    AlertChannel,
    AlertFilters,
    AlertSeverity,
    AlertStatus,
    AlertType,
)
from ..services.monitoring.service import build_monitoring_service

SEVERITY_ICONS = {
    AlertSeverity.CRITICAL: "🔴",
    AlertSeverity.HIGH: "🟠",
    AlertSeverity.MEDIUM: "🟡",
    AlertSeverity.LOW: "⚪",
}


def _operator(user: Optional[str]) -> Principal:
    return Principal(user_id=user or "cli", is_admin=True)


@click.group('alerts')
def alerts_group():
    """Inspect and manage alerts"""
    pass


@alerts_group.command('list')
@click.option('--client', '-c', 'clients', multiple=True, help='Filter by client id (repeatable)')
@click.option('--channel', type=click.Choice([c.value for c in AlertChannel]), help='Filter by channel')
@click.option('--type', 'alert_type', type=click.Choice([t.value for t in AlertType]), help='Filter by alert type')
@click.option('--severity', type=click.Choice([s.value for s in AlertSeverity]), help='Filter by severity')
@click.option('--status', type=click.Choice([s.value for s in AlertStatus] + ['all']), default='open', show_default=True)
@click.option('--page', type=int, default=1, show_default=True)
@click.option('--per-page', type=int, default=50, show_default=True)
def list_alerts(
    clients: Tuple[str, ...],
    channel: Optional[str],
    alert_type: Optional[str],
    severity: Optional[str],
    status: str,
    page: int,
    per_page: int,
):
    """
    List alerts, newest first

    Examples:
        adwatch alerts list
        adwatch alerts list -c acme --severity critical
        adwatch alerts list --status all --per-page 100
    """
    try:
        service = build_monitoring_service(policy=AllowAllPolicy())
        filters = AlertFilters(
            client_ids=list(clients) or None,
            channel=AlertChannel(channel) if channel else None,
            type=AlertType(alert_type) if alert_type else None,
            severity=AlertSeverity(severity) if severity else None,
            status=None if status == 'all' else AlertStatus(status),
            page=page,
            per_page=per_page,
        )
        alerts, total = asyncio.run(service.list_alerts(_operator(None), filters))

        if not alerts:
            click.echo("No alerts found.")
            return

        click.echo(f"\n{'='*60}")
        click.echo(f"🚨 Alerts ({len(alerts)} of {total})")
        click.echo(f"{'='*60}\n")

        for alert in alerts:
            click.echo(f"{SEVERITY_ICONS[alert.severity]} {alert.title}")
            click.echo(f"   ID: {alert.id}")
            click.echo(f"   Client: {alert.details.client_name or alert.client_id}  Channel: {alert.channel.value}")
            click.echo(f"   Status: {alert.status.value}  Check: {alert.check_id}")
            if alert.short_description:
                click.echo(f"   {alert.short_description}")
            click.echo(f"   Detected: {alert.detected_at.isoformat()[:16]}")
            click.echo()

    except Exception as e:
        click.echo(f"❌ Error: {e}", err=True)


@alerts_group.command('summary')
@click.option('--client', '-c', 'client_id', help='Restrict to one client')
def alert_summary(client_id: Optional[str]):
    """
    Show open critical and high alerts by channel

    Examples:
        adwatch alerts summary
        adwatch alerts summary -c acme
    """
    try:
        service = build_monitoring_service(policy=AllowAllPolicy())
        summary = asyncio.run(service.get_summary(_operator(None), client_id))

        click.echo(f"\n{'='*60}")
        click.echo(f"📊 Open alerts: {summary.total_critical} critical, {summary.total_high} high")
        click.echo(f"{'='*60}\n")

        for channel, channel_summary in summary.by_channel.items():
            click.echo(f"{channel} ({channel_summary.count})")
            for item in channel_summary.items:
                click.echo(f"   {SEVERITY_ICONS[item.severity]} {item.title} [{item.client_id}]")
            click.echo()

    except Exception as e:
        click.echo(f"❌ Error: {e}", err=True)


def _set_status(alert_id: str, status: AlertStatus, reason: Optional[str], user: Optional[str]) -> None:
    try:
        service = build_monitoring_service(policy=AllowAllPolicy())
        alert = asyncio.run(service.update_alert_status(_operator(user), alert_id, status, reason))
        click.echo(f"✅ Alert {alert.id} is now {alert.status.value}")
    except Exception as e:
        click.echo(f"❌ Error: {e}", err=True)


@alerts_group.command('ack')
@click.argument('alert_id')
@click.option('--reason', '-r', help='Note stored with the change')
@click.option('--user', '-u', help='Acting user id (default: cli)')
def acknowledge_alert(alert_id: str, reason: Optional[str], user: Optional[str]):
    """
    Acknowledge an open alert

    Examples:
        adwatch alerts ack 3f2c... --reason "Client informed"
    """
    _set_status(alert_id, AlertStatus.ACKNOWLEDGED, reason, user)


@alerts_group.command('resolve')
@click.argument('alert_id')
@click.option('--reason', '-r', help='Note stored with the change')
@click.option('--user', '-u', help='Acting user id (default: cli)')
def resolve_alert(alert_id: str, reason: Optional[str], user: Optional[str]):
    """
    Resolve an open or acknowledged alert

    Examples:
        adwatch alerts resolve 3f2c... --reason "Ads resubmitted and approved"
    """
    _set_status(alert_id, AlertStatus.RESOLVED, reason, user)
