"""
Creative fatigue commands for AdWatch CLI
"""

import asyncio
from typing import Optional, Tuple

import click

from ..services.monitoring.access import AllowAllPolicy, Principal
from ..services.monitoring.models import AlertSeverity
from ..services.monitoring.service import build_monitoring_service


@click.group('fatigue')
def fatigue_group():
    """Review creative fatigue signals"""
    pass


@fatigue_group.command('list')
@click.argument('client_id')
@click.option('--severity', '-s', 'severities', multiple=True,
              type=click.Choice([s.value for s in AlertSeverity]), help='Filter by severity (repeatable)')
@click.option('--all', 'include_acknowledged', is_flag=True, help='Include acknowledged signals')
def list_signals(client_id: str, severities: Tuple[str, ...], include_acknowledged: bool):
    """
    List fatigue signals for a client

    Examples:
        adwatch fatigue list acme
        adwatch fatigue list acme -s high -s critical
    """
    try:
        service = build_monitoring_service(policy=AllowAllPolicy())
        signals = asyncio.run(service.list_fatigue_signals(
            Principal.service("cli"),
            client_id,
            [AlertSeverity(s) for s in severities] or None,
            include_acknowledged,
        ))

        if not signals:
            click.echo(f"No fatigue signals for {client_id}.")
            return

        click.echo(f"\n{'='*60}")
        click.echo(f"😴 Fatigue signals for {client_id} ({len(signals)})")
        click.echo(f"{'='*60}\n")

        for signal in signals:
            ack = " (acknowledged)" if signal.is_acknowledged else ""
            click.echo(f"[{signal.severity.value.upper()}] {signal.entity_type.value} {signal.entity_name or signal.entity_id}{ack}")
            click.echo(f"   ID: {signal.id}")
            click.echo(
                f"   Frequency {signal.frequency_change:+.1f}%  "
                f"CTR {signal.ctr_change:+.1f}%  CPC {signal.cpc_change:+.1f}%"
            )
            for reason in signal.reasons:
                click.echo(f"   - {reason}")
            click.echo()

    except Exception as e:
        click.echo(f"❌ Error: {e}", err=True)


@fatigue_group.command('ack')
@click.argument('signal_id')
@click.option('--user', '-u', help='Acting user id (default: cli)')
def acknowledge_signal(signal_id: str, user: Optional[str]):
    """
    Acknowledge a fatigue signal

    Examples:
        adwatch fatigue ack 9b1e...
    """
    try:
        service = build_monitoring_service(policy=AllowAllPolicy())
        signal = asyncio.run(service.acknowledge_fatigue_signal(
            Principal(user_id=user or "cli", is_admin=True),
            signal_id,
        ))
        click.echo(f"✅ Signal {signal.id} acknowledged")
    except Exception as e:
        click.echo(f"❌ Error: {e}", err=True)
