"""MonitoringOrchestrator: drives one monitoring pass over all enabled clients.

Per client: validate config -> refresh/prefetch metrics -> run checks
(alert on problems, auto-resolve on ok) -> fatigue detection (store
signals, promote high/critical). Clients are isolated from each other: any
failure is recorded on that client's result and the batch continues. Only a
failing config provider aborts the invocation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, datetime, timezone
from typing import List, Optional, Sequence

import logfire

from ...core.config import Config, today_in_timezone
from .alert_engine import FATIGUE_CHECK_ID, AlertEngine
from .checks import BaseCheck, CheckRegistry, build_default_registry
from .config_provider import ConfigProvider
from .exceptions import ClientConfigurationError, ConfigProviderError, MetricFetchError
from .fatigue_detector import FatigueDetector
from .metric_source import MetricSnapshot, MetricSource, MetricSyncer
from .models import (
    AlertChannel,
    AlertCreationResult,
    AlertOutcome,
    CheckError,
    ClientMonitoringConfig,
    ClientRunResult,
    DateRange,
    MonitoringRunResult,
    RunErrorKind,
)
from .signal_store import FatigueSignalStore

logger = logging.getLogger(__name__)


class MonitoringOrchestrator:
    """Runs checks and fatigue detection for every enabled client.

    All collaborators are injected; nothing is looked up globally.
    """

    DEFAULT_MAX_CONCURRENCY = 4
    DEFAULT_CLIENT_TIMEOUT = 300.0

    def __init__(
        self,
        config_provider: ConfigProvider,
        metric_source: MetricSource,
        alert_engine: AlertEngine,
        registry: Optional[CheckRegistry] = None,
        fatigue_detector: Optional[FatigueDetector] = None,
        signal_store: Optional[FatigueSignalStore] = None,
        metric_syncer: Optional[MetricSyncer] = None,
        max_concurrency: Optional[int] = None,
        client_timeout_seconds: Optional[float] = None,
        dry_run: bool = False,
    ):
        self.config_provider = config_provider
        self.metric_source = metric_source
        self.alert_engine = alert_engine
        self.registry = registry if registry is not None else build_default_registry()
        self.fatigue_detector = fatigue_detector
        self.signal_store = signal_store
        self.metric_syncer = metric_syncer
        self.max_concurrency = max(1, max_concurrency or self.DEFAULT_MAX_CONCURRENCY)
        self.client_timeout_seconds = client_timeout_seconds or self.DEFAULT_CLIENT_TIMEOUT
        self.dry_run = dry_run

    async def run(
        self,
        client_ids: Optional[Sequence[str]] = None,
        as_of: Optional[date] = None,
        check_ids: Optional[Sequence[str]] = None,
    ) -> MonitoringRunResult:
        """Run one monitoring pass.

        Args:
            client_ids: Restrict the pass to these clients (default: all enabled).
            as_of: Anchor day for windows and fingerprints (default: today in
                each client's timezone).
            check_ids: Restrict to these check ids (default: all registered).

        Returns:
            Aggregate result with per-client outcomes, in provider order.

        Raises:
            ConfigProviderError: if the client list cannot be loaded.
            ValueError: if check_ids contains unknown ids.
        """
        started_at = datetime.now(timezone.utc)
        registry = self.registry.select(check_ids) if check_ids else self.registry

        try:
            clients = await self.config_provider.list_enabled_clients()
        except ConfigProviderError:
            raise
        except Exception as e:
            raise ConfigProviderError(f"Failed to load client configs: {e}") from e

        if client_ids:
            wanted = set(client_ids)
            missing = wanted - {c.client_id for c in clients}
            if missing:
                logger.warning(f"Requested clients not enabled for monitoring: {', '.join(sorted(missing))}")
            clients = [c for c in clients if c.client_id in wanted]

        logger.info(
            f"Starting monitoring run for {len(clients)} clients "
            f"({len(registry)} checks, concurrency {self.max_concurrency}"
            f"{', DRY RUN' if self.dry_run else ''})"
        )

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(config: ClientMonitoringConfig) -> ClientRunResult:
            async with semaphore:
                return await self._run_client(config, as_of, registry)

        outcomes = await asyncio.gather(*[_bounded(c) for c in clients], return_exceptions=True)

        results: List[ClientRunResult] = []
        for config, outcome in zip(clients, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Unhandled error for client {config.client_name}: {outcome}")
                outcome = ClientRunResult(
                    client_id=config.client_id,
                    client_name=config.client_name,
                    success=False,
                    errors=[CheckError(
                        client_id=config.client_id,
                        kind=RunErrorKind.UNEXPECTED,
                        message=str(outcome) or type(outcome).__name__,
                    )],
                )
            results.append(outcome)

        result = MonitoringRunResult.from_client_results(
            results,
            as_of=as_of or today_in_timezone(Config.MONITORING_TIMEZONE),
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            dry_run=self.dry_run,
        )
        self._log_summary(result)
        return result

    # =========================================================================
    # Per client
    # =========================================================================

    async def _run_client(
        self,
        config: ClientMonitoringConfig,
        as_of: Optional[date],
        registry: CheckRegistry,
    ) -> ClientRunResult:
        result = ClientRunResult(client_id=config.client_id, client_name=config.client_name)
        client_as_of = as_of or today_in_timezone(config.timezone or Config.MONITORING_TIMEZONE)
        started = time.monotonic()

        try:
            await asyncio.wait_for(
                self._process_client(config, client_as_of, registry, result),
                timeout=self.client_timeout_seconds,
            )
        except ClientConfigurationError as e:
            logger.warning(f"Skipping {config.client_name}: configuration needs manual setup ({e})")
            result.skipped = True
            result.skip_kind = RunErrorKind.CONFIGURATION
            result.skip_reason = str(e)
        except asyncio.TimeoutError:
            logger.error(f"Client {config.client_name} timed out after {self.client_timeout_seconds}s")
            self._fail(result, RunErrorKind.TIMEOUT, f"Timed out after {self.client_timeout_seconds}s")
        except MetricFetchError as e:
            logger.error(f"Metric fetch failed for {config.client_name}: {e}")
            self._fail(result, RunErrorKind.DATA_FETCH, str(e))
        except Exception as e:
            logger.error(f"Error processing client {config.client_name}: {e}", exc_info=True)
            self._fail(result, RunErrorKind.UNEXPECTED, str(e) or type(e).__name__)

        result.duration_seconds = round(time.monotonic() - started, 3)
        return result

    @staticmethod
    def _fail(result: ClientRunResult, kind: RunErrorKind, message: str) -> None:
        result.success = False
        result.errors.append(CheckError(client_id=result.client_id, kind=kind, message=message))

    async def _process_client(
        self,
        config: ClientMonitoringConfig,
        as_of: date,
        registry: CheckRegistry,
        result: ClientRunResult,
    ) -> None:
        with logfire.span("monitor client {client_name}", client_id=config.client_id, client_name=config.client_name):
            config.validate_for_monitoring()

            lookback = max(registry.max_lookback_days, self.fatigue_detector.lookback_days if self.fatigue_detector else 0, 1)
            window = DateRange.trailing(as_of, lookback)

            if self.metric_syncer is not None:
                try:
                    await self.metric_syncer.sync_client(config, window)
                except Exception as e:
                    raise MetricFetchError(f"Metric sync failed: {e}") from e

            snapshot = MetricSnapshot(self.metric_source, window)
            await snapshot.prefetch(config)

            for channel in config.ad_channels:
                for check in registry.for_channel(channel):
                    await self._run_check(check, snapshot, config, channel, as_of, result)
                if self.fatigue_detector is not None:
                    await self._run_fatigue(snapshot, config, channel, as_of, result)

        logger.info(
            f"Processed {config.client_name}: {result.checks_run} checks, "
            f"{result.alerts_created} alerts created, {result.alerts_resolved} resolved"
        )

    async def _run_check(
        self,
        check: BaseCheck,
        snapshot: MetricSnapshot,
        config: ClientMonitoringConfig,
        channel: AlertChannel,
        as_of: date,
        result: ClientRunResult,
    ) -> None:
        result.checks_run += 1
        try:
            check_result = await check.run(snapshot, config, as_of)
        except Exception as e:
            kind = RunErrorKind.DATA_FETCH if isinstance(e, MetricFetchError) else RunErrorKind.CHECK
            logger.error(f"Check {check.id} failed for {config.client_name}: {e}")
            result.errors.append(CheckError(
                client_id=config.client_id,
                kind=kind,
                message=str(e) or type(e).__name__,
                check_id=check.id,
                channel=channel,
            ))
            return

        if check_result.is_ok:
            if not self.dry_run:
                result.alerts_resolved += await self.alert_engine.auto_resolve_if_fixed(
                    config.client_id, channel, check.id
                )
            return

        if self.dry_run:
            logger.info(
                f"[DRY RUN] Would create {check_result.alert_data.severity.value} alert "
                f"{check.id} for {config.client_name}: {check_result.alert_data.title}"
            )
            result.alerts_skipped += 1
            return

        creation = await self.alert_engine.create_alert_from_check_result(
            config, channel, check_result, as_of, check.alert_type
        )
        self._record(creation, result, check.id, channel)

    async def _run_fatigue(
        self,
        snapshot: MetricSnapshot,
        config: ClientMonitoringConfig,
        channel: AlertChannel,
        as_of: date,
        result: ClientRunResult,
    ) -> None:
        try:
            signals = await self.fatigue_detector.detect(config, channel, as_of, metric_source=snapshot)
        except Exception as e:
            logger.error(f"Fatigue detection failed for {config.client_name} ({channel.value}): {e}")
            result.errors.append(CheckError(
                client_id=config.client_id,
                kind=RunErrorKind.DETECTOR,
                message=str(e) or type(e).__name__,
                check_id=FATIGUE_CHECK_ID,
                channel=channel,
            ))
            return

        result.fatigue_signals += len(signals)
        promotable = [s for s in signals if s.is_promotable]

        if self.dry_run:
            for signal in promotable:
                logger.info(
                    f"[DRY RUN] Would promote {signal.severity.value} fatigue signal for "
                    f"{signal.entity_type.value} {signal.entity_id}"
                )
            result.alerts_skipped += len(promotable)
            return

        if self.signal_store is not None and signals:
            try:
                written = await self.signal_store.save_signals(signals, detection_date=as_of)
            except Exception as e:
                written = 0
                logger.error(f"Failed to store fatigue signals for {config.client_name}: {e}")
            if written < len(signals):
                result.errors.append(CheckError(
                    client_id=config.client_id,
                    kind=RunErrorKind.DETECTOR,
                    message=f"Stored {written} of {len(signals)} fatigue signals",
                    check_id=FATIGUE_CHECK_ID,
                    channel=channel,
                ))

        for signal in promotable:
            creation = await self.alert_engine.create_alert_from_fatigue_signal(signal, as_of)
            self._record(creation, result, FATIGUE_CHECK_ID, channel)

        result.alerts_resolved += await self.alert_engine.resolve_recovered_fatigue(
            config.client_id, channel, promotable
        )

    @staticmethod
    def _record(
        creation: AlertCreationResult,
        result: ClientRunResult,
        check_id: str,
        channel: AlertChannel,
    ) -> None:
        if creation.outcome == AlertOutcome.CREATED:
            result.alerts_created += 1
        elif creation.outcome == AlertOutcome.SKIPPED:
            result.alerts_skipped += 1
        else:
            result.alerts_failed += 1
            result.errors.append(CheckError(
                client_id=result.client_id,
                kind=RunErrorKind.UNEXPECTED,
                message=f"Alert creation failed: {creation.error}",
                check_id=check_id,
                channel=channel,
            ))

    @staticmethod
    def _log_summary(result: MonitoringRunResult) -> None:
        logger.info("═══════════════════════════════════════")
        logger.info("        MONITORING RUN COMPLETE")
        logger.info("═══════════════════════════════════════")
        logger.info(f"Clients processed:  {result.clients_processed}")
        logger.info(f"Clients failed:     {result.clients_failed}")
        logger.info(f"Clients skipped:    {result.clients_skipped}")
        logger.info(f"Checks run:         {result.checks_run}")
        logger.info(f"Alerts created:     {result.alerts_created}")
        logger.info(f"Alerts skipped:     {result.alerts_skipped}")
        logger.info(f"Alerts resolved:    {result.alerts_resolved}")
        logger.info(f"Fatigue signals:    {result.fatigue_signals}")
        logger.info(f"Errors:             {len(result.errors)}")

        if result.errors:
            logger.warning("Errors encountered:")
            for error in result.errors:
                logger.warning(f"  - {error}")
