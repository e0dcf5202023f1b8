"""
Main runner module for the treasury rebalancing engine.

Periodic re-checks and admitted alerts both feed a single execution lane, so
only one rebalance cycle runs at a time.
"""

import argparse
import logging
import sys
import threading
from datetime import timedelta
from typing import Callable, List, Optional

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from rich.console import Console
from rich.table import Table

from ledger import DryRunTransferExecutor, MirrorNodeClient, RelayTransferExecutor, TopicAlertFeed

from . import config
from .alerts import AlertGate, AlertLedger, AlertRecord, GateDecision
from .cache import BalanceCache, BalanceSnapshot
from .capabilities import AlertFeed
from .errors import ConfigError, QueryError, StaleDataError, TransferError
from .orchestrator import ActionStatus, CycleReport, RebalanceOrchestrator
from .ratios import evaluate_deviation, required_amount
from .registry import TokenRegistry
from .retry import RetryScheduler
from .utils import format_amount, format_percent, setup_logging, utc_now

console = Console()
logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100


class CycleLane:
    """
    Serializes cycle execution.

    A submission while a cycle is running is coalesced into a single pending
    re-run, executed by the submitter that holds the lane once its current
    cycle finishes.
    """

    def __init__(self, run: Callable[[str], Optional[CycleReport]]):
        self._run = run
        self._lock = threading.Lock()
        self._running = False
        self._pending: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._running

    def submit(self, trigger: str) -> Optional[CycleReport]:
        with self._lock:
            if self._running:
                self._pending = trigger
                logger.info(f"⏳ Cycle in flight, queued re-run ({trigger})")
                return None
            self._running = True

        try:
            while True:
                report = self._run(trigger)
                with self._lock:
                    if self._pending is None:
                        self._running = False
                        return report
                    trigger, self._pending = self._pending, None
        except BaseException:
            with self._lock:
                self._running = False
                self._pending = None
            raise


class RebalanceEngine:
    """
    Control loop tying the alert gate, orchestrator and retry scheduler together.

    Args:
        orchestrator: Runs individual cycles
        gate: Admission control for alerts
        retry: Process-wide backoff state
        feed: Optional alert feed polled on an interval
        scheduler: APScheduler instance used for periodic and follow-up jobs
    """

    def __init__(self,
                 orchestrator: RebalanceOrchestrator,
                 gate: AlertGate,
                 retry: RetryScheduler,
                 feed: Optional[AlertFeed] = None,
                 scheduler: Optional[BaseScheduler] = None):
        self.orchestrator = orchestrator
        self.gate = gate
        self.retry = retry
        self.feed = feed
        self.scheduler = scheduler
        self.lane = CycleLane(self._run_guarded)
        self.history: List[CycleReport] = []
        self.fatal_error: Optional[ConfigError] = None

    @property
    def last_report(self) -> Optional[CycleReport]:
        return self.history[-1] if self.history else None

    def snapshot(self) -> Optional[BalanceSnapshot]:
        """Current balance snapshot, read-only."""
        return self.orchestrator.cache.snapshot

    def submit(self, trigger: str) -> Optional[CycleReport]:
        """Request a cycle; returns its report, or None if coalesced or aborted."""
        return self.lane.submit(trigger)

    def handle_alert(self, alert: AlertRecord) -> GateDecision:
        decision = self.gate.admit(alert)
        if decision.admitted:
            self.submit(f"alert:{alert.fingerprint[:12]}")
        return decision

    def poll_alerts(self) -> List[GateDecision]:
        if self.feed is None:
            return []
        try:
            alerts = self.feed.poll()
        except QueryError as e:
            logger.warning(f"⚠️ Alert feed poll failed: {e}")
            return []

        decisions = []
        for alert in alerts:
            try:
                decisions.append(self.handle_alert(alert))
            except ConfigError:
                raise
            except Exception:
                logger.exception(f"❌ Failed to handle alert {alert.fingerprint[:12]}")
        return decisions

    def _run_guarded(self, trigger: str) -> Optional[CycleReport]:
        try:
            report = self.retry.call(self.orchestrator.run_cycle, trigger)
        except (QueryError, StaleDataError, TransferError) as e:
            logger.error(f"❌ Cycle ({trigger}) abandoned: {e}")
            self._schedule_followup(self.retry.current_delay)
            return None

        self.history.append(report)
        del self.history[:-HISTORY_LIMIT]

        if report.failed:
            delay = self.retry.record_failure()
            logger.warning(f"⚠️ {report.failed} action(s) failed; re-checking in {delay:.0f}s")
            self._schedule_followup(delay)
        else:
            self.retry.record_success()
        return report

    def _schedule_followup(self, delay: float):
        if self.scheduler is None:
            return
        self.scheduler.add_job(
            func=self.submit,
            trigger=DateTrigger(run_date=utc_now() + timedelta(seconds=delay)),
            args=["retry"],
            id="rebalance_followup",
            name="Rebalance follow-up",
            replace_existing=True,
        )

    def start(self, recheck_minutes: int, poll_seconds: int):
        """Run the startup pass and start periodic jobs."""
        if self.scheduler is None:
            raise ConfigError("engine has no scheduler")

        self.scheduler.add_job(
            func=self.submit,
            trigger=IntervalTrigger(minutes=recheck_minutes),
            args=["interval"],
            id="rebalance_job",
            name="Treasury Rebalancing",
            replace_existing=True,
        )
        if self.feed is not None:
            self.scheduler.add_job(
                func=self.poll_alerts,
                trigger=IntervalTrigger(seconds=poll_seconds),
                id="alert_poll_job",
                name="Alert Feed Poll",
                replace_existing=True,
            )
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)

        logger.info("🚀 Treasury rebalancing engine started")
        logger.info(f"   Re-check interval: {recheck_minutes} minutes")
        polling = f"every {poll_seconds}s" if self.feed is not None else "disabled"
        logger.info(f"   Alert polling: {polling}")

        logger.info("🔄 Running startup rebalance...")
        report = self.submit("startup")
        if report is not None:
            display_cycle_report(report)

        self.scheduler.start()

    def _on_job_error(self, event):
        """Stop the engine when a scheduled job hits a configuration error."""
        if isinstance(event.exception, ConfigError):
            logger.critical(f"🛑 Configuration error in job {event.job_id}, stopping: {event.exception}")
            self.fatal_error = event.exception
            self.stop()

    def stop(self):
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)


def display_cycle_report(report: CycleReport):
    """Display a summary table of a rebalance cycle."""
    table = Table(title=f"Rebalance Cycle {report.cycle_id[:8]} ({report.trigger})")
    table.add_column("Asset", style="cyan")
    table.add_column("Action")
    table.add_column("Amount", justify="right")
    table.add_column("Deviation", justify="right")
    table.add_column("Status")
    table.add_column("Detail")

    styles = {ActionStatus.SUCCEEDED: "green", ActionStatus.FAILED: "red"}
    for action in report.actions:
        style = styles.get(action.status, "yellow")
        detail = f"{action.error_kind}: {action.error_message}" if action.error_kind else (action.tx_id or "")
        table.add_row(
            action.symbol,
            action.direction.value.upper(),
            format_amount(action.amount),
            format_percent(action.deviation_percent),
            f"[{style}]{action.status.value.upper()}[/{style}]",
            detail,
        )
    for symbol, reason in report.skipped:
        table.add_row(symbol, "[dim]-[/dim]", "[dim]-[/dim]", "[dim]-[/dim]", "[yellow]SKIPPED[/yellow]", reason)

    if not report.actions and not report.skipped:
        table.add_row("[dim]all[/dim]", "[dim]No action[/dim]", "-", "-", "[green]BALANCED[/green]", "")

    console.print(table)
    console.print(
        f"Succeeded: {report.succeeded}  Failed: {report.failed}  "
        f"Skipped: {len(report.skipped)}  Post-refresh: {'ok' if report.refreshed_after else 'failed'}"
    )


def display_snapshot(snapshot: BalanceSnapshot, registry: TokenRegistry, tolerance_percent=config.TOLERANCE_PERCENT):
    """Display required vs actual holdings for every treasury asset."""
    table = Table(title=f"Treasury Snapshot @ {snapshot.captured_at:%Y-%m-%d %H:%M:%S} UTC")
    table.add_column("Asset", style="cyan")
    table.add_column("Weight", justify="right")
    table.add_column("Required", justify="right")
    table.add_column("Actual", justify="right")
    table.add_column("Deviation", justify="right")
    table.add_column("Status")

    for symbol in registry.rebalanced_symbols():
        weight = snapshot.weights.weight(symbol)
        required = required_amount(snapshot.total_supply, weight, snapshot.weights.divisor)
        actual = snapshot.balance(symbol)
        deviation = evaluate_deviation(actual, required, tolerance_percent)
        status = (f"[red]{deviation.direction.value.upper()}[/red]" if deviation.needs_action
                  else "[green]BALANCED[/green]")
        table.add_row(
            symbol,
            str(weight),
            format_amount(required),
            format_amount(actual),
            format_percent(deviation.deviation_percent),
            status,
        )

    console.print(table)
    console.print(
        f"{registry.governance_symbol} supply: {format_amount(snapshot.total_supply)}  "
        f"Divisor: {snapshot.weights.divisor}"
    )


def build_engine(settings: config.EngineSettings,
                 dry_run: bool = config.DRY_RUN,
                 scheduler: Optional[BaseScheduler] = None) -> RebalanceEngine:
    """Wire the engine and its ledger adapters from settings."""
    registry = TokenRegistry.from_settings(settings)
    client = MirrorNodeClient.from_settings(settings, registry)

    if dry_run:
        executor = DryRunTransferExecutor()
    else:
        executor = RelayTransferExecutor(registry)

    cache = BalanceCache(client, registry, max_age_seconds=settings.cache_max_age_seconds)
    orchestrator = RebalanceOrchestrator(cache, registry, executor, settings.tolerance_percent)
    ledger = AlertLedger(
        retention=timedelta(seconds=2 * settings.alert_max_age_seconds),
        path=settings.alert_ledger_path,
    )
    gate = AlertGate(ledger, max_age_seconds=settings.alert_max_age_seconds)
    feed = TopicAlertFeed(client) if config.ALERT_TOPIC_ID else None
    retry = RetryScheduler.from_settings(settings)
    return RebalanceEngine(orchestrator, gate, retry, feed=feed, scheduler=scheduler)


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Treasury Rebalancing Engine")
    parser.add_argument(
        "--config",
        default=config.CONFIG_PATH,
        help="Path to the YAML settings file"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single rebalance cycle and exit (don't start scheduler)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log transfers instead of submitting them"
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate configuration and exit"
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Show the current treasury snapshot and exit"
    )

    args = parser.parse_args(argv)
    setup_logging()

    dry_run = config.DRY_RUN or args.dry_run

    try:
        settings = config.load_settings(args.config)
        config.validate_config(settings, dry_run=dry_run)
        if args.validate:
            logger.info("✅ Configuration is valid")
            logger.info(f"  - Tolerance: {settings.tolerance_percent}%")
            logger.info(f"  - Divisor: {settings.divisor}")
            logger.info(f"  - Dry run: {dry_run}")
            return 0

        scheduler = None if (args.once or args.status) else BlockingScheduler(timezone="UTC")
        engine = build_engine(settings, dry_run=dry_run, scheduler=scheduler)

        if args.status:
            snapshot = engine.orchestrator.cache.force_refresh()
            display_snapshot(snapshot, engine.orchestrator.registry, settings.tolerance_percent)
            return 0

        if args.once:
            logger.info("🔄 Running single rebalance cycle...")
            report = engine.submit("once")
            if report is None:
                return 1
            display_cycle_report(report)
            return 1 if report.failed else 0

        engine.start(settings.recheck_interval_minutes, settings.alert_poll_seconds)
        if engine.fatal_error is not None:
            raise engine.fatal_error
        return 0

    except ConfigError as e:
        logger.error(f"❌ Configuration error: {e}")
        return 2
    except QueryError as e:
        logger.error(f"❌ Ledger query failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted by user")
        return 0


if __name__ == "__main__":
    sys.exit(main())
