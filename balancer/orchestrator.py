"""
Rebalance cycle orchestration.

A cycle refreshes the balance snapshot, evaluates every treasury asset
against its governance weight, executes the resulting corrective actions one
at a time (largest imbalance first) and refreshes the snapshot again so the
next cycle starts from ground truth.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

from . import config
from .cache import BalanceCache, BalanceSnapshot
from .capabilities import TransferExecutor
from .errors import ConfigError, QueryError, StaleDataError, TransferError, UnsupportedAssetError
from .ratios import Direction, evaluate_deviation, required_amount
from .registry import TokenRegistry
from .utils import format_amount, generate_cycle_id, round_to_precision, utc_now

logger = logging.getLogger(__name__)


class ActionStatus(Enum):
    """Corrective action lifecycle."""
    PENDING = "pending"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS = {
    ActionStatus.PENDING: {ActionStatus.EXECUTING},
    ActionStatus.EXECUTING: {ActionStatus.SUCCEEDED, ActionStatus.FAILED},
    ActionStatus.SUCCEEDED: set(),
    ActionStatus.FAILED: set(),
}


@dataclass
class CorrectiveAction:
    """One correction for one asset in one cycle."""

    symbol: str
    direction: Direction
    amount: Decimal
    required: Decimal = Decimal("0")
    actual: Decimal = Decimal("0")
    deviation_percent: Decimal = Decimal("0")
    status: ActionStatus = ActionStatus.PENDING
    tx_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    def __post_init__(self):
        if self.direction is Direction.NONE:
            raise ValueError("a corrective action needs a BUY or SELL direction")
        if self.amount < 0:
            raise ValueError(f"negative action amount for {self.symbol}: {self.amount}")

    @property
    def is_terminal(self) -> bool:
        return self.status in (ActionStatus.SUCCEEDED, ActionStatus.FAILED)

    def transition(self, status: ActionStatus):
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(f"{self.symbol}: illegal transition {self.status.value} -> {status.value}")
        self.status = status

    def succeed(self, tx_id: str):
        self.transition(ActionStatus.SUCCEEDED)
        self.tx_id = tx_id

    def fail(self, error_kind: str, error_message: str):
        self.transition(ActionStatus.FAILED)
        self.error_kind = error_kind
        self.error_message = error_message


@dataclass
class CycleReport:
    cycle_id: str
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    actions: List[CorrectiveAction] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)
    refreshed_after: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for a in self.actions if a.status is ActionStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for a in self.actions if a.status is ActionStatus.FAILED)

    @property
    def balanced(self) -> bool:
        return not self.actions

    def action_for(self, symbol: str) -> Optional[CorrectiveAction]:
        for action in self.actions:
            if action.symbol == symbol:
                return action
        return None


class RebalanceOrchestrator:
    """
    Turns a fresh snapshot into an ordered, executed set of corrections.

    Args:
        cache: Balance cache (refreshed at the start and end of every cycle)
        registry: Token registry
        executor: Transfer execution capability
        tolerance_percent: Deviation band before an action is issued
    """

    def __init__(self,
                 cache: BalanceCache,
                 registry: TokenRegistry,
                 executor: TransferExecutor,
                 tolerance_percent: Decimal = config.TOLERANCE_PERCENT):
        if tolerance_percent < 0:
            raise ConfigError("tolerance_percent must not be negative")
        self.cache = cache
        self.registry = registry
        self.executor = executor
        self.tolerance_percent = tolerance_percent
        self.last_report: Optional[CycleReport] = None

    def run_cycle(self, trigger: str = "manual") -> CycleReport:
        """Run one full refresh -> evaluate -> execute -> refresh pass."""
        report = CycleReport(cycle_id=generate_cycle_id(), trigger=trigger, started_at=utc_now())
        logger.info(f"🔄 Starting rebalance cycle {report.cycle_id[:8]} (trigger: {trigger})")

        try:
            snapshot = self.cache.force_refresh()
        except QueryError as e:
            logger.error(f"❌ Cycle aborted, could not refresh balances: {e}")
            raise StaleDataError(f"balance refresh failed: {e}") from e

        report.actions, report.skipped = self.plan(snapshot)
        if not report.actions:
            logger.info("✅ Treasury is balanced within tolerance")

        for action in report.actions:
            self._execute(action)

        try:
            self.cache.force_refresh(join_in_flight=False)
            report.refreshed_after = True
        except QueryError as e:
            logger.warning(f"⚠️ Post-cycle refresh failed, snapshot may be stale: {e}")

        report.finished_at = utc_now()
        self.last_report = report
        logger.info(
            f"🎯 Cycle {report.cycle_id[:8]} complete: "
            f"{report.succeeded} succeeded, {report.failed} failed, {len(report.skipped)} skipped"
        )
        return report

    def plan(self, snapshot: BalanceSnapshot) -> Tuple[List[CorrectiveAction], List[Tuple[str, str]]]:
        """Evaluate every treasury asset and return (actions, skipped)."""
        weights = snapshot.weights
        actions = []
        skipped = []

        candidates = self.registry.rebalanced_symbols()
        candidates += [s for s in weights.weights if s not in candidates and s != self.registry.governance_symbol]

        for symbol in candidates:
            try:
                action = self._evaluate_asset(symbol, snapshot)
            except UnsupportedAssetError as e:
                logger.warning(f"⚠️ Skipping {symbol}: {e.reason}")
                skipped.append((symbol, e.reason))
                continue
            if action is not None:
                actions.append(action)

        actions.sort(key=lambda a: (-a.amount, a.symbol))
        return actions, skipped

    def _evaluate_asset(self, symbol: str, snapshot: BalanceSnapshot) -> Optional[CorrectiveAction]:
        weight = snapshot.weights.weight(symbol)
        if symbol not in self.registry:
            if weight > 0:
                raise UnsupportedAssetError(symbol, "weighted asset is not in the token registry")
            return None

        asset = self.registry.get(symbol)
        if weight > 0 and not asset.transferable:
            raise UnsupportedAssetError(symbol, "asset has no ledger-transfer support")

        required = required_amount(snapshot.total_supply, weight, snapshot.weights.divisor)
        actual = snapshot.balance(symbol)
        deviation = evaluate_deviation(actual, required, self.tolerance_percent)

        logger.debug(
            f"{symbol}: required={required} actual={actual} "
            f"deviation={deviation.deviation_percent:.2f}% -> {deviation.direction.value}"
        )
        if not deviation.needs_action or not asset.transferable:
            return None

        amount = round_to_precision(deviation.magnitude, asset.decimals)
        if amount <= 0:
            return None

        return CorrectiveAction(
            symbol=symbol,
            direction=deviation.direction,
            amount=amount,
            required=required,
            actual=actual,
            deviation_percent=deviation.deviation_percent,
        )

    def _execute(self, action: CorrectiveAction):
        action.transition(ActionStatus.EXECUTING)
        label = f"{action.direction.value.upper()} {format_amount(action.amount, action.symbol)}"
        try:
            if action.direction is Direction.BUY:
                receipt = self.executor.transfer_in(action.symbol, action.amount)
            else:
                receipt = self.executor.transfer_out(action.symbol, action.amount)
        except ConfigError:
            raise
        except TransferError as e:
            action.fail(type(e).__name__, str(e))
            logger.error(f"❌ {label} failed: {e}")
            return
        except Exception as e:
            action.fail(type(e).__name__, str(e))
            logger.exception(f"❌ {label} failed unexpectedly")
            return

        if not receipt.succeeded:
            action.fail(TransferError.__name__, f"transaction {receipt.tx_id} ended with status {receipt.status}")
            logger.error(f"❌ {label} reverted: {receipt.status} ({receipt.tx_id})")
            return

        action.succeed(receipt.tx_id)
        logger.info(f"✅ {label} executed (tx {receipt.tx_id})")
