"""
Time-bounded cache of the last observed treasury state.

A snapshot is built in full from the ledger and swapped in atomically. A
failed refresh leaves the previous snapshot in place (stale but valid).
Concurrent refresh requests share a single in-flight ledger read.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from types import MappingProxyType
from typing import Callable, Mapping, Optional, Union

from . import config
from .capabilities import LedgerQuery, WeightVector
from .errors import QueryError
from .registry import TokenRegistry
from .utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceSnapshot:
    """Whole-pool state captured by one refresh."""

    total_supply: Decimal
    weights: WeightVector
    per_asset: Mapping[str, Decimal]
    captured_at: datetime

    def __post_init__(self):
        object.__setattr__(self, "per_asset", MappingProxyType(dict(self.per_asset)))

    def balance(self, symbol: str) -> Decimal:
        return self.per_asset.get(symbol, Decimal("0"))

    def age(self, now: datetime) -> timedelta:
        return now - self.captured_at


class _Flight:
    """One in-progress refresh shared by every waiting caller."""

    def __init__(self, number: int):
        self.number = number
        self.done = threading.Event()
        self.result: Optional[BalanceSnapshot] = None
        self.error: Optional[BaseException] = None


class BalanceCache:
    """
    Cache of the treasury BalanceSnapshot.

    Args:
        ledger: Ledger query capability
        registry: Token registry used for raw-unit conversion
        max_age_seconds: Default freshness bound for ``get``
        clock: Callable returning the current UTC time
    """

    def __init__(self,
                 ledger: LedgerQuery,
                 registry: TokenRegistry,
                 max_age_seconds: float = config.CACHE_MAX_AGE_SECONDS,
                 clock: Callable[[], datetime] = utc_now):
        self.ledger = ledger
        self.registry = registry
        self.max_age = timedelta(seconds=max_age_seconds)
        self.clock = clock

        self._snapshot: Optional[BalanceSnapshot] = None
        self._lock = threading.Lock()
        self._flight: Optional[_Flight] = None
        self._flights_started = 0
        self.refresh_count = 0

    @property
    def snapshot(self) -> Optional[BalanceSnapshot]:
        """Current snapshot without any freshness check (diagnostics)."""
        return self._snapshot

    def get(self, max_age: Union[timedelta, float, None] = None) -> BalanceSnapshot:
        """Return the current snapshot if fresh enough, refreshing otherwise."""
        if max_age is None:
            bound = self.max_age
        elif isinstance(max_age, timedelta):
            bound = max_age
        else:
            bound = timedelta(seconds=max_age)
        snapshot = self._snapshot
        if snapshot is not None and snapshot.age(self.clock()) <= bound:
            return snapshot
        return self.force_refresh()

    def force_refresh(self, join_in_flight: bool = True) -> BalanceSnapshot:
        """
        Read the ledger now, sharing any refresh already in flight.

        With ``join_in_flight=False`` only a refresh started after this call
        is shared; one already running is waited out first. Use this when the
        ledger changed since that refresh began (after transfers).
        """
        with self._lock:
            floor = self._flights_started

        while True:
            with self._lock:
                flight = self._flight
                leader = flight is None
                if leader:
                    self._flights_started += 1
                    flight = self._flight = _Flight(self._flights_started)
            if leader:
                break
            flight.done.wait()
            if join_in_flight or flight.number > floor:
                if flight.error is not None:
                    raise flight.error
                return flight.result

        try:
            flight.result = self._load()
            self._snapshot = flight.result
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._flight = None
            flight.done.set()
        return flight.result

    def _load(self) -> BalanceSnapshot:
        logger.debug("Refreshing treasury balance snapshot")
        weights = self.ledger.get_weights()
        raw_supply = self.ledger.get_total_supply()
        raw_balances = self.ledger.get_balances()
        self.refresh_count += 1

        total_supply = self.registry.to_human(self.registry.governance_symbol, raw_supply)

        per_asset = {symbol: Decimal("0") for symbol in self.registry.rebalanced_symbols()}
        for ledger_id, raw in raw_balances.items():
            asset = self.registry.by_ledger_id(ledger_id)
            if asset is None or asset.symbol == self.registry.governance_symbol:
                continue
            per_asset[asset.symbol] = self.registry.to_human(asset.symbol, raw)

        if total_supply < 0:
            raise QueryError(f"ledger reported negative total supply {raw_supply}")

        snapshot = BalanceSnapshot(
            total_supply=total_supply,
            weights=weights,
            per_asset=per_asset,
            captured_at=self.clock(),
        )
        logger.info(
            f"Snapshot refreshed: supply={total_supply} "
            f"assets={len(per_asset)} divisor={weights.divisor}"
        )
        return snapshot
