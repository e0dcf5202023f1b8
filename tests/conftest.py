"""
Shared fixtures and capability doubles for the engine tests.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from balancer.capabilities import TransferReceipt, WeightVector
from balancer.errors import QueryError, TransferError
from balancer.registry import AssetDescriptor, TokenRegistry

START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeLedger:
    """In-memory LedgerQuery with raw-unit state and injectable failures."""

    def __init__(self, weights=None, divisor=10, supply=1000 * 10**8, balances=None):
        self.weights = dict(weights or {"HBAR": 40})
        self.divisor = divisor
        self.supply = supply
        self.balances = dict(balances or {})
        self.fail_on = set()
        self.calls = {"get_weights": 0, "get_total_supply": 0, "get_balances": 0}

    def _check(self, name):
        self.calls[name] += 1
        if name in self.fail_on:
            raise QueryError(f"{name} unavailable")

    def get_weights(self):
        self._check("get_weights")
        return WeightVector(self.weights, self.divisor)

    def get_total_supply(self):
        self._check("get_total_supply")
        return self.supply

    def get_balances(self):
        self._check("get_balances")
        return dict(self.balances)


class FakeExecutor:
    """TransferExecutor that records calls and fails for chosen symbols."""

    def __init__(self, ledger: FakeLedger = None, registry: TokenRegistry = None):
        self.ledger = ledger
        self.registry = registry
        self.calls = []
        self.fail_symbols = set()
        self.reverted_symbols = set()

    def _apply(self, direction, symbol, amount):
        self.calls.append((direction, symbol, amount))
        if symbol in self.fail_symbols:
            raise TransferError(f"{symbol} transfer rejected")
        if symbol in self.reverted_symbols:
            return TransferReceipt(tx_id=f"tx-{len(self.calls)}", status="REVERTED")
        if self.ledger is not None and self.registry is not None:
            asset = self.registry.get(symbol)
            raw = self.registry.to_raw(symbol, amount)
            sign = 1 if direction == "in" else -1
            self.ledger.balances[asset.ledger_id] = self.ledger.balances.get(asset.ledger_id, 0) + sign * raw
        return TransferReceipt(tx_id=f"tx-{len(self.calls)}")

    def transfer_in(self, symbol, amount):
        return self._apply("in", symbol, amount)

    def transfer_out(self, symbol, amount):
        return self._apply("out", symbol, amount)


def raw(amount, decimals: int = 8) -> int:
    """Human amount to raw ledger units."""
    return int(Decimal(str(amount)).scaleb(decimals))


@pytest.fixture
def registry():
    return TokenRegistry(
        [
            AssetDescriptor("LYNX", "0.0.100", 8),
            AssetDescriptor("HBAR", "HBAR", 8),
            AssetDescriptor("USDC", "0.0.200", 6),
            AssetDescriptor("SAUCE", "0.0.300", 6),
        ],
        governance_symbol="LYNX",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def executor(ledger, registry):
    return FakeExecutor(ledger, registry)
