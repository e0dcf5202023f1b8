"""
Interfaces for the external capabilities the engine consumes.

The engine never talks to the ledger directly. It reads state through a
LedgerQuery, moves funds through a TransferExecutor and receives change
notifications from an AlertFeed. Concrete adapters live in the ``ledger``
package.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, List, Mapping, Protocol

from .alerts import AlertRecord
from .errors import ConfigError


@dataclass(frozen=True)
class WeightVector:
    """Governance-reported integer weights plus the shared divisor."""

    weights: Mapping[str, int]
    divisor: int

    def __post_init__(self):
        if not isinstance(self.divisor, int) or self.divisor <= 0:
            raise ConfigError(f"divisor must be a positive integer, got {self.divisor!r}")
        for symbol, weight in self.weights.items():
            if not isinstance(weight, int) or weight < 0:
                raise ConfigError(f"weight for {symbol} must be a non-negative integer, got {weight!r}")
        object.__setattr__(self, "weights", MappingProxyType(dict(self.weights)))

    def weight(self, symbol: str) -> int:
        return self.weights.get(symbol, 0)


@dataclass(frozen=True)
class TransferReceipt:
    """Result of a transfer returned by the execution capability."""

    tx_id: str
    status: str = "SUCCESS"
    raw: Dict = field(default_factory=dict, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.status.upper() == "SUCCESS"


class LedgerQuery(Protocol):
    """Read access to governance weights, supply and treasury balances."""

    def get_weights(self) -> WeightVector:
        ...

    def get_total_supply(self) -> int:
        """Total supply of the governance asset in raw ledger units."""
        ...

    def get_balances(self) -> Dict[str, int]:
        """Treasury holdings keyed by ledger id, in raw ledger units."""
        ...


class TransferExecutor(Protocol):
    """Moves funds into (BUY) or out of (SELL) the treasury."""

    def transfer_in(self, symbol: str, amount: Decimal) -> TransferReceipt:
        ...

    def transfer_out(self, symbol: str, amount: Decimal) -> TransferReceipt:
        ...


class AlertFeed(Protocol):
    """At-least-once source of change notifications."""

    def poll(self) -> List[AlertRecord]:
        ...
