"""
Static catalogue of tradable treasury assets.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .errors import ConfigError
from .utils import round_to_precision


@dataclass(frozen=True)
class AssetDescriptor:
    """Symbol, ledger identifier and decimal precision of an asset."""

    symbol: str
    ledger_id: Optional[str]
    decimals: int

    @property
    def transferable(self) -> bool:
        return bool(self.ledger_id)


class TokenRegistry:
    """
    Immutable asset catalogue, loaded once at startup.

    The symbol is the join key used by every other component. Exactly one
    asset is the governance asset: it is a liability of the pool and is never
    rebalanced.
    """

    def __init__(self, assets: Iterable[AssetDescriptor], governance_symbol: str):
        self._assets: Dict[str, AssetDescriptor] = {}
        self._by_ledger_id: Dict[str, AssetDescriptor] = {}

        for asset in assets:
            if asset.symbol in self._assets:
                raise ConfigError(f"duplicate asset symbol {asset.symbol}")
            if asset.decimals < 0:
                raise ConfigError(f"negative decimals for {asset.symbol}")
            if asset.ledger_id:
                if asset.ledger_id in self._by_ledger_id:
                    raise ConfigError(f"duplicate ledger id {asset.ledger_id}")
                self._by_ledger_id[asset.ledger_id] = asset
            self._assets[asset.symbol] = asset

        if governance_symbol not in self._assets:
            raise ConfigError(f"governance asset {governance_symbol} is not registered")
        self.governance_symbol = governance_symbol

    @classmethod
    def from_settings(cls, settings) -> "TokenRegistry":
        return cls(
            (AssetDescriptor(t.symbol, t.ledger_id, t.decimals) for t in settings.tokens),
            settings.governance_symbol,
        )

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._assets

    def __len__(self) -> int:
        return len(self._assets)

    @property
    def governance(self) -> AssetDescriptor:
        return self._assets[self.governance_symbol]

    def get(self, symbol: str) -> AssetDescriptor:
        try:
            return self._assets[symbol]
        except KeyError:
            raise KeyError(f"unknown asset {symbol}") from None

    def by_ledger_id(self, ledger_id: str) -> Optional[AssetDescriptor]:
        return self._by_ledger_id.get(ledger_id)

    def symbols(self) -> List[str]:
        return list(self._assets)

    def rebalanced_symbols(self) -> List[str]:
        """All catalogue symbols except the governance asset, in catalogue order."""
        return [s for s in self._assets if s != self.governance_symbol]

    def to_human(self, symbol: str, raw_units: int) -> Decimal:
        """Convert raw ledger units into human-scale amount."""
        return Decimal(int(raw_units)).scaleb(-self.get(symbol).decimals)

    def to_raw(self, symbol: str, amount: Decimal) -> int:
        """Convert a human-scale amount to raw ledger units, rounding down."""
        decimals = self.get(symbol).decimals
        return int(round_to_precision(amount, decimals).scaleb(decimals))
