"""
Error taxonomy for the treasury rebalancing engine.
"""


class BalancerError(Exception):
    """Base class for all engine errors."""


class ConfigError(BalancerError):
    """Invalid configuration (divisor, weights, token catalogue). Always fatal."""


class QueryError(BalancerError):
    """A ledger read failed. Retryable."""


class TransferError(BalancerError):
    """A transfer or withdrawal failed or was reverted."""


class StaleDataError(BalancerError):
    """The balance cache could not refresh and the cycle cannot proceed."""


class UnsupportedAssetError(BalancerError):
    """An asset is weighted but has no ledger-transfer support."""

    def __init__(self, symbol: str, reason: str):
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason
