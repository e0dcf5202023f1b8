"""
Treasury Rebalancing Engine

Keeps a multi-asset treasury aligned with governance-set target weights:
observes change notifications, compares holdings against the weight formula
and issues corrective transfers and withdrawals.
"""

from .alerts import AlertGate, AlertKind, AlertLedger, AlertRecord
from .cache import BalanceCache, BalanceSnapshot
from .capabilities import TransferReceipt, WeightVector
from .errors import (
    BalancerError,
    ConfigError,
    QueryError,
    StaleDataError,
    TransferError,
    UnsupportedAssetError,
)
from .orchestrator import ActionStatus, CorrectiveAction, CycleReport, RebalanceOrchestrator
from .ratios import Direction, evaluate_deviation, required_amount
from .registry import AssetDescriptor, TokenRegistry
from .retry import RetryScheduler

__version__ = "1.0.0"

# Expose main classes for external use
__all__ = [
    "AlertGate",
    "AlertKind",
    "AlertLedger",
    "AlertRecord",
    "BalanceCache",
    "BalanceSnapshot",
    "TransferReceipt",
    "WeightVector",
    "BalancerError",
    "ConfigError",
    "QueryError",
    "StaleDataError",
    "TransferError",
    "UnsupportedAssetError",
    "ActionStatus",
    "CorrectiveAction",
    "CycleReport",
    "RebalanceOrchestrator",
    "Direction",
    "evaluate_deviation",
    "required_amount",
    "AssetDescriptor",
    "TokenRegistry",
    "RetryScheduler",
]
