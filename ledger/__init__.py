"""
Ledger adapters for the treasury rebalancing engine.

This module provides the concrete capabilities the engine consumes:
- Mirror node ledger queries (weights, supply, balances)
- Consensus topic alert feed
- Dry-run and relay transfer execution
"""

from .mirror_client import MirrorNodeClient
from .topic_feed import TopicAlertFeed
from .transfers import DryRunTransferExecutor, RelayTransferExecutor

__all__ = [
    'MirrorNodeClient',
    'TopicAlertFeed',
    'DryRunTransferExecutor',
    'RelayTransferExecutor'
]
