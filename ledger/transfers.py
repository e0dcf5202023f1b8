"""
Transfer execution adapters.

Signing stays outside this process: live transfers are handed to a relay
service that owns the treasury keys. The dry-run executor only logs what
would have been sent.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

import requests

from balancer import config
from balancer.capabilities import TransferReceipt
from balancer.errors import TransferError
from balancer.registry import TokenRegistry

logger = logging.getLogger(__name__)


class DryRunTransferExecutor:
    """Logs transfers instead of executing them."""

    def __init__(self):
        self.executed = []

    def _record(self, direction: str, symbol: str, amount: Decimal) -> TransferReceipt:
        tx_id = f"dry-run-{uuid.uuid4().hex}"
        self.executed.append((direction, symbol, amount, tx_id))
        logger.info(f"[DRY RUN] Would execute: {direction.upper()} {amount} {symbol}")
        return TransferReceipt(tx_id=tx_id, status="SUCCESS")

    def transfer_in(self, symbol: str, amount: Decimal) -> TransferReceipt:
        return self._record("in", symbol, amount)

    def transfer_out(self, symbol: str, amount: Decimal) -> TransferReceipt:
        return self._record("out", symbol, amount)


class RelayTransferExecutor:
    """
    Submits transfers to an external signing relay over HTTP.

    The relay receives the ledger id and the amount in raw units and answers
    with a transaction id and a status. Anything other than a SUCCESS status
    is a TransferError.
    """

    def __init__(self,
                 registry: TokenRegistry,
                 relay_url: str = None,
                 treasury_account_id: str = None,
                 session: Optional[requests.Session] = None,
                 timeout: float = config.REQUEST_TIMEOUT_SECONDS):
        self.registry = registry
        self.relay_url = (relay_url or config.TRANSFER_RELAY_URL).rstrip("/")
        self.treasury_account_id = treasury_account_id or config.TREASURY_ACCOUNT_ID
        self.session = session or requests.Session()
        self.timeout = timeout

    def _submit(self, direction: str, symbol: str, amount: Decimal) -> TransferReceipt:
        asset = self.registry.get(symbol)
        if not asset.transferable:
            raise TransferError(f"{symbol} has no ledger id")
        raw_amount = self.registry.to_raw(symbol, amount)
        if raw_amount <= 0:
            raise TransferError(f"{symbol} amount {amount} rounds to zero")

        payload = {
            "direction": direction,
            "treasury": self.treasury_account_id,
            "ledger_id": asset.ledger_id,
            "amount": str(raw_amount),
            "reference": uuid.uuid4().hex,
        }
        try:
            response = self.session.post(f"{self.relay_url}/transfers", json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            raise TransferError(f"relay rejected {direction} {symbol}: {e}") from e
        except ValueError as e:
            raise TransferError(f"relay returned invalid JSON for {direction} {symbol}") from e

        if not isinstance(body, dict):
            raise TransferError(f"relay returned unexpected body for {direction} {symbol}")
        receipt = TransferReceipt(
            tx_id=str(body.get("transaction_id", "")),
            status=str(body.get("status", "UNKNOWN")),
            raw=body,
        )
        if not receipt.succeeded:
            raise TransferError(f"{direction} {symbol} ended with status {receipt.status} ({receipt.tx_id})")
        return receipt

    def transfer_in(self, symbol: str, amount: Decimal) -> TransferReceipt:
        return self._submit("in", symbol, amount)

    def transfer_out(self, symbol: str, amount: Decimal) -> TransferReceipt:
        return self._submit("out", symbol, amount)
