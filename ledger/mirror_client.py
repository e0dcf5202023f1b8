"""
Hedera mirror node REST client.

Implements the engine's LedgerQuery capability on top of the public mirror
node API: token info for the governance supply, account info for treasury
balances and a read-only contract call for governance weights. Also serves
raw topic messages to the alert feed.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import requests

from balancer import config
from balancer.capabilities import WeightVector
from balancer.errors import ConfigError, QueryError

NATIVE_LEDGER_ID = "HBAR"
WORD_HEX_LENGTH = 64


def entity_to_evm_address(entity_id: str) -> str:
    """Convert a ``shard.realm.num`` entity id to its long-zero EVM address."""
    try:
        shard, realm, num = (int(part) for part in entity_id.split("."))
    except ValueError:
        raise ConfigError(f"invalid entity id {entity_id!r}")
    return f"0x{shard:08x}{realm:016x}{num:016x}"


def decode_uint256_words(result_hex: str, count: int) -> List[int]:
    """Decode ``count`` consecutive 32-byte unsigned words from ABI output."""
    body = result_hex[2:] if result_hex.startswith("0x") else result_hex
    if len(body) < count * WORD_HEX_LENGTH:
        raise QueryError(f"contract returned {len(body) // WORD_HEX_LENGTH} words, expected {count}")
    try:
        return [
            int(body[i * WORD_HEX_LENGTH:(i + 1) * WORD_HEX_LENGTH], 16)
            for i in range(count)
        ]
    except ValueError as e:
        raise QueryError(f"malformed contract result: {e}") from e


class MirrorNodeClient:
    """
    Mirror node wrapper with rate limiting and error translation.

    Every transport error, non-2xx response or malformed body surfaces as a
    QueryError; callers never see ``requests`` exceptions.
    """

    def __init__(self,
                 base_url: str = None,
                 treasury_account_id: str = None,
                 governance_contract_id: str = None,
                 governance_token_id: Optional[str] = None,
                 divisor: int = 10,
                 weight_order: Sequence[str] = (),
                 weights_selector: str = "",
                 session: Optional[requests.Session] = None,
                 timeout: float = config.REQUEST_TIMEOUT_SECONDS,
                 min_request_interval: float = 0.1):
        self.base_url = (base_url or config.MIRROR_NODE_URL).rstrip("/")
        self.treasury_account_id = treasury_account_id or config.TREASURY_ACCOUNT_ID
        self.governance_contract_id = governance_contract_id or config.GOVERNANCE_CONTRACT_ID
        self.governance_token_id = governance_token_id
        self.divisor = divisor
        self.weight_order = list(weight_order)
        self.weights_selector = weights_selector
        self.session = session or requests.Session()
        self.timeout = timeout

        # Rate limiting
        self.last_request_time = 0.0
        self.min_request_interval = min_request_interval

        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings, registry, **kwargs) -> "MirrorNodeClient":
        return cls(
            governance_token_id=registry.governance.ledger_id,
            divisor=settings.divisor,
            weight_order=settings.weight_order,
            weights_selector=settings.weights_selector,
            **kwargs,
        )

    def _rate_limit(self):
        """Apply rate limiting between requests."""
        current_time = time.monotonic()
        time_since_last = current_time - self.last_request_time

        if time_since_last < self.min_request_interval:
            time.sleep(self.min_request_interval - time_since_last)

        self.last_request_time = time.monotonic()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Issue a request and return the decoded JSON body."""
        self._rate_limit()
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            self.logger.error(f"Mirror node call failed: {method} {path}: {e}")
            raise QueryError(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            raise QueryError(f"{method} {path} returned invalid JSON") from e
        if not isinstance(body, dict):
            raise QueryError(f"{method} {path} returned unexpected body")
        return body

    # ===== LEDGER QUERY CAPABILITY =====

    def get_weights(self) -> WeightVector:
        """Read the current governance weights from the governance contract."""
        if not self.weight_order or not self.weights_selector:
            raise ConfigError("weight_order and weights_selector must be configured")
        body = self._request("POST", "/api/v1/contracts/call", json={
            "data": self.weights_selector,
            "to": entity_to_evm_address(self.governance_contract_id),
            "estimate": False,
            "block": "latest",
        })
        result = body.get("result")
        if not isinstance(result, str):
            raise QueryError("contract call response has no result")
        words = decode_uint256_words(result, len(self.weight_order))
        return WeightVector(dict(zip(self.weight_order, words)), self.divisor)

    def get_total_supply(self) -> int:
        """Governance token total supply in raw units."""
        if not self.governance_token_id:
            raise ConfigError("governance token has no ledger id")
        body = self._request("GET", f"/api/v1/tokens/{self.governance_token_id}")
        try:
            return int(body["total_supply"])
        except (KeyError, TypeError, ValueError) as e:
            raise QueryError(f"token {self.governance_token_id} has no usable total_supply") from e

    def get_balances(self) -> Dict[str, int]:
        """Treasury holdings keyed by ledger id, in raw units."""
        body = self._request("GET", f"/api/v1/accounts/{self.treasury_account_id}")
        try:
            balance = body["balance"]
            balances = {NATIVE_LEDGER_ID: int(balance["balance"])}
            for token in balance.get("tokens", []):
                balances[str(token["token_id"])] = int(token["balance"])
        except (KeyError, TypeError, ValueError) as e:
            raise QueryError(f"account {self.treasury_account_id} response is malformed") from e
        return balances

    # ===== TOPICS =====

    def get_topic_messages(self, topic_id: str, after_sequence: int = 0, limit: int = 100) -> List[Dict[str, Any]]:
        """Messages of a topic with sequence number greater than ``after_sequence``, oldest first."""
        body = self._request("GET", f"/api/v1/topics/{topic_id}/messages", params={
            "sequencenumber": f"gt:{after_sequence}",
            "limit": limit,
            "order": "asc",
        })
        messages = body.get("messages", [])
        if not isinstance(messages, list):
            raise QueryError(f"topic {topic_id} response is malformed")
        return messages
