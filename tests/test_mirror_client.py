"""
Unit tests for the mirror node client.
"""

from unittest.mock import MagicMock

import pytest
import requests

from balancer.capabilities import WeightVector
from balancer.errors import ConfigError, QueryError
from ledger.mirror_client import MirrorNodeClient, decode_uint256_words, entity_to_evm_address


def word(value: int) -> str:
    return f"{value:064x}"


def response(body=None, error=None):
    resp = MagicMock()
    if error is not None:
        resp.raise_for_status.side_effect = error
    resp.json.return_value = body
    return resp


class TestHelpers:
    """Test address and ABI helpers."""

    def test_entity_to_evm_address(self):
        assert entity_to_evm_address("0.0.1234") == "0x" + "0" * 36 + "04d2"

    def test_entity_address_length(self):
        assert len(entity_to_evm_address("1.2.3")) == 42

    @pytest.mark.parametrize("entity_id", ["", "0.0", "a.b.c", "0.0.1.2"])
    def test_invalid_entity_id(self, entity_id):
        with pytest.raises(ConfigError):
            entity_to_evm_address(entity_id)

    def test_decode_words(self):
        assert decode_uint256_words("0x" + word(40) + word(0) + word(7), 3) == [40, 0, 7]

    def test_decode_too_short(self):
        with pytest.raises(QueryError):
            decode_uint256_words("0x" + word(1), 2)

    def test_decode_malformed(self):
        with pytest.raises(QueryError):
            decode_uint256_words("0x" + "zz" * 32, 1)


class TestMirrorNodeClient:
    """Test MirrorNodeClient against a mocked session."""

    def setup_method(self):
        self.session = MagicMock()
        self.client = MirrorNodeClient(
            base_url="https://mirror.test/",
            treasury_account_id="0.0.5",
            governance_contract_id="0.0.6",
            governance_token_id="0.0.100",
            divisor=10,
            weight_order=["HBAR", "USDC"],
            weights_selector="0x12345678",
            session=self.session,
            min_request_interval=0,
        )

    def test_get_weights(self):
        self.session.request.return_value = response({"result": "0x" + word(40) + word(20)})

        weights = self.client.get_weights()

        assert isinstance(weights, WeightVector)
        assert weights.weight("HBAR") == 40
        assert weights.weight("USDC") == 20
        assert weights.divisor == 10
        method, url = self.session.request.call_args[0]
        assert method == "POST"
        assert url == "https://mirror.test/api/v1/contracts/call"
        sent = self.session.request.call_args.kwargs["json"]
        assert sent["data"] == "0x12345678"
        assert sent["to"] == entity_to_evm_address("0.0.6")

    def test_get_weights_without_selector(self):
        self.client.weights_selector = ""
        with pytest.raises(ConfigError):
            self.client.get_weights()
        self.session.request.assert_not_called()

    def test_get_weights_missing_result(self):
        self.session.request.return_value = response({"error": "reverted"})
        with pytest.raises(QueryError):
            self.client.get_weights()

    def test_get_total_supply(self):
        self.session.request.return_value = response({"token_id": "0.0.100", "total_supply": "100000000000"})
        assert self.client.get_total_supply() == 100_000_000_000
        assert self.session.request.call_args[0][1].endswith("/api/v1/tokens/0.0.100")

    def test_get_total_supply_malformed(self):
        self.session.request.return_value = response({"token_id": "0.0.100"})
        with pytest.raises(QueryError):
            self.client.get_total_supply()

    def test_get_balances(self):
        self.session.request.return_value = response({
            "account": "0.0.5",
            "balance": {
                "balance": 300000000000,
                "tokens": [
                    {"token_id": "0.0.200", "balance": 2000000000},
                    {"token_id": "0.0.300", "balance": 0},
                ],
            },
        })
        assert self.client.get_balances() == {
            "HBAR": 300000000000,
            "0.0.200": 2000000000,
            "0.0.300": 0,
        }

    def test_get_balances_malformed(self):
        self.session.request.return_value = response({"account": "0.0.5"})
        with pytest.raises(QueryError):
            self.client.get_balances()

    def test_http_error_becomes_query_error(self):
        self.session.request.return_value = response(error=requests.HTTPError("503 Service Unavailable"))
        with pytest.raises(QueryError):
            self.client.get_total_supply()

    def test_transport_error_becomes_query_error(self):
        self.session.request.side_effect = requests.ConnectionError("connection refused")
        with pytest.raises(QueryError):
            self.client.get_balances()

    def test_invalid_json_becomes_query_error(self):
        resp = response()
        resp.json.side_effect = ValueError("Expecting value")
        self.session.request.return_value = resp
        with pytest.raises(QueryError):
            self.client.get_balances()

    def test_non_object_body(self):
        self.session.request.return_value = response(["not", "an", "object"])
        with pytest.raises(QueryError):
            self.client.get_balances()

    def test_get_topic_messages(self):
        self.session.request.return_value = response({"messages": [{"sequence_number": 4}]})

        messages = self.client.get_topic_messages("0.0.777", after_sequence=3, limit=25)

        assert messages == [{"sequence_number": 4}]
        params = self.session.request.call_args.kwargs["params"]
        assert params == {"sequencenumber": "gt:3", "limit": 25, "order": "asc"}

    def test_from_settings(self, registry):
        settings = MagicMock(divisor=10, weight_order=["HBAR"], weights_selector="0xabcdef01")
        client = MirrorNodeClient.from_settings(settings, registry, session=self.session)
        assert client.governance_token_id == "0.0.100"
        assert client.weight_order == ["HBAR"]
