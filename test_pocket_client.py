"""
Tests for pocket_client.py
Node queries, timestamp parsing, relay rate and account history paging
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict
from unittest.mock import patch

import pytest
import requests

from errors import BlockLookupError, SourceError
from pocket_client import (
    URL_PATH_ACCOUNT_TRANSACTIONS,
    URL_PATH_HEIGHT,
    PocketClient,
    parse_block_time,
    relay_rate_from_params,
)

NODE_URL = "https://node.example.com"


class _MockResponse:
    """Simple mock for HTTP responses"""

    def __init__(self, payload: Any, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


def params_payload(multiplier="8461", dao="10", proposer="1") -> Dict[str, Any]:
    return {
        "app_params": [{"param_key": "application/StabilityAdjustment", "param_value": "0"}],
        "node_params": [
            {"param_key": "pos/RelaysToTokensMultiplier", "param_value": multiplier},
            {"param_key": "pos/DAOAllocation", "param_value": dao},
            {"param_key": "pos/ProposerPercentage", "param_value": proposer},
        ],
        "pocket_params": [],
    }


def sent_body(call) -> Dict[str, Any]:
    return json.loads(call.kwargs["data"])


@pytest.fixture
def client():
    return PocketClient(NODE_URL, timeout=5, retry_count=0)


class TestParseBlockTime:
    """Test node timestamp parsing"""

    def test_nanosecond_precision(self):
        parsed = parse_block_time("2023-01-31T23:59:59.123456789Z")
        assert parsed == datetime(2023, 1, 31, 23, 59, 59, 123456, tzinfo=timezone.utc)

    def test_whole_seconds(self):
        assert parse_block_time("2023-02-01T00:00:01Z") == datetime(2023, 2, 1, 0, 0, 1, tzinfo=timezone.utc)

    def test_short_fraction(self):
        parsed = parse_block_time("2022-05-04T10:11:12.5Z")
        assert parsed.microsecond == 500000

    def test_offset_is_normalized_to_utc(self):
        parsed = parse_block_time("2023-02-01T01:30:00+02:00")
        assert parsed == datetime(2023, 1, 31, 23, 30, tzinfo=timezone.utc)
        assert parsed.tzinfo == timezone.utc

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_block_time("yesterday")


class TestRelayRate:
    """Test servicer payout per relay"""

    def test_rate_from_params(self):
        assert relay_rate_from_params(params_payload()) == Decimal("0.00753029")

    def test_quoted_values(self):
        rate = relay_rate_from_params(params_payload(multiplier='"10000"', dao='"0"', proposer='"0"'))
        assert rate == Decimal("0.01")

    def test_missing_multiplier(self):
        payload = params_payload()
        payload["node_params"] = payload["node_params"][1:]
        with pytest.raises(SourceError):
            relay_rate_from_params(payload)

    def test_invalid_value(self):
        with pytest.raises(SourceError):
            relay_rate_from_params(params_payload(dao="ten"))


class TestPocketClient:
    """Test node queries"""

    def test_retry_adapter(self):
        client = PocketClient(NODE_URL, retry_count=3)
        retry = client.session.get_adapter(NODE_URL).max_retries
        assert retry.total == 3
        assert "POST" in retry.allowed_methods

    def test_trailing_slash_removed(self):
        assert PocketClient(NODE_URL + "/").node_url == NODE_URL

    def test_get_height(self, client):
        with patch.object(client.session, "post", return_value=_MockResponse({"height": 81234})) as post:
            assert client.get_height() == 81234

        assert post.call_args.args[0] == f"{NODE_URL}/{URL_PATH_HEIGHT}"

    def test_get_height_from_other_node(self, client):
        with patch.object(client.session, "post", return_value=_MockResponse({"height": 5})) as post:
            client.get_height(base_url="http://servicer:8081/")

        assert post.call_args.args[0] == f"http://servicer:8081/{URL_PATH_HEIGHT}"

    def test_get_height_failure(self, client):
        with patch.object(client.session, "post", return_value=_MockResponse({}, status_code=503)):
            with pytest.raises(SourceError):
                client.get_height()

    def test_get_height_connection_error(self, client):
        with patch.object(client.session, "post", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(SourceError):
                client.get_height()

    def test_get_block_time(self, client):
        payload = {"block": {"header": {"height": "10", "time": "2023-01-31T23:59:59.999999999Z"}}}
        with patch.object(client.session, "post", return_value=_MockResponse(payload)) as post:
            block_time = client.get_block_time(10)

        assert block_time == datetime(2023, 1, 31, 23, 59, 59, 999999, tzinfo=timezone.utc)
        assert sent_body(post.call_args) == {"height": 10}

    @pytest.mark.parametrize("response", [
        _MockResponse({}, status_code=400),
        _MockResponse({"block": None}),
        _MockResponse({"block": {"header": {"time": "not a time"}}}),
    ])
    def test_get_block_time_failure(self, client, response):
        with patch.object(client.session, "post", return_value=response):
            with pytest.raises(BlockLookupError):
                client.get_block_time(10)

    def test_get_pokt_per_relay(self, client):
        with patch.object(client.session, "post", return_value=_MockResponse(params_payload())):
            assert client.get_pokt_per_relay() == Decimal("0.00753029")

    def test_get_balance(self, client):
        with patch.object(client.session, "post", return_value=_MockResponse({"balance": 125000000})):
            assert client.get_balance("abc") == 125000000

    def test_get_transaction_not_found(self, client):
        with patch.object(client.session, "post", return_value=_MockResponse({})):
            with pytest.raises(SourceError):
                client.get_transaction("DEADBEEF")

    def test_get_transaction(self, client):
        tx = {"hash": "ABC", "height": 12, "tx_result": {"code": 0}}
        with patch.object(client.session, "post", return_value=_MockResponse(tx)) as post:
            assert client.get_transaction("ABC") == tx

        assert sent_body(post.call_args) == {"hash": "ABC", "prove": False}

    def test_simulate_relay(self, client):
        with patch.object(client.session, "post", return_value=_MockResponse({"result": "0x1"})) as post:
            result = client.simulate_relay("http://servicer:8081", "0021", {"method": "eth_blockNumber"})

        assert result == {"result": "0x1"}
        assert post.call_args.args[0] == "http://servicer:8081/v1/client/sim"
        body = sent_body(post.call_args)
        assert body["relay_network_id"] == "0021"
        assert json.loads(body["payload"]["data"]) == {"method": "eth_blockNumber"}


class TestAccountTransactions:
    """Test account history paging"""

    @staticmethod
    def send(index: int) -> Dict[str, Any]:
        return {
            "hash": f"TX{index}",
            "height": index,
            "tx_result": {"code": 0, "message_type": "send"},
            "stdTx": {"msg": {"type": "pos/Send", "value": {}}},
        }

    def test_single_page(self, client):
        payload = {"txs": [self.send(1)], "page_count": 1}
        with patch.object(client.session, "post", return_value=_MockResponse(payload)) as post:
            txs, page_count = client.get_account_transactions_page("abc", page=1, per_page=30)

        assert [tx["hash"] for tx in txs] == ["TX1"]
        assert page_count == 1
        assert post.call_args.args[0] == f"{NODE_URL}/{URL_PATH_ACCOUNT_TRANSACTIONS}"
        body = sent_body(post.call_args)
        assert body["address"] == "abc"
        assert body["order"] == "desc"
        assert body["received"] is False

    def test_fetch_all_pages(self, client):
        pages = [
            _MockResponse({"txs": [self.send(1), self.send(2)], "page_count": 2}),
            _MockResponse({"txs": [self.send(3)], "page_count": 2}),
        ]
        with patch.object(client.session, "post", side_effect=pages) as post:
            raws = client.fetch_account_transactions("abc", per_page=2, pokt_per_relay=Decimal("0.01"))

        assert [raw.hash for raw in raws] == ["TX1", "TX2", "TX3"]
        assert all(raw.pokt_per_relay == Decimal("0.01") for raw in raws)
        assert [sent_body(call)["page"] for call in post.call_args_list] == [1, 2]
        assert all(sent_body(call)["order"] == "asc" for call in post.call_args_list)

    def test_empty_history(self, client):
        with patch.object(client.session, "post", return_value=_MockResponse({"txs": None, "page_count": 0})):
            assert client.fetch_account_transactions("abc") == []

    def test_source_failure(self, client):
        with patch.object(client.session, "post", return_value=_MockResponse({}, status_code=500)):
            with pytest.raises(SourceError):
                client.fetch_account_transactions("abc")

    def test_malformed_payload(self, client):
        with patch.object(client.session, "post", return_value=_MockResponse({"txs": "oops"})):
            with pytest.raises(SourceError):
                client.get_account_transactions_page("abc")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
