"""
Pocket Network Node Client
Query methods for the Pocket node JSON API used by the monitoring service
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from errors import BlockLookupError, SourceError
from tx_decoder import RawTransaction, TransactionDecoder

logger = logging.getLogger(__name__)

CONTENT_TYPE_JSON = "application/json; charset=UTF-8"

URL_PATH_HEIGHT = "v1/query/height"
URL_PATH_ACCOUNT_TRANSACTIONS = "v1/query/accounttxs"
URL_PATH_TRANSACTION = "v1/query/tx"
URL_PATH_BLOCK = "v1/query/block"
URL_PATH_NODE = "v1/query/node"
URL_PATH_BALANCE = "v1/query/balance"
URL_PATH_ALL_PARAMS = "v1/query/allparams"
URL_PATH_RELAY_SIM = "v1/client/sim"

UPOKT_PER_POKT = Decimal(1_000_000)

_FRACTION = re.compile(r"\.(\d+)")


def parse_block_time(value: str) -> datetime:
    """Parse an RFC 3339 node timestamp (nanosecond precision allowed) into a UTC datetime"""
    text = value.strip().replace("Z", "+00:00")
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def relay_rate_from_params(params: Dict[str, Any]) -> Decimal:
    """
    POKT earned by a servicer per relay.

    RelaysToTokensMultiplier is in uPOKT; the DAO and block proposer take their
    percentages before the servicer is paid.
    """
    values: Dict[str, str] = {}
    for group in params.values():
        if not isinstance(group, list):
            continue
        for param in group:
            key = str(param.get("param_key", ""))
            values[key.rsplit("/", 1)[-1]] = str(param.get("param_value", "")).strip('"')

    try:
        multiplier = Decimal(values["RelaysToTokensMultiplier"])
        dao = Decimal(values.get("DAOAllocation", "0"))
        proposer = Decimal(values.get("ProposerPercentage", "0"))
    except (KeyError, InvalidOperation) as e:
        raise SourceError(f"relay_rate_from_params: missing or invalid param: {e}") from e

    return multiplier / UPOKT_PER_POKT * (Decimal(100) - dao - proposer) / Decimal(100)


class PocketClient:
    """
    Query client for a Pocket Network node.

    All node queries are JSON POSTs and idempotent, so POST is retried like GET.
    """

    def __init__(
        self,
        node_url: str,
        timeout: int = 15,
        retry_count: int = 3,
        decoder: Optional[TransactionDecoder] = None,
    ):
        """
        Initialize Pocket client

        Args:
            node_url: Pocket node base URL (e.g., https://node.example.com)
            timeout: Request timeout in seconds
            retry_count: Number of retries for failed requests
            decoder: Transaction decoder for account history
        """
        self.node_url = node_url.rstrip("/")
        self.timeout = timeout
        self.decoder = decoder or TransactionDecoder()

        self.session = requests.Session()
        retry = Retry(
            total=retry_count,
            backoff_factor=0.5,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=frozenset({"GET", "POST"}),
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _post(self, path: str, body: Dict[str, Any], base_url: Optional[str] = None) -> Any:
        """Make POST request with error handling"""
        url = f"{(base_url or self.node_url).rstrip('/')}/{path}"
        try:
            response = self.session.post(
                url,
                data=json.dumps(body),
                headers={"Content-Type": CONTENT_TYPE_JSON},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Request failed: {url} - {e}")
            raise

    # ==================== CHAIN ====================

    def get_height(self, base_url: Optional[str] = None) -> int:
        """Get latest block height"""
        try:
            data = self._post(URL_PATH_HEIGHT, {}, base_url=base_url)
            return int(data["height"])
        except (requests.exceptions.RequestException, ValueError, KeyError, TypeError) as e:
            raise SourceError(f"PocketClient.get_height: {e}") from e

    def get_block(self, height: int) -> Dict[str, Any]:
        """Get block at height (latest if 0)"""
        return self._post(URL_PATH_BLOCK, {"height": height})

    def get_block_time(self, height: int) -> datetime:
        """Get the header time of the block at height"""
        try:
            data = self.get_block(height)
            return parse_block_time(data["block"]["header"]["time"])
        except (requests.exceptions.RequestException, ValueError, KeyError, TypeError, AttributeError) as e:
            raise BlockLookupError(f"PocketClient.get_block_time: height {height}: {e}") from e

    def get_all_params(self, height: int = 0) -> Dict[str, Any]:
        """Get all module parameters at height (latest if 0)"""
        try:
            return self._post(URL_PATH_ALL_PARAMS, {"height": height})
        except (requests.exceptions.RequestException, ValueError) as e:
            raise SourceError(f"PocketClient.get_all_params: {e}") from e

    def get_pokt_per_relay(self, height: int = 0) -> Decimal:
        """Get the servicer payout per relay at height"""
        return relay_rate_from_params(self.get_all_params(height))

    # ==================== ACCOUNTS & NODES ====================

    def get_node(self, address: str, height: int = 0) -> Dict[str, Any]:
        """Get staked node (validator/servicer) details"""
        try:
            return self._post(URL_PATH_NODE, {"address": address, "height": height})
        except (requests.exceptions.RequestException, ValueError) as e:
            raise SourceError(f"PocketClient.get_node: {e}") from e

    def get_balance(self, address: str, height: int = 0) -> int:
        """Get account balance in uPOKT"""
        try:
            data = self._post(URL_PATH_BALANCE, {"address": address, "height": height})
            return int(data.get("balance", 0))
        except (requests.exceptions.RequestException, ValueError, TypeError, AttributeError) as e:
            raise SourceError(f"PocketClient.get_balance: {e}") from e

    # ==================== TRANSACTIONS ====================

    def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        """Get transaction by hash"""
        try:
            data = self._post(URL_PATH_TRANSACTION, {"hash": tx_hash, "prove": False})
        except (requests.exceptions.RequestException, ValueError) as e:
            raise SourceError(f"PocketClient.get_transaction: {e}") from e

        if not isinstance(data, dict) or not data.get("hash"):
            raise SourceError(f"PocketClient.get_transaction: transaction {tx_hash} not found")
        return data

    def get_account_transactions_page(
        self,
        address: str,
        page: int = 1,
        per_page: int = 30,
        order: str = "desc",
        received: bool = False,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        Get one page of an account's transactions

        Returns:
            (transactions, page_count)
        """
        body = {
            "address": address,
            "height": 0,
            "page": page,
            "per_page": per_page,
            "received": received,
            "prove": False,
            "order": order,
        }
        try:
            data = self._post(URL_PATH_ACCOUNT_TRANSACTIONS, body)
            txs = data.get("txs") or []
            if not isinstance(txs, list):
                raise ValueError(f"unexpected txs payload: {type(txs).__name__}")
            return txs, int(data.get("page_count") or 0)
        except (requests.exceptions.RequestException, ValueError, TypeError, AttributeError) as e:
            raise SourceError(f"PocketClient.get_account_transactions_page: {e}") from e

    def fetch_account_transactions(
        self, address: str, per_page: int = 1000, pokt_per_relay: Any = None
    ) -> List[RawTransaction]:
        """Fetch and decode an account's full transaction history"""
        txs: List[Dict[str, Any]] = []
        page = 1
        while True:
            batch, page_count = self.get_account_transactions_page(
                address, page=page, per_page=per_page, order="asc"
            )
            txs.extend(batch)
            if not batch or len(batch) < per_page or (page_count and page >= page_count):
                break
            page += 1

        logger.info(f"Fetched {len(txs)} transactions for {address} in {page} page(s)")
        try:
            return self.decoder.decode_transactions(txs, pokt_per_relay)
        except (AttributeError, TypeError) as e:
            raise SourceError(f"PocketClient.fetch_account_transactions: malformed transaction: {e}") from e

    # ==================== RELAYS ====================

    def simulate_relay(self, servicer_url: str, chain_id: str, payload: Dict[str, Any]) -> Any:
        """Send a simulated relay to a servicer"""
        body = {
            "relay_network_id": chain_id,
            "payload": {
                "data": json.dumps(payload),
                "method": "POST",
                "path": "",
                "headers": {},
            },
        }
        try:
            return self._post(URL_PATH_RELAY_SIM, body, base_url=servicer_url)
        except (requests.exceptions.RequestException, ValueError) as e:
            raise SourceError(f"PocketClient.simulate_relay: {e}") from e
