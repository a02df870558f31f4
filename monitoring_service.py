"""
Monitoring service
Account, node and reward queries over a Pocket node
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from block_times import BlockTimeResolver, RelayRateResolver
from cache import BlockTimesRepo, RelayRatesRepo, build_cache
from chains import Chain, ChainTable
from classifier import Transaction, TransactionClassifier, parse_height
from errors import RequestValidationError, ResolutionError, SourceError
from pocket_client import PocketClient
from rewards import MonthlyAggregator, MonthlyRewardSummary
from tx_decoder import RawTransaction

logger = logging.getLogger(__name__)

SORT_ORDERS = ("asc", "desc")


@dataclass
class NodeStatus:
    """Staked node as seen by the monitor"""
    address: str
    pubkey: str
    service_url: str
    balance: int
    staked_balance: int
    is_jailed: bool
    chains: List[Chain] = field(default_factory=list)
    is_synced: bool = False
    latest_block_height: int = 0
    latest_block_time: Optional[datetime] = None


class MonitoringService:
    """
    Operations behind the monitoring API

    Payouts use the configured POKT-per-relay rate when one is set, otherwise
    the rate in force at each transaction's height.
    """

    def __init__(
        self,
        client: PocketClient,
        resolver: BlockTimeResolver,
        classifier: TransactionClassifier,
        cache,
        max_exclusion_rate: float = 0.1,
        pokt_per_relay: Optional[Decimal] = None,
        rate_resolver: Optional[RelayRateResolver] = None,
        account_txs_per_page: int = 1000,
        max_per_page: int = 1000,
        sync_tolerance: int = 2,
    ):
        self.client = client
        self.resolver = resolver
        self.classifier = classifier
        self.cache = cache
        self.configured_rate = pokt_per_relay
        self.rate_resolver = rate_resolver or RelayRateResolver(
            RelayRatesRepo(cache), client.get_pokt_per_relay, max_workers=resolver.max_workers
        )
        self.aggregator = MonthlyAggregator(
            resolver, classifier, max_exclusion_rate, rate_resolver=self.rate_resolver
        )
        self.account_txs_per_page = account_txs_per_page
        self.max_per_page = max_per_page
        self.sync_tolerance = sync_tolerance

    @classmethod
    def from_config(cls, config, chain_table: Optional[ChainTable] = None) -> "MonitoringService":
        """Wire the service from a Config class"""
        cache = build_cache(
            redis_url=config.REDIS_URL,
            key_prefix=config.CACHE_KEY_PREFIX,
            max_size=config.CACHE_MAX_SIZE,
            promote_ttl=config.CACHE_TTL_SHORT,
        )
        client = PocketClient(
            config.POCKET_NODE_URL,
            timeout=config.HTTP_TIMEOUT,
            retry_count=config.HTTP_RETRY_COUNT,
        )
        resolver = BlockTimeResolver(
            BlockTimesRepo(cache),
            client.get_block_time,
            max_workers=config.RESOLVER_MAX_WORKERS,
        )
        rate_resolver = RelayRateResolver(
            RelayRatesRepo(cache),
            client.get_pokt_per_relay,
            max_workers=config.RESOLVER_MAX_WORKERS,
        )
        return cls(
            client=client,
            resolver=resolver,
            classifier=TransactionClassifier(chain_table),
            cache=cache,
            max_exclusion_rate=config.MAX_EXCLUSION_RATE,
            pokt_per_relay=Decimal(config.POKT_PER_RELAY) if config.POKT_PER_RELAY else None,
            rate_resolver=rate_resolver,
            account_txs_per_page=config.ACCOUNT_TXS_PER_PAGE,
            max_per_page=config.MAX_PER_PAGE,
            sync_tolerance=config.SYNC_TOLERANCE_BLOCKS,
        )

    @property
    def chain_table(self) -> ChainTable:
        return self.classifier.chain_table

    # ==================== CHAIN ====================

    def height(self) -> int:
        return self.client.get_height()

    def params_at_height(self, height: int = 0) -> Dict[str, Any]:
        if height < 0:
            raise RequestValidationError(f"height must not be negative: {height}")
        return self.client.get_all_params(height)

    def pokt_per_relay(self, height: int) -> Decimal:
        """Servicer payout per relay at a height, configured or read from that height's params"""
        if self.configured_rate is not None:
            return self.configured_rate
        return self.rate_resolver.resolve(height)

    def block_times(self, heights: Iterable[int]) -> Dict[int, datetime]:
        """Resolve block times, failing on the first height that cannot be resolved"""
        heights = list(heights)
        for height in heights:
            if isinstance(height, bool) or not isinstance(height, int) or height < 0:
                raise RequestValidationError(f"invalid height: {height!r}")

        resolved = self.resolver.resolve_many(heights)
        for height in sorted(resolved):
            if isinstance(resolved[height], ResolutionError):
                raise resolved[height]
        return resolved

    # ==================== NODES ====================

    def node(self, address: str) -> NodeStatus:
        """Staked node status with balance and sync state"""
        data = self.client.get_node(address)
        if not isinstance(data, dict) or not data.get("address"):
            raise SourceError(f"MonitoringService.node: node {address} not found")

        latest_height = self.height()
        service_url = data.get("service_url", "")

        return NodeStatus(
            address=data["address"],
            pubkey=data.get("public_key", ""),
            service_url=service_url,
            balance=self.client.get_balance(address),
            staked_balance=int(data.get("tokens") or 0),
            is_jailed=bool(data.get("jailed", False)),
            chains=[self.chain_table.resolve(chain_id) for chain_id in data.get("chains") or []],
            is_synced=self._is_synced(service_url, latest_height),
            latest_block_height=latest_height,
            latest_block_time=self.resolver.resolve(latest_height),
        )

    def _is_synced(self, service_url: str, latest_height: int) -> bool:
        if not service_url:
            return False
        try:
            servicer_height = self.client.get_height(base_url=service_url)
        except SourceError as e:
            logger.warning(f"Servicer {service_url} height unavailable: {e}")
            return False
        return abs(latest_height - servicer_height) <= self.sync_tolerance

    # ==================== TRANSACTIONS ====================

    def transaction(self, tx_hash: str) -> Transaction:
        raw_tx = self.client.get_transaction(tx_hash)
        raws = self.client.decoder.decode_transactions(
            [raw_tx], self.configured_rate, keep_claim_relays=True
        )
        return self._classify_all(raws)[0]

    def account_transactions(
        self, address: str, page: int = 1, per_page: int = 30, sort: str = "desc"
    ) -> List[Transaction]:
        """One page of an account's classified transactions"""
        sort = (sort or "desc").lower()
        if sort not in SORT_ORDERS:
            raise RequestValidationError(f"sort must be one of {', '.join(SORT_ORDERS)}: {sort}")
        if page < 1 or per_page < 1:
            raise RequestValidationError("page and per_page must be positive")
        per_page = min(per_page, self.max_per_page)

        txs, _ = self.client.get_account_transactions_page(address, page=page, per_page=per_page, order=sort)
        raws = self.client.decoder.decode_transactions(
            txs, self.configured_rate, keep_claim_relays=True
        )
        return self._classify_all(raws)

    def _classify_all(self, raws: List[RawTransaction]) -> List[Transaction]:
        """Classify a batch where any failure fails the request"""
        heights = [parse_height(raw) for raw in raws]
        times = self.resolver.resolve_many(heights)
        rates = self.rate_resolver.resolve_many(
            {height for raw, height in zip(raws, heights) if raw.pokt_per_relay is None}
        )
        classified = []
        for raw, height in zip(raws, heights):
            resolved = times[height]
            if isinstance(resolved, ResolutionError):
                raise resolved
            if raw.pokt_per_relay is None:
                if isinstance(rates[height], ResolutionError):
                    raise rates[height]
                raw = replace(raw, pokt_per_relay=rates[height])
            classified.append(self.classifier.classify(raw, resolved))
        return classified

    # ==================== REWARDS ====================

    def rewards_by_month(
        self, address: str, cancel_event: Optional[threading.Event] = None
    ) -> List[MonthlyRewardSummary]:
        """
        Monthly reward summaries for an account, most recent month first

        Raises:
            SourceError: the account's transactions could not be fetched
            ResolutionError / ClassificationError: too many transactions excluded
        """
        if not address:
            raise RequestValidationError("address is required")

        raws = self.client.fetch_account_transactions(
            address,
            per_page=self.account_txs_per_page,
            pokt_per_relay=self.configured_rate,
        )
        result = self.aggregator.aggregate(raws, cancel_event=cancel_event)
        logger.info(
            f"Monthly rewards for {address}: {len(result.summaries)} month(s), "
            f"{result.total - result.excluded}/{result.total} transactions"
        )
        return result.summaries

    # ==================== RELAYS ====================

    def simulate_relay(self, servicer_url: str, chain_id: str, payload: Dict[str, Any]) -> Any:
        if not servicer_url:
            raise RequestValidationError("Missing required param 'servicer_url'")
        if not chain_id:
            raise RequestValidationError("Missing required param 'chain_id'")
        if payload is None:
            raise RequestValidationError("Missing required param 'payload'")
        return self.client.simulate_relay(servicer_url, chain_id, payload)
