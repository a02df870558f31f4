"""
Monthly reward aggregation
Folds an account's transactions into UTC calendar-month reward summaries
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from block_times import BlockTimeResolver, RelayRateResolver
from classifier import Transaction, TransactionClassifier, parse_height
from errors import (
    AggregationCancelled,
    ClassificationError,
    ClassificationThresholdExceeded,
    MonitoringError,
    ResolutionError,
    ResolutionThresholdExceeded,
)
from tx_decoder import RawTransaction

logger = logging.getLogger(__name__)

# Sunday first, matching weekday indexes 0-6
WEEKDAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


# ==================== DATA MODELS ====================


@dataclass(frozen=True)
class RelaysByChain:
    """Relays served for one chain within a month"""
    chain: str
    name: str
    num_relays: int


@dataclass(frozen=True)
class DayOfWeek:
    """Reward events on one weekday within a month"""
    name: str
    num_proofs: int


@dataclass(frozen=True)
class MonthlyRewardSummary:
    """Rewards earned by an account in one UTC calendar month"""
    year: int
    month: int
    num_relays: int
    pokt_amount: Decimal
    relays_by_chain: Tuple[RelaysByChain, ...]
    days_of_week: Dict[int, DayOfWeek]
    avg_sec_between_rewards: float
    total_sec_between_rewards: float
    transactions: Tuple[Transaction, ...]


@dataclass
class AggregationResult:
    """Ordered summaries plus the transactions left out of them"""
    summaries: List[MonthlyRewardSummary]
    total: int = 0
    excluded: int = 0
    errors: List[MonitoringError] = field(default_factory=list)


# ==================== HELPERS ====================


def weekday_index(moment: datetime) -> int:
    """Weekday of a UTC moment, Sunday = 0"""
    return (moment.astimezone(timezone.utc).weekday() + 1) % 7


def month_key(moment: datetime) -> Tuple[int, int]:
    utc = moment.astimezone(timezone.utc)
    return utc.year, utc.month


def reward_timing(transactions: Iterable[Transaction]) -> Tuple[float, float]:
    """
    Average and total seconds between consecutive reward events

    Returns:
        (avg, total); both 0 with fewer than two reward events
    """
    events = sorted(
        (tx for tx in transactions if tx.is_reward_event),
        key=lambda tx: (tx.time, tx.height, tx.hash),
    )
    if len(events) < 2:
        return 0.0, 0.0

    total = sum(
        (later.time - earlier.time).total_seconds()
        for earlier, later in zip(events, events[1:])
    )
    return total / (len(events) - 1), total


def build_summary(year: int, month: int, transactions: Sequence[Transaction]) -> MonthlyRewardSummary:
    """
    Assemble one month's summary from its transactions

    relays_by_chain only lists relay chains. Transactions without one (sends,
    stakes) still count toward the month totals but get no chain row.
    """
    ordered = tuple(sorted(transactions, key=lambda tx: (tx.height, tx.hash)))

    relays: Dict[str, int] = defaultdict(int)
    names: Dict[str, str] = {}
    proofs_by_day = [0] * 7
    for tx in ordered:
        if tx.chain_id:
            relays[tx.chain_id] += tx.num_relays
            names[tx.chain_id] = tx.chain.name
        if tx.is_reward_event:
            proofs_by_day[weekday_index(tx.time)] += 1

    avg_gap, total_gap = reward_timing(ordered)

    return MonthlyRewardSummary(
        year=year,
        month=month,
        num_relays=sum(tx.num_relays for tx in ordered),
        pokt_amount=sum((tx.pokt_amount for tx in ordered), Decimal(0)),
        relays_by_chain=tuple(
            RelaysByChain(chain=chain_id, name=names[chain_id], num_relays=relays[chain_id])
            for chain_id in sorted(relays)
        ),
        days_of_week={
            index: DayOfWeek(name=WEEKDAY_NAMES[index], num_proofs=proofs_by_day[index])
            for index in range(7)
        },
        avg_sec_between_rewards=avg_gap,
        total_sec_between_rewards=total_gap,
        transactions=ordered,
    )


def order_summaries(summaries: Iterable[MonthlyRewardSummary]) -> List[MonthlyRewardSummary]:
    """Most recent month first"""
    return sorted(summaries, key=lambda s: (s.year, s.month), reverse=True)


# ==================== AGGREGATOR ====================


class MonthlyAggregator:
    """
    Resolve, price, classify and bucket an account's transactions by month.

    Transactions decoded without a payout rate are priced at the rate in force
    at their own height when a rate resolver is given.

    Per-transaction failures are collected during the pass; the batch is only
    rejected once the exclusion rate is known.
    """

    def __init__(
        self,
        resolver: BlockTimeResolver,
        classifier: TransactionClassifier,
        max_exclusion_rate: float = 0.1,
        rate_resolver: Optional[RelayRateResolver] = None,
    ):
        self.resolver = resolver
        self.classifier = classifier
        self.max_exclusion_rate = max_exclusion_rate
        self.rate_resolver = rate_resolver

    def aggregate(
        self, raw_transactions: Sequence[RawTransaction], cancel_event: Optional[threading.Event] = None
    ) -> AggregationResult:
        """
        Build ordered monthly summaries

        Raises:
            ResolutionThresholdExceeded / ClassificationThresholdExceeded: too many exclusions
            AggregationCancelled: cancel_event was set before the summaries were assembled
        """
        total = len(raw_transactions)
        errors: List[MonitoringError] = []

        heights: Dict[int, int] = {}
        for index, raw in enumerate(raw_transactions):
            try:
                heights[index] = parse_height(raw)
            except ClassificationError as e:
                errors.append(e)

        times = self.resolver.resolve_many(set(heights.values()), cancel_event=cancel_event)
        rates = self._resolve_rates(raw_transactions, heights, cancel_event)

        classified: List[Transaction] = []
        for index, height in heights.items():
            _check_cancelled(cancel_event)
            resolved = times.get(height)
            if isinstance(resolved, ResolutionError):
                errors.append(resolved)
                continue
            if resolved is None:
                errors.append(ResolutionError(f"no block time for height {height}", height=height))
                continue

            raw = raw_transactions[index]
            if raw.pokt_per_relay is None and height in rates:
                if isinstance(rates[height], ResolutionError):
                    errors.append(rates[height])
                    continue
                raw = replace(raw, pokt_per_relay=rates[height])
            try:
                classified.append(self.classifier.classify(raw, resolved))
            except ClassificationError as e:
                errors.append(e)

        excluded = len(errors)
        if excluded:
            self._check_threshold(excluded, total, errors)
            logger.warning(f"Excluded {excluded} of {total} transactions from monthly rewards")

        buckets: Dict[Tuple[int, int], List[Transaction]] = defaultdict(list)
        for tx in classified:
            buckets[month_key(tx.time)].append(tx)

        summaries = []
        for (year, month), transactions in buckets.items():
            _check_cancelled(cancel_event)
            summaries.append(build_summary(year, month, transactions))

        return AggregationResult(
            summaries=order_summaries(summaries),
            total=total,
            excluded=excluded,
            errors=errors,
        )

    def _resolve_rates(
        self,
        raw_transactions: Sequence[RawTransaction],
        heights: Dict[int, int],
        cancel_event: Optional[threading.Event],
    ) -> Dict[int, object]:
        """Payout rates in force at the heights of transactions decoded without one"""
        unpriced = {
            height for index, height in heights.items() if raw_transactions[index].pokt_per_relay is None
        }
        if not unpriced or self.rate_resolver is None:
            return {}
        return self.rate_resolver.resolve_many(unpriced, cancel_event=cancel_event)

    def _check_threshold(self, excluded: int, total: int, errors: List[MonitoringError]) -> None:
        if total == 0 or excluded / total <= self.max_exclusion_rate:
            return

        resolution_failures = sum(1 for e in errors if isinstance(e, ResolutionError))
        logger.error(
            f"Exclusion threshold exceeded: {excluded}/{total} transactions "
            f"({resolution_failures} unresolved block times or rates)"
        )
        if resolution_failures * 2 >= excluded:
            raise ResolutionThresholdExceeded(excluded, total, self.max_exclusion_rate, errors)
        raise ClassificationThresholdExceeded(excluded, total, self.max_exclusion_rate, errors)


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AggregationCancelled("Monthly reward aggregation cancelled")
