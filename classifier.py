"""
Transaction classification
Turns decoded ledger records into immutable, validated transactions
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from chains import Chain, ChainTable, DEFAULT_CHAIN_TABLE
from errors import ClassificationError
from tx_decoder import RawTransaction

logger = logging.getLogger(__name__)


class TxKind(Enum):
    """Logical transaction kinds"""
    PROOF = "proof"
    CLAIM = "claim"
    SEND = "send"
    STAKE = "stake"
    UNSTAKE = "unstake"
    UNJAIL = "unjail"
    OTHER = "other"


TYPE_ALIASES = {
    "proof": TxKind.PROOF,
    "pocketcore/proof": TxKind.PROOF,
    "relay_proof": TxKind.PROOF,
    "claim": TxKind.CLAIM,
    "pocketcore/claim": TxKind.CLAIM,
    "send": TxKind.SEND,
    "pos/send": TxKind.SEND,
    "stake": TxKind.STAKE,
    "stake_validator": TxKind.STAKE,
    "unstake": TxKind.UNSTAKE,
    "begin_unstake_validator": TxKind.UNSTAKE,
    "unjail": TxKind.UNJAIL,
    "unjail_validator": TxKind.UNJAIL,
}


@dataclass(frozen=True)
class Transaction:
    """Classified ledger transaction"""

    hash: str
    height: int
    time: datetime
    type: str
    chain_id: str
    chain: Chain
    session_height: int
    expire_height: int
    app_pubkey: str
    num_relays: int
    pokt_per_relay: Decimal
    is_confirmed: bool
    kind: TxKind = TxKind.OTHER
    succeeded: bool = True

    @property
    def pokt_amount(self) -> Decimal:
        return self.num_relays * self.pokt_per_relay

    @property
    def is_reward_event(self) -> bool:
        return self.kind is TxKind.PROOF and self.succeeded


def normalize_type(tx_type: Any) -> TxKind:
    """Map a node message type to a logical kind"""
    return TYPE_ALIASES.get(str(tx_type or "").strip().lower(), TxKind.OTHER)


def parse_height(raw: RawTransaction) -> int:
    """Validated block height of a raw transaction"""
    return _as_uint(raw.height, "height", raw.hash)


class TransactionClassifier:
    """Classify raw transactions against a chain table"""

    def __init__(self, chain_table: Optional[ChainTable] = None):
        self.chain_table = chain_table or DEFAULT_CHAIN_TABLE

    def classify(self, raw: RawTransaction, time: datetime) -> Transaction:
        """
        Validate and classify one raw transaction

        Args:
            raw: Decoded ledger record
            time: Resolved UTC time of the record's block

        Raises:
            ClassificationError: when a required field is missing or malformed
        """
        tx_hash = raw.hash
        if not isinstance(tx_hash, str) or not tx_hash:
            raise ClassificationError(f"missing transaction hash: {tx_hash!r}", tx_hash=None)

        height = parse_height(raw)
        num_relays = _as_uint(raw.num_relays, "num_relays", tx_hash)
        pokt_per_relay = _as_rate(raw.pokt_per_relay, tx_hash)
        session_height = _as_uint(raw.session_height or 0, "session_height", tx_hash)
        expire_height = _as_uint(raw.expire_height or 0, "expire_height", tx_hash)
        if expire_height and expire_height < session_height:
            raise ClassificationError(
                f"{tx_hash}: expire_height {expire_height} before session_height {session_height}",
                tx_hash=tx_hash,
            )

        chain_id = str(raw.chain_id or "")
        kind = normalize_type(raw.type)

        return Transaction(
            hash=tx_hash,
            height=height,
            time=time,
            type=kind.value if kind is not TxKind.OTHER else str(raw.type or TxKind.OTHER.value),
            chain_id=chain_id,
            chain=self.chain_table.resolve(chain_id),
            session_height=session_height,
            expire_height=expire_height,
            app_pubkey=str(raw.app_pubkey or ""),
            num_relays=num_relays,
            pokt_per_relay=pokt_per_relay,
            is_confirmed=bool(raw.is_confirmed),
            kind=kind,
            succeeded=raw.succeeded,
        )


def _as_uint(value: Any, field_name: str, tx_hash: Any) -> int:
    if isinstance(value, bool) or value is None:
        raise ClassificationError(f"{tx_hash}: missing {field_name}", tx_hash=tx_hash)
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ClassificationError(f"{tx_hash}: invalid {field_name} {value!r}", tx_hash=tx_hash)
    if number < 0:
        raise ClassificationError(f"{tx_hash}: negative {field_name} {number}", tx_hash=tx_hash)
    return number


def _as_rate(value: Any, tx_hash: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ClassificationError(f"{tx_hash}: missing pokt_per_relay", tx_hash=tx_hash)
    try:
        # str() keeps floats from leaking binary rounding into the amount
        rate = Decimal(str(value))
    except InvalidOperation:
        raise ClassificationError(f"{tx_hash}: invalid pokt_per_relay {value!r}", tx_hash=tx_hash)
    if not rate.is_finite() or rate < 0:
        raise ClassificationError(f"{tx_hash}: invalid pokt_per_relay {value!r}", tx_hash=tx_hash)
    return rate
