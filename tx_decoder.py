"""
Transaction Decoder for Pocket Network
Decodes node transaction JSON into flat raw transaction records and pairs claims with proofs
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


# ==================== DATA MODELS ====================


@dataclass(frozen=True)
class RawTransaction:
    """Ledger record as decoded from the node, not yet validated"""

    hash: Any
    height: Any
    type: str
    message_type: str = ""
    chain_id: str = ""
    session_height: Any = 0
    expire_height: Any = 0
    app_pubkey: str = ""
    num_relays: Any = 0
    pokt_per_relay: Any = None
    is_confirmed: bool = False
    code: int = 0

    @property
    def succeeded(self) -> bool:
        return self.code == 0


# ==================== MESSAGE TYPE REGISTRY ====================


class MessageTypeRegistry:
    """Registry of known Pocket message types: type -> (short type, display name)"""

    POCKETCORE_MESSAGES = {
        "pocketcore/claim": ("claim", "Claim"),
        "pocketcore/proof": ("proof", "Proof"),
    }

    POS_MESSAGES = {
        "pos/Send": ("send", "Send"),
        "pos/MsgStake": ("stake", "Stake Node"),
        "pos/8.0MsgStake": ("stake", "Stake Node"),
        "pos/MsgBeginUnstake": ("unstake", "Begin Unstake Node"),
        "pos/8.0MsgBeginUnstake": ("unstake", "Begin Unstake Node"),
        "pos/MsgUnjail": ("unjail", "Unjail Node"),
        "pos/8.0MsgUnjail": ("unjail", "Unjail Node"),
    }

    APPS_MESSAGES = {
        "apps/MsgAppStake": ("app_stake", "Stake Application"),
        "apps/MsgAppBeginUnstake": ("app_unstake", "Begin Unstake Application"),
        "apps/MsgAppUnjail": ("app_unjail", "Unjail Application"),
    }

    GOV_MESSAGES = {
        "gov/msg_change_param": ("change_param", "Change Parameter"),
        "gov/msg_dao_transfer": ("dao_transfer", "DAO Transfer"),
        "gov/msg_upgrade": ("upgrade", "Upgrade"),
    }

    @classmethod
    def get_all_messages(cls) -> Dict[str, Tuple[str, str]]:
        """Get combined registry of all message types"""
        all_messages = {}
        all_messages.update(cls.POCKETCORE_MESSAGES)
        all_messages.update(cls.POS_MESSAGES)
        all_messages.update(cls.APPS_MESSAGES)
        all_messages.update(cls.GOV_MESSAGES)
        return all_messages

    @classmethod
    def get_short_type(cls, msg_type: str) -> str:
        entry = cls.get_all_messages().get(msg_type)
        if entry:
            return entry[0]
        # "module/MsgSomething" -> "something"
        return msg_type.rsplit("/", 1)[-1].replace("Msg", "").lower() if msg_type else ""

    @classmethod
    def get_type_name(cls, msg_type: str) -> str:
        """Get human-readable name for message type"""
        entry = cls.get_all_messages().get(msg_type)
        return entry[1] if entry else "Unknown Message"


# ==================== TRANSACTION DECODER ====================


class TransactionDecoder:
    """Decode Pocket node transactions into RawTransaction records"""

    def decode_transaction(
        self, tx: Dict[str, Any], pokt_per_relay: Any = None
    ) -> RawTransaction:
        """
        Decode a transaction as returned by /v1/query/tx or /v1/query/accounttxs

        Relay counts of proofs are filled in later by pair_claims_and_proofs.
        """
        tx_result = tx.get("tx_result") or {}
        std_tx = tx.get("stdTx") or tx.get("std_tx") or {}
        msg = std_tx.get("msg") or {}
        msg_type = msg.get("type", "")
        value = msg.get("value") or {}

        tx_type = tx_result.get("message_type") or MessageTypeRegistry.get_short_type(msg_type)
        code = _as_int(tx_result.get("code"), default=0)

        fields: Dict[str, Any] = {}
        if tx_type == "claim":
            fields = self._decode_claim(value)
        elif tx_type == "proof":
            fields = self._decode_proof(value)

        if code != 0:
            fields["num_relays"] = 0

        return RawTransaction(
            hash=tx.get("hash"),
            height=tx.get("height"),
            type=tx_type,
            message_type=msg_type,
            pokt_per_relay=pokt_per_relay,
            is_confirmed=code == 0 and tx_type != "claim",
            code=code,
            **fields,
        )

    def decode_transactions(
        self, txs: List[Dict[str, Any]], pokt_per_relay: Any = None, keep_claim_relays: bool = False
    ) -> List[RawTransaction]:
        """
        Decode a batch and pair its claims with their proofs

        keep_claim_relays leaves claimed relays on the claims as well, for
        listings that show transactions one by one rather than totalling them.
        """
        decoded = [self.decode_transaction(tx, pokt_per_relay) for tx in txs]
        return pair_claims_and_proofs(decoded, keep_claim_relays=keep_claim_relays)

    def _decode_claim(self, value: Dict[str, Any]) -> Dict[str, Any]:
        header = value.get("header") or {}
        return {
            "chain_id": header.get("chain", ""),
            "session_height": header.get("session_height", 0),
            "app_pubkey": header.get("app_public_key", ""),
            "expire_height": value.get("expiration_height", 0),
            # Totals count these on the matching proof
            "num_relays": value.get("total_proofs", 0),
        }

    def _decode_proof(self, value: Dict[str, Any]) -> Dict[str, Any]:
        leaf = value.get("leaf") or value.get("proof") or {}
        aat = leaf.get("aat") or {}
        return {
            "chain_id": leaf.get("blockchain", ""),
            "session_height": leaf.get("session_block_height", 0),
            "app_pubkey": aat.get("app_pub_key", ""),
            "expire_height": 0,
            "num_relays": None,
        }


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _session_key(tx: RawTransaction) -> Tuple[str, str, str]:
    return (tx.app_pubkey, tx.chain_id, str(tx.session_height))


def pair_claims_and_proofs(
    txs: List[RawTransaction], keep_claim_relays: bool = False
) -> List[RawTransaction]:
    """
    Attribute each claim's relay count to the proof that realizes it.

    A proof takes num_relays and expire_height from the claim of the same
    (app, chain, session); a proof whose claim is not in the batch reports zero.
    Claims are confirmed when a successful proof exists and report zero relays
    unless keep_claim_relays is set. Order of the input is preserved.
    """
    claims: Dict[Tuple[str, str, str], RawTransaction] = {}
    for tx in txs:
        if tx.type == "claim" and tx.succeeded:
            key = _session_key(tx)
            current = claims.get(key)
            if current is None or _as_int(tx.height) >= _as_int(current.height):
                claims[key] = tx

    proven = set()
    paired: List[RawTransaction] = []
    for tx in txs:
        if tx.type != "proof":
            paired.append(tx)
            continue

        claim: Optional[RawTransaction] = claims.get(_session_key(tx))
        if not tx.succeeded:
            paired.append(replace(tx, num_relays=0))
        elif claim is None:
            logger.debug(f"No claim found for proof {tx.hash}, counting zero relays")
            paired.append(replace(tx, num_relays=0))
        else:
            proven.add(_session_key(tx))
            paired.append(
                replace(tx, num_relays=claim.num_relays, expire_height=claim.expire_height)
            )

    return [
        replace(
            tx,
            num_relays=tx.num_relays if keep_claim_relays else 0,
            is_confirmed=_session_key(tx) in proven and tx.succeeded,
        )
        if tx.type == "claim"
        else tx
        for tx in paired
    ]
