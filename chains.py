"""
Relay chain reference table for Pocket Network
Maps relay chain IDs to display names
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional


@dataclass(frozen=True)
class Chain:
    """Relay chain served by Pocket nodes"""

    id: str
    name: str


# Pocket Network relay chain IDs
POCKET_CHAINS = {
    "0001": "Pocket Network",
    "0003": "Avalanche",
    "0004": "Binance Smart Chain",
    "0005": "FUSE",
    "0009": "Polygon",
    "0021": "Ethereum",
    "0022": "Ethereum Archival",
    "0023": "Ethereum Ropsten",
    "0024": "Ethereum Kovan",
    "0025": "Ethereum Rinkeby",
    "0026": "Ethereum Goerli",
    "0027": "Gnosis Chain (xDai)",
    "0028": "Ethereum Archival Trace",
    "0040": "Harmony Shard 0",
    "0049": "Fantom",
}


class ChainTable:
    """Read-only lookup table of relay chains"""

    def __init__(self, chains: Optional[Dict[str, str]] = None):
        source = POCKET_CHAINS if chains is None else chains
        self._chains: Dict[str, Chain] = {
            chain_id: Chain(id=chain_id, name=name) for chain_id, name in source.items()
        }

    @classmethod
    def from_chains(cls, chains: Iterable[Chain]) -> "ChainTable":
        return cls({chain.id: chain.name for chain in chains})

    def lookup(self, chain_id: str) -> Optional[Chain]:
        """Return the chain for an ID, or None when unknown"""
        return self._chains.get(chain_id)

    def resolve(self, chain_id: str) -> Chain:
        """Return the chain for an ID, using the raw ID as the name when unknown"""
        chain = self._chains.get(chain_id)
        if chain is None:
            return Chain(id=chain_id, name=chain_id)
        return chain

    def name_for(self, chain_id: str) -> str:
        return self.resolve(chain_id).name

    def all(self) -> List[Chain]:
        return sorted(self._chains.values(), key=lambda c: c.id)

    def __contains__(self, chain_id: str) -> bool:
        return chain_id in self._chains

    def __len__(self) -> int:
        return len(self._chains)


# Default table used when none is injected
DEFAULT_CHAIN_TABLE = ChainTable()
