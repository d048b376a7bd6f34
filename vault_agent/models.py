"""
Core records shared by the ledger, engine and event pipeline
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple

from vault_agent.amounts import format_amount, parse_amount


class EventKind(Enum):
    DEPOSIT = "Deposit"
    WITHDRAW = "Withdraw"


@dataclass
class Allocation:
    """Where a token's deployed capital sits and at what yield"""
    amount: int = 0
    at_apy: float = 0.0
    chain: str = "ARBITRUM"

    def __post_init__(self):
        self.amount = parse_amount(self.amount)
        self.at_apy = float(self.at_apy)

    @property
    def is_inert(self) -> bool:
        return self.amount == 0

    def to_dict(self) -> Dict:
        return {
            'amount': format_amount(self.amount),
            'atAPY': self.at_apy,
            'chain': self.chain
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Allocation':
        return cls(
            amount=parse_amount(data['amount']),
            at_apy=float(data['atAPY']),
            chain=str(data['chain'])
        )


@dataclass
class BotState:
    last_known_block: int
    allocations: Dict[str, Allocation] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'lastKnownBlock': self.last_known_block,
            'allocations': {token: alloc.to_dict() for token, alloc in self.allocations.items()}
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'BotState':
        block = data['lastKnownBlock']
        if not isinstance(block, int) or isinstance(block, bool) or block < 0:
            raise ValueError(f"Invalid lastKnownBlock: {block!r}")
        allocations = {
            token: Allocation.from_dict(alloc)
            for token, alloc in data.get('allocations', {}).items()
        }
        return cls(last_known_block=block, allocations=allocations)


@dataclass(frozen=True)
class VaultEvent:
    kind: EventKind
    token: str
    user: str
    amount: int
    block_number: int
    log_index: int = 0
    tx_hash: str = ""
    shares: int = 0

    @property
    def event_id(self) -> str:
        return f"{self.tx_hash}:{self.log_index}"

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass
class AllocationDecision:
    token: str
    from_chain: str
    to_chain: str
    amount: int
    from_apy: float
    target_apy: float


@dataclass
class ApyData:
    protocol: str
    chain: str
    token: str
    apy: float


@dataclass
class BlockBatch:
    """Events found in blocks from_block..to_block (inclusive), in chronological order"""
    from_block: int
    to_block: int
    events: List[VaultEvent] = field(default_factory=list)


@dataclass
class RangeResult:
    events: List[VaultEvent] = field(default_factory=list)
    failed_windows: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_windows

    @property
    def first_failed_block(self) -> int:
        return min(start for start, _ in self.failed_windows) if self.failed_windows else None
