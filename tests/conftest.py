"""
Shared fakes for ledger / engine / pipeline tests
"""

import pytest

from vault_agent.errors import ChainError, ExecutionFailedError
from vault_agent.journal import EventJournal
from vault_agent.ledger import AllocationLedger
from vault_agent.models import ApyData, EventKind, VaultEvent
from vault_agent.store import JsonStateStore

BOT_ACCOUNT = "0x000000000000000000000000000000000000b07a"
ALICE = "0x00000000000000000000000000000000000a11ce"


class FakeExecutor:
    """Records supply/withdraw calls; failures are scripted per operation"""

    def __init__(self, balance: int = 10 ** 18):
        self.calls = []
        self.balance = balance
        self.fail_supply = 0
        self.fail_withdraw = 0
        self.account_address = BOT_ACCOUNT

    async def aggregated_balance(self, token):
        return self.balance

    async def supply(self, token, chain, amount):
        if self.fail_supply:
            self.fail_supply -= 1
            raise ExecutionFailedError(f"supply {token} failed")
        self.calls.append(('supply', token, chain, amount))

    async def withdraw(self, token, chain, amount, recipient=None):
        if self.fail_withdraw:
            self.fail_withdraw -= 1
            raise ExecutionFailedError(f"withdraw {token} failed")
        self.calls.append(('withdraw', token, chain, amount, recipient))


class FakeYieldSource:

    def __init__(self, entries=None, error=None):
        self.entries = entries or []
        self.error = error

    async def fetch_apys(self, tokens):
        if self.error:
            raise self.error
        return [e for e in self.entries if e.token in tokens]


class FakeVaults:
    """Vault registry stand-in: in-memory logs plus allocation metadata"""

    def __init__(self, head=0):
        self.events = {}
        self.current_head = head
        self.failing_windows = set()
        self.metadata = {}
        self.set_calls = []
        self.fail_set = False
        self.tokens = []

    def add(self, event):
        self.events.setdefault(event.token, []).append(event)
        if event.token not in self.tokens:
            self.tokens.append(event.token)

    async def head(self):
        return self.current_head

    async def get_events(self, token, from_block, to_block):
        if (token, from_block, to_block) in self.failing_windows:
            raise ChainError(f"window {from_block}-{to_block} unavailable")
        return sorted(
            [e for e in self.events.get(token, []) if from_block <= e.block_number <= to_block],
            key=lambda e: e.sort_key
        )

    async def current_allocation(self, token):
        return self.metadata.get(token, ("", 0.0))[0]

    async def current_apy(self, token):
        return self.metadata.get(token, ("", 0.0))[1]

    async def set_current_allocation(self, token, chain, apy):
        if self.fail_set:
            raise ChainError("vault write reverted")
        self.set_calls.append((token, chain, apy))
        self.metadata[token] = (chain, apy)


def make_event(kind, amount, block, token="USDC", log_index=0, user=ALICE, tx=None):
    return VaultEvent(
        kind=kind,
        token=token,
        user=user,
        amount=amount,
        block_number=block,
        log_index=log_index,
        tx_hash=tx or f"0x{block:08x}{log_index:04x}"
    )


def deposit(amount, block, **kwargs):
    return make_event(EventKind.DEPOSIT, amount, block, **kwargs)


def withdraw(amount, block, **kwargs):
    return make_event(EventKind.WITHDRAW, amount, block, **kwargs)


def apy(chain, value, token="USDC"):
    return ApyData(protocol="aave-v3", chain=chain, token=token, apy=value)


@pytest.fixture
def store(tmp_path):
    store = JsonStateStore(str(tmp_path / "bot-state.json"), start_block=100)
    store.initialize(["USDC", "USDT"], "ARBITRUM")
    return store


@pytest.fixture
def journal(tmp_path):
    return EventJournal(str(tmp_path / "bot-journal.db"))


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def ledger(store, executor, journal):
    ledger = AllocationLedger(store, executor, journal)
    ledger.load()
    return ledger
