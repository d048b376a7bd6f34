import asyncio

import pytest

from conftest import FakeVaults, FakeYieldSource, apy
from vault_agent.engine import ReallocationEngine
from vault_agent.errors import ChainError
from vault_agent.models import Allocation
from vault_agent.yields import best_apy_per_token


def make_engine(ledger, executor, feed, vaults=None, journal=None, **kwargs):
    return ReallocationEngine(
        ledger, executor, FakeYieldSource(feed),
        vaults=vaults, journal=journal, enabled_tokens=["USDC", "USDT"],
        interval=0, failure_backoff=0, **kwargs
    )


def seed(ledger, token, amount, at_apy, chain):
    ledger.store.set_allocation(token, Allocation(amount=amount, at_apy=at_apy, chain=chain))
    ledger.load()


class TestDecisions:

    @pytest.mark.asyncio
    async def test_no_reallocation_when_optimal(self, ledger, executor):
        seed(ledger, "USDC", 1_000_000, 5.0, "ARBITRUM")
        engine = make_engine(ledger, executor, [apy("ARBITRUM", 5.0), apy("POLYGON", 4.0)])

        assert await engine.run_cycle() == []
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_reallocation_trigger(self, ledger, executor):
        seed(ledger, "USDC", 1_000_000, 3.0, "ARBITRUM")
        engine = make_engine(ledger, executor, [apy("POLYGON", 6.0)])

        moves = await engine.run_cycle()

        assert len(moves) == 1
        assert executor.calls == [
            ('withdraw', 'USDC', 'ARBITRUM', 1_000_000, None),
            ('supply', 'USDC', 'POLYGON', 1_000_000),
        ]
        assert ledger.get("USDC") == Allocation(amount=1_000_000, at_apy=6.0, chain="POLYGON")
        assert ledger.store.get_allocation("USDC").to_dict() == {
            'amount': "1000000", 'atAPY': 6.0, 'chain': "POLYGON"
        }

    @pytest.mark.asyncio
    async def test_zero_amount_never_withdrawn(self, ledger, executor):
        seed(ledger, "USDC", 0, 1.0, "ARBITRUM")
        engine = make_engine(ledger, executor, [apy("POLYGON", 50.0)])

        await engine.run_cycle()
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_stays_when_best_is_current_chain(self, ledger, executor):
        seed(ledger, "USDC", 100, 2.0, "OPTIMISM")
        engine = make_engine(ledger, executor, [apy("OPTIMISM", 7.0), apy("POLYGON", 7.0)])

        await engine.run_cycle()
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_degraded_current_chain_triggers_move(self, ledger, executor):
        seed(ledger, "USDC", 100, 6.0, "ARBITRUM")
        engine = make_engine(ledger, executor, [apy("ARBITRUM", 2.0), apy("POLYGON", 4.0)])

        await engine.run_cycle()
        assert ledger.get("USDC") == Allocation(amount=100, at_apy=4.0, chain="POLYGON")

    @pytest.mark.asyncio
    async def test_min_improvement_threshold(self, ledger, executor):
        seed(ledger, "USDC", 100, 5.0, "ARBITRUM")
        engine = make_engine(
            ledger, executor, [apy("ARBITRUM", 5.0), apy("POLYGON", 5.2)], min_improvement=0.5
        )

        await engine.run_cycle()
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_disabled_and_halted_tokens_skipped(self, ledger, executor):
        seed(ledger, "USDC", 100, 1.0, "ARBITRUM")
        seed(ledger, "USDT", 100, 1.0, "ARBITRUM")
        ledger.halt("USDT", "underflow")
        engine = ReallocationEngine(
            ledger, executor, FakeYieldSource([apy("POLYGON", 9.0), apy("POLYGON", 9.0, token="USDT")]),
            enabled_tokens=["USDT"], interval=0, failure_backoff=0
        )

        await engine.run_cycle()
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_token_halted_while_waiting_for_lock(self, ledger, executor):
        seed(ledger, "USDC", 100, 1.0, "ARBITRUM")
        engine = make_engine(ledger, executor, [apy("POLYGON", 9.0)])

        lock = ledger.locked("USDC")
        await lock.acquire()
        cycle = asyncio.create_task(engine.run_cycle())
        for _ in range(10):
            await asyncio.sleep(0)
        ledger.halt("USDC", "underflow")
        lock.release()

        assert await cycle == []
        assert executor.calls == []
        assert ledger.get("USDC").chain == "ARBITRUM"


class TestFailures:

    @pytest.mark.asyncio
    async def test_supply_failure_leaves_ledger(self, ledger, executor, journal):
        seed(ledger, "USDC", 500, 3.0, "ARBITRUM")
        executor.fail_supply = 1
        engine = make_engine(ledger, executor, [apy("POLYGON", 6.0)], journal=journal)

        assert await engine.run_cycle() == []
        assert ledger.get("USDC") == Allocation(amount=500, at_apy=3.0, chain="ARBITRUM")
        assert journal.recent_reallocations()[0]['status'] == 'supply_failed'

    @pytest.mark.asyncio
    async def test_withdraw_failure_skips_supply(self, ledger, executor):
        seed(ledger, "USDC", 500, 3.0, "ARBITRUM")
        executor.fail_withdraw = 1
        engine = make_engine(ledger, executor, [apy("POLYGON", 6.0)])

        await engine.run_cycle()
        assert executor.calls == []
        assert ledger.get("USDC").chain == "ARBITRUM"

    @pytest.mark.asyncio
    async def test_yield_fetch_failure_skips_cycle(self, ledger, executor):
        seed(ledger, "USDC", 500, 3.0, "ARBITRUM")
        engine = ReallocationEngine(
            ledger, executor, FakeYieldSource(error=ChainError("rpc down")), interval=0
        )

        assert await engine.run_cycle() == []
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_vault_metadata_written_best_effort(self, ledger, executor):
        seed(ledger, "USDC", 500, 3.0, "ARBITRUM")
        vaults = FakeVaults()
        engine = make_engine(ledger, executor, [apy("POLYGON", 6.25)], vaults=vaults)

        await engine.run_cycle()
        assert vaults.set_calls == [("USDC", "POLYGON", 6.25)]

        seed(ledger, "USDC", 500, 3.0, "ARBITRUM")
        vaults.fail_set = True
        moves = await engine.run_cycle()
        assert len(moves) == 1
        assert ledger.get("USDC").chain == "POLYGON"


class TestBestApy:

    def test_first_seen_wins_ties(self):
        first = apy("POLYGON", 5.0)
        second = apy("OPTIMISM", 5.0)
        assert best_apy_per_token([first, second])["USDC"] is first

    def test_strictly_greater_replaces(self):
        best = best_apy_per_token([apy("POLYGON", 5.0), apy("OPTIMISM", 5.01), apy("ARBITRUM", 1.0)])
        assert best["USDC"].chain == "OPTIMISM"

    def test_per_token(self):
        best = best_apy_per_token([apy("POLYGON", 5.0), apy("ARBITRUM", 3.0, token="USDT")])
        assert set(best) == {"USDC", "USDT"}
