import pytest

from vault_agent.config import BotConfig
from vault_agent.errors import ChainError
from vault_agent.yields import RAY, AaveYieldSource, liquidity_rate_to_apy


def test_zero_rate():
    assert liquidity_rate_to_apy(0) == 0.0


def test_rate_compounds_above_apr():
    # 5% APR in ray
    apy = liquidity_rate_to_apy(RAY * 5 // 100)
    assert 5.12 < apy < 5.13


class ScriptedYieldSource(AaveYieldSource):
    """Serves reserve APYs from a table instead of the pools"""

    def __init__(self, rates):
        super().__init__(BotConfig(), providers={'unused': None})
        self.rates = rates
        self.queried = []

    async def reserve_apy(self, chain_name, token):
        self.queried.append((chain_name, token))
        rate = self.rates.get((chain_name, token))
        if rate is None:
            raise ChainError(f"{chain_name} unreachable")
        return rate


class TestFetchApys:

    @pytest.mark.asyncio
    async def test_only_yield_enabled_chains(self):
        source = ScriptedYieldSource({
            ("ARBITRUM", "USDC"): 3.0, ("POLYGON", "USDC"): 4.5, ("OPTIMISM", "USDC"): 4.0,
        })

        result = await source.fetch_apys(["USDC"])

        assert [(e.chain, e.apy) for e in result] == [("ARBITRUM", 3.0), ("POLYGON", 4.5), ("OPTIMISM", 4.0)]
        assert all(chain != "ETHEREUM" for chain, _ in source.queried)
        assert result[0].protocol == "aave-v3"

    @pytest.mark.asyncio
    async def test_unreachable_market_skipped(self):
        source = ScriptedYieldSource({("ARBITRUM", "USDC"): 3.0})
        result = await source.fetch_apys(["USDC"])
        assert [e.chain for e in result] == ["ARBITRUM"]

    @pytest.mark.asyncio
    async def test_all_markets_down(self):
        with pytest.raises(ChainError):
            await ScriptedYieldSource({}).fetch_apys(["USDC", "USDT"])

    @pytest.mark.asyncio
    async def test_no_tokens(self):
        assert await ScriptedYieldSource({}).fetch_apys([]) == []
