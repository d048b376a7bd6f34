"""
Yield data: Aave v3 supply APY per chain/token, reduced to the best market per token
"""

import logging
from typing import Dict, Iterable, List

from web3 import AsyncWeb3

from vault_agent.aave import AAVE_POOL_ABI
from vault_agent.config import BotConfig
from vault_agent.errors import ChainError
from vault_agent.models import ApyData

logger = logging.getLogger(__name__)

RAY = 10 ** 27
SECONDS_PER_YEAR = 31_536_000


def liquidity_rate_to_apy(liquidity_rate: int) -> float:
    """Aave currentLiquidityRate (ray, per-year APR) -> compounded APY percentage"""
    apr = liquidity_rate / RAY
    return ((1 + apr / SECONDS_PER_YEAR) ** SECONDS_PER_YEAR - 1) * 100


def best_apy_per_token(apy_data: Iterable[ApyData]) -> Dict[str, ApyData]:
    """Highest APY per token symbol; on an exact tie the first entry seen wins"""
    best: Dict[str, ApyData] = {}
    for entry in apy_data:
        current = best.get(entry.token)
        if current is None or current.apy < entry.apy:
            best[entry.token] = entry
    return best


class AaveYieldSource:
    """Reads getReserveData from the Aave pool on every yield-enabled chain"""

    protocol = "aave-v3"

    def __init__(self, config: BotConfig, providers: Dict[str, AsyncWeb3] = None):
        self.config = config
        self.chains = [chain for chain in config.chains.values() if chain.yield_enabled]
        self.providers = providers or {
            chain.name: AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(chain.rpc_url, request_kwargs={'timeout': 30}))
            for chain in self.chains
        }

    async def reserve_apy(self, chain_name: str, token: str) -> float:
        chain = self.config.chain(chain_name)
        w3 = self.providers[chain_name]
        pool = w3.eth.contract(address=AsyncWeb3.to_checksum_address(chain.aave_pool), abi=AAVE_POOL_ABI)
        asset = AsyncWeb3.to_checksum_address(chain.tokens[token])
        try:
            reserve_data = await pool.functions.getReserveData(asset).call()
        except Exception as e:
            raise ChainError(f"[{token}] getReserveData on {chain_name} failed: {e}") from e
        # currentLiquidityRate is the third field of the reserve tuple
        return liquidity_rate_to_apy(reserve_data[2])

    async def fetch_apys(self, tokens: Iterable[str]) -> List[ApyData]:
        """One entry per reachable chain/token market, in configured chain order"""
        tokens = list(tokens)
        results = []
        for chain in self.chains:
            for token in tokens:
                if token not in chain.tokens:
                    continue
                try:
                    apy = await self.reserve_apy(chain.name, token)
                except ChainError as e:
                    logger.warning(f"⚠️ Skipping {token} on {chain.name}: {e}")
                    continue
                results.append(ApyData(protocol=self.protocol, chain=chain.name, token=token, apy=apy))

        if tokens and not results:
            raise ChainError("No yield data could be fetched from any market")
        return results
