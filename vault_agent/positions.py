"""
On-chain lending positions: aToken balances of the aggregated account
"""

import logging
from typing import Dict

from web3 import AsyncWeb3

from vault_agent.aave import ERC20_BALANCE_ABI, to_a_token
from vault_agent.config import BotConfig
from vault_agent.errors import ChainError

logger = logging.getLogger(__name__)


class LendingPositionReader:

    def __init__(self, config: BotConfig, providers: Dict[str, AsyncWeb3] = None):
        self.config = config
        self.providers = providers or {
            chain.name: AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(chain.rpc_url, request_kwargs={'timeout': 30}))
            for chain in config.chains.values() if chain.yield_enabled
        }

    async def balance(self, chain_name: str, token: str, account: str) -> int:
        chain = self.config.chain(chain_name)
        a_token = chain.tokens.get(to_a_token(token))
        if not a_token:
            return 0

        contract = self.providers[chain_name].eth.contract(
            address=AsyncWeb3.to_checksum_address(a_token), abi=ERC20_BALANCE_ABI
        )
        try:
            return int(await contract.functions.balanceOf(AsyncWeb3.to_checksum_address(account)).call())
        except Exception as e:
            raise ChainError(f"[{token}] aToken balance on {chain_name} failed: {e}") from e

    async def positions(self, token: str, account: str) -> Dict[str, int]:
        """chain -> aToken balance for every chain the account could hold the token on"""
        balances = {}
        for chain_name in self.providers:
            balances[chain_name] = await self.balance(chain_name, token, account)
        return balances
