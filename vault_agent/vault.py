"""
Vault contracts on the vault chain: event logs, allocation metadata reads and writes
"""

import asyncio
import logging
from typing import Dict, List, Optional

from web3 import AsyncWeb3

from vault_agent.config import BotConfig, VaultConfig
from vault_agent.errors import ChainError
from vault_agent.models import EventKind, VaultEvent

logger = logging.getLogger(__name__)

VAULT_ABI = [
    {"anonymous": False, "inputs": [
        {"indexed": True, "name": "user", "type": "address"},
        {"indexed": False, "name": "amount", "type": "uint256"},
        {"indexed": False, "name": "shares", "type": "uint256"}
    ], "name": "Deposit", "type": "event"},

    {"anonymous": False, "inputs": [
        {"indexed": True, "name": "user", "type": "address"},
        {"indexed": False, "name": "amount", "type": "uint256"},
        {"indexed": False, "name": "shares", "type": "uint256"}
    ], "name": "Withdraw", "type": "event"},

    {"inputs": [
        {"name": "allocation", "type": "string"},
        {"name": "apyBasisPoints", "type": "uint256"}
    ], "name": "setCurrentAllocation", "outputs": [], "stateMutability": "nonpayable", "type": "function"},

    {"inputs": [], "name": "currentAllocation", "outputs": [{"name": "", "type": "string"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "currentAPY", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
]


def apy_to_basis_points(apy: float) -> int:
    """5.25 (%) -> 525"""
    return int(round(apy * 100))


def basis_points_to_apy(basis_points: int) -> float:
    return basis_points / 100


def _to_event(kind: EventKind, token: str, log) -> VaultEvent:
    args = log['args']
    tx_hash = log['transactionHash']
    return VaultEvent(
        kind=kind,
        token=token,
        user=args['user'],
        amount=int(args['amount']),
        shares=int(args.get('shares', 0)),
        block_number=log['blockNumber'],
        log_index=log['logIndex'],
        tx_hash=tx_hash.to_0x_hex() if hasattr(tx_hash, 'to_0x_hex') else str(tx_hash)
    )


class VaultRegistry:
    """Registered token -> vault contract mapping on one chain"""

    def __init__(self, config: BotConfig, w3: AsyncWeb3 = None, account=None):
        self.config = config
        chain = config.vault_chain
        self.chain_id = chain.chain_id
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(chain.rpc_url, request_kwargs={'timeout': 30}))
        self.account = account
        self.vaults: Dict[str, VaultConfig] = {}
        self.contracts = {}
        self._nonce_lock = asyncio.Lock()

        for vault in config.enabled_vaults:
            self.add_vault(vault)

    def add_vault(self, vault: VaultConfig):
        self.vaults[vault.token] = vault
        self.contracts[vault.token] = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(vault.address),
            abi=VAULT_ABI
        )
        logger.info(f"📝 Added {vault.token} vault contract on {vault.chain}: {vault.address}")

    @property
    def tokens(self) -> List[str]:
        return list(self.vaults)

    def _contract(self, token: str):
        if token not in self.contracts:
            raise KeyError(f"No vault contract registered for token: {token}")
        return self.contracts[token]

    async def head(self) -> int:
        try:
            return await self.w3.eth.block_number
        except Exception as e:
            raise ChainError(f"Failed to read chain head: {e}") from e

    async def get_events(self, token: str, from_block: int, to_block: int) -> List[VaultEvent]:
        """Deposit and Withdraw logs in [from_block, to_block], chronological"""
        contract = self._contract(token)
        try:
            deposits = await contract.events.Deposit.get_logs(from_block=from_block, to_block=to_block)
            withdrawals = await contract.events.Withdraw.get_logs(from_block=from_block, to_block=to_block)
        except Exception as e:
            raise ChainError(f"[{token}] log query {from_block}-{to_block} failed: {e}") from e

        events = [_to_event(EventKind.DEPOSIT, token, log) for log in deposits]
        events += [_to_event(EventKind.WITHDRAW, token, log) for log in withdrawals]
        events.sort(key=lambda event: event.sort_key)
        return events

    async def current_allocation(self, token: str) -> str:
        try:
            return await self._contract(token).functions.currentAllocation().call()
        except Exception as e:
            raise ChainError(f"[{token}] currentAllocation() failed: {e}") from e

    async def current_apy(self, token: str) -> float:
        try:
            basis_points = await self._contract(token).functions.currentAPY().call()
        except Exception as e:
            raise ChainError(f"[{token}] currentAPY() failed: {e}") from e
        return basis_points_to_apy(basis_points)

    async def set_current_allocation(self, token: str, chain: str, apy: float) -> Optional[str]:
        """Record the active chain and APY on the vault. Returns the tx hash."""
        if self.account is None:
            logger.warning(f"⚠️ [{token}] No signing account, skipping setCurrentAllocation")
            return None

        basis_points = apy_to_basis_points(apy)
        tx_func = self._contract(token).functions.setCurrentAllocation(chain, basis_points)

        async with self._nonce_lock:
            nonce = await self.w3.eth.get_transaction_count(self.account.address, 'pending')
            tx = await tx_func.build_transaction({
                'from': self.account.address,
                'nonce': nonce,
                'chainId': self.chain_id
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)

        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=60)
        tx_hex = tx_hash.to_0x_hex() if hasattr(tx_hash, 'to_0x_hex') else str(tx_hash)
        if receipt['status'] != 1:
            raise ChainError(f"[{token}] setCurrentAllocation reverted: {tx_hex}")

        logger.info(f"📝 [{token}] Vault allocation set to {chain} at {basis_points} bps ({tx_hex})")
        return tx_hex
