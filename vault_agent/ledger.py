"""
Allocation Ledger
In-memory mirror of the state store. Every allocation change goes through here:
vault events via apply(), reallocations via record_reallocation().
"""

import asyncio
import logging
from typing import Dict, List, Optional

from vault_agent import amounts
from vault_agent.errors import (
    ChainError, InsufficientBalanceError, LedgerInvariantError, UnregisteredTokenError
)
from vault_agent.models import Allocation, EventKind, VaultEvent

logger = logging.getLogger(__name__)


class AllocationLedger:

    def __init__(self, store, executor, journal=None):
        self.store = store
        self.executor = executor
        self.journal = journal
        self.allocations: Dict[str, Allocation] = {}
        self.last_known_block: Optional[int] = None
        self.pinned_block: Optional[int] = None
        self.halted: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def load(self):
        """Populate allocations and watermark from the store"""
        state = self.store.get_state()
        self.allocations = state.allocations
        self.last_known_block = state.last_known_block
        for token, alloc in self.allocations.items():
            logger.info(f"📊 [{token}] {alloc.amount} on {alloc.chain} at {alloc.at_apy:.2f}%")

    def _require_loaded(self):
        if self.last_known_block is None:
            raise RuntimeError("Ledger used before load()")

    def locked(self, token: str) -> asyncio.Lock:
        """Per-token lock; hold it for any read-modify-write of that token's allocation"""
        if token not in self._locks:
            self._locks[token] = asyncio.Lock()
        return self._locks[token]

    @property
    def tokens(self) -> List[str]:
        return list(self.allocations)

    def get(self, token: str) -> Optional[Allocation]:
        alloc = self.allocations.get(token)
        if alloc is None:
            return None
        return Allocation(amount=alloc.amount, at_apy=alloc.at_apy, chain=alloc.chain)

    def is_halted(self, token: str) -> bool:
        return token in self.halted

    def halt(self, token: str, reason: str):
        if token not in self.halted:
            self.halted[token] = reason
            logger.critical(f"🚨 [{token}] Bookkeeping halted: {reason}. Manual reconciliation required.")

    # ---- event application ----

    async def apply(self, event: VaultEvent) -> bool:
        """Apply one vault event. Returns False when it was already applied."""
        self._require_loaded()
        async with self.locked(event.token):
            return await self._apply_locked(event)

    async def _apply_locked(self, event: VaultEvent) -> bool:
        token = event.token
        if token not in self.allocations:
            raise UnregisteredTokenError(token)
        if self.is_halted(token):
            raise LedgerInvariantError(token, f"token is halted ({self.halted[token]})")

        if self.journal and self.journal.is_applied(event.event_id):
            logger.info(f"⏭️ [{token}] {event.kind.value} {event.event_id} already applied, skipping")
            return False

        current = self.allocations[token]
        if event.kind == EventKind.DEPOSIT:
            updated = await self._apply_deposit(event, current)
        else:
            updated = await self._apply_withdraw(event, current)

        self.store.set_allocation(token, updated)
        self.allocations[token] = updated
        if self.journal:
            self.journal.mark_applied(event)

        logger.info(
            f"✅ [{token}] {event.kind.value} of {event.amount} by {event.user} applied "
            f"(block {event.block_number}), tracked amount now {updated.amount}"
        )
        return True

    async def _apply_deposit(self, event: VaultEvent, current: Allocation) -> Allocation:
        token = event.token
        balance = await self.executor.aggregated_balance(token)
        if balance < event.amount:
            logger.error(
                f"🚨 [{token}] Deposit of {event.amount} at block {event.block_number} "
                f"exceeds aggregated balance {balance}"
            )
            raise InsufficientBalanceError(token, balance, event.amount)

        await self.executor.supply(token, current.chain, event.amount)
        return Allocation(
            amount=amounts.add(current.amount, event.amount),
            at_apy=current.at_apy,
            chain=current.chain
        )

    async def _apply_withdraw(self, event: VaultEvent, current: Allocation) -> Allocation:
        token = event.token
        # Underflow is checked before any funds move
        remaining = amounts.sub(token, current.amount, event.amount)

        await self.executor.withdraw(token, current.chain, event.amount, recipient=event.user)
        return Allocation(amount=remaining, at_apy=current.at_apy, chain=current.chain)

    # ---- reallocation ----

    def record_reallocation(self, token: str, allocation: Allocation):
        """Persist a completed move. Caller holds locked(token)."""
        if token not in self.allocations:
            raise UnregisteredTokenError(token)
        self.store.set_allocation(token, allocation)
        self.allocations[token] = Allocation(
            amount=allocation.amount, at_apy=allocation.at_apy, chain=allocation.chain
        )

    # ---- watermark ----

    def advance_watermark(self, block: int) -> int:
        """Move the watermark forward, never backwards and never past a pinned block"""
        self._require_loaded()
        target = block if self.pinned_block is None else min(block, self.pinned_block)
        if target > self.last_known_block:
            self.store.set_last_known_block(target)
            self.last_known_block = target
        return self.last_known_block

    def pin_watermark(self, block: int):
        """Freeze the watermark at or below block for the rest of the run"""
        if self.pinned_block is None or block < self.pinned_block:
            self.pinned_block = block
            logger.warning(f"⚠️ Watermark pinned at block {block}; later blocks will be replayed on restart")

    # ---- startup reconciliation ----

    async def reconcile_from_chain(self, reader, vaults, account: str):
        """Overwrite amount/chain from non-zero on-chain positions"""
        self._require_loaded()
        for token in self.tokens:
            async with self.locked(token):
                try:
                    positions = await reader.positions(token, account)
                except ChainError as e:
                    logger.warning(f"⚠️ [{token}] Could not read on-chain positions, keeping ledger: {e}")
                    continue

                held = {chain: balance for chain, balance in positions.items() if balance > 0}
                if not held:
                    continue
                if len(held) > 1:
                    logger.warning(f"⚠️ [{token}] Positions on several chains: {held}")

                chain = max(held, key=held.get)
                recorded = self.allocations[token]
                apy = recorded.at_apy
                try:
                    if await vaults.current_allocation(token) == chain:
                        apy = await vaults.current_apy(token)
                except ChainError as e:
                    logger.warning(f"⚠️ [{token}] Vault metadata unavailable, keeping recorded APY: {e}")

                reconciled = Allocation(amount=held[chain], at_apy=apy, chain=chain)
                if reconciled != recorded:
                    logger.info(
                        f"🔄 [{token}] Reconciled from chain: {recorded.amount} on {recorded.chain} "
                        f"-> {reconciled.amount} on {reconciled.chain} at {reconciled.at_apy:.2f}%"
                    )
                    self.store.set_allocation(token, reconciled)
                    self.allocations[token] = reconciled
