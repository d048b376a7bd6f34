"""
Reallocation Engine
Periodically compares each tracked allocation against fresh market yields
and moves capital (withdraw, then supply) when another chain pays more.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from vault_agent.errors import ChainError, ExecutionError
from vault_agent.models import Allocation, AllocationDecision, ApyData
from vault_agent.yields import best_apy_per_token

logger = logging.getLogger(__name__)


class ReallocationEngine:

    def __init__(self, ledger, executor, yield_source, vaults=None, journal=None,
                 enabled_tokens=None, interval: float = 60.0, min_improvement: float = 0.0,
                 failure_backoff: float = 1.0):
        self.ledger = ledger
        self.executor = executor
        self.yield_source = yield_source
        self.vaults = vaults
        self.journal = journal
        self.enabled_tokens = set(enabled_tokens) if enabled_tokens is not None else None
        self.interval = interval
        self.min_improvement = min_improvement
        self.failure_backoff = failure_backoff
        self.cycles = 0

    def _enabled(self, token: str) -> bool:
        return self.enabled_tokens is None or token in self.enabled_tokens

    def decide(self, token: str, allocation: Allocation, feed: List[ApyData],
               best: Dict[str, ApyData]) -> Optional[AllocationDecision]:
        """Return a move for token, or None to stay put"""
        if allocation.is_inert:
            return None

        candidate = best.get(token)
        if candidate is None or candidate.chain == allocation.chain:
            return None

        # Current yield: the feed's figure for the current chain, else the recorded one
        observed = [
            entry.apy for entry in feed
            if entry.token == token and entry.chain == allocation.chain
        ]
        current_apy = observed[0] if observed else allocation.at_apy

        if candidate.apy <= current_apy + self.min_improvement:
            return None

        return AllocationDecision(
            token=token,
            from_chain=allocation.chain,
            to_chain=candidate.chain,
            amount=allocation.amount,
            from_apy=current_apy,
            target_apy=candidate.apy
        )

    async def run_cycle(self) -> List[AllocationDecision]:
        """One pass over all tracked tokens. Returns the moves that completed."""
        self.cycles += 1
        tokens = [t for t in self.ledger.tokens if self._enabled(t)]

        try:
            feed = await self.yield_source.fetch_apys(tokens)
        except ChainError as e:
            logger.error(f"❌ Yield fetch failed, waiting for next cycle: {e}")
            return []

        best = best_apy_per_token(feed)
        for token, entry in best.items():
            logger.info(f"🔍 Best APY for {token}: {entry.apy:.2f}% on {entry.chain} ({entry.protocol})")

        completed = []
        for token in tokens:
            if self.ledger.is_halted(token):
                logger.warning(f"⚠️ [{token}] Halted, skipping reallocation")
                continue

            async with self.ledger.locked(token):
                # may have been halted while waiting on the lock
                if self.ledger.is_halted(token):
                    continue
                allocation = self.ledger.get(token)
                if allocation is None:
                    continue
                decision = self.decide(token, allocation, feed, best)
                if decision is None:
                    continue
                if await self._execute(decision):
                    completed.append(decision)

        return completed

    async def _execute(self, decision: AllocationDecision) -> bool:
        token = decision.token
        logger.info(
            f"🔄 [{token}] Reallocating {decision.amount} from {decision.from_chain} "
            f"({decision.from_apy:.2f}%) to {decision.to_chain} ({decision.target_apy:.2f}%)"
        )

        try:
            await self.executor.withdraw(token, decision.from_chain, decision.amount)
        except ExecutionError as e:
            logger.error(f"❌ [{token}] Withdraw of {decision.amount} from {decision.from_chain} failed: {e}")
            self._journal(decision, 'withdraw_failed', str(e))
            return False

        try:
            await self.executor.supply(token, decision.to_chain, decision.amount)
        except ExecutionError as e:
            logger.error(
                f"❌ [{token}] Supply of {decision.amount} on {decision.to_chain} failed after withdraw: {e}"
            )
            self._journal(decision, 'supply_failed', str(e))
            await asyncio.sleep(self.failure_backoff)
            return False

        self.ledger.record_reallocation(token, Allocation(
            amount=decision.amount, at_apy=decision.target_apy, chain=decision.to_chain
        ))
        self._journal(decision, 'completed')
        logger.info(f"✅ [{token}] Now earning {decision.target_apy:.2f}% on {decision.to_chain}")

        await self._publish(decision)
        return True

    async def _publish(self, decision: AllocationDecision):
        """Best-effort vault metadata update"""
        if self.vaults is None:
            return
        try:
            await self.vaults.set_current_allocation(decision.token, decision.to_chain, decision.target_apy)
        except Exception as e:
            logger.warning(f"⚠️ [{decision.token}] Failed to record allocation on vault: {e}")

    def _journal(self, decision: AllocationDecision, status: str, error: str = None):
        if self.journal:
            self.journal.record_reallocation(decision, status, error)

    async def run_forever(self):
        logger.info(f"🔄 Reallocation loop started (every {self.interval}s)")
        while True:
            await self.run_cycle()
            await asyncio.sleep(self.interval)
