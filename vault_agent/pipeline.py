"""
Event Reconciliation / Backfill
Replays vault events missed while the bot was down, then consumes the live feed.
Both paths apply events through AllocationLedger.apply() from a single consumer.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from vault_agent.errors import ChainError, ExecutionError, LedgerInvariantError
from vault_agent.models import BlockBatch, VaultEvent

logger = logging.getLogger(__name__)


class EventPipeline:

    def __init__(self, ledger, source, tokens: Iterable[str], retry_attempts: int = 3,
                 retry_backoff: float = 5.0):
        self.ledger = ledger
        self.source = source
        self.tokens = list(tokens)
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self.queue: asyncio.Queue = asyncio.Queue()
        # token -> block of the first event that could not be applied this run
        self.blocked: Dict[str, int] = {}
        self._follower: Optional[asyncio.Task] = None

    # ---- live feed ----

    def attach_live(self, from_block: int) -> asyncio.Task:
        """Start buffering live batches for blocks after from_block"""
        self._follower = asyncio.create_task(self._follow(from_block), name="vault-event-follower")
        logger.info(f"📡 Live vault feed attached after block {from_block}")
        return self._follower

    async def _follow(self, from_block: int):
        async for batch in self.source.subscribe_live(from_block, self.tokens):
            await self.queue.put(batch)

    async def consume(self):
        """Apply buffered live batches in order, forever"""
        while True:
            batch = await self.queue.get()
            try:
                await self.apply_batch(batch)
            finally:
                self.queue.task_done()

    async def apply_batch(self, batch: BlockBatch):
        await self.apply_all(batch.events)
        self.ledger.advance_watermark(batch.to_block)

    async def stop(self):
        if self._follower and not self._follower.done():
            self._follower.cancel()
            try:
                await self._follower
            except asyncio.CancelledError:
                pass
        self._follower = None

    # ---- backfill ----

    async def backfill(self, to_block: int) -> int:
        """Apply every event after the persisted watermark up to to_block"""
        from_block = self.ledger.last_known_block + 1
        if from_block > to_block:
            logger.info(f"✅ No backfill needed (watermark {self.ledger.last_known_block}, head {to_block})")
            return 0

        logger.info(f"🔄 Backfilling vault events in blocks {from_block}-{to_block}")
        events: List[VaultEvent] = []
        for token in self.tokens:
            result = await self.source.query_range(token, from_block, to_block)
            events.extend(result.events)
            if not result.complete:
                self.ledger.pin_watermark(result.first_failed_block - 1)

        events.sort(key=lambda event: event.sort_key)
        applied = await self.apply_all(events)
        self.ledger.advance_watermark(to_block)

        logger.info(
            f"✅ Backfill done: {applied}/{len(events)} events applied, "
            f"watermark at {self.ledger.last_known_block}"
        )
        return applied

    # ---- application ----

    async def apply_all(self, events: Iterable[VaultEvent]) -> int:
        applied = 0
        for event in events:
            if await self.apply_event(event):
                applied += 1
        return applied

    async def apply_event(self, event: VaultEvent) -> bool:
        """Apply with retries. On final failure the watermark is pinned below the event."""
        token = event.token
        if token in self.blocked:
            logger.warning(
                f"⚠️ [{token}] Deferring {event.kind.value} {event.event_id} until restart "
                f"(earlier event at block {self.blocked[token]} not applied)"
            )
            return False

        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await self.ledger.apply(event)
            except LedgerInvariantError as e:
                self.ledger.halt(token, str(e))
                self._block(event)
                return False
            except (ExecutionError, ChainError) as e:
                logger.error(
                    f"❌ [{token}] {event.kind.value} of {event.amount} (block {event.block_number}) "
                    f"failed, attempt {attempt}/{self.retry_attempts}: {e}"
                )
                if attempt < self.retry_attempts:
                    await asyncio.sleep(self.retry_backoff)

        self._block(event)
        return False

    def _block(self, event: VaultEvent):
        self.blocked.setdefault(event.token, event.block_number)
        self.ledger.pin_watermark(event.block_number - 1)
