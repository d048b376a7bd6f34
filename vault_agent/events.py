"""
Vault Event Source
Chunked historical log queries and a live block-following stream
"""

import asyncio
import logging
from typing import AsyncIterator, Iterable, Optional

from vault_agent.errors import ChainError
from vault_agent.models import BlockBatch, RangeResult

logger = logging.getLogger(__name__)


class VaultEventSource:

    def __init__(self, registry, journal=None, window_size: int = 500, poll_interval: float = 2.0,
                 retry_backoff: float = 5.0):
        self.registry = registry
        self.journal = journal
        self.window_size = window_size
        self.poll_interval = poll_interval
        self.retry_backoff = retry_backoff

    async def head(self) -> int:
        return await self.registry.head()

    def windows(self, from_block: int, to_block: int):
        """Split [from_block, to_block] into fixed-size windows"""
        start = from_block
        while start <= to_block:
            end = min(start + self.window_size - 1, to_block)
            yield start, end
            start = end + 1

    async def query_range(self, token: str, from_block: int, to_block: int) -> RangeResult:
        """All events for token in [from_block, to_block]; failed windows are reported, not raised"""
        result = RangeResult()
        if from_block > to_block:
            return result

        for start, end in self.windows(from_block, to_block):
            try:
                result.events.extend(await self.registry.get_events(token, start, end))
            except ChainError as e:
                logger.error(f"❌ [{token}] Log window {start}-{end} failed: {e}")
                result.failed_windows.append((start, end))
                if self.journal:
                    self.journal.record_missed_window(token, start, end, str(e))

        result.events.sort(key=lambda event: event.sort_key)
        logger.info(
            f"🔍 [{token}] Found {len(result.events)} events in blocks {from_block}-{to_block}"
            f" ({len(result.failed_windows)} failed windows)"
        )
        return result

    async def fetch_batch(self, tokens: Iterable[str], from_block: int, to_block: int) -> BlockBatch:
        """Events for every token in one span. Raises ChainError if any window fails."""
        batch = BlockBatch(from_block=from_block, to_block=to_block)
        for token in tokens:
            for start, end in self.windows(from_block, to_block):
                batch.events.extend(await self.registry.get_events(token, start, end))
        batch.events.sort(key=lambda event: event.sort_key)
        return batch

    async def subscribe_live(self, from_block: int, tokens: Optional[Iterable[str]] = None) -> AsyncIterator[BlockBatch]:
        """
        Yield one BlockBatch per newly observed block span, starting after from_block.
        Never ends on its own. The cursor only moves once a span was fetched completely,
        so a transport failure retries the same span instead of dropping it.
        """
        tokens = list(tokens) if tokens is not None else self.registry.tokens
        cursor = from_block

        while True:
            try:
                head = await self.registry.head()
                if head > cursor:
                    batch = await self.fetch_batch(tokens, cursor + 1, head)
                    cursor = head
                    yield batch
                    continue
            except ChainError as e:
                logger.warning(f"⚠️ Live feed error after block {cursor}, retrying in {self.retry_backoff}s: {e}")
                await asyncio.sleep(self.retry_backoff)
                continue

            await asyncio.sleep(self.poll_interval)
