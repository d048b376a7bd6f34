"""
Vault bot lifecycle: wires the components together and runs them
"""

import asyncio
import logging
from enum import Enum
from typing import List

from vault_agent.config import BotConfig
from vault_agent.engine import ReallocationEngine
from vault_agent.events import VaultEventSource
from vault_agent.executor import CallExecutor
from vault_agent.journal import EventJournal
from vault_agent.ledger import AllocationLedger
from vault_agent.onebalance import OneBalanceClient
from vault_agent.pipeline import EventPipeline
from vault_agent.positions import LendingPositionReader
from vault_agent.signer import OperationSigner
from vault_agent.store import JsonStateStore
from vault_agent.vault import VaultRegistry
from vault_agent.yields import AaveYieldSource

logger = logging.getLogger(__name__)


class BotStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class VaultBot:
    """Main bot: startup reconciliation, backfill, then engine + live event consumer"""

    def __init__(self, config: BotConfig, client=None, signer=None, store=None, journal=None,
                 vaults=None, yield_source=None, positions=None):
        self.config = config
        self.status = BotStatus.IDLE

        self.signer = signer or OperationSigner(config.private_key)
        self.client = client or OneBalanceClient(
            config.onebalance_api_key, config.onebalance.base_url, config.onebalance.request_timeout_seconds
        )
        self.store = store or JsonStateStore(config.storage.state_path, config.events.start_block)
        self.journal = journal or EventJournal(config.storage.journal_path)
        self.vaults = vaults or VaultRegistry(config, account=self.signer.account)
        self.yield_source = yield_source or AaveYieldSource(config)
        self.positions = positions or LendingPositionReader(config)

        self.executor = CallExecutor(config, self.client, self.signer)
        self.ledger = AllocationLedger(self.store, self.executor, self.journal)
        self.source = VaultEventSource(
            self.vaults, self.journal,
            window_size=config.events.window_size,
            poll_interval=config.events.poll_interval_seconds,
            retry_backoff=config.events.retry_backoff_seconds
        )
        self.pipeline = EventPipeline(
            self.ledger, self.source, config.tokens,
            retry_attempts=config.events.retry_attempts,
            retry_backoff=config.events.retry_backoff_seconds
        )
        self.engine = ReallocationEngine(
            self.ledger, self.executor, self.yield_source,
            vaults=self.vaults,
            journal=self.journal,
            enabled_tokens=config.tokens,
            interval=config.engine.interval_seconds,
            min_improvement=config.engine.min_apy_improvement,
            failure_backoff=config.engine.failure_backoff_seconds
        )
        self._tasks: List[asyncio.Task] = []

    def is_running(self) -> bool:
        return self.status == BotStatus.RUNNING

    def get_status(self) -> BotStatus:
        return self.status

    async def start(self):
        """Reconcile, backfill and launch the long-running tasks"""
        if self.is_running():
            logger.warning("⚠️ Bot is already running")
            return

        self.status = BotStatus.RUNNING
        logger.info("🔄 Starting bot operations...")
        if self.config.is_development():
            logger.info(f"📨 Configuration: {self.config.to_dict()}")

        try:
            account = await self.executor.setup_account()

            self.store.initialize(self.config.tokens, self.config.storage.default_chain)
            self.ledger.load()
            await self.ledger.reconcile_from_chain(self.positions, self.vaults, account)

            # Live feed first, so nothing between history and live is lost
            head = await self.source.head()
            follower = self.pipeline.attach_live(head)
            await self.pipeline.backfill(head)

            self._tasks = [
                follower,
                asyncio.create_task(self.pipeline.consume(), name="vault-event-consumer"),
                asyncio.create_task(self.engine.run_forever(), name="reallocation-engine"),
            ]
            logger.info("✅ Bot started successfully!")
        except Exception:
            self.status = BotStatus.ERROR
            await self.pipeline.stop()
            raise

    async def run(self):
        """Start and block until a task fails or the bot is stopped"""
        await self.start()
        try:
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if not task.cancelled() and task.exception():
                    raise task.exception()
        except Exception as e:
            self.status = BotStatus.ERROR
            logger.critical(f"💥 Bot main loop failed: {e}")
            await self._shutdown()
            raise

    async def stop(self):
        if not self.is_running():
            logger.warning("⚠️ Bot is not running")
            return

        logger.info("🛑 Stopping bot operations...")
        await self._shutdown()
        self.status = BotStatus.STOPPED

    async def _shutdown(self):
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.pipeline.stop()

        if self.ledger.last_known_block is not None:
            self.store.set_state(
                last_known_block=self.ledger.last_known_block,
                allocations=self.ledger.allocations
            )
            logger.info(f"📝 Final state persisted (lastKnownBlock={self.ledger.last_known_block})")
        await self.client.close()
