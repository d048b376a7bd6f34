"""
Command line entry point

    vault-agent run              start the bot (default)
    vault-agent state            print the persisted ledger state
    vault-agent journal          print missed log windows and recent reallocations
"""

import sys
import json
import signal
import asyncio
import logging
import argparse

from vault_agent.bot import VaultBot
from vault_agent.config import BotConfig, ConfigManager
from vault_agent.errors import ConfigurationError, StateStoreError
from vault_agent.journal import EventJournal
from vault_agent.store import JsonStateStore

logger = logging.getLogger(__name__)


def setup_logging(config: BotConfig):
    handlers = [logging.StreamHandler(sys.stdout)]
    if config.monitoring.log_file:
        handlers.append(logging.FileHandler(config.monitoring.log_file))

    logging.basicConfig(
        level=getattr(logging, config.monitoring.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


async def run_bot(config: BotConfig):
    bot = VaultBot(config)
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    runner = asyncio.create_task(bot.run(), name="vault-bot")
    waiter = asyncio.create_task(shutdown.wait(), name="shutdown-signal")
    done, _ = await asyncio.wait({runner, waiter}, return_when=asyncio.FIRST_COMPLETED)

    if waiter in done:
        logger.info("🛑 Received shutdown signal. Shutting down gracefully...")
        runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)
        await bot.stop()
        return

    waiter.cancel()
    # bot.run() only returns early by raising
    runner.result()


class BotCLI:
    """Command line administration interface"""

    def main(self, argv=None) -> int:
        parser = argparse.ArgumentParser(description="Cross-chain lending vault bot")
        parser.add_argument('--config', help='Path to config.yaml (default: $VAULT_BOT_CONFIG or config.yaml)')
        parser.add_argument('--env-file', help='Path to .env file')
        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        subparsers.add_parser('run', help='Start the bot')
        subparsers.add_parser('state', help='Show persisted ledger state')

        journal_parser = subparsers.add_parser('journal', help='Show missed windows and reallocations')
        journal_parser.add_argument('--limit', type=int, default=20, help='Reallocations to show')
        journal_parser.add_argument('--all', action='store_true', help='Include resolved missed windows')
        journal_parser.add_argument('--resolve', type=int, metavar='ID', help='Mark a missed window as reconciled')

        args = parser.parse_args(argv)
        command = args.command or 'run'

        try:
            config = ConfigManager.load_config(args.config, args.env_file)
        except ConfigurationError as e:
            print(f"❌ {e}")
            return 1

        setup_logging(config)

        if command == 'state':
            return self._handle_state(config)
        if command == 'journal':
            return self._handle_journal(config, args)
        return self._handle_run(config)

    def _handle_run(self, config: BotConfig) -> int:
        logger.info("🚀 Starting CC Lending Vault Bot...")
        try:
            config.validate()
            asyncio.run(run_bot(config))
        except ConfigurationError as e:
            logger.error(f"❌ Invalid configuration: {e}")
            return 1
        except Exception as e:
            logger.error(f"❌ Bot failed: {e}", exc_info=True)
            return 1

        logger.info("✅ Bot stopped")
        return 0

    def _handle_state(self, config: BotConfig) -> int:
        store = JsonStateStore(config.storage.state_path, config.events.start_block)
        try:
            state = store.read_state()
        except StateStoreError as e:
            print(f"❌ {e}")
            return 1

        print(json.dumps(state.to_dict(), indent=2))
        return 0

    def _handle_journal(self, config: BotConfig, args) -> int:
        journal = EventJournal(config.storage.journal_path)

        if args.resolve is not None:
            if journal.resolve_missed_window(args.resolve):
                print(f"✅ Missed window #{args.resolve} marked as reconciled")
                return 0
            print(f"❌ No open missed window #{args.resolve}")
            return 1

        windows = journal.missed_windows(include_resolved=args.all)
        print(f"⚠️  Missed log windows: {len(windows)}")
        for window in windows:
            status = "✅" if window['resolved'] else "❌"
            print(f"  {status} #{window['id']} {window['token']} blocks {window['from_block']}-{window['to_block']}: {window['error']}")

        reallocations = journal.recent_reallocations(args.limit)
        print(f"\n🔄 Recent reallocations: {len(reallocations)}")
        for row in reallocations:
            status = "✅" if row['status'] == 'completed' else "❌"
            print(
                f"  {status} {row['timestamp']} {row['token']} {row['amount']} "
                f"{row['from_chain']} ({row['from_apy']:.2f}%) -> {row['to_chain']} ({row['to_apy']:.2f}%)"
            )
        print(f"\n📝 Applied events: {journal.applied_count()}")
        return 0


def main():
    sys.exit(BotCLI().main())
