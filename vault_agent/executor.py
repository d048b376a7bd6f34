"""
Cross-chain Call Executor
Turns a supply/withdraw into a signed OneBalance quote and waits for completion
"""

import asyncio
import logging
import time
from typing import Dict, Optional

from vault_agent import aave
from vault_agent.config import BotConfig
from vault_agent.errors import ExecutionFailedError, ExecutionTimeoutError, OneBalanceError
from vault_agent.onebalance import (
    FINAL_FAILURE_STATUSES, STATUS_COMPLETED, OneBalanceClient, Quote
)
from vault_agent.signer import OperationSigner

logger = logging.getLogger(__name__)


class CallExecutor:

    def __init__(self, config: BotConfig, client: OneBalanceClient, signer: OperationSigner):
        self.config = config
        self.client = client
        self.signer = signer
        self.timeout = config.onebalance.execution_timeout_seconds
        self.poll_interval = config.onebalance.poll_interval_seconds
        self.account_address: Optional[str] = None

    async def setup_account(self) -> str:
        """Predict (and cache) the aggregated account address"""
        self.account_address = await self.client.predict_address(self.signer.address, self.signer.address)
        logger.info(f"🔍 Aggregated account address: {self.account_address}")
        return self.account_address

    def _require_account(self) -> str:
        if not self.account_address:
            raise OneBalanceError("Aggregated account not set up; call setup_account() first")
        return self.account_address

    async def aggregated_balance(self, token: str) -> int:
        return await self.client.get_aggregated_balance(
            self._require_account(), aave.to_aggregated_asset_id(token)
        )

    async def supply(self, token: str, chain: str, amount: int):
        account = self._require_account()
        request = aave.build_supply_request(
            self.config.chain(chain), token, amount, account, self.signer.address
        )
        logger.info(f"🔄 [{token}] Supplying {amount} on {chain}")
        await self.execute(request, aave.to_aggregated_asset_id(token), f"supply {token} {amount} on {chain}")
        logger.info(f"✅ [{token}] Supplied {amount} on {chain}")

    async def withdraw(self, token: str, chain: str, amount: int, recipient: Optional[str] = None):
        """Withdraw to recipient (defaults to the aggregated account)"""
        account = self._require_account()
        recipient = recipient or account
        request = aave.build_withdraw_request(
            self.config.chain(chain), token, amount, recipient, account, self.signer.address
        )
        logger.info(f"🔄 [{token}] Withdrawing {amount} from {chain} to {recipient}")
        await self.execute(request, aave.to_aggregated_asset_id(token), f"withdraw {token} {amount} from {chain}")
        logger.info(f"✅ [{token}] Withdrew {amount} from {chain}")

    async def execute(self, request: Dict, aggregated_asset_id: str, label: str = "call") -> Quote:
        prepared = await self.client.prepare_call_quote(request)
        signed_operation = self.signer.sign_operation(prepared.chain_operation)

        quote = await self.client.fetch_call_quote({
            'fromAggregatedAssetId': aggregated_asset_id,
            'account': request['account'],
            'tamperProofSignature': prepared.tamper_proof_signature,
            'chainOperation': signed_operation,
        })
        logger.info(f"🔍 Executing quote {quote.id} ({label})")

        bundle = await self.client.execute_quote(quote)
        if not bundle.success:
            raise ExecutionFailedError(f"Bundle execution failed for {label}: {bundle.error}")

        await self.wait_for_completion(quote, label)
        return quote

    async def wait_for_completion(self, quote: Quote, label: str = "call"):
        """Poll account history until the quote completes, fails or times out"""
        started = time.monotonic()
        last_status = None

        while True:
            try:
                tx = await self.client.get_latest_transaction(quote.account_address)
                if tx and tx.quote_id == quote.id:
                    if tx.status == STATUS_COMPLETED:
                        logger.info(f"✅ Quote {quote.id} completed ({label})")
                        return
                    if tx.status in FINAL_FAILURE_STATUSES:
                        raise ExecutionFailedError(f"Quote {quote.id} ended {tx.status} ({label})")
                    if tx.status != last_status:
                        logger.info(f"Transaction status: {tx.status} ({label})")
                        last_status = tx.status
            except OneBalanceError as e:
                logger.warning(f"⚠️ History poll failed for quote {quote.id} ({label}): {e}")

            if time.monotonic() - started > self.timeout:
                raise ExecutionTimeoutError(
                    f"Quote {quote.id} not completed within {self.timeout:.0f}s ({label})"
                )
            await asyncio.sleep(self.poll_interval)
