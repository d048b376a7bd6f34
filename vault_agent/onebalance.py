"""
OneBalance API client
Aggregated account, balances and the call-quote lifecycle over aiohttp
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from vault_agent.config import ONEBALANCE_API_URL
from vault_agent.errors import MalformedResponseError, OneBalanceError

logger = logging.getLogger(__name__)

# Operation statuses reported by the history endpoint
STATUS_PENDING = 'PENDING'
STATUS_IN_PROGRESS = 'IN_PROGRESS'
STATUS_COMPLETED = 'COMPLETED'
STATUS_REFUNDED = 'REFUNDED'
STATUS_FAILED = 'FAILED'

FINAL_FAILURE_STATUSES = (STATUS_REFUNDED, STATUS_FAILED)


@dataclass
class AssetBalance:
    asset_type: str
    balance: int
    fiat_value: float = 0.0


@dataclass
class AggregatedAssetBalance:
    aggregated_asset_id: str
    balance: int
    individual: List[AssetBalance] = field(default_factory=list)
    fiat_value: float = 0.0


@dataclass
class PreparedQuote:
    """Response of prepare-call-quote; chain_operation is signed before use"""
    account: Dict[str, str]
    chain_operation: Dict[str, Any]
    tamper_proof_signature: str


@dataclass
class Quote:
    id: str
    account_address: str
    raw: Dict[str, Any]


@dataclass
class BundleResult:
    success: bool
    error: Optional[str] = None
    guarantees: Optional[Dict] = None


@dataclass
class HistoryEntry:
    quote_id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


def _require(data: Any, key: str, context: str) -> Any:
    if not isinstance(data, dict) or data.get(key) is None:
        raise MalformedResponseError(f"{context}: response missing '{key}'")
    return data[key]


def _to_int(value: Any, context: str) -> int:
    try:
        return int(str(value))
    except (TypeError, ValueError) as e:
        raise MalformedResponseError(f"{context}: invalid integer {value!r}") from e


class OneBalanceClient:
    """Thin async client. Use as an async context manager or call close()."""

    def __init__(self, api_key: str, base_url: str = ONEBALANCE_API_URL, timeout: int = 30):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                headers={'Content-Type': 'application/json', 'x-api-key': self.api_key},
                timeout=self.timeout
            )

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    async def _request(self, method: str, endpoint: str, payload: Dict = None) -> Any:
        await self.open()
        url = f"{self.base_url}{endpoint}"
        kwargs = {'params': payload} if method == 'GET' else {'json': payload}

        try:
            async with self.session.request(method, url, **kwargs) as response:
                if response.status != 200:
                    body = await response.text()
                    raise OneBalanceError(f"{method} {endpoint} returned {response.status}: {body}", response.status)
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise MalformedResponseError(f"{method} {endpoint}: response is not JSON") from e
        except aiohttp.ClientError as e:
            raise OneBalanceError(f"{method} {endpoint} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise OneBalanceError(f"{method} {endpoint} timed out") from e

    # ---- account ----

    async def predict_address(self, session_address: str, admin_address: str) -> str:
        data = await self._request('POST', '/account/predict-address', {
            'sessionAddress': session_address,
            'adminAddress': admin_address
        })
        return _require(data, 'predictedAddress', 'predict-address')

    async def get_aggregated_balances(self, address: str) -> List[AggregatedAssetBalance]:
        data = await self._request('GET', '/v2/balances/aggregated-balance', {'address': address})
        context = 'aggregated-balance'
        balances = []
        for asset in _require(data, 'balanceByAggregatedAsset', context):
            individual = [
                AssetBalance(
                    asset_type=_require(item, 'assetType', context),
                    balance=_to_int(_require(item, 'balance', context), context),
                    fiat_value=float(item.get('fiatValue') or 0)
                )
                for item in asset.get('individualAssetBalances') or []
            ]
            balances.append(AggregatedAssetBalance(
                aggregated_asset_id=_require(asset, 'aggregatedAssetId', context),
                balance=_to_int(_require(asset, 'balance', context), context),
                individual=individual,
                fiat_value=float(asset.get('fiatValue') or 0)
            ))
        return balances

    async def get_aggregated_balance(self, address: str, aggregated_asset_id: str) -> int:
        """Balance of one aggregated asset (0 when the account holds none)"""
        for asset in await self.get_aggregated_balances(address):
            if asset.aggregated_asset_id == aggregated_asset_id:
                return asset.balance
        return 0

    # ---- quotes ----

    async def prepare_call_quote(self, request: Dict) -> PreparedQuote:
        data = await self._request('POST', '/quotes/prepare-call-quote', request)
        context = 'prepare-call-quote'
        chain_operation = _require(data, 'chainOperation', context)
        _require(chain_operation, 'userOp', context)
        _require(chain_operation, 'typedDataToSign', context)
        return PreparedQuote(
            account=_require(data, 'account', context),
            chain_operation=chain_operation,
            tamper_proof_signature=_require(data, 'tamperProofSignature', context)
        )

    async def fetch_call_quote(self, call_request: Dict) -> Quote:
        data = await self._request('POST', '/quotes/call-quote', call_request)
        context = 'call-quote'
        account = _require(data, 'account', context)
        return Quote(
            id=_require(data, 'id', context),
            account_address=_require(account, 'accountAddress', context),
            raw=data
        )

    async def execute_quote(self, quote: Quote) -> BundleResult:
        data = await self._request('POST', '/quotes/execute-quote', quote.raw)
        return BundleResult(
            success=bool(_require(data, 'success', 'execute-quote')),
            error=data.get('error'),
            guarantees=data.get('guarantees')
        )

    # ---- status ----

    async def get_latest_transaction(self, address: str) -> Optional[HistoryEntry]:
        """Most recent operation for the account"""
        data = await self._request('GET', '/status/get-tx-history', {
            'user': address,
            'limit': 1,
            'sortBy': 'createdAt'
        })
        transactions = _require(data, 'transactions', 'get-tx-history')
        if not transactions:
            return None
        tx = transactions[0]
        return HistoryEntry(
            quote_id=_require(tx, 'quoteId', 'get-tx-history'),
            status=_require(tx, 'status', 'get-tx-history'),
            raw=tx
        )

    async def get_execution_status(self, quote_id: str) -> Dict:
        return await self._request('GET', '/status/get-execution-status', {'quoteId': quote_id})
