"""
Aave v3 pool calldata and OneBalance prepare-call requests
"""

from typing import Dict

from web3 import Web3

from vault_agent.config import ChainConfig

# Aave v3 Pool ABI (only the entry points the bot calls)
AAVE_POOL_ABI = [
    {"inputs": [
        {"name": "asset", "type": "address"},
        {"name": "amount", "type": "uint256"},
        {"name": "onBehalfOf", "type": "address"},
        {"name": "referralCode", "type": "uint16"}
    ], "name": "supply", "outputs": [], "stateMutability": "nonpayable", "type": "function"},

    {"inputs": [
        {"name": "asset", "type": "address"},
        {"name": "amount", "type": "uint256"},
        {"name": "to", "type": "address"}
    ], "name": "withdraw", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "nonpayable", "type": "function"},

    {"inputs": [{"name": "asset", "type": "address"}], "name": "getReserveData", "outputs": [
        {"name": "", "type": "tuple", "components": [
            {"name": "configuration", "type": "uint256"},
            {"name": "liquidityIndex", "type": "uint128"},
            {"name": "currentLiquidityRate", "type": "uint128"},
            {"name": "variableBorrowIndex", "type": "uint128"},
            {"name": "currentVariableBorrowRate", "type": "uint128"},
            {"name": "currentStableBorrowRate", "type": "uint128"},
            {"name": "lastUpdateTimestamp", "type": "uint40"},
            {"name": "id", "type": "uint16"},
            {"name": "aTokenAddress", "type": "address"},
            {"name": "stableDebtTokenAddress", "type": "address"},
            {"name": "variableDebtTokenAddress", "type": "address"},
            {"name": "interestRateStrategyAddress", "type": "address"},
            {"name": "accruedToTreasury", "type": "uint128"},
            {"name": "unbacked", "type": "uint128"},
            {"name": "isolationModeTotalDebt", "type": "uint128"}
        ]}
    ], "stateMutability": "view", "type": "function"},
]

ERC20_BALANCE_ABI = [
    {"constant": True, "inputs": [{"name": "owner", "type": "address"}], "name": "balanceOf",
     "outputs": [{"name": "", "type": "uint256"}], "type": "function"},
]

_pool = Web3().eth.contract(abi=AAVE_POOL_ABI)


def to_a_token(token: str) -> str:
    return f"a{token}"


def to_asset_type(caip2: str, token_address: str) -> str:
    return f"{caip2}/erc20:{token_address}"


def to_aggregated_asset_id(token: str) -> str:
    return f"ds:{token.lower()}"


def encode_supply(asset: str, amount: int, on_behalf_of: str, referral_code: int = 0) -> str:
    return _pool.functions.supply(
        Web3.to_checksum_address(asset), amount, Web3.to_checksum_address(on_behalf_of), referral_code
    )._encode_transaction_data()


def encode_withdraw(asset: str, amount: int, to: str) -> str:
    return _pool.functions.withdraw(
        Web3.to_checksum_address(asset), amount, Web3.to_checksum_address(to)
    )._encode_transaction_data()


def _account(account_address: str, session_address: str) -> Dict[str, str]:
    return {
        'accountAddress': account_address,
        'sessionAddress': session_address,
        'adminAddress': session_address,
    }


def build_supply_request(chain: ChainConfig, token: str, amount: int,
                         account_address: str, session_address: str) -> Dict:
    """Supply `amount` of token into the chain's pool on behalf of the aggregated account"""
    asset = chain.tokens[token]
    asset_type = to_asset_type(chain.caip2, asset)
    return {
        'account': _account(account_address, session_address),
        'targetChain': chain.caip2,
        'calls': [{
            'to': chain.aave_pool,
            'data': encode_supply(asset, amount, account_address),
            'value': '0x0',
        }],
        'tokensRequired': [{'assetType': asset_type, 'amount': str(amount)}],
        'allowanceRequirements': [{'assetType': asset_type, 'amount': str(amount), 'spender': chain.aave_pool}],
        'overrides': [],
        'validAfter': '0',
    }


def build_withdraw_request(chain: ChainConfig, token: str, amount: int, recipient: str,
                           account_address: str, session_address: str) -> Dict:
    """Withdraw `amount` of token from the chain's pool to recipient"""
    return {
        'account': _account(account_address, session_address),
        'targetChain': chain.caip2,
        'calls': [{
            'to': chain.aave_pool,
            'data': encode_withdraw(chain.tokens[token], amount, recipient),
            'value': '0x0',
        }],
        'tokensRequired': [],
        'allowanceRequirements': [],
        'overrides': [],
        'validAfter': '0',
    }
