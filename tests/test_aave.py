from vault_agent import aave
from vault_agent.config import BotConfig

ACCOUNT = "0x000000000000000000000000000000000000b07a"
SESSION = "0x0000000000000000000000000000000000005e55"
USER = "0x00000000000000000000000000000000000a11ce"


def test_asset_identifiers():
    assert aave.to_a_token("USDC") == "aUSDC"
    assert aave.to_aggregated_asset_id("USDT") == "ds:usdt"
    assert aave.to_asset_type("eip155:137", "0xabc") == "eip155:137/erc20:0xabc"


def test_supply_calldata():
    data = aave.encode_supply("0xaf88d065e77c8cC2239327C5EDb3A432268e5831", 1_000_000, ACCOUNT)
    assert data.startswith("0x617ba037")
    # asset, amount, onBehalfOf, referralCode
    assert len(data) == 2 + 8 + 4 * 64
    assert data.endswith("0" * 64)
    assert format(1_000_000, "064x") in data


def test_withdraw_calldata():
    data = aave.encode_withdraw("0xaf88d065e77c8cC2239327C5EDb3A432268e5831", 5, USER)
    assert data.startswith("0x69328dec")
    assert data.lower().endswith(USER[2:].lower())


def test_supply_request_shape():
    chain = BotConfig().chain("OPTIMISM")
    request = aave.build_supply_request(chain, "USDC", 250, ACCOUNT, SESSION)

    asset_type = f"eip155:10/erc20:{chain.tokens['USDC']}"
    assert request['account'] == {'accountAddress': ACCOUNT, 'sessionAddress': SESSION, 'adminAddress': SESSION}
    assert request['targetChain'] == "eip155:10"
    assert request['calls'][0]['to'] == chain.aave_pool
    assert request['tokensRequired'] == [{'assetType': asset_type, 'amount': "250"}]
    assert request['allowanceRequirements'] == [
        {'assetType': asset_type, 'amount': "250", 'spender': chain.aave_pool}
    ]


def test_withdraw_request_needs_no_tokens():
    chain = BotConfig().chain("ARBITRUM")
    request = aave.build_withdraw_request(chain, "USDT", 9, USER, ACCOUNT, SESSION)

    assert request['targetChain'] == "eip155:42161"
    assert request['tokensRequired'] == []
    assert request['allowanceRequirements'] == []
    assert request['calls'][0]['data'].startswith("0x69328dec")
