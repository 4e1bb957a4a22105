from decimal import Decimal

import pytest

from etherlink_wallet_center.core.chains import ETHERLINK_MAINNET
from etherlink_wallet_center.core.tokens import NATIVE_SENTINEL, Token, default_registry


def test_default_registry_lists_etherlink_tokens() -> None:
    registry = default_registry()

    assert [token.symbol for token in registry] == ["XTZ", "USDT", "USDC", "DAI", "WETH"]
    assert registry.native().symbol == "XTZ"
    assert registry.get("USDT").decimals == 6
    assert registry.get("WETH").decimals == 18
    assert registry.by_contract("0xA0B86A33E6B8C6B6C6B6C6B6C6B6C6B6C6B6C6B6").symbol == "USDT"


def test_unknown_symbol_raises_key_error() -> None:
    with pytest.raises(KeyError):
        default_registry().get("DOGE")


def test_native_token_always_has_eighteen_decimals() -> None:
    token = Token(symbol="XTZ", display_name="Tezos", address=NATIVE_SENTINEL, decimals=6)

    assert token.decimals == 18
    assert token.is_native
    assert token.contract is None


def test_snapshot_includes_cached_balance_and_value() -> None:
    registry = default_registry()
    registry.set_cached_balance("XTZ", "15.750000")

    listing = {entry["symbol"]: entry for entry in registry.snapshot()}

    assert listing["XTZ"]["balance"] == "15.750000"
    assert listing["XTZ"]["value"] == "19.69"
    assert listing["USDT"]["balance"] is None
    assert listing["USDT"]["value"] is None

    registry.clear_balances()
    assert registry.cached_balance("XTZ") is None


def test_value_of_uses_static_price() -> None:
    weth = default_registry().get("WETH")

    assert weth.value_of("0.5") == Decimal("1200.000")


def test_chain_descriptor_links() -> None:
    assert ETHERLINK_MAINNET.tx_url("0xabc") == "https://explorer.etherlink.com/tx/0xabc"
    assert ETHERLINK_MAINNET.with_rpc_url("http://node").rpc_url == "http://node"
    assert ETHERLINK_MAINNET.to_params()["iconUrls"] == ["https://etherlink.com/favicon.ico"]
