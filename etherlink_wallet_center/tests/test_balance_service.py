import asyncio

import pytest

from conftest import ACCOUNT, FakeProvider
from etherlink_wallet_center.core.balance_service import BalanceService
from etherlink_wallet_center.core.errors import (
    InvalidInput,
    ProviderUnavailable,
    RpcError,
    TokenDecimalsUnavailable,
)
from etherlink_wallet_center.core.event_dispatcher import EventDispatcher
from etherlink_wallet_center.core.event_schemas import BALANCE_INVALIDATED, BALANCE_UPDATED
from etherlink_wallet_center.core.tokens import default_registry


UNKNOWN_TOKEN = "0x9999999999999999999999999999999999999999"
USDT = "0xa0b86a33e6b8c6b6c6b6c6b6c6b6c6b6c6b6c6b6"


def test_zero_balances_render_as_zero(provider: FakeProvider) -> None:
    service = BalanceService(provider, default_registry())

    assert asyncio.run(service.get_native_balance(ACCOUNT)) == "0.000000"
    assert asyncio.run(service.get_token_balance(USDT, ACCOUNT)) == "0.000000"


def test_token_balance_uses_registry_decimals(provider: FakeProvider) -> None:
    provider.token_balances[(USDT, ACCOUNT)] = 250_500_000
    service = BalanceService(provider, default_registry())

    balance = asyncio.run(service.get_token_balance(USDT, ACCOUNT))

    assert balance == "250.500000"
    assert provider.calls_to("eth_call") == [
        [{"to": USDT, "data": "0x70a08231" + "0" * 24 + ACCOUNT[2:]}, "latest"]
    ]


def test_unknown_token_decimals_are_fetched_once(provider: FakeProvider) -> None:
    asyncio.run(_test_unknown_token_decimals_are_fetched_once(provider))


async def _test_unknown_token_decimals_are_fetched_once(provider: FakeProvider) -> None:
    provider.decimals[UNKNOWN_TOKEN] = 8
    provider.token_balances[(UNKNOWN_TOKEN, ACCOUNT)] = 123_456_789
    service = BalanceService(provider, default_registry())

    assert await service.get_token_balance(UNKNOWN_TOKEN, ACCOUNT) == "1.234568"
    assert await service.get_token_balance(UNKNOWN_TOKEN, ACCOUNT) == "1.234568"

    decimals_calls = [
        params for params in provider.calls_to("eth_call") if params[0]["data"] == "0x313ce567"
    ]
    assert len(decimals_calls) == 1


@pytest.mark.parametrize("answer", [None, "0x", "0x" + format(300, "064x")])
def test_missing_decimals_fail_closed(provider: FakeProvider, answer) -> None:
    if answer is not None:
        provider.decimals[UNKNOWN_TOKEN] = answer
    service = BalanceService(provider, default_registry())

    with pytest.raises(TokenDecimalsUnavailable):
        asyncio.run(service.get_token_balance(UNKNOWN_TOKEN, ACCOUNT))
    # No balanceOf was attempted with a guessed scale.
    assert all(
        params[0]["data"] == "0x313ce567" for params in provider.calls_to("eth_call")
    )


def test_decimals_rpc_failure_is_reported(provider: FakeProvider) -> None:
    provider.fail("eth_call", -32000, "execution reverted")
    service = BalanceService(provider, default_registry())

    with pytest.raises(TokenDecimalsUnavailable) as excinfo:
        asyncio.run(service.resolve_decimals(UNKNOWN_TOKEN))
    assert excinfo.value.provider_code == -32000


def test_rpc_errors_surface_provider_message(provider: FakeProvider) -> None:
    provider.fail("eth_getBalance", -32000, "header not found")
    service = BalanceService(provider, default_registry())

    with pytest.raises(RpcError) as excinfo:
        asyncio.run(service.get_native_balance(ACCOUNT))
    assert excinfo.value.message == "header not found"


@pytest.mark.parametrize("result", ["0x-1", "0x1_0", " 0x1"])
def test_malformed_native_balance_is_an_rpc_error(provider: FakeProvider, result: str) -> None:
    provider.native_balances[ACCOUNT] = result
    service = BalanceService(provider, default_registry())

    with pytest.raises(RpcError):
        asyncio.run(service.get_native_balance(ACCOUNT))


def test_invalid_address_makes_no_call(provider: FakeProvider) -> None:
    service = BalanceService(provider, default_registry())

    with pytest.raises(InvalidInput):
        asyncio.run(service.get_native_balance("0x1234"))
    assert provider.calls == []


def test_missing_provider_is_unavailable() -> None:
    service = BalanceService(None, default_registry())

    with pytest.raises(ProviderUnavailable):
        asyncio.run(service.get_native_balance(ACCOUNT))


def test_refresh_token_caches_and_publishes(provider: FakeProvider) -> None:
    asyncio.run(_test_refresh_token_caches_and_publishes(provider))


async def _test_refresh_token_caches_and_publishes(provider: FakeProvider) -> None:
    provider.token_balances[(USDT, ACCOUNT)] = 5_000_000
    dispatcher = EventDispatcher()
    queue = dispatcher.subscribe(BALANCE_UPDATED, subscriber_id="test")
    registry = default_registry()
    service = BalanceService(provider, registry, dispatcher=dispatcher)

    await service.refresh_token(registry.get("USDT"), ACCOUNT)

    assert registry.cached_balance("USDT") == "5.000000"
    message = await asyncio.wait_for(queue.get(), timeout=1)
    assert message["data"] == {
        "address": ACCOUNT,
        "symbol": "USDT",
        "balance": "5.000000",
        "contract": USDT,
    }


def test_invalidation_debits_cached_balance(provider: FakeProvider) -> None:
    asyncio.run(_test_invalidation_debits_cached_balance(provider))


async def _test_invalidation_debits_cached_balance(provider: FakeProvider) -> None:
    dispatcher = EventDispatcher()
    registry = default_registry()
    registry.set_cached_balance("XTZ", "15.750000")
    registry.set_cached_balance("USDT", "1.000000")
    service = BalanceService(provider, registry, dispatcher=dispatcher)
    await service.start()

    await dispatcher.emit(
        BALANCE_INVALIDATED, {"symbol": "XTZ", "address": ACCOUNT, "debit": "1.5"}
    )
    await service.apply_invalidation({"symbol": "USDT", "address": ACCOUNT, "debit": "5"})
    for _ in range(3):
        await asyncio.sleep(0)
    await service.stop()

    assert registry.cached_balance("XTZ") == "14.250000"
    assert registry.cached_balance("USDT") == "0.000000"
    assert provider.calls == []


def test_invalidation_can_refetch(provider: FakeProvider) -> None:
    provider.native_balances[ACCOUNT] = hex(3 * 10**18)
    registry = default_registry()
    registry.set_cached_balance("XTZ", "15.750000")
    service = BalanceService(provider, registry, refetch_on_invalidate=True)

    asyncio.run(service.apply_invalidation({"symbol": "XTZ", "address": ACCOUNT, "debit": "1"}))

    assert registry.cached_balance("XTZ") == "3.000000"
