import asyncio

import pytest

from conftest import ACCOUNT, OTHER_ACCOUNT, FakeProvider
from etherlink_wallet_center.core.balance_service import BalanceService
from etherlink_wallet_center.core.chains import ETHERLINK_MAINNET
from etherlink_wallet_center.core.connection_manager import ConnectionManager
from etherlink_wallet_center.core.errors import (
    ChainAddFailed,
    ChainSwitchFailed,
    ProviderUnavailable,
    RequestPending,
    RpcError,
    UserRejected,
)
from etherlink_wallet_center.core.event_dispatcher import EventDispatcher
from etherlink_wallet_center.core.event_schemas import SESSION_CHANGED
from etherlink_wallet_center.core.provider import ACCOUNTS_CHANGED, CHAIN_CHANGED
from etherlink_wallet_center.core.session import SessionState, SessionStatus
from etherlink_wallet_center.core.tokens import default_registry


def _build(provider, dispatcher=None):
    dispatcher = dispatcher or EventDispatcher()
    session = SessionState(ETHERLINK_MAINNET.chain_id, publish=dispatcher.publisher())
    balances = BalanceService(provider, default_registry(), dispatcher=dispatcher)
    manager = ConnectionManager(provider, session, balances, ETHERLINK_MAINNET)
    return manager, session, balances


def test_connect_marks_session_and_fetches_balance(provider: FakeProvider) -> None:
    asyncio.run(_test_connect_marks_session_and_fetches_balance(provider))


async def _test_connect_marks_session_and_fetches_balance(provider: FakeProvider) -> None:
    provider.native_balances[ACCOUNT] = hex(15_750_000_000_000_000_000)
    manager, session, balances = _build(provider)

    account = await manager.connect()

    assert account == ACCOUNT
    assert session.status is SessionStatus.CONNECTED_TARGET_CHAIN
    assert session.native_balance == "15.750000"
    assert balances.registry.cached_balance("XTZ") == "15.750000"
    assert provider.calls_to("eth_getBalance") == [[ACCOUNT, "latest"]]


def test_connect_on_other_chain_is_wrong_chain(provider: FakeProvider) -> None:
    provider.chain_id = 1
    manager, session, _ = _build(provider)

    asyncio.run(manager.connect())

    assert session.connected
    assert session.status is SessionStatus.CONNECTED_WRONG_CHAIN


@pytest.mark.parametrize(
    "code, expected",
    [(4001, UserRejected), (-32002, RequestPending), (-32603, RpcError)],
)
def test_connect_errors_leave_session_disconnected(provider: FakeProvider, code, expected) -> None:
    provider.fail("eth_requestAccounts", code, "nope")
    manager, session, _ = _build(provider)

    with pytest.raises(expected) as excinfo:
        asyncio.run(manager.connect())

    assert excinfo.value.provider_code == code
    assert session.status is SessionStatus.DISCONNECTED
    assert session.account is None


def test_connect_without_provider_is_unavailable() -> None:
    manager, session, _ = _build(None)

    with pytest.raises(ProviderUnavailable):
        asyncio.run(manager.connect())
    assert not session.connected


def test_connect_with_no_accounts_is_rejected() -> None:
    manager, session, _ = _build(FakeProvider(accounts=()))

    with pytest.raises(UserRejected):
        asyncio.run(manager.connect())
    assert not session.connected


def test_unrecognised_chain_adds_descriptor_once(provider: FakeProvider) -> None:
    provider.fail("wallet_switchEthereumChain", 4902, "Unrecognized chain ID")
    manager, _, _ = _build(provider)

    asyncio.run(manager.switch_to_target_chain())

    assert provider.calls_to("wallet_switchEthereumChain") == [[{"chainId": "0xa729"}]]
    added = provider.calls_to("wallet_addEthereumChain")
    assert added == [[ETHERLINK_MAINNET.to_params()]]
    params = added[0][0]
    assert params["chainName"] == "Etherlink Mainnet"
    assert params["nativeCurrency"] == {"name": "XTZ", "symbol": "XTZ", "decimals": 18}
    assert params["rpcUrls"] == ["https://node.mainnet.etherlink.com"]
    assert params["blockExplorerUrls"] == ["https://explorer.etherlink.com"]


def test_add_chain_failure_is_reported(provider: FakeProvider) -> None:
    provider.fail("wallet_switchEthereumChain", 4902)
    provider.fail("wallet_addEthereumChain", -32603, "bad rpc")
    manager, _, _ = _build(provider)

    with pytest.raises(ChainAddFailed):
        asyncio.run(manager.switch_to_target_chain())
    assert len(provider.calls_to("wallet_addEthereumChain")) == 1


@pytest.mark.parametrize(
    "code, expected",
    [(4001, UserRejected), (-32002, RequestPending), (-32000, ChainSwitchFailed)],
)
def test_switch_errors_are_classified(provider: FakeProvider, code, expected) -> None:
    provider.fail("wallet_switchEthereumChain", code)
    manager, _, _ = _build(provider)

    with pytest.raises(expected):
        asyncio.run(manager.switch_to_target_chain())
    assert provider.calls_to("wallet_addEthereumChain") == []


def test_switch_does_not_touch_session_until_chain_changed(provider: FakeProvider) -> None:
    asyncio.run(_test_switch_does_not_touch_session_until_chain_changed(provider))


async def _test_switch_does_not_touch_session_until_chain_changed(provider: FakeProvider) -> None:
    provider.chain_id = 1
    manager, session, _ = _build(provider)
    await manager.start()
    await manager.connect()

    await manager.switch_to_target_chain()
    assert session.status is SessionStatus.CONNECTED_WRONG_CHAIN

    await provider.emit(CHAIN_CHANGED, "0xa729")
    await manager.wait_for_refreshes()
    assert session.status is SessionStatus.CONNECTED_TARGET_CHAIN
    await manager.stop()


def test_empty_accounts_changed_disconnects(provider: FakeProvider) -> None:
    asyncio.run(_test_empty_accounts_changed_disconnects(provider))


async def _test_empty_accounts_changed_disconnects(provider: FakeProvider) -> None:
    provider.native_balances[ACCOUNT] = hex(10**18)
    dispatcher = EventDispatcher()
    manager, session, balances = _build(provider, dispatcher)
    await manager.start()
    await manager.connect()
    queue = dispatcher.subscribe(SESSION_CHANGED, subscriber_id="test")

    await provider.emit(ACCOUNTS_CHANGED, [])

    assert session.connected is False
    assert session.account is None
    assert session.native_balance is None
    assert balances.registry.cached_balance("XTZ") is None
    message = await asyncio.wait_for(queue.get(), timeout=1)
    assert message["data"]["status"] == "disconnected"
    await manager.stop()


def test_account_switch_refreshes_new_account(provider: FakeProvider) -> None:
    asyncio.run(_test_account_switch_refreshes_new_account(provider))


async def _test_account_switch_refreshes_new_account(provider: FakeProvider) -> None:
    provider.native_balances[OTHER_ACCOUNT] = hex(2 * 10**18)
    manager, session, _ = _build(provider)
    await manager.start()
    await manager.connect()

    await provider.emit(ACCOUNTS_CHANGED, [OTHER_ACCOUNT])
    await manager.wait_for_refreshes()

    assert session.account == OTHER_ACCOUNT
    assert session.native_balance == "2.000000"
    await manager.stop()


def test_start_restores_authorised_session() -> None:
    asyncio.run(_test_start_restores_authorised_session())


async def _test_start_restores_authorised_session() -> None:
    provider = FakeProvider(authorised=True)
    manager, session, _ = _build(provider)

    await manager.start()
    await manager.wait_for_refreshes()

    assert session.account == ACCOUNT
    assert session.native_balance == "0.000000"
    assert provider.calls_to("eth_requestAccounts") == []
    await manager.stop()
    assert provider.listeners[ACCOUNTS_CHANGED] == []


def test_malformed_chain_id_is_ignored(provider: FakeProvider) -> None:
    asyncio.run(_test_malformed_chain_id_is_ignored(provider))


async def _test_malformed_chain_id_is_ignored(provider: FakeProvider) -> None:
    manager, session, _ = _build(provider)
    await manager.start()
    await manager.connect()

    await provider.emit(CHAIN_CHANGED, "not-hex")

    assert session.chain_id == ETHERLINK_MAINNET.chain_id
    await manager.stop()
