import asyncio

import pytest

from conftest import ACCOUNT, RECIPIENT, FakeProvider
from etherlink_wallet_center.core.config import TRACKER_RECEIPT, SessionConfig
from etherlink_wallet_center.core.errors import InvalidInput, ProviderUnavailable, UserRejected
from etherlink_wallet_center.core.event_schemas import SESSION_CHANGED
from etherlink_wallet_center.core.transfer_orchestrator import ReceiptPoller, TransferStatus
from etherlink_wallet_center.core.wallet_session import WalletSession


FAST = SessionConfig(
    success_dwell=0,
    error_dwell=0,
    transfer_step=100,
    transfer_interval=0,
    approval_step=100,
    approval_interval=0,
)

USDT = "0xa0b86a33e6b8c6b6c6b6c6b6c6b6c6b6c6b6c6b6"


def test_connect_transfer_and_history(provider: FakeProvider) -> None:
    asyncio.run(_test_connect_transfer_and_history(provider))


async def _test_connect_transfer_and_history(provider: FakeProvider) -> None:
    provider.native_balances[ACCOUNT] = hex(15_750_000_000_000_000_000)
    wallet = WalletSession(provider, config=FAST)
    updates = wallet.subscribe(SESSION_CHANGED, subscriber_id="ui")
    await wallet.start()

    assert await wallet.connect() == ACCOUNT
    snapshot = wallet.snapshot()
    assert snapshot.status == "connected-target-chain"
    assert snapshot.native_balance == "15.750000"
    assert wallet.max_amount("XTZ") == "15.749000"
    assert not updates.empty()

    request = wallet.build_request("XTZ", "1.5", RECIPIENT, note="rent")
    assert not wallet.needs_approval(request)
    await wallet.transfer(request)
    await wallet.transfers.wait_settled()
    for _ in range(3):
        await asyncio.sleep(0)

    assert wallet.attempt.status is TransferStatus.IDLE
    assert wallet.registry.cached_balance("XTZ") == "14.250000"
    recorded = [
        entry["payload"]
        for entry in wallet.activity.transfer_history()
        if entry["event"] == "transfer_status"
    ]
    assert "success" in [payload["status"] for payload in recorded]
    requests = [payload["request"] for payload in recorded if payload["request"]]
    assert requests and all("note" not in request for request in requests)

    await wallet.disconnect()
    assert wallet.snapshot().status == "disconnected"
    assert wallet.registry.cached_balance("XTZ") is None
    wallet.unsubscribe(updates)
    await wallet.stop()


def test_balances_default_to_connected_account(provider: FakeProvider) -> None:
    asyncio.run(_test_balances_default_to_connected_account(provider))


async def _test_balances_default_to_connected_account(provider: FakeProvider) -> None:
    provider.token_balances[(USDT, ACCOUNT)] = 42_000_000
    wallet = WalletSession(provider, config=FAST)

    with pytest.raises(InvalidInput):
        await wallet.get_balance()

    await wallet.connect()
    assert await wallet.get_balance() == "0.000000"
    assert await wallet.get_token_balance(USDT) == "42.000000"
    assert await wallet.refresh_token("USDT") == "42.000000"
    assert wallet.max_amount("USDT") == "42.000000"
    assert {token["symbol"]: token["balance"] for token in wallet.tokens()}["USDT"] == "42.000000"


def test_send_transaction_uses_session_account(provider: FakeProvider) -> None:
    asyncio.run(_test_send_transaction_uses_session_account(provider))


async def _test_send_transaction_uses_session_account(provider: FakeProvider) -> None:
    wallet = WalletSession(provider, config=FAST)
    with pytest.raises(InvalidInput):
        await wallet.send_transaction({"to": RECIPIENT})

    await wallet.connect()
    tx_hash = await wallet.send_transaction({"to": RECIPIENT, "value": "0x1"})

    assert tx_hash.startswith("0x")
    assert provider.calls_to("eth_sendTransaction") == [
        [{"from": ACCOUNT, "to": RECIPIENT, "value": "0x1", "data": "0x", "gas": "0x5208"}]
    ]

    provider.fail("eth_sendTransaction", 4001)
    with pytest.raises(UserRejected):
        await wallet.send_transaction({"to": RECIPIENT})


def test_missing_provider_can_be_attached_later() -> None:
    asyncio.run(_test_missing_provider_can_be_attached_later())


async def _test_missing_provider_can_be_attached_later() -> None:
    wallet = WalletSession(None, config=FAST)
    await wallet.start()

    with pytest.raises(ProviderUnavailable):
        await wallet.connect()
    with pytest.raises(ProviderUnavailable):
        await wallet.send_transaction({"to": RECIPIENT})

    provider = FakeProvider(authorised=True)
    await wallet.set_provider(provider)
    await wallet.connection.wait_for_refreshes()

    assert wallet.snapshot().account == ACCOUNT
    await wallet.stop()


def test_receipt_tracker_is_configurable(provider: FakeProvider) -> None:
    wallet = WalletSession(provider, config=SessionConfig(tracker=TRACKER_RECEIPT))

    assert isinstance(wallet.transfers._transfer_tracker, ReceiptPoller)
