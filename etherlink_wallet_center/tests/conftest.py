"""Test configuration for the Etherlink Wallet Center."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from etherlink_wallet_center.core.calldata import BALANCE_OF_SELECTOR, DECIMALS_SELECTOR
from etherlink_wallet_center.core.chains import ETHERLINK_MAINNET
from etherlink_wallet_center.core.errors import ProviderError
from etherlink_wallet_center.core.provider import WalletProvider


ACCOUNT = "0x1111111111111111111111111111111111111111"
OTHER_ACCOUNT = "0x2222222222222222222222222222222222222222"
RECIPIENT = "0xBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBB"


class FakeProvider(WalletProvider):
    """Scriptable in-memory provider recording every request."""

    def __init__(
        self,
        *,
        accounts: Sequence[str] = (ACCOUNT,),
        chain_id: int = ETHERLINK_MAINNET.chain_id,
        authorised: bool = False,
    ) -> None:
        self.accounts: List[str] = list(accounts)
        self.chain_id = chain_id
        self.authorised = authorised
        self.native_balances: Dict[str, str] = {}
        self.token_balances: Dict[Tuple[str, str], int] = {}
        self.decimals: Dict[str, Any] = {}
        self.receipts: Dict[str, Any] = {}
        self.errors: Dict[str, List[Exception]] = defaultdict(list)
        self.calls: List[Tuple[str, List[Any]]] = []
        self.listeners: Dict[str, List[Any]] = defaultdict(list)
        self._tx_counter = 0

    def fail(self, method: str, code: int, message: str = "boom") -> None:
        """Make the next call to ``method`` reject with ``code``."""

        self.errors[method].append(ProviderError(code, message))

    def raise_error(self, method: str, exc: Exception) -> None:
        """Make the next call to ``method`` raise ``exc`` as is."""

        self.errors[method].append(exc)

    def calls_to(self, method: str) -> List[List[Any]]:
        return [params for name, params in self.calls if name == method]

    async def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        params = list(params or [])
        self.calls.append((method, params))
        if self.errors.get(method):
            raise self.errors[method].pop(0)

        if method == "eth_requestAccounts":
            return list(self.accounts)
        if method == "eth_accounts":
            return list(self.accounts) if self.authorised else []
        if method == "eth_chainId":
            return hex(self.chain_id)
        if method == "eth_getBalance":
            return self.native_balances.get(params[0].lower(), "0x0")
        if method == "eth_call":
            call = params[0]
            data = call["data"]
            contract = call["to"].lower()
            if data.startswith(BALANCE_OF_SELECTOR):
                owner = "0x" + data[-40:]
                units = self.token_balances.get((contract, owner.lower()), 0)
                return "0x" + format(units, "064x")
            if data == DECIMALS_SELECTOR:
                value = self.decimals.get(contract)
                if value is None:
                    return "0x"
                if isinstance(value, str):
                    return value
                return "0x" + format(value, "064x")
            return "0x"
        if method == "eth_sendTransaction":
            self._tx_counter += 1
            return "0x" + format(self._tx_counter, "064x")
        if method == "eth_getTransactionReceipt":
            return self.receipts.get(params[0])
        if method in ("wallet_switchEthereumChain", "wallet_addEthereumChain"):
            return None
        raise ProviderError(4200, f"Unsupported method {method}")

    def on(self, event_name: str, handler) -> None:
        self.listeners[event_name].append(handler)

    def remove_listener(self, event_name: str, handler) -> None:
        if handler in self.listeners[event_name]:
            self.listeners[event_name].remove(handler)

    async def emit(self, event_name: str, *args: Any) -> None:
        for handler in list(self.listeners[event_name]):
            await handler(*args)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
