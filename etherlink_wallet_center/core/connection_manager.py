"""Connect, disconnect and chain switching against the wallet provider.

The manager is the only component that talks to the provider about accounts
and chains.  It owns the provider event bindings:

* ``accountsChanged`` with an empty list disconnects the session, a new
  primary account replaces the current one and refreshes its balance.
* ``chainChanged`` is the only writer of the session's chain id.  Switching
  chains through :meth:`ConnectionManager.switch_to_target_chain` merely asks
  the provider; the session changes once the provider reports it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional, Sequence

from .balance_service import BalanceService
from .chains import ChainDescriptor
from .errors import (
    UNRECOGNIZED_CHAIN_CODE,
    ChainAddFailed,
    ChainSwitchFailed,
    ProviderError,
    ProviderUnavailable,
    RequestPending,
    RpcError,
    UserRejected,
    classify_provider_error,
)
from .provider import ACCOUNTS_CHANGED, CHAIN_CHANGED, WalletProvider
from .session import SessionState
from .units import from_hex


LOGGER = logging.getLogger(__name__)


class ConnectionManager:
    """Drive the session through connect / switch / disconnect."""

    def __init__(
        self,
        provider: Optional[WalletProvider],
        session: SessionState,
        balances: BalanceService,
        chain: ChainDescriptor,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._provider = provider
        self._session = session
        self._balances = balances
        self._chain = chain
        self._loop = loop
        self._running = False
        self._connecting = False
        self._lock = asyncio.Lock()
        self._refresh_tasks: "set[asyncio.Task]" = set()

    @property
    def provider(self) -> Optional[WalletProvider]:
        return self._provider

    @property
    def chain(self) -> ChainDescriptor:
        return self._chain

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Bind provider events and restore an already authorised session."""

        async with self._lock:
            if self._running:
                LOGGER.debug("Connection manager already running")
                return
            self._running = True

            if self._provider is None:
                LOGGER.info("No wallet provider present, session stays disconnected")
                return

            self._bind(self._provider)

        await self.probe()
        LOGGER.info("Connection manager started")

    async def stop(self) -> None:
        async with self._lock:
            if not self._running:
                return
            self._running = False
            if self._provider is not None:
                self._unbind(self._provider)

        for task in list(self._refresh_tasks):
            task.cancel()
        await asyncio.gather(*self._refresh_tasks, return_exceptions=True)
        self._refresh_tasks.clear()
        LOGGER.info("Connection manager stopped")

    async def set_provider(self, provider: Optional[WalletProvider]) -> None:
        """Attach a provider at runtime, re-binding events if running."""

        if self._running and self._provider is not None:
            self._unbind(self._provider)
        self._provider = provider
        self._balances.set_provider(provider)
        if self._running and provider is not None:
            self._bind(provider)
            await self.probe()

    async def probe(self) -> None:
        """Pick up accounts the provider already exposes without prompting."""

        if self._provider is None:
            return
        try:
            accounts = await self._provider.request("eth_accounts", [])
            if not accounts:
                LOGGER.debug("Provider exposes no authorised accounts")
                return
            chain_hex = await self._provider.request("eth_chainId", [])
        except ProviderError as exc:
            LOGGER.warning("Session probe failed: %s", exc.message)
            return

        await self._session.mark_connected(accounts[0], from_hex(chain_hex))
        LOGGER.info("Restored session for %s", accounts[0])
        self._schedule_refresh()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def connect(self) -> str:
        """Ask the provider for accounts and mark the session connected."""

        provider = self._require_provider()
        if self._connecting:
            raise RequestPending("A connection request is already in progress")

        self._connecting = True
        try:
            accounts = await provider.request("eth_requestAccounts", [])
            chain_hex = await provider.request("eth_chainId", [])
        except ProviderError as exc:
            error = classify_provider_error(exc, RpcError, "Failed to connect wallet")
            LOGGER.warning("Wallet connection failed: %s", error.message)
            raise error from exc
        finally:
            self._connecting = False

        if not accounts:
            raise UserRejected("The wallet did not expose any account")

        account = accounts[0]
        await self._session.mark_connected(account, from_hex(chain_hex))
        LOGGER.info(
            "Wallet connected: %s on chain %s (%s)",
            account,
            self._session.chain_id,
            self._session.status.value,
        )
        await self.refresh_native_balance()
        return account

    async def disconnect(self) -> None:
        """Forget the session locally; provider permissions stay as they are."""

        await self._session.reset()
        self._balances.registry.clear_balances()
        LOGGER.info("Wallet disconnected")

    async def switch_to_target_chain(self) -> None:
        provider = self._require_provider()
        try:
            await provider.request(
                "wallet_switchEthereumChain", [{"chainId": self._chain.chain_id_hex}]
            )
        except ProviderError as exc:
            if exc.code != UNRECOGNIZED_CHAIN_CODE:
                error = classify_provider_error(
                    exc, ChainSwitchFailed, f"Failed to switch to {self._chain.chain_name}"
                )
                LOGGER.warning("Chain switch failed: %s", exc.message)
                raise error from exc

            LOGGER.info("%s unknown to the wallet, adding it", self._chain.chain_name)
            await self._add_target_chain(provider)
            return

        LOGGER.info("Requested switch to %s", self._chain.chain_name)

    async def refresh_native_balance(self) -> Optional[str]:
        """Best-effort native balance refresh for the connected account."""

        account = self._session.account
        if not self._session.connected or account is None:
            return None
        try:
            balance = await self._balances.get_native_balance(account)
        except (RpcError, ProviderUnavailable) as exc:
            LOGGER.warning("Failed to refresh balance of %s: %s", account, exc)
            return None

        if not await self._session.set_native_balance(account, balance):
            return None
        native = self._balances.registry.native()
        if native is not None:
            self._balances.registry.set_cached_balance(native.symbol, balance)
        return balance

    # ------------------------------------------------------------------
    # Provider events
    # ------------------------------------------------------------------
    async def _on_accounts_changed(self, accounts: Sequence[str]) -> None:
        if not accounts:
            LOGGER.info("Provider reported no accounts, disconnecting")
            await self.disconnect()
            return

        if not self._session.connected:
            LOGGER.debug("Account change while disconnected ignored")
            return

        previous = self._session.account
        await self._session.set_account(accounts[0])
        if accounts[0] != previous:
            LOGGER.info("Active account changed to %s", accounts[0])
            self._balances.registry.clear_balances()
        self._schedule_refresh()

    async def _on_chain_changed(self, chain_hex: str) -> None:
        try:
            chain_id = from_hex(chain_hex)
        except ValueError:
            LOGGER.warning("Ignoring malformed chain id %r", chain_hex)
            return

        await self._session.set_chain_id(chain_id)
        LOGGER.info("Chain changed to %s (%s)", chain_id, self._session.status.value)
        if self._session.connected and self._session.on_target_chain:
            self._schedule_refresh()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _add_target_chain(self, provider: WalletProvider) -> None:
        try:
            await provider.request("wallet_addEthereumChain", [self._chain.to_params()])
        except ProviderError as exc:
            error = classify_provider_error(
                exc, ChainAddFailed, f"Failed to add {self._chain.chain_name}"
            )
            LOGGER.warning("Adding %s failed: %s", self._chain.chain_name, exc.message)
            raise error from exc

    def _require_provider(self) -> WalletProvider:
        if self._provider is None:
            raise ProviderUnavailable("No wallet provider found, install a wallet to continue")
        return self._provider

    def _bind(self, provider: WalletProvider) -> None:
        provider.on(ACCOUNTS_CHANGED, self._on_accounts_changed)
        provider.on(CHAIN_CHANGED, self._on_chain_changed)

    def _unbind(self, provider: WalletProvider) -> None:
        provider.remove_listener(ACCOUNTS_CHANGED, self._on_accounts_changed)
        provider.remove_listener(CHAIN_CHANGED, self._on_chain_changed)

    def _schedule_refresh(self) -> None:
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(self.refresh_native_balance())
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def wait_for_refreshes(self) -> List[Any]:
        """Wait for background balance refreshes currently in flight."""

        return await asyncio.gather(*list(self._refresh_tasks), return_exceptions=True)
