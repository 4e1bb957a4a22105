"""The wallet session as seen by the presentation layer.

:class:`WalletSession` wires the session state, connection manager, balance
service and transfer orchestrator around one provider and one event
dispatcher.  UI code holds a reference to it, reads snapshots and subscribes
to change notifications instead of sharing any global state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from .activity_store import ActivityStore
from .balance_service import BalanceService
from .config import TRACKER_RECEIPT, SessionConfig
from .connection_manager import ConnectionManager
from .errors import InvalidInput, ProviderError, ProviderUnavailable, TransferFailed, classify_provider_error
from .event_dispatcher import EventDispatcher
from .event_schemas import SessionSnapshot
from .provider import WalletProvider
from .session import SessionState
from .tokens import TokenRegistry, default_registry
from .transactions import TransactionParams
from .transfer_orchestrator import (
    ProgressTracker,
    ReceiptPoller,
    SimulatedProgress,
    TransferAttempt,
    TransferOrchestrator,
    TransferRequest,
)
from .units import max_sendable


LOGGER = logging.getLogger(__name__)


class WalletSession:
    def __init__(
        self,
        provider: Optional[WalletProvider],
        *,
        config: Optional[SessionConfig] = None,
        registry: Optional[TokenRegistry] = None,
        dispatcher: Optional[EventDispatcher] = None,
        activity: Optional[ActivityStore] = None,
    ) -> None:
        self._config = config or SessionConfig()
        self._provider = provider
        self.dispatcher = dispatcher or EventDispatcher()
        self.registry = registry or default_registry()
        self.activity = activity or ActivityStore()

        chain = self._config.chain
        self.state = SessionState(chain.chain_id, publish=self.dispatcher.publisher())
        self.balances = BalanceService(
            provider,
            self.registry,
            dispatcher=self.dispatcher,
            refetch_on_invalidate=self._config.refetch_on_invalidate,
        )
        self.connection = ConnectionManager(provider, self.state, self.balances, chain)
        self.transfers = TransferOrchestrator(
            provider,
            self.state,
            self.balances,
            chain,
            dispatcher=self.dispatcher,
            transfer_tracker=self._build_tracker(
                self._config.transfer_step, self._config.transfer_interval
            ),
            approval_tracker=SimulatedProgress(
                step=self._config.approval_step, interval=self._config.approval_interval
            ),
            success_dwell=self._config.success_dwell,
            error_dwell=self._config.error_dwell,
        )
        self._started = False

    @property
    def config(self) -> SessionConfig:
        return self._config

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.activity.attach(self.dispatcher)
        await self.balances.start()
        await self.connection.start()

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.transfers.shutdown()
        await self.connection.stop()
        await self.balances.stop()
        await self.activity.detach()

    async def set_provider(self, provider: Optional[WalletProvider]) -> None:
        self._provider = provider
        self.transfers.set_provider(provider)
        await self.connection.set_provider(provider)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    def snapshot(self) -> SessionSnapshot:
        return self.state.snapshot()

    @property
    def attempt(self) -> TransferAttempt:
        return self.transfers.attempt

    def subscribe(self, event_name: str = "*", *, subscriber_id: str = "ui") -> asyncio.Queue:
        return self.dispatcher.subscribe(event_name, subscriber_id=subscriber_id)

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self.dispatcher.unsubscribe(queue)

    def tokens(self) -> List[Dict[str, object]]:
        return self.registry.snapshot()

    def max_amount(self, symbol: str) -> Optional[str]:
        """Largest sendable amount of ``symbol`` given its cached balance."""

        token = self.registry.get(symbol)
        balance = self.registry.cached_balance(symbol)
        if balance is None and token.is_native:
            balance = self.state.native_balance
        if balance is None:
            return None
        return max_sendable(balance, is_native=token.is_native)

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------
    async def connect(self) -> str:
        return await self.connection.connect()

    async def disconnect(self) -> None:
        await self.connection.disconnect()

    async def switch_to_target_chain(self) -> None:
        await self.connection.switch_to_target_chain()

    async def get_balance(self, address: Optional[str] = None) -> str:
        target = self._resolve_address(address)
        return await self.balances.get_native_balance(target)

    async def get_token_balance(self, contract: str, address: Optional[str] = None) -> str:
        target = self._resolve_address(address)
        return await self.balances.get_token_balance(contract, target)

    async def refresh_token(self, symbol: str) -> str:
        token = self.registry.get(symbol)
        return await self.balances.refresh_token(token, self._resolve_address(None))

    async def send_transaction(self, params: Union[TransactionParams, Mapping[str, Any]]) -> str:
        """Submit a raw transaction from the connected account."""

        if self._provider is None:
            raise ProviderUnavailable("No wallet provider is available")
        if not self.state.connected or self.state.account is None:
            raise InvalidInput("No wallet connected")
        if not isinstance(params, TransactionParams):
            params = TransactionParams.from_mapping(params)

        tx = params.to_rpc(self.state.account)
        try:
            tx_hash = await self._provider.request("eth_sendTransaction", [tx])
        except ProviderError as exc:
            raise classify_provider_error(exc, TransferFailed) from exc
        LOGGER.info("Transaction %s submitted", tx_hash)
        return tx_hash

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------
    def build_request(self, symbol: str, amount: str, recipient: str, note: str = "") -> TransferRequest:
        return TransferRequest(
            token=self.registry.get(symbol), amount=amount, recipient=recipient, note=note
        )

    def needs_approval(self, request: TransferRequest) -> bool:
        return self.transfers.needs_approval(request)

    async def approve(self, request: TransferRequest) -> str:
        return await self.transfers.approve(request)

    async def transfer(self, request: TransferRequest) -> str:
        return await self.transfers.transfer(request)

    async def retry(self) -> None:
        await self.transfers.retry()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _resolve_address(self, address: Optional[str]) -> str:
        target = address or self.state.account
        if not target:
            raise InvalidInput("No address provided")
        return target

    def _build_tracker(self, step: int, interval: float) -> ProgressTracker:
        if self._config.tracker == TRACKER_RECEIPT:
            return ReceiptPoller(
                interval=self._config.receipt_interval,
                max_polls=self._config.receipt_max_polls,
            )
        return SimulatedProgress(step=step, interval=interval)
