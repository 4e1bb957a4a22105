"""Transfer lifecycle: validation, submission and status tracking.

Status moves ``idle -> approving -> idle`` for token approvals and
``idle -> transferring -> success | error`` for transfers.  ``success`` and
``error`` fall back to ``idle`` after a dwell time (5 s / 3 s by default);
``error`` can also be left early with :meth:`TransferOrchestrator.retry`.

Only the orchestrator mutates the :class:`TransferAttempt`.  Every change is
published as a ``transfer_status`` event so observers never poll.

Progress after submission comes from a :class:`ProgressTracker`.  The default
:class:`SimulatedProgress` is a fixed-cadence ramp that says nothing about
on-chain confirmation; the transaction hash is the only real evidence of
submission.  :class:`ReceiptPoller` waits for an actual receipt instead.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from itertools import count
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from . import calldata
from .balance_service import BalanceService
from .chains import ChainDescriptor
from .errors import (
    ErrorKind,
    InsufficientBalance,
    InvalidInput,
    ProviderError,
    ProviderUnavailable,
    TransferBusy,
    TransferFailed,
    WalletError,
    classify_provider_error,
)
from .event_dispatcher import EventDispatcher
from .event_schemas import (
    BALANCE_INVALIDATED,
    TRANSFER_NOTICE,
    TRANSFER_STATUS,
    BalanceInvalidated,
    TransferNotice,
)
from .provider import WalletProvider
from .session import SessionState
from .tokens import Token
from .transactions import build_max_approval, build_native_transfer, build_token_transfer
from .units import parse_amount, to_units


LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]


class TransferStatus(str, Enum):
    IDLE = "idle"
    APPROVING = "approving"
    TRANSFERRING = "transferring"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class TransferRequest:
    token: Token
    amount: str
    recipient: str
    note: str = ""

    def to_payload(self) -> Dict[str, Any]:
        # The note is local-only and never serialised.
        return {"token": self.token.symbol, "amount": self.amount, "recipient": self.recipient}


@dataclass
class TransferAttempt:
    attempt_id: int = 0
    status: TransferStatus = TransferStatus.IDLE
    progress: int = 0
    tx_hash: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    request: Optional[TransferRequest] = None
    explorer_url: Optional[str] = field(default=None, compare=False)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "status": self.status.value,
            "progress": self.progress,
            "tx_hash": self.tx_hash,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "request": self.request.to_payload() if self.request else None,
            "explorer_url": self.explorer_url,
        }


# ----------------------------------------------------------------------
# Progress trackers
# ----------------------------------------------------------------------
class ProgressTracker:
    """Produces progress percentages for a submitted transaction."""

    async def track(
        self,
        provider: WalletProvider,
        tx_hash: str,
        on_progress: ProgressCallback,
    ) -> None:
        raise NotImplementedError


class SimulatedProgress(ProgressTracker):
    """Fixed increments on a fixed cadence until 100 %."""

    def __init__(self, *, step: int, interval: float) -> None:
        if not 0 < step <= 100:
            raise ValueError("step must be within 1..100")
        self._step = step
        self._interval = interval

    async def track(self, provider, tx_hash, on_progress) -> None:
        progress = 0
        while progress < 100:
            await asyncio.sleep(self._interval)
            progress = min(100, progress + self._step)
            await on_progress(progress)


class ReceiptPoller(ProgressTracker):
    """Poll ``eth_getTransactionReceipt`` until the transaction is mined."""

    def __init__(self, *, interval: float = 2.0, max_polls: int = 90) -> None:
        self._interval = interval
        self._max_polls = max_polls

    async def track(self, provider, tx_hash, on_progress) -> None:
        for poll in range(1, self._max_polls + 1):
            try:
                receipt = await provider.request("eth_getTransactionReceipt", [tx_hash])
            except ProviderError as exc:
                raise TransferFailed(f"Receipt lookup failed: {exc.message}", cause=exc) from exc

            if receipt:
                if receipt.get("status") == "0x0":
                    raise TransferFailed(f"Transaction {tx_hash} reverted")
                await on_progress(100)
                return

            # Never report completion without a receipt.
            await on_progress(min(90, poll * 90 // self._max_polls))
            await asyncio.sleep(self._interval)

        raise TransferFailed(f"No receipt for {tx_hash} after {self._max_polls} polls")


# ----------------------------------------------------------------------
# Orchestrator
# ----------------------------------------------------------------------
class TransferOrchestrator:
    def __init__(
        self,
        provider: Optional[WalletProvider],
        session: SessionState,
        balances: BalanceService,
        chain: ChainDescriptor,
        *,
        dispatcher: Optional[EventDispatcher] = None,
        transfer_tracker: Optional[ProgressTracker] = None,
        approval_tracker: Optional[ProgressTracker] = None,
        success_dwell: float = 5.0,
        error_dwell: float = 3.0,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._provider = provider
        self._session = session
        self._balances = balances
        self._chain = chain
        self._dispatcher = dispatcher
        self._transfer_tracker = transfer_tracker or SimulatedProgress(step=20, interval=0.3)
        self._approval_tracker = approval_tracker or SimulatedProgress(step=25, interval=0.5)
        self._success_dwell = success_dwell
        self._error_dwell = error_dwell
        self._loop = loop
        self._ids = count(1)
        self._attempt = TransferAttempt()
        self._approved: Set[Tuple[str, str]] = set()
        self._progress_task: Optional[asyncio.Task] = None
        self._dwell_task: Optional[asyncio.Task] = None

    def set_provider(self, provider: Optional[WalletProvider]) -> None:
        self._provider = provider

    @property
    def attempt(self) -> TransferAttempt:
        """Copy of the current attempt; mutate it only through the orchestrator."""

        return replace(self._attempt)

    @property
    def status(self) -> TransferStatus:
        return self._attempt.status

    def explorer_tx_url(self, tx_hash: str) -> Optional[str]:
        return self._chain.tx_url(tx_hash)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def needs_approval(self, request: TransferRequest) -> bool:
        """Whether the UI must offer an approval step before transferring."""

        if request.token.is_native or not calldata.is_address(request.recipient):
            return False
        try:
            if parse_amount(request.amount) <= 0:
                return False
        except InvalidInput:
            return False
        return (request.token.address.lower(), request.recipient.lower()) not in self._approved

    async def validate(self, request: TransferRequest) -> int:
        """Check ``request`` and return the amount in token units."""

        self._require_idle()
        self._require_session()
        if not calldata.is_address(request.recipient):
            raise InvalidInput(f"Invalid recipient address '{request.recipient}'")

        amount = parse_amount(request.amount)
        if amount <= 0:
            raise InvalidInput("Amount must be greater than zero")

        known = self._known_balance(request.token)
        if known is not None and amount > parse_amount(known):
            raise InsufficientBalance(
                f"Insufficient balance - available {known} {request.token.symbol}"
            )

        decimals = await self._decimals(request.token)
        return to_units(request.amount, decimals)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def approve(self, request: TransferRequest) -> str:
        """Grant the max allowance of ``request.token`` to the recipient."""

        self._require_idle()
        token = request.token
        if token.is_native:
            raise InvalidInput("The native asset does not need an approval")
        if not calldata.is_address(request.recipient):
            raise InvalidInput(f"Invalid spender address '{request.recipient}'")
        sender = self._require_session()
        provider = self._require_provider()

        attempt_id = await self._begin(TransferStatus.APPROVING, request)
        tx = build_max_approval(sender, token.address, request.recipient)
        LOGGER.info("Requesting %s approval for %s", token.symbol, request.recipient)
        tx_hash = await self._submit(attempt_id, provider, tx)

        self._progress_task = self._create_task(
            self._finish_approval(attempt_id, provider, tx_hash, request)
        )
        return tx_hash

    async def transfer(self, request: TransferRequest) -> str:
        """Validate, submit and track ``request``; returns the transaction hash."""

        units = await self.validate(request)
        provider = self._require_provider()
        sender = self._session.account
        assert sender is not None

        token = request.token
        if token.is_native:
            tx = build_native_transfer(sender, request.recipient, units)
        else:
            tx = build_token_transfer(sender, token.address, request.recipient, units)

        # Decimals lookup may have yielded to another transfer.
        self._require_idle()
        attempt_id = await self._begin(TransferStatus.TRANSFERRING, request)
        LOGGER.info(
            "Submitting transfer of %s %s (%d units) to %s",
            request.amount,
            token.symbol,
            units,
            request.recipient,
        )
        tx_hash = await self._submit(attempt_id, provider, tx)

        self._progress_task = self._create_task(
            self._finish_transfer(attempt_id, provider, tx_hash, request)
        )
        return tx_hash

    async def retry(self) -> None:
        """Leave the ``error`` state immediately."""

        if self._attempt.status is not TransferStatus.ERROR:
            return
        if self._dwell_task is not None:
            self._dwell_task.cancel()
            self._dwell_task = None
        await self._reset(self._attempt.attempt_id)

    async def wait_settled(self) -> None:
        """Wait until running progress and dwell timers have finished."""

        if self._progress_task is not None:
            await asyncio.gather(self._progress_task, return_exceptions=True)
        if self._dwell_task is not None and not self._dwell_task.done():
            await asyncio.gather(self._dwell_task, return_exceptions=True)

    async def shutdown(self) -> None:
        for task in (self._progress_task, self._dwell_task):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(
            *(task for task in (self._progress_task, self._dwell_task) if task is not None),
            return_exceptions=True,
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    async def _begin(self, status: TransferStatus, request: TransferRequest) -> int:
        if self._dwell_task is not None:
            self._dwell_task.cancel()
            self._dwell_task = None
        attempt_id = next(self._ids)
        self._attempt = TransferAttempt(attempt_id=attempt_id, status=status, request=request)
        await self._publish_status()
        return attempt_id

    async def _submit(self, attempt_id: int, provider: WalletProvider, tx: Dict[str, Any]) -> str:
        try:
            tx_hash = await provider.request("eth_sendTransaction", [tx])
        except ProviderError as exc:
            error = classify_provider_error(exc, TransferFailed)
            await self._fail(attempt_id, error)
            raise error from exc
        except WalletError as exc:
            await self._fail(attempt_id, exc)
            raise
        except Exception as exc:
            LOGGER.exception("Submitting transaction failed")
            error = TransferFailed(str(exc) or type(exc).__name__)
            await self._fail(attempt_id, error)
            raise error from exc

        if self._is_current(attempt_id):
            self._attempt.tx_hash = tx_hash
            self._attempt.explorer_url = self.explorer_tx_url(tx_hash)
            await self._publish_status()
        LOGGER.info("Provider accepted transaction %s", tx_hash)
        return tx_hash

    async def _finish_approval(
        self,
        attempt_id: int,
        provider: WalletProvider,
        tx_hash: str,
        request: TransferRequest,
    ) -> None:
        try:
            await self._approval_tracker.track(
                provider, tx_hash, lambda pct: self._set_progress(attempt_id, pct)
            )
        except WalletError as exc:
            await self._fail(attempt_id, exc)
            return
        except Exception as exc:
            LOGGER.exception("Tracking %s failed", tx_hash)
            await self._fail(attempt_id, TransferFailed(str(exc) or type(exc).__name__))
            return

        if not self._is_current(attempt_id):
            return
        self._approved.add((request.token.address.lower(), request.recipient.lower()))
        await self._reset(attempt_id)
        await self._notify(
            TransferNotice(
                kind="approval_succeeded",
                symbol=request.token.symbol,
                message=f"{request.token.symbol} spending approved",
                tx_hash=tx_hash,
                explorer_url=self.explorer_tx_url(tx_hash),
            )
        )

    async def _finish_transfer(
        self,
        attempt_id: int,
        provider: WalletProvider,
        tx_hash: str,
        request: TransferRequest,
    ) -> None:
        try:
            await self._transfer_tracker.track(
                provider, tx_hash, lambda pct: self._set_progress(attempt_id, pct)
            )
        except WalletError as exc:
            await self._fail(attempt_id, exc)
            return
        except Exception as exc:
            LOGGER.exception("Tracking %s failed", tx_hash)
            await self._fail(attempt_id, TransferFailed(str(exc) or type(exc).__name__))
            return

        if not self._is_current(attempt_id):
            return
        self._attempt.status = TransferStatus.SUCCESS
        self._attempt.progress = 100
        await self._publish_status()
        LOGGER.info("Transfer %s completed", tx_hash)

        if self._dispatcher is not None:
            await self._dispatcher.emit(
                BALANCE_INVALIDATED,
                BalanceInvalidated(
                    symbol=request.token.symbol,
                    address=self._session.account,
                    debit=request.amount,
                    tx_hash=tx_hash,
                ).to_payload(),
            )
        recipient = request.recipient
        await self._notify(
            TransferNotice(
                kind="transfer_succeeded",
                symbol=request.token.symbol,
                message=f"Sent {request.amount} {request.token.symbol} to {recipient[:6]}...{recipient[-4:]}",
                tx_hash=tx_hash,
                explorer_url=self.explorer_tx_url(tx_hash),
            )
        )
        self._schedule_reset(attempt_id, self._success_dwell)

    async def _set_progress(self, attempt_id: int, progress: int) -> None:
        if not self._is_current(attempt_id):
            return
        self._attempt.progress = max(0, min(100, progress))
        await self._publish_status()

    async def _fail(self, attempt_id: int, error: WalletError) -> None:
        if not self._is_current(attempt_id):
            return
        self._attempt.status = TransferStatus.ERROR
        self._attempt.error_kind = error.kind
        self._attempt.error_message = error.message
        await self._publish_status()
        LOGGER.warning("Transfer attempt %d failed: %s", attempt_id, error.message)
        self._schedule_reset(attempt_id, self._error_dwell)

    def _schedule_reset(self, attempt_id: int, delay: float) -> None:
        async def _dwell() -> None:
            await asyncio.sleep(delay)
            await self._reset(attempt_id)

        self._dwell_task = self._create_task(_dwell())

    async def _reset(self, attempt_id: int) -> None:
        if not self._is_current(attempt_id):
            return
        self._attempt = TransferAttempt(attempt_id=attempt_id)
        await self._publish_status()

    def _is_current(self, attempt_id: int) -> bool:
        return self._attempt.attempt_id == attempt_id

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_idle(self) -> None:
        if self._attempt.status is not TransferStatus.IDLE:
            raise TransferBusy(f"Cannot start while {self._attempt.status.value}")

    def _require_session(self) -> str:
        if not self._session.connected or self._session.account is None:
            raise InvalidInput("Connect a wallet first")
        if not self._session.on_target_chain:
            raise InvalidInput(f"Switch to {self._chain.chain_name} first")
        return self._session.account

    def _require_provider(self) -> WalletProvider:
        if self._provider is None:
            raise ProviderUnavailable("No wallet provider is available")
        return self._provider

    async def _decimals(self, token: Token) -> int:
        if token.decimals is not None:
            return token.decimals
        return await self._balances.resolve_decimals(token.address)

    def _known_balance(self, token: Token) -> Optional[str]:
        cached = self._balances.registry.cached_balance(token.symbol)
        if cached is None and token.is_native:
            cached = self._session.native_balance
        return cached

    def _create_task(self, coro: Awaitable[Any]) -> asyncio.Task:
        loop = self._loop or asyncio.get_running_loop()
        return loop.create_task(coro)

    async def _publish_status(self) -> None:
        if self._dispatcher is not None:
            await self._dispatcher.emit(TRANSFER_STATUS, self._attempt.to_payload())

    async def _notify(self, notice: TransferNotice) -> None:
        if self._dispatcher is not None:
            await self._dispatcher.emit(TRANSFER_NOTICE, notice.to_payload())

