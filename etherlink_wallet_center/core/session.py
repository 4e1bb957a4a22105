"""Single-owner session state published to observers on every change."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .event_dispatcher import EventPublisher
from .event_schemas import SESSION_CHANGED, SessionSnapshot


LOGGER = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED_WRONG_CHAIN = "connected-wrong-chain"
    CONNECTED_TARGET_CHAIN = "connected-target-chain"


@dataclass
class _SessionFields:
    account: Optional[str] = None
    chain_id: Optional[int] = None
    connected: bool = False
    native_balance: Optional[str] = None


class SessionState:
    """Account, chain and native balance of the connected wallet.

    Writers are the connection manager and the provider event handlers it
    installs.  Every write publishes a ``session_changed`` snapshot; readers get
    copies through :meth:`snapshot` and never the mutable fields.  While
    disconnected, ``account`` and ``native_balance`` are always ``None``.
    """

    def __init__(self, target_chain_id: int, *, publish: Optional[EventPublisher] = None) -> None:
        self._target_chain_id = target_chain_id
        self._fields = _SessionFields()
        self._publish = publish

    @property
    def account(self) -> Optional[str]:
        return self._fields.account

    @property
    def chain_id(self) -> Optional[int]:
        return self._fields.chain_id

    @property
    def connected(self) -> bool:
        return self._fields.connected

    @property
    def native_balance(self) -> Optional[str]:
        return self._fields.native_balance

    @property
    def target_chain_id(self) -> int:
        return self._target_chain_id

    @property
    def on_target_chain(self) -> bool:
        return self._fields.chain_id == self._target_chain_id

    @property
    def status(self) -> SessionStatus:
        if not self._fields.connected:
            return SessionStatus.DISCONNECTED
        if self.on_target_chain:
            return SessionStatus.CONNECTED_TARGET_CHAIN
        return SessionStatus.CONNECTED_WRONG_CHAIN

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            status=self.status.value,
            account=self._fields.account,
            chain_id=self._fields.chain_id,
            connected=self._fields.connected,
            native_balance=self._fields.native_balance,
            on_target_chain=self.on_target_chain,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def mark_connected(self, account: str, chain_id: Optional[int]) -> None:
        self._fields.account = account
        self._fields.chain_id = chain_id
        self._fields.connected = True
        self._fields.native_balance = None
        await self._notify()

    async def set_account(self, account: str) -> None:
        if not self._fields.connected:
            LOGGER.debug("Ignoring account change while disconnected")
            return
        if account == self._fields.account:
            return
        self._fields.account = account
        self._fields.native_balance = None
        await self._notify()

    async def set_chain_id(self, chain_id: int) -> None:
        if chain_id == self._fields.chain_id:
            return
        self._fields.chain_id = chain_id
        await self._notify()

    async def set_native_balance(self, account: str, balance: str) -> bool:
        """Store ``balance`` if ``account`` is still the connected account."""

        if not self._fields.connected or account != self._fields.account:
            LOGGER.debug("Discarding balance for %s, session moved on", account)
            return False
        self._fields.native_balance = balance
        await self._notify()
        return True

    async def reset(self) -> None:
        self._fields = _SessionFields()
        await self._notify()

    async def _notify(self) -> None:
        if self._publish is not None:
            await self._publish(SESSION_CHANGED, self.snapshot().to_payload())
