"""Canonical payloads published through the event dispatcher.

Subscribers (the WebSocket bridge, the activity store, the balance service)
only ever see plain ``dict`` payloads.  The dataclasses below keep the shape of
those payloads in one place and expose ``to_payload`` helpers that collapse
into JSON-ready dictionaries.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


SESSION_CHANGED = "session_changed"
BALANCE_UPDATED = "balance_updated"
BALANCE_INVALIDATED = "balance_invalidated"
TRANSFER_STATUS = "transfer_status"
TRANSFER_NOTICE = "transfer_notice"


@dataclass(slots=True)
class SessionSnapshot:
    """Read-only copy of the session handed to observers."""

    status: str
    account: Optional[str]
    chain_id: Optional[int]
    connected: bool
    native_balance: Optional[str]
    on_target_chain: bool

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class BalanceUpdated:
    address: str
    symbol: str
    balance: str
    contract: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True)
class BalanceInvalidated:
    """Signal that a cached balance is stale after a completed transfer."""

    symbol: str
    address: Optional[str]
    debit: str
    tx_hash: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class TransferNotice:
    kind: str
    symbol: str
    message: str
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {"kind": self.kind, "symbol": self.symbol, "message": self.message}
        if self.tx_hash is not None:
            payload["tx_hash"] = self.tx_hash
        if self.explorer_url is not None:
            payload["explorer_url"] = self.explorer_url
        return payload

