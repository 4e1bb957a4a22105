"""Error taxonomy shared by the session, balance and transfer services.

Every failure surfaced by the core is a :class:`WalletError` subclass carrying
an :class:`ErrorKind`.  The kind is what ends up in observable state (for
example :attr:`TransferAttempt.error_kind`) while the exception itself is
raised to the caller.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Type


USER_REJECTED_CODE = 4001
UNSUPPORTED_METHOD_CODE = 4200
UNRECOGNIZED_CHAIN_CODE = 4902
REQUEST_PENDING_CODE = -32002


class ErrorKind(str, Enum):
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    USER_REJECTED = "UserRejected"
    REQUEST_PENDING = "RequestPending"
    CHAIN_ADD_FAILED = "ChainAddFailed"
    CHAIN_SWITCH_FAILED = "ChainSwitchFailed"
    INVALID_INPUT = "InvalidInput"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    RPC_ERROR = "RpcError"
    TRANSFER_FAILED = "TransferFailed"


class ProviderError(Exception):
    """Raw error object rejected by a wallet provider."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def __repr__(self) -> str:
        return f"ProviderError(code={self.code!r}, message={self.message!r})"


class WalletError(RuntimeError):
    """Base class for failures raised by the wallet core."""

    kind: ErrorKind = ErrorKind.TRANSFER_FAILED

    def __init__(self, message: str, *, cause: Optional[ProviderError] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    @property
    def provider_code(self) -> Optional[int]:
        return self.cause.code if self.cause is not None else None

    def to_payload(self) -> dict:
        payload = {"kind": self.kind.value, "message": self.message}
        if self.cause is not None:
            payload["code"] = self.cause.code
        return payload


class ProviderUnavailable(WalletError):
    """No wallet provider is attached to the session."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE


class UserRejected(WalletError):
    kind = ErrorKind.USER_REJECTED


class RequestPending(WalletError):
    """A previous request is still waiting for the user in the provider."""

    kind = ErrorKind.REQUEST_PENDING


class ChainAddFailed(WalletError):
    kind = ErrorKind.CHAIN_ADD_FAILED


class ChainSwitchFailed(WalletError):
    kind = ErrorKind.CHAIN_SWITCH_FAILED


class InvalidInput(WalletError):
    """Local validation failed; no provider call was made."""

    kind = ErrorKind.INVALID_INPUT


class InvalidAmount(InvalidInput):
    pass


class TransferBusy(InvalidInput):
    """An approval or transfer is already running."""


class InsufficientBalance(WalletError):
    kind = ErrorKind.INSUFFICIENT_BALANCE


class RpcError(WalletError):
    """The provider answered but the call itself failed."""

    kind = ErrorKind.RPC_ERROR


class TokenDecimalsUnavailable(RpcError):
    pass


class TransferFailed(WalletError):
    kind = ErrorKind.TRANSFER_FAILED


def classify_provider_error(
    exc: ProviderError,
    default: Type[WalletError],
    message: Optional[str] = None,
) -> WalletError:
    """Map a provider rejection onto the wallet error taxonomy.

    Rejections and pending requests are recognised by their provider code;
    everything else becomes ``default`` carrying the provider's message.
    """

    if exc.code == USER_REJECTED_CODE:
        return UserRejected(message or "User rejected the request", cause=exc)
    if exc.code == REQUEST_PENDING_CODE:
        return RequestPending(
            "A request is already pending, check the wallet provider", cause=exc
        )
    return default(message or exc.message, cause=exc)
