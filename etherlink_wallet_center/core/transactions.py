"""Assembly of ``eth_sendTransaction`` parameter objects."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from . import calldata
from .errors import InvalidInput
from .units import to_hex


NATIVE_TRANSFER_GAS = 21_000
TOKEN_TRANSFER_GAS = 90_000


@dataclass(frozen=True)
class TransactionParams:
    """Caller supplied fields of a raw transaction; ``from`` is the session's."""

    to: str
    value: Optional[str] = None
    data: Optional[str] = None
    gas: Optional[str] = None
    gas_price: Optional[str] = None

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any]) -> "TransactionParams":
        if "to" not in params:
            raise InvalidInput("Transaction parameters need a 'to' address")
        return cls(
            to=params["to"],
            value=params.get("value"),
            data=params.get("data"),
            gas=params.get("gas"),
            gas_price=params.get("gasPrice", params.get("gas_price")),
        )

    def to_rpc(self, sender: str) -> Dict[str, Any]:
        """Fill defaults and return the object sent to the provider."""

        if not calldata.is_address(self.to):
            raise InvalidInput(f"Invalid destination address '{self.to}'")
        tx: Dict[str, Any] = {
            "from": sender,
            "to": self.to,
            "value": self.value or "0x0",
            "data": self.data or "0x",
            "gas": self.gas or to_hex(NATIVE_TRANSFER_GAS),
        }
        if self.gas_price is not None:
            tx["gasPrice"] = self.gas_price
        return tx


def build_native_transfer(sender: str, recipient: str, amount_units: int) -> Dict[str, Any]:
    return {
        "to": recipient,
        "value": to_hex(amount_units),
        "from": sender,
        "gas": to_hex(NATIVE_TRANSFER_GAS),
    }


def build_token_transfer(
    sender: str,
    contract: str,
    recipient: str,
    amount_units: int,
) -> Dict[str, Any]:
    return {
        "to": contract,
        "data": calldata.encode_transfer(recipient, amount_units),
        "from": sender,
        "gas": to_hex(TOKEN_TRANSFER_GAS),
    }


def build_max_approval(sender: str, contract: str, spender: str) -> Dict[str, Any]:
    return {
        "to": contract,
        "data": calldata.encode_approve(spender),
        "from": sender,
    }
