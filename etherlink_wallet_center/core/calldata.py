"""Raw call-data payloads for the ERC-20 functions the wallet uses."""

from __future__ import annotations

import re


BALANCE_OF_SELECTOR = "0x70a08231"
TRANSFER_SELECTOR = "0xa9059cbb"
APPROVE_SELECTOR = "0x095ea7b3"
DECIMALS_SELECTOR = "0x313ce567"

WORD_HEX_LENGTH = 64
MAX_UINT256 = (1 << 256) - 1

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
HEX_DIGITS_RE = re.compile(r"[0-9a-fA-F]*")


def is_address(value: object) -> bool:
    return isinstance(value, str) and ADDRESS_RE.fullmatch(value) is not None


def encode_uint_word(value: int) -> str:
    if value < 0 or value > MAX_UINT256:
        raise ValueError(f"{value} does not fit in a uint256 word")
    return format(value, "064x")


def encode_address_word(address: str) -> str:
    if not is_address(address):
        raise ValueError(f"'{address}' is not a 20-byte hex address")
    return address[2:].rjust(WORD_HEX_LENGTH, "0")


def decode_address_word(word: str) -> str:
    text = word[2:] if word.startswith("0x") else word
    if len(text) != WORD_HEX_LENGTH:
        raise ValueError("Address words are exactly 64 hex characters")
    if HEX_DIGITS_RE.fullmatch(text) is None:
        raise ValueError(f"'{word}' is not a hex word")
    if int(text[:24] or "0", 16) != 0:
        raise ValueError("Address word has non-zero high bytes")
    return "0x" + text[24:]


def decode_uint_word(result: str) -> int:
    """Interpret an ``eth_call`` result as one unsigned big-endian integer."""

    text = result[2:] if result[:2].lower() == "0x" else result
    if HEX_DIGITS_RE.fullmatch(text) is None:
        raise ValueError(f"'{result}' is not a hex quantity")
    if not text:
        return 0
    return int(text, 16)


def encode_balance_of(owner: str) -> str:
    return BALANCE_OF_SELECTOR + encode_address_word(owner)


def encode_transfer(recipient: str, amount_units: int) -> str:
    return TRANSFER_SELECTOR + encode_address_word(recipient) + encode_uint_word(amount_units)


def encode_approve(spender: str, amount_units: int | None = None) -> str:
    """Encode ``approve``; without an amount the max-approval word is used."""

    amount_word = "f" * WORD_HEX_LENGTH if amount_units is None else encode_uint_word(amount_units)
    return APPROVE_SELECTOR + encode_address_word(spender) + amount_word


def encode_decimals() -> str:
    return DECIMALS_SELECTOR
