"""Token definitions and the registry holding their cached balances."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional

from .units import NATIVE_DECIMALS, parse_amount


NATIVE_SENTINEL = "native"


@dataclass(frozen=True)
class Token:
    symbol: str
    display_name: str
    address: str
    decimals: Optional[int] = None
    unit_price: Optional[Decimal] = None
    logo_url: Optional[str] = None

    def __post_init__(self) -> None:
        if self.is_native and self.decimals != NATIVE_DECIMALS:
            object.__setattr__(self, "decimals", NATIVE_DECIMALS)
        if self.decimals is not None and self.decimals < 0:
            raise ValueError("Token decimals must be >= 0")

    @property
    def is_native(self) -> bool:
        return self.address == NATIVE_SENTINEL

    @property
    def contract(self) -> Optional[str]:
        return None if self.is_native else self.address

    def value_of(self, amount: str) -> Optional[Decimal]:
        """Indicative fiat value of ``amount`` at the static unit price."""

        if self.unit_price is None:
            return None
        return parse_amount(amount) * self.unit_price

    def to_payload(self) -> Dict[str, object]:
        return {
            "symbol": self.symbol,
            "name": self.display_name,
            "address": self.address,
            "decimals": self.decimals,
            "price": str(self.unit_price) if self.unit_price is not None else None,
            "logo_url": self.logo_url,
        }


class TokenRegistry:
    """Known tokens keyed by symbol, plus their last known balances.

    Only the balance service writes cached balances; everything else reads.
    """

    def __init__(self, tokens: Iterable[Token] = ()) -> None:
        self._tokens: Dict[str, Token] = {}
        self._balances: Dict[str, str] = {}
        for token in tokens:
            self.add(token)

    def __iter__(self) -> Iterator[Token]:
        return iter(self._tokens.values())

    def __len__(self) -> int:
        return len(self._tokens)

    def add(self, token: Token) -> None:
        self._tokens[token.symbol] = token

    def get(self, symbol: str) -> Token:
        try:
            return self._tokens[symbol]
        except KeyError:
            raise KeyError(f"Unknown token '{symbol}'") from None

    def by_contract(self, contract: str) -> Optional[Token]:
        wanted = contract.lower()
        for token in self._tokens.values():
            if token.address.lower() == wanted:
                return token
        return None

    def native(self) -> Optional[Token]:
        for token in self._tokens.values():
            if token.is_native:
                return token
        return None

    def cached_balance(self, symbol: str) -> Optional[str]:
        return self._balances.get(symbol)

    def set_cached_balance(self, symbol: str, balance: Optional[str]) -> None:
        if balance is None:
            self._balances.pop(symbol, None)
        else:
            self._balances[symbol] = balance

    def clear_balances(self) -> None:
        self._balances.clear()

    def snapshot(self) -> List[Dict[str, object]]:
        listing = []
        for token in self._tokens.values():
            payload = token.to_payload()
            balance = self._balances.get(token.symbol)
            value = token.value_of(balance) if balance is not None else None
            payload["balance"] = balance
            payload["value"] = format(value.quantize(Decimal("0.01")), "f") if value is not None else None
            listing.append(payload)
        return listing


DEFAULT_TOKENS = (
    Token(
        symbol="XTZ",
        display_name="Tezos",
        address=NATIVE_SENTINEL,
        decimals=NATIVE_DECIMALS,
        unit_price=Decimal("1.25"),
        logo_url="https://cryptologos.cc/logos/tezos-xtz-logo.png",
    ),
    Token(
        symbol="USDT",
        display_name="Tether USD",
        address="0xa0b86a33e6b8c6b6c6b6c6b6c6b6c6b6c6b6c6b6",
        decimals=6,
        unit_price=Decimal("1.00"),
        logo_url="https://cryptologos.cc/logos/tether-usdt-logo.png",
    ),
    Token(
        symbol="USDC",
        display_name="USD Coin",
        address="0xb1c7e7e7e7e7e7e7e7e7e7e7e7e7e7e7e7e7e7e7",
        decimals=6,
        unit_price=Decimal("1.00"),
        logo_url="https://cryptologos.cc/logos/usd-coin-usdc-logo.png",
    ),
    Token(
        symbol="DAI",
        display_name="Dai Stablecoin",
        address="0xc2d8d8d8d8d8d8d8d8d8d8d8d8d8d8d8d8d8d8d8",
        decimals=18,
        unit_price=Decimal("1.00"),
        logo_url="https://cryptologos.cc/logos/multi-collateral-dai-dai-logo.png",
    ),
    Token(
        symbol="WETH",
        display_name="Wrapped Ether",
        address="0xd3e9e9e9e9e9e9e9e9e9e9e9e9e9e9e9e9e9e9e9",
        decimals=18,
        unit_price=Decimal("2400.00"),
        logo_url="https://cryptologos.cc/logos/ethereum-eth-logo.png",
    ),
)


def default_registry() -> TokenRegistry:
    return TokenRegistry(DEFAULT_TOKENS)
