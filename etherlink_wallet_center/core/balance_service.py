"""Native and token balance queries against the wallet provider."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from . import calldata
from .errors import (
    InvalidInput,
    ProviderError,
    ProviderUnavailable,
    RpcError,
    TokenDecimalsUnavailable,
)
from .event_dispatcher import EventDispatcher
from .event_schemas import BALANCE_INVALIDATED, BALANCE_UPDATED, BalanceUpdated
from .provider import WalletProvider
from .tokens import Token, TokenRegistry
from .units import NATIVE_DECIMALS, from_hex, from_units, parse_amount


LOGGER = logging.getLogger(__name__)

LATEST_BLOCK = "latest"
# decimals() is a uint8, anything larger is not an ERC-20 answer.
_MAX_DECIMALS = 255


class BalanceService:
    """Fetch balances on demand and keep the registry's cached copies.

    Nothing is cached between calls except token decimals: every
    ``get_*_balance`` goes to the provider.  Cached balances in the
    :class:`TokenRegistry` are written here only, either after a fetch or when
    a ``balance_invalidated`` signal arrives from the transfer orchestrator.
    """

    def __init__(
        self,
        provider: Optional[WalletProvider],
        registry: TokenRegistry,
        *,
        dispatcher: Optional[EventDispatcher] = None,
        refetch_on_invalidate: bool = False,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._dispatcher = dispatcher
        self._refetch_on_invalidate = refetch_on_invalidate
        self._loop = loop
        self._decimals: Dict[str, int] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    def set_provider(self, provider: Optional[WalletProvider]) -> None:
        self._provider = provider

    @property
    def registry(self) -> TokenRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_native_balance(self, address: str) -> str:
        self._require_address(address)
        result = await self._call("eth_getBalance", [address, LATEST_BLOCK])
        try:
            units = from_hex(result or "0x0")
        except ValueError as exc:
            raise RpcError(f"Malformed balance result {result!r}") from exc
        return from_units(units, NATIVE_DECIMALS)

    async def get_token_balance(
        self,
        contract: str,
        address: str,
        decimals: Optional[int] = None,
    ) -> str:
        self._require_address(contract, label="token contract")
        self._require_address(address)
        if decimals is None:
            decimals = await self.resolve_decimals(contract)

        result = await self._call(
            "eth_call",
            [{"to": contract, "data": calldata.encode_balance_of(address)}, LATEST_BLOCK],
        )
        try:
            units = calldata.decode_uint_word(result or "0x")
        except ValueError as exc:
            raise RpcError(f"Malformed balanceOf result {result!r}") from exc
        return from_units(units, decimals)

    async def resolve_decimals(self, contract: str) -> int:
        """Decimals of ``contract``: registry, memo, then ``decimals()``."""

        key = contract.lower()
        token = self._registry.by_contract(contract)
        if token is not None and token.decimals is not None:
            return token.decimals
        if key in self._decimals:
            return self._decimals[key]

        try:
            result = await self._call(
                "eth_call",
                [{"to": contract, "data": calldata.encode_decimals()}, LATEST_BLOCK],
            )
        except RpcError as exc:
            raise TokenDecimalsUnavailable(
                f"Could not read decimals() of {contract}: {exc.message}", cause=exc.cause
            ) from exc

        if not result or result == "0x":
            raise TokenDecimalsUnavailable(f"{contract} does not implement decimals()")
        value = calldata.decode_uint_word(result)
        if value > _MAX_DECIMALS:
            raise TokenDecimalsUnavailable(f"{contract} returned invalid decimals {value}")

        self._decimals[key] = value
        return value

    async def refresh_token(self, token: Token, address: str) -> str:
        """Fetch ``token``'s balance for ``address`` and cache it."""

        if token.is_native:
            balance = await self.get_native_balance(address)
        else:
            balance = await self.get_token_balance(token.address, address, token.decimals)

        self._registry.set_cached_balance(token.symbol, balance)
        await self._publish(
            BalanceUpdated(
                address=address,
                symbol=token.symbol,
                balance=balance,
                contract=token.contract,
            ).to_payload()
        )
        return balance

    # ------------------------------------------------------------------
    # Invalidation signal
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._dispatcher is None or self._task is not None:
            return
        self._queue = self._dispatcher.subscribe(
            BALANCE_INVALIDATED, subscriber_id="balance-service"
        )
        loop = self._loop or asyncio.get_running_loop()
        self._task = loop.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._queue is not None and self._dispatcher is not None:
            self._dispatcher.unsubscribe(self._queue)
            self._queue = None

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            message = await self._queue.get()
            if message is None:
                break
            try:
                await self.apply_invalidation(message["data"])
            except Exception:
                LOGGER.exception("Failed to apply balance invalidation")

    async def apply_invalidation(self, payload: Dict[str, Any]) -> None:
        """Debit the cached balance named in ``payload`` and maybe re-fetch."""

        symbol = payload["symbol"]
        try:
            token = self._registry.get(symbol)
        except KeyError:
            LOGGER.debug("Invalidation for unknown token %s", symbol)
            return

        cached = self._registry.cached_balance(symbol)
        if cached is not None:
            remaining = max(Decimal(0), parse_amount(cached) - parse_amount(payload["debit"]))
            balance = format(remaining.quantize(Decimal("0.000001")), "f")
            self._registry.set_cached_balance(symbol, balance)
            LOGGER.debug("Optimistic %s balance %s -> %s", symbol, cached, balance)

        address = payload.get("address")
        if self._refetch_on_invalidate and address:
            try:
                await self.refresh_token(token, address)
            except (RpcError, ProviderUnavailable) as exc:
                LOGGER.warning("Re-fetch of %s balance failed: %s", symbol, exc)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _call(self, method: str, params: list) -> Any:
        if self._provider is None:
            raise ProviderUnavailable("No wallet provider is available")
        LOGGER.debug("Provider request %s", method)
        try:
            return await self._provider.request(method, params)
        except ProviderError as exc:
            raise RpcError(exc.message, cause=exc) from exc

    async def _publish(self, payload: Dict[str, Any]) -> None:
        if self._dispatcher is not None:
            await self._dispatcher.emit(BALANCE_UPDATED, payload)

    @staticmethod
    def _require_address(address: Optional[str], *, label: str = "address") -> None:
        if not calldata.is_address(address):
            raise InvalidInput(f"Invalid {label} '{address}'")
