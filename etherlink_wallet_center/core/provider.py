"""Wallet provider contract and an HTTP JSON-RPC implementation of it.

The session never talks to a browser object directly.  Anything that can
answer ``request(method, params)`` and deliver ``accountsChanged`` /
``chainChanged`` notifications can back a session: a bridged browser wallet,
the in-memory fake used by the tests, or :class:`JsonRpcProvider` which talks
to a chain RPC endpoint for read-only use.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from itertools import count
from typing import Any, Awaitable, Callable, DefaultDict, Dict, List, Optional, Sequence

import aiohttp

from .errors import UNSUPPORTED_METHOD_CODE, ProviderError


LOGGER = logging.getLogger(__name__)

ProviderEventHandler = Callable[..., Awaitable[None]]

ACCOUNTS_CHANGED = "accountsChanged"
CHAIN_CHANGED = "chainChanged"

# JSON-RPC internal error, used for transport failures.
INTERNAL_ERROR_CODE = -32603

_SIGNING_METHODS = frozenset(
    {
        "eth_sendTransaction",
        "wallet_switchEthereumChain",
        "wallet_addEthereumChain",
    }
)


class WalletProvider:
    """Interface every provider implementation satisfies.

    ``request`` either returns the decoded JSON-RPC result or raises
    :class:`~.errors.ProviderError` carrying the numeric provider code.
    """

    async def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        raise NotImplementedError

    def on(self, event_name: str, handler: ProviderEventHandler) -> None:
        raise NotImplementedError

    def remove_listener(self, event_name: str, handler: ProviderEventHandler) -> None:
        raise NotImplementedError


class JsonRpcProvider(WalletProvider):
    """Provider backed by a plain HTTP JSON-RPC endpoint.

    Read methods are forwarded to the node.  Account discovery answers with the
    configured watch-only addresses and every method that needs a signer is
    rejected with the EIP-1193 "unsupported method" code.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        watch_addresses: Sequence[str] = (),
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
    ) -> None:
        self._rpc_url = rpc_url
        self._watch_addresses: List[str] = list(watch_addresses)
        self._session = session
        self._own_session = session is None
        self._timeout = timeout
        self._ids = count(1)
        self._listeners: DefaultDict[str, List[ProviderEventHandler]] = defaultdict(list)

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    async def __aenter__(self) -> "JsonRpcProvider":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._own_session:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Provider contract
    # ------------------------------------------------------------------
    async def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        if method in ("eth_requestAccounts", "eth_accounts"):
            return list(self._watch_addresses)

        if method in _SIGNING_METHODS:
            raise ProviderError(
                UNSUPPORTED_METHOD_CODE,
                f"Method '{method}' requires a signing wallet",
            )

        return await self._post(method, list(params or []))

    def on(self, event_name: str, handler: ProviderEventHandler) -> None:
        self._listeners[event_name].append(handler)

    def remove_listener(self, event_name: str, handler: ProviderEventHandler) -> None:
        handlers = self._listeners.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def set_watch_addresses(self, addresses: Sequence[str]) -> None:
        """Replace the watch list and notify listeners like a wallet would."""

        self._watch_addresses = list(addresses)
        for handler in list(self._listeners.get(ACCOUNTS_CHANGED, [])):
            await handler(list(self._watch_addresses))

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Content-Type": "application/json"},
            )
            self._own_session = True
        return self._session

    async def _post(self, method: str, params: List[Any]) -> Any:
        session = await self._ensure_session()
        body: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        LOGGER.debug("JSON-RPC %s -> %s", method, self._rpc_url)

        try:
            async with session.post(self._rpc_url, json=body) as response:
                if response.status != 200:
                    text = await response.text()
                    raise ProviderError(
                        INTERNAL_ERROR_CODE, f"HTTP {response.status}: {text[:200]}"
                    )
                payload = await response.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise ProviderError(
                INTERNAL_ERROR_CODE, f"Request to {self._rpc_url} failed: {exc}"
            ) from exc
        except asyncio.TimeoutError as exc:
            raise ProviderError(
                INTERNAL_ERROR_CODE, f"Request to {self._rpc_url} timed out"
            ) from exc
        except ValueError as exc:
            raise ProviderError(
                INTERNAL_ERROR_CODE, f"Malformed response from {self._rpc_url}: {exc}"
            ) from exc

        if not isinstance(payload, dict):
            raise ProviderError(INTERNAL_ERROR_CODE, f"Unexpected response {payload!r:.200}")
        error = payload.get("error")
        if error:
            raise ProviderError(
                int(error.get("code", INTERNAL_ERROR_CODE)),
                error.get("message", "Unknown RPC error"),
                error.get("data"),
            )
        return payload.get("result")
