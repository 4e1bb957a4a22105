"""Local WebSocket bridge between the wallet session and a UI.

Clients authenticate with ``?token=...`` on the connection URL.  Every event
published by the session's dispatcher is forwarded as ``{"event", "data"}``
and clients drive the session with ``{"action": ...}`` messages answered by a
single reply each.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from urllib.parse import parse_qs, urlparse

from websockets.asyncio.server import Server, ServerConnection, serve

from .errors import InvalidInput, WalletError
from .wallet_session import WalletSession


LOGGER = logging.getLogger(__name__)

ActionHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


@dataclass
class _Client:
    websocket: ServerConnection
    queue: "asyncio.Queue[Optional[Dict[str, Any]]]"
    heartbeat_task: asyncio.Task
    client_id: str


class WebSocketServer:
    """Expose a :class:`WalletSession` over WebSocket."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        wallet: WalletSession,
        allowed_tokens: Optional[Set[str]] = None,
        heartbeat_interval: float = 30.0,
        queue_maxsize: int = 100,
    ) -> None:
        self._host = host
        self._port = port
        self._wallet = wallet
        self._allowed_tokens = allowed_tokens or {"dev-token"}
        self._heartbeat_interval = heartbeat_interval
        self._queue_maxsize = queue_maxsize
        self._server: Optional[Server] = None
        self._clients: Dict[ServerConnection, _Client] = {}
        self._client_ids: Dict[str, ServerConnection] = {}
        self._lock = asyncio.Lock()
        self._actions: Dict[str, ActionHandler] = {
            "ping": self._action_ping,
            "session": self._action_session,
            "tokens": self._action_tokens,
            "history": self._action_history,
            "health": self._action_health,
            "connect": self._action_connect,
            "disconnect": self._action_disconnect,
            "switch_chain": self._action_switch_chain,
            "get_balance": self._action_get_balance,
            "get_token_balance": self._action_get_token_balance,
            "refresh_token": self._action_refresh_token,
            "max_amount": self._action_max_amount,
            "approve": self._action_approve,
            "transfer": self._action_transfer,
            "retry": self._action_retry,
            "send_transaction": self._action_send_transaction,
        }

    async def start(self) -> None:
        if self._server is not None:
            return

        LOGGER.info("Starting WebSocket server on ws://%s:%s", self._host, self._port)
        self._server = await serve(
            self._client_handler,
            self._host,
            self._port,
            ping_interval=None,
        )

    async def stop(self) -> None:
        if self._server is None:
            return

        LOGGER.info("Stopping WebSocket server")
        self._server.close()
        await self._server.wait_closed()
        self._server = None

        async with self._lock:
            client_websockets = list(self._clients.keys())

        for websocket in client_websockets:
            await self._disconnect_client(websocket)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    async def _client_handler(self, websocket: ServerConnection) -> None:
        params = self._extract_params(websocket.request.path if websocket.request else "")
        if params.get("token") not in self._allowed_tokens:
            LOGGER.warning("Rejecting WebSocket connection due to invalid token")
            await websocket.close(code=4401, reason="Unauthorized")
            return

        client_id = params.get("client", f"client-{id(websocket)}")
        queue = self._wallet.dispatcher.subscribe(
            "*", maxsize=self._queue_maxsize, subscriber_id=f"websocket:{client_id}"
        )
        heartbeat_task = asyncio.create_task(self._heartbeat(websocket))
        client = _Client(
            websocket=websocket, queue=queue, heartbeat_task=heartbeat_task, client_id=client_id
        )

        async with self._lock:
            existing = self._client_ids.get(client_id)
        if existing is not None:
            LOGGER.info("Replacing existing WebSocket client %s", client_id)
            await self._disconnect_client(existing)
        async with self._lock:
            self._clients[websocket] = client
            self._client_ids[client_id] = websocket

        try:
            await websocket.send(json.dumps({"type": "welcome", **self._session_payload()}))

            sender = asyncio.create_task(self._sender(websocket, queue))
            receiver = asyncio.create_task(self._receiver(websocket))
            done, pending = await asyncio.wait(
                {sender, receiver, heartbeat_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            for task in done:
                if task is heartbeat_task:
                    continue
                exc = task.exception()
                if exc:
                    raise exc
        except Exception:
            LOGGER.exception("WebSocket client crashed")
        finally:
            await self._disconnect_client(websocket)
            self._wallet.dispatcher.unsubscribe(queue)

    async def _sender(
        self,
        websocket: ServerConnection,
        queue: "asyncio.Queue[Optional[Dict[str, Any]]]",
    ) -> None:
        while True:
            message = await queue.get()
            if message is None:
                break
            try:
                await websocket.send(json.dumps(message, default=str))
            except Exception:
                LOGGER.warning("Failed to send event to WebSocket client", exc_info=True)
                break

    async def _receiver(self, websocket: ServerConnection) -> None:
        async for raw in websocket:
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                await self._send(websocket, self._error("invalid_json", "Payload must be valid JSON"))
                continue
            await self._send(websocket, await self.handle_action(payload))

    async def handle_action(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Run one client action and build the reply sent back."""

        if not isinstance(payload, dict):
            return self._error("invalid_payload", "Payload must be a JSON object")
        action = payload.get("action")
        handler = self._actions.get(action)
        if handler is None:
            return self._error("unknown_action", f"Action '{action}' is not supported")

        try:
            return await handler(payload)
        except WalletError as exc:
            return self._error(exc.kind.value, exc.message, details=exc.to_payload())
        except KeyError as exc:
            return self._error("unknown_token", str(exc.args[0]) if exc.args else "Unknown token")

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    async def _action_ping(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": "pong"}

    async def _action_session(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": "session", **self._session_payload()}

    async def _action_tokens(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": "tokens", "tokens": self._wallet.tokens()}

    async def _action_history(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": "history", **self._wallet.activity.history()}

    async def _action_health(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": "health",
            "dispatcher": self._wallet.dispatcher.metrics_snapshot(),
            "subscribers": self._wallet.dispatcher.subscriber_snapshot(),
            "connections": {
                "active": len(self._clients),
                "clients": [client.client_id for client in self._clients.values()],
            },
        }

    async def _action_connect(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        account = await self._wallet.connect()
        return {"type": "connected", "account": account, **self._session_payload()}

    async def _action_disconnect(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        await self._wallet.disconnect()
        return {"type": "session", **self._session_payload()}

    async def _action_switch_chain(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        await self._wallet.switch_to_target_chain()
        return {"type": "switch_requested", "chain_id": self._wallet.config.chain.chain_id}

    async def _action_get_balance(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        balance = await self._wallet.get_balance(payload.get("address"))
        return {"type": "balance", "address": payload.get("address"), "balance": balance}

    async def _action_get_token_balance(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        contract = self._require_field(payload, "contract")
        balance = await self._wallet.get_token_balance(contract, payload.get("address"))
        return {"type": "token_balance", "contract": contract, "balance": balance}

    async def _action_refresh_token(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        symbol = self._require_field(payload, "token")
        balance = await self._wallet.refresh_token(symbol)
        return {"type": "token_balance", "token": symbol, "balance": balance}

    async def _action_max_amount(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        symbol = self._require_field(payload, "token")
        return {"type": "max_amount", "token": symbol, "amount": self._wallet.max_amount(symbol)}

    async def _action_approve(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        tx_hash = await self._wallet.approve(self._build_request(payload))
        return {"type": "approval_submitted", "tx_hash": tx_hash}

    async def _action_transfer(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        request = self._build_request(payload)
        tx_hash = await self._wallet.transfer(request)
        return {
            "type": "transfer_submitted",
            "tx_hash": tx_hash,
            "explorer_url": self._wallet.transfers.explorer_tx_url(tx_hash),
        }

    async def _action_retry(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        await self._wallet.retry()
        return {"type": "attempt", "attempt": self._wallet.attempt.to_payload()}

    async def _action_send_transaction(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        params = payload.get("params")
        if not isinstance(params, dict):
            raise InvalidInput("send_transaction requires a 'params' object")
        tx_hash = await self._wallet.send_transaction(params)
        return {"type": "transaction_submitted", "tx_hash": tx_hash}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _build_request(self, payload: Dict[str, Any]):
        return self._wallet.build_request(
            self._require_field(payload, "token"),
            str(self._require_field(payload, "amount")),
            self._require_field(payload, "recipient"),
            payload.get("note", ""),
        )

    @staticmethod
    def _require_field(payload: Dict[str, Any], name: str) -> Any:
        value = payload.get(name)
        if value in (None, ""):
            raise InvalidInput(f"Action '{payload.get('action')}' requires a '{name}' field")
        return value

    def _session_payload(self) -> Dict[str, Any]:
        return {
            "session": self._wallet.snapshot().to_payload(),
            "attempt": self._wallet.attempt.to_payload(),
        }

    async def _heartbeat(self, websocket: ServerConnection) -> None:
        try:
            while True:
                await asyncio.sleep(self._heartbeat_interval)
                await websocket.ping()
        except asyncio.CancelledError:
            pass
        except Exception:
            LOGGER.debug("Heartbeat failed", exc_info=True)

    async def _disconnect_client(self, websocket: ServerConnection) -> None:
        async with self._lock:
            client = self._clients.pop(websocket, None)
            if client:
                self._client_ids.pop(client.client_id, None)

        if client:
            client.heartbeat_task.cancel()
            try:
                client.queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            try:
                await websocket.close()
            except Exception:
                LOGGER.debug("Client close failed", exc_info=True)

    def _extract_params(self, path: str) -> Dict[str, str]:
        if not path:
            return {}
        params = parse_qs(urlparse(path).query)
        return {key: values[0] for key, values in params.items() if values}

    @staticmethod
    def _error(code: str, message: str, *, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": "error", "error": {"code": code, "message": message}}
        if details:
            payload["error"]["details"] = details
        return payload

    async def _send(self, websocket: ServerConnection, payload: Dict[str, Any]) -> None:
        try:
            await websocket.send(json.dumps(payload, default=str))
        except Exception:
            LOGGER.debug("Failed to send reply", exc_info=True)
