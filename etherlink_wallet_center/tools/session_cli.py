"""Query a running Etherlink Wallet Center over its WebSocket bridge."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, Dict

from websockets.asyncio.client import connect

LOGGER = logging.getLogger("etherlink_wallet_center.cli.session")

ACTIONS = ["session", "tokens", "history", "health", "get_balance", "max_amount"]


def _build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--host", default="127.0.0.1", help="WebSocket host")
    parser.add_argument("--port", type=int, default=8765, help="WebSocket port")
    parser.add_argument(
        "--token",
        default="dev-token",
        help="Authentication token matching the WebSocket server configuration",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="Connection timeout in seconds",
    )
    parser.add_argument(
        "--action",
        default="session",
        choices=ACTIONS,
        help="Which action to invoke",
    )
    parser.add_argument("--address", help="Address for get_balance")
    parser.add_argument("--symbol", help="Token symbol for max_amount")
    return parser


def build_request(args: argparse.Namespace) -> Dict[str, Any]:
    request: Dict[str, Any] = {"action": args.action}
    if args.address:
        request["address"] = args.address
    if args.symbol:
        request["token"] = args.symbol
    return request


async def _query(host: str, port: int, token: str, request: Dict[str, Any], timeout: float) -> Any:
    uri = f"ws://{host}:{port}/?token={token}&client=session-cli"
    LOGGER.debug("Connecting to %s", uri)

    async with connect(uri, open_timeout=timeout) as websocket:
        await websocket.send(json.dumps(request))
        while True:
            response = await asyncio.wait_for(websocket.recv(), timeout=timeout)
            try:
                message = json.loads(response)
            except json.JSONDecodeError as exc:
                raise RuntimeError(f"Server returned invalid JSON: {response!r}") from exc
            # Broadcast events and the greeting share the socket with replies.
            if "event" in message or message.get("type") == "welcome":
                continue
            return message


def main() -> None:
    parser = _build_argument_parser()
    args = parser.parse_args()

    payload = asyncio.run(
        _query(args.host, args.port, args.token, build_request(args), args.timeout)
    )
    print(json.dumps(payload, indent=2, sort_keys=True))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
