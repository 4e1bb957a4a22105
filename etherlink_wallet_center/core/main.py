"""Entry point running the wallet session behind the local WebSocket bridge."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from typing import Optional

from .activity_store import ActivityStore
from .config import TRACKER_RECEIPT, TRACKER_SIMULATED, SessionConfig
from .event_dispatcher import EventDispatcher
from .provider import JsonRpcProvider
from .wallet_session import WalletSession
from .websocket_server import WebSocketServer


LOGGER = logging.getLogger(__name__)


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.environ.get("EWC_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _parse_args(config: SessionConfig, argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Etherlink Wallet Center")
    parser.add_argument(
        "--rpc-url",
        default=config.chain.rpc_url,
        help="JSON-RPC endpoint of the Etherlink node",
    )
    parser.add_argument(
        "--watch-address",
        default=config.watch_address,
        help="Account exposed by the read-only RPC provider",
    )
    parser.add_argument("--host", default=config.ws_host, help="WebSocket bind host")
    parser.add_argument("--port", type=int, default=config.ws_port, help="WebSocket bind port")
    parser.add_argument(
        "--token",
        action="append",
        dest="tokens",
        help="Accepted WebSocket token (repeatable)",
    )
    parser.add_argument(
        "--tracker",
        choices=[TRACKER_SIMULATED, TRACKER_RECEIPT],
        default=config.tracker,
        help="How transfer progress is reported",
    )
    parser.add_argument(
        "--connect",
        action="store_true",
        help="Connect the watch address immediately on startup",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace, base: SessionConfig) -> SessionConfig:
    chain = base.chain
    if args.rpc_url and args.rpc_url != chain.rpc_url:
        chain = chain.with_rpc_url(args.rpc_url)
    return base.with_overrides(
        chain=chain,
        watch_address=args.watch_address,
        ws_host=args.host,
        ws_port=args.port,
        ws_tokens=tuple(args.tokens) if args.tokens else None,
        tracker=args.tracker,
    )


async def run(config: SessionConfig, *, connect: bool = False) -> None:
    watch = (config.watch_address,) if config.watch_address else ()
    dispatcher = EventDispatcher(default_queue_size=64, overflow_strategy="drop_oldest")

    async with JsonRpcProvider(config.chain.rpc_url, watch_addresses=watch) as provider:
        wallet = WalletSession(
            provider,
            config=config,
            dispatcher=dispatcher,
            activity=ActivityStore(),
        )
        server = WebSocketServer(
            host=config.ws_host,
            port=config.ws_port,
            wallet=wallet,
            allowed_tokens=set(config.ws_tokens),
            heartbeat_interval=10.0,
        )

        await wallet.start()
        if connect:
            try:
                account = await wallet.connect()
                LOGGER.info("Connected %s", account)
            except Exception:
                LOGGER.exception("Initial connect failed")

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:  # pragma: no cover - Windows
                pass

        try:
            await server.start()
            LOGGER.info("Session snapshot: %s", wallet.snapshot().to_payload())
            await stop_event.wait()
        finally:
            LOGGER.info("Dispatcher metrics snapshot: %s", dispatcher.metrics_snapshot())
            await server.stop()
            await wallet.stop()


def main(argv: Optional[list] = None) -> None:
    _configure_logging()
    base = SessionConfig.from_env()
    args = _parse_args(base, argv)
    asyncio.run(run(build_config(args, base), connect=args.connect))


if __name__ == "__main__":
    main()
