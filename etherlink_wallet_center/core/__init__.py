"""Core runtime components for the Etherlink Wallet Center."""

from .activity_store import ActivityStore
from .chains import ETHERLINK_MAINNET, ChainDescriptor
from .config import SessionConfig
from .errors import ErrorKind, WalletError
from .event_dispatcher import EventDispatcher
from .provider import JsonRpcProvider, WalletProvider
from .tokens import Token, TokenRegistry
from .transfer_orchestrator import TransferOrchestrator, TransferRequest, TransferStatus
from .wallet_session import WalletSession
from .websocket_server import WebSocketServer

__all__ = [
    "ActivityStore",
    "ChainDescriptor",
    "ErrorKind",
    "ETHERLINK_MAINNET",
    "EventDispatcher",
    "JsonRpcProvider",
    "SessionConfig",
    "Token",
    "TokenRegistry",
    "TransferOrchestrator",
    "TransferRequest",
    "TransferStatus",
    "WalletError",
    "WalletProvider",
    "WalletSession",
    "WebSocketServer",
]
