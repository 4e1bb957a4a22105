"""Runtime configuration, with defaults overridable from ``EWC_*`` variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Tuple

from .chains import ETHERLINK_MAINNET, ChainDescriptor


ENV_PREFIX = "EWC_"

TRACKER_SIMULATED = "simulated"
TRACKER_RECEIPT = "receipt"


def env_flag(name: str, *, default: bool = False, environ: Optional[Mapping[str, str]] = None) -> bool:
    raw = (environ if environ is not None else os.environ).get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SessionConfig:
    chain: ChainDescriptor = ETHERLINK_MAINNET
    watch_address: Optional[str] = None
    success_dwell: float = 5.0
    error_dwell: float = 3.0
    transfer_step: int = 20
    transfer_interval: float = 0.3
    approval_step: int = 25
    approval_interval: float = 0.5
    tracker: str = TRACKER_SIMULATED
    receipt_interval: float = 2.0
    receipt_max_polls: int = 90
    refetch_on_invalidate: bool = False
    ws_host: str = "127.0.0.1"
    ws_port: int = 8765
    ws_tokens: Tuple[str, ...] = field(default_factory=lambda: ("dev-token",))

    def __post_init__(self) -> None:
        if self.tracker not in (TRACKER_SIMULATED, TRACKER_RECEIPT):
            raise ValueError(f"Unknown progress tracker '{self.tracker}'")
        if self.success_dwell < 0 or self.error_dwell < 0:
            raise ValueError("Dwell times must be non-negative")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SessionConfig":
        env = environ if environ is not None else os.environ
        defaults = cls()

        def _get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        chain = defaults.chain
        rpc_url = _get("RPC_URL")
        if rpc_url:
            chain = chain.with_rpc_url(rpc_url)

        tokens = _get("WS_TOKENS")
        return cls(
            chain=chain,
            watch_address=_get("WATCH_ADDRESS"),
            success_dwell=float(_get("SUCCESS_DWELL") or defaults.success_dwell),
            error_dwell=float(_get("ERROR_DWELL") or defaults.error_dwell),
            transfer_step=int(_get("TRANSFER_STEP") or defaults.transfer_step),
            transfer_interval=float(_get("TRANSFER_INTERVAL") or defaults.transfer_interval),
            approval_step=int(_get("APPROVAL_STEP") or defaults.approval_step),
            approval_interval=float(_get("APPROVAL_INTERVAL") or defaults.approval_interval),
            tracker=_get("TRACKER") or defaults.tracker,
            receipt_interval=float(_get("RECEIPT_INTERVAL") or defaults.receipt_interval),
            receipt_max_polls=int(_get("RECEIPT_MAX_POLLS") or defaults.receipt_max_polls),
            refetch_on_invalidate=env_flag(
                ENV_PREFIX + "REFETCH_ON_INVALIDATE", environ=env
            ),
            ws_host=_get("WS_HOST") or defaults.ws_host,
            ws_port=int(_get("WS_PORT") or defaults.ws_port),
            ws_tokens=tuple(t.strip() for t in tokens.split(",") if t.strip())
            if tokens
            else defaults.ws_tokens,
        )

    def with_overrides(self, **changes) -> "SessionConfig":
        return replace(self, **{key: value for key, value in changes.items() if value is not None})
