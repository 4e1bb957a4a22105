"""Descriptor of the single chain a wallet session targets."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class NativeCurrency:
    name: str
    symbol: str
    decimals: int = 18


@dataclass(frozen=True)
class ChainDescriptor:
    """Everything ``wallet_addEthereumChain`` needs to register the chain."""

    chain_id: int
    chain_name: str
    native_currency: NativeCurrency
    rpc_urls: Tuple[str, ...]
    block_explorer_urls: Tuple[str, ...] = ()
    icon_urls: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def chain_id_hex(self) -> str:
        return hex(self.chain_id)

    @property
    def rpc_url(self) -> str:
        return self.rpc_urls[0]

    @property
    def explorer_url(self) -> Optional[str]:
        return self.block_explorer_urls[0] if self.block_explorer_urls else None

    def tx_url(self, tx_hash: str) -> Optional[str]:
        if self.explorer_url is None:
            return None
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"

    def to_params(self) -> Dict[str, Any]:
        """Shape used as the single parameter of ``wallet_addEthereumChain``."""

        return {
            "chainId": self.chain_id_hex,
            "chainName": self.chain_name,
            "nativeCurrency": {
                "name": self.native_currency.name,
                "symbol": self.native_currency.symbol,
                "decimals": self.native_currency.decimals,
            },
            "rpcUrls": list(self.rpc_urls),
            "blockExplorerUrls": list(self.block_explorer_urls),
            "iconUrls": list(self.icon_urls),
        }

    def with_rpc_url(self, rpc_url: str) -> "ChainDescriptor":
        return ChainDescriptor(
            chain_id=self.chain_id,
            chain_name=self.chain_name,
            native_currency=self.native_currency,
            rpc_urls=(rpc_url,),
            block_explorer_urls=self.block_explorer_urls,
            icon_urls=self.icon_urls,
        )


ETHERLINK_MAINNET = ChainDescriptor(
    chain_id=42793,
    chain_name="Etherlink Mainnet",
    native_currency=NativeCurrency(name="XTZ", symbol="XTZ", decimals=18),
    rpc_urls=("https://node.mainnet.etherlink.com",),
    block_explorer_urls=("https://explorer.etherlink.com",),
    icon_urls=("https://etherlink.com/favicon.ico",),
)
