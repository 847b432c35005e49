from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict
import os


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

PUBLIC_RPC_URL = "https://mainnet.base.org"
ALCHEMY_RPC_URL = "https://base-mainnet.g.alchemy.com/v2/{key}"
EXPLORER_API_URL = "https://api.basescan.org/api"

# Public RPCs typically reject getLogs spanning more than ~2000 blocks.
PUBLIC_CHUNK_SIZE = 1800
PUBLIC_PARALLEL_BATCH = 8


@dataclass(frozen=True)
class ChainInfo:
    chain_id: int
    name: str
    currency_name: str
    currency_symbol: str
    currency_decimals: int
    rpc_url: str
    explorer_url: str

    @property
    def hex_id(self) -> str:
        return hex(self.chain_id)

    def add_chain_params(self) -> Dict[str, Any]:
        return {
            "chainId": self.hex_id,
            "chainName": self.name,
            "nativeCurrency": {
                "name": self.currency_name,
                "symbol": self.currency_symbol,
                "decimals": self.currency_decimals,
            },
            "rpcUrls": [self.rpc_url],
            "blockExplorerUrls": [self.explorer_url],
        }


BASE_MAINNET = ChainInfo(
    chain_id=8453,
    name="Base",
    currency_name="Ether",
    currency_symbol="ETH",
    currency_decimals=18,
    rpc_url=PUBLIC_RPC_URL,
    explorer_url="https://basescan.org",
)


@dataclass(frozen=True)
class Settings:
    contract_address: str = ZERO_ADDRESS
    deploy_block: int = 0
    alchemy_api_key: str | None = None
    rpc_url: str = PUBLIC_RPC_URL
    leaderboard_source: str = "rpc"
    explorer_api_url: str = EXPLORER_API_URL
    explorer_api_key: str | None = None
    log_chunk_size: int = PUBLIC_CHUNK_SIZE
    log_parallel_batch: int = PUBLIC_PARALLEL_BATCH
    rpc_timeout_sec: int = 20
    signer_rpc_url: str | None = None
    signer_kind: str = "injected"
    chain: ChainInfo = BASE_MAINNET

    @property
    def contract_configured(self) -> bool:
        return not is_zero_address(self.contract_address)

    @property
    def log_rpc_url(self) -> str:
        # Alchemy supports unlimited historical log ranges
        if self.alchemy_api_key:
            return ALCHEMY_RPC_URL.format(key=self.alchemy_api_key)
        return self.rpc_url

    @property
    def use_chunking(self) -> bool:
        return not self.alchemy_api_key

    @property
    def provider_label(self) -> str:
        if self.leaderboard_source == "explorer":
            return "block explorer"
        return "Alchemy" if self.alchemy_api_key else "public Base RPC"


def is_zero_address(address: str | None) -> bool:
    if not address:
        return True
    return address.strip().lower() == ZERO_ADDRESS


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def load_settings() -> Settings:
    source = os.getenv("LEADERBOARD_SOURCE", "rpc").lower()
    if source not in ("rpc", "explorer"):
        raise ValueError(f"invalid LEADERBOARD_SOURCE: {source}")
    return Settings(
        contract_address=os.getenv("CONTRACT_ADDRESS") or ZERO_ADDRESS,
        deploy_block=_env_int("CONTRACT_DEPLOY_BLOCK", 0),
        alchemy_api_key=os.getenv("ALCHEMY_API_KEY") or None,
        rpc_url=os.getenv("BASE_RPC_URL") or PUBLIC_RPC_URL,
        leaderboard_source=source,
        explorer_api_url=os.getenv("EXPLORER_API_URL") or EXPLORER_API_URL,
        explorer_api_key=os.getenv("EXPLORER_API_KEY") or None,
        log_chunk_size=_env_int("LOG_CHUNK_SIZE", PUBLIC_CHUNK_SIZE),
        log_parallel_batch=_env_int("LOG_PARALLEL_BATCH", PUBLIC_PARALLEL_BATCH),
        rpc_timeout_sec=_env_int("RPC_TIMEOUT_SEC", 20),
        signer_rpc_url=os.getenv("SIGNER_RPC_URL") or None,
        signer_kind=os.getenv("SIGNER_KIND", "injected").lower(),
    )
