import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

from paygate.schemas import Network

load_dotenv()

SOLANA_USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
BASE_USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
USDC_DECIMALS = 6

# CAIP-2 identifiers advertised in challenges
CHAIN_IDS = {
    Network.SOLANA: "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp",
    Network.BASE: "eip155:8453",
}

SETTLEMENT_TIMES = {
    Network.SOLANA: "~400ms",
    Network.BASE: "~2s",
}

_HEX_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


@dataclass(frozen=True)
class NetworkConfig:
    network: Network
    rpc_url: str
    asset_address: str
    recipient: Optional[str] = None
    decimals: int = USDC_DECIMALS

    @property
    def chain_id(self) -> str:
        return CHAIN_IDS[self.network]


@dataclass(frozen=True)
class ProxyConfig:
    host: Optional[str] = None
    port: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    country: str = "US"

    @property
    def url(self) -> Optional[str]:
        if not self.host or not self.port:
            return None
        if self.user:
            return f"http://{self.user}:{self.password or ''}@{self.host}:{self.port}"
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True)
class Settings:
    networks: Dict[Network, NetworkConfig]
    rpc_timeout_seconds: float = 12.0
    rpc_max_retries: int = 2
    rpc_retry_backoff_seconds: float = 0.5
    replay_retention_days: float = 30.0
    replay_store_url: Optional[str] = None
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    log_level: str = "INFO"

    @property
    def recipients(self) -> Dict[Network, str]:
        """Recipient address per network, omitting networks with no wallet configured."""
        return {
            network: cfg.recipient
            for network, cfg in self.networks.items()
            if cfg.recipient
        }

    @property
    def replay_retention_seconds(self) -> float:
        return self.replay_retention_days * 86400


def _split_wallets(env: Mapping[str, str]) -> Dict[Network, Optional[str]]:
    # WALLET_ADDRESS is shared: a 0x address goes to Base, anything else to Solana.
    shared = (env.get("WALLET_ADDRESS") or "").strip() or None
    solana = (env.get("SOLANA_WALLET_ADDRESS") or "").strip() or None
    base = (env.get("BASE_WALLET_ADDRESS") or "").strip() or None
    if shared:
        if _HEX_ADDRESS.match(shared):
            base = base or shared
        else:
            solana = solana or shared
    return {Network.SOLANA: solana, Network.BASE: base}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    wallets = _split_wallets(env)

    networks = {
        Network.SOLANA: NetworkConfig(
            network=Network.SOLANA,
            rpc_url=env.get("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com"),
            asset_address=env.get("SOLANA_USDC_MINT", SOLANA_USDC_MINT),
            recipient=wallets[Network.SOLANA],
        ),
        Network.BASE: NetworkConfig(
            network=Network.BASE,
            rpc_url=env.get("BASE_RPC_URL", "https://mainnet.base.org"),
            asset_address=env.get("BASE_USDC_ADDRESS", BASE_USDC_ADDRESS),
            recipient=wallets[Network.BASE],
        ),
    }

    return Settings(
        networks=networks,
        rpc_timeout_seconds=float(env.get("RPC_TIMEOUT_SECONDS", "12")),
        rpc_max_retries=int(env.get("RPC_MAX_RETRIES", "2")),
        rpc_retry_backoff_seconds=float(env.get("RPC_RETRY_BACKOFF_SECONDS", "0.5")),
        replay_retention_days=float(env.get("REPLAY_RETENTION_DAYS", "30")),
        replay_store_url=env.get("REPLAY_STORE_URL") or None,
        proxy=ProxyConfig(
            host=env.get("PROXY_HOST"),
            port=env.get("PROXY_HTTP_PORT"),
            user=env.get("PROXY_USER"),
            password=env.get("PROXY_PASS"),
            country=env.get("PROXY_COUNTRY", "US"),
        ),
        log_level=env.get("LOG_LEVEL", "INFO"),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
