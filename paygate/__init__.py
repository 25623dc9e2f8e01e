"""Pay-per-request gating for scraping services, settled in USDC on Solana or Base."""

__version__ = "0.1.0"
