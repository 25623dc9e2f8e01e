"""Shared pytest fixtures for paygate tests.

Fixture summary
---------------
base_config, solana_config: NetworkConfig objects for the two chains.
fake_adapters: In-process chain adapters with scripted effects.
gate: PaymentGate over the fake adapters and a fresh
    in-memory replay store.
client: httpx.AsyncClient against the FastAPI app with
    ``get_gate`` overridden to ``gate``.

No test talks to a real RPC endpoint: Solana calls are mocked with respx,
Base calls with an AsyncMock standing in for ``AsyncWeb3``.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# ---------------------------------------------------------------------------
# Test environment bootstrap
# ---------------------------------------------------------------------------
# Set before any application module is imported so that load_dotenv() and
# get_settings() see test values rather than a developer's .env.

SOLANA_RECIPIENT = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
SOLANA_SENDER = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
BASE_RECIPIENT = "0x1111111111111111111111111111111111111111"
BASE_SENDER = "0x2222222222222222222222222222222222222222"
SOLANA_RPC_URL = "https://solana.test/rpc"

_TEST_ENV_DEFAULTS: dict[str, str] = {
    "SOLANA_WALLET_ADDRESS": SOLANA_RECIPIENT,
    "BASE_WALLET_ADDRESS": BASE_RECIPIENT,
    "SOLANA_RPC_URL": SOLANA_RPC_URL,
    "BASE_RPC_URL": "https://base.test/rpc",
    "RPC_RETRY_BACKOFF_SECONDS": "0",
}

for _key, _default in _TEST_ENV_DEFAULTS.items():
    os.environ.setdefault(_key, _default)

from paygate.blockchain import TRANSFER_EVENT_TOPIC, ChainAdapterError  # noqa: E402
from paygate.config import (  # noqa: E402
    BASE_USDC_ADDRESS,
    SOLANA_USDC_MINT,
    NetworkConfig,
    get_settings,
)
from paygate.gate import PaymentGate  # noqa: E402
from paygate.main import app, get_gate  # noqa: E402
from paygate.replay import InMemoryReplayStore, ReplayGuard  # noqa: E402
from paygate.schemas import Network, TransferEffect  # noqa: E402
from paygate.verifier import PaymentVerifier, RetryPolicy  # noqa: E402

get_settings.cache_clear()

RECIPIENTS = {Network.SOLANA: SOLANA_RECIPIENT, Network.BASE: BASE_RECIPIENT}


# ---------------------------------------------------------------------------
# Synthetic chain records
# ---------------------------------------------------------------------------


def topic_address(address: str) -> str:
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


def amount_word(amount_raw: int) -> str:
    return "0x" + format(amount_raw, "064x")


def transfer_log(
    recipient: str,
    amount_raw: int,
    *,
    sender: str = BASE_SENDER,
    asset: str = BASE_USDC_ADDRESS,
) -> dict[str, Any]:
    return {
        "address": asset,
        "topics": [TRANSFER_EVENT_TOPIC, topic_address(sender), topic_address(recipient)],
        "data": amount_word(amount_raw),
    }


def make_receipt(*logs: dict[str, Any], status: str = "0x1") -> dict[str, Any]:
    return {"status": status, "logs": list(logs)}


def token_balance(index: int, owner: str, amount_raw: int, mint: str = SOLANA_USDC_MINT) -> dict:
    return {
        "accountIndex": index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {
            "amount": str(amount_raw),
            "decimals": 6,
            "uiAmountString": str(amount_raw / 1_000_000),
        },
    }


def make_solana_tx(
    pre: list[dict], post: list[dict], *, err: Any = None, slot: int | None = 312_000_000
) -> dict[str, Any]:
    return {
        "slot": slot,
        "blockTime": 1_760_000_000,
        "meta": {"err": err, "preTokenBalances": pre, "postTokenBalances": post},
        "transaction": {"signatures": ["sig"]},
    }


def rpc_result(result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": 1, "result": result}


def mock_web3(receipt: Any = None, exc: BaseException | None = None) -> MagicMock:
    w3 = MagicMock()
    w3.eth.get_transaction_receipt = AsyncMock(return_value=receipt, side_effect=exc)
    return w3


# ---------------------------------------------------------------------------
# Fake adapters
# ---------------------------------------------------------------------------


class FakeAdapter:
    """Chain adapter returning a scripted effect, counting lookups."""

    def __init__(
        self,
        config: NetworkConfig,
        effect: TransferEffect | None = None,
        error: ChainAdapterError | None = None,
        delay: float = 0.01,
    ):
        self.config = config
        self.effect = effect
        self.error = error
        self.delay = delay
        self.calls: list[str] = []

    async def fetch_transfer_effect(
        self, reference: str, expected_recipient: str | None = None
    ) -> TransferEffect:
        self.calls.append(reference)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        assert self.effect is not None
        return self.effect


@pytest.fixture
def base_config() -> NetworkConfig:
    return NetworkConfig(
        network=Network.BASE,
        rpc_url="https://base.test/rpc",
        asset_address=BASE_USDC_ADDRESS,
        recipient=BASE_RECIPIENT,
    )


@pytest.fixture
def solana_config() -> NetworkConfig:
    return NetworkConfig(
        network=Network.SOLANA,
        rpc_url=SOLANA_RPC_URL,
        asset_address=SOLANA_USDC_MINT,
        recipient=SOLANA_RECIPIENT,
    )


@pytest.fixture
def fake_adapters(base_config, solana_config) -> dict[Network, FakeAdapter]:
    return {
        Network.BASE: FakeAdapter(
            base_config,
            TransferEffect(recipient=BASE_RECIPIENT, asset=BASE_USDC_ADDRESS, amount_raw=5_000),
        ),
        Network.SOLANA: FakeAdapter(
            solana_config,
            TransferEffect(recipient=SOLANA_RECIPIENT, asset=SOLANA_USDC_MINT, amount_raw=5_000),
        ),
    }


@pytest.fixture
def gate(fake_adapters, base_config, solana_config) -> PaymentGate:
    verifier = PaymentVerifier(
        fake_adapters, RetryPolicy(max_attempts=1, backoff_seconds=0, timeout_seconds=5)
    )
    return PaymentGate(
        verifier,
        ReplayGuard(InMemoryReplayStore()),
        RECIPIENTS,
        {Network.BASE: base_config, Network.SOLANA: solana_config},
    )


@pytest_asyncio.fixture
async def client(gate) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_gate] = lambda: gate
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_gate, None)
