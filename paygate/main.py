import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from paygate import __version__
from paygate.blockchain import get_solana_client, get_web3_provider
from paygate.challenge import build_challenge
from paygate.config import SETTLEMENT_TIMES, Settings, get_settings
from paygate.evm import BaseAdapter
from paygate.gate import PaymentGate, SettlementContext, extract_payment, misconfigured
from paygate.logging_config import configure_logging
from paygate.replay import InMemoryReplayStore, RedisReplayStore, ReplayGuard
from paygate.schemas import Network
from paygate.service import (
    DESCRIPTION,
    OUTPUT_SCHEMA,
    PRICE,
    RESOURCE,
    SERVICE_NAME,
    fetch_page,
    validate_url,
)
from paygate.solana import SolanaAdapter
from paygate.verifier import PaymentVerifier, RetryPolicy

logger = logging.getLogger(__name__)


def build_gate(settings: Settings) -> PaymentGate:
    solana_config = settings.networks[Network.SOLANA]
    base_config = settings.networks[Network.BASE]
    adapters = {
        Network.SOLANA: SolanaAdapter(
            solana_config, get_solana_client(solana_config, settings.rpc_timeout_seconds)
        ),
        Network.BASE: BaseAdapter(base_config, get_web3_provider(base_config)),
    }
    verifier = PaymentVerifier(
        adapters,
        RetryPolicy(
            max_attempts=settings.rpc_max_retries + 1,
            backoff_seconds=settings.rpc_retry_backoff_seconds,
            timeout_seconds=settings.rpc_timeout_seconds,
        ),
    )

    if settings.replay_store_url:
        store = RedisReplayStore(settings.replay_store_url)
    else:
        store = InMemoryReplayStore()
    guard = ReplayGuard(store, retention_seconds=settings.replay_retention_seconds)

    return PaymentGate(verifier, guard, settings.recipients, settings.networks)


@lru_cache
def get_gate() -> PaymentGate:
    return build_gate(get_settings())


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_settings().log_level)
    yield
    if get_gate.cache_info().currsize:
        gate = get_gate()
        solana = gate.verifier.adapters.get(Network.SOLANA)
        if isinstance(solana, SolanaAdapter):
            await solana.client.aclose()
        if isinstance(gate.replay_guard.store, RedisReplayStore):
            await gate.replay_guard.store.close()


app = FastAPI(title="Paygate", version=__version__, lifespan=lifespan)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/")
async def index(settings: Settings = Depends(get_settings)):
    networks = []
    for network, recipient in settings.recipients.items():
        config = settings.networks[network]
        networks.append(
            {
                "network": network.value,
                "chainId": config.chain_id,
                "recipient": recipient,
                "asset": PRICE.asset_symbol,
                "assetAddress": config.asset_address,
                "settlementTime": SETTLEMENT_TIMES[network],
            }
        )
    return {
        "name": SERVICE_NAME,
        "description": DESCRIPTION,
        "version": __version__,
        "endpoints": [
            {"path": RESOURCE, "description": DESCRIPTION, "schema": OUTPUT_SCHEMA},
            {"path": "/api/discover", "description": "Payment instructions for /api/run"},
        ],
        "pricing": {
            "run": f"{PRICE.amount_str} {PRICE.asset_symbol}",
            "currency": PRICE.asset_symbol,
            "networks": networks,
        },
    }


@app.get("/health")
async def health(gate: PaymentGate = Depends(get_gate)):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "replayRecords": await gate.replay_guard.store.count(),
    }


@app.get("/api/discover")
async def discover(
    settings: Settings = Depends(get_settings),
):
    if not settings.recipients:
        return misconfigured()
    document = build_challenge(
        RESOURCE,
        DESCRIPTION,
        PRICE.with_assets(settings.networks),
        settings.recipients,
        OUTPUT_SCHEMA,
        settings.networks,
    )
    return {**document.model_dump(mode="json", by_alias=True), "service": SERVICE_NAME}


@app.get(RESOURCE)
async def run(
    request: Request,
    url: Optional[str] = None,
    gate: PaymentGate = Depends(get_gate),
    settings: Settings = Depends(get_settings),
):
    if not gate.recipients:
        return misconfigured()

    price = PRICE.with_assets(gate.networks)
    error = validate_url(url)
    if error:
        # Unpaid requests still get the price; paid requests with bad input are
        # refused before the payment is consumed.
        if extract_payment(request) is None:
            return gate.challenge(RESOURCE, DESCRIPTION, price, OUTPUT_SCHEMA)
        return JSONResponse(status_code=400, content={"error": error})

    async def handler(settlement: SettlementContext):
        return await fetch_page(url, settings.proxy, settlement)

    return await gate.run(
        request,
        price,
        handler,
        description=DESCRIPTION,
        output_schema=OUTPUT_SCHEMA,
        resource=RESOURCE,
    )
