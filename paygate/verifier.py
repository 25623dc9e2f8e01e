import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, FrozenSet, Mapping, Optional

from paygate.blockchain import ChainAdapter, ChainAdapterError
from paygate.schemas import (
    ErrorKind,
    Network,
    PaymentReference,
    TransferEffect,
    VerificationResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How often, and on which failures, a chain lookup is repeated."""

    max_attempts: int = 3
    backoff_seconds: float = 0.5
    timeout_seconds: float = 12.0
    retryable: FrozenSet[ErrorKind] = field(
        default_factory=lambda: frozenset({ErrorKind.RPC_ERROR})
    )

    def delay(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


def to_decimal(amount_raw: int, decimals: int) -> Decimal:
    return Decimal(amount_raw).scaleb(-decimals)


def same_address(network: Network, a: str, b: str) -> bool:
    # EVM hex addresses are case-insensitive; base58 is not.
    if network == Network.BASE:
        return a.lower() == b.lower()
    return a == b


class PaymentVerifier:
    def __init__(
        self,
        adapters: Mapping[Network, ChainAdapter],
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.adapters = dict(adapters)
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def _fetch(
        self, adapter: ChainAdapter, ref: PaymentReference, expected_recipient: str
    ) -> TransferEffect:
        policy = self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(
                    adapter.fetch_transfer_effect(ref.reference, expected_recipient),
                    timeout=policy.timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                error = ChainAdapterError(
                    ErrorKind.RPC_ERROR,
                    f"{ref.network.value} RPC timed out after {policy.timeout_seconds}s",
                )
                error.__cause__ = e
            except ChainAdapterError as e:
                error = e

            if error.kind not in policy.retryable or attempt >= policy.max_attempts:
                raise error
            logger.info(
                f"Retrying {ref.network.value} lookup for {ref.reference} "
                f"after {error.kind.value} (attempt {attempt}/{policy.max_attempts})"
            )
            await self._sleep(policy.delay(attempt))

    async def verify(
        self,
        ref: PaymentReference,
        expected_recipients: Mapping[Network, str],
        min_amount: Decimal,
        required_asset: Optional[str] = None,
    ) -> VerificationResult:
        logger.info(f"Verifying {ref.network.value} payment {ref.reference}")

        adapter = self.adapters.get(ref.network)
        expected_recipient = expected_recipients.get(ref.network)
        if adapter is None or not expected_recipient:
            return VerificationResult.rejected(
                ErrorKind.UNSUPPORTED_NETWORK,
                f"Network '{ref.network.value}' is not accepted by this service",
            )

        try:
            effect = await self._fetch(adapter, ref, expected_recipient)
        except ChainAdapterError as e:
            logger.info(f"Payment {ref.reference} rejected: {e.kind.value} {e.detail}")
            return VerificationResult.rejected(e.kind, e.detail or None)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Error verifying payment {ref.reference}: {e}", exc_info=True)
            return VerificationResult.rejected(ErrorKind.RPC_ERROR, f"Verification error: {e!s}")

        config = adapter.config
        required_asset = required_asset or config.asset_address
        if not same_address(ref.network, effect.recipient, expected_recipient):
            return VerificationResult.rejected(
                ErrorKind.WRONG_RECIPIENT,
                f"Payment recipient '{effect.recipient}' does not match required recipient '{expected_recipient}'",
            )

        if not same_address(ref.network, effect.asset, required_asset):
            return VerificationResult.rejected(
                ErrorKind.WRONG_ASSET,
                f"Payment asset '{effect.asset}' does not match required asset '{required_asset}'",
            )

        amount = to_decimal(effect.amount_raw, config.decimals)
        if amount < min_amount:
            return VerificationResult.rejected(
                ErrorKind.INSUFFICIENT_AMOUNT,
                f"Payment amount '{amount}' is below required amount '{min_amount}'",
            )

        logger.info(f"Payment {ref.reference} verified: {amount} on {ref.network.value}")
        return VerificationResult(valid=True, amount=amount)
