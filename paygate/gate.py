"""Per-request payment gate.

    NO_PAYMENT -> CHALLENGED (402)
    PAYMENT_PRESENT -> VERIFYING -> REJECTED (402)
                                 -> ACCEPTED -> EXECUTING -> SUCCEEDED (200)
                                                          -> HANDLER_FAILED (502)

A reference is reserved in the replay guard before the chain lookup and is
either finalized (accepted, permanent) or released (lookup failed). Handler
failures never release a finalized reference.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Union

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from paygate.challenge import build_challenge
from paygate.config import NetworkConfig
from paygate.replay import ReplayGuard, ReplayRecord
from paygate.schemas import (
    ErrorKind,
    Network,
    PaymentReference,
    PriceSpec,
    Settlement,
    VerificationFailure,
    VerificationResult,
)
from paygate.verifier import PaymentVerifier

logger = logging.getLogger(__name__)

REFERENCE_HEADERS = ("payment-signature", "x-payment-signature")
NETWORK_HEADER = "x-payment-network"
DEFAULT_NETWORK = Network.SOLANA

MAX_REFERENCE_LENGTH = 128
_REFERENCE_PATTERN = re.compile(r"^(0x)?[0-9A-Za-z]+$")

VERIFICATION_HINT = (
    "Ensure the transaction is confirmed and sends the correct USDC amount "
    "to the recipient wallet."
)
ALREADY_USED_HINT = "This transaction was already used to pay for a request. Send a new payment."


class GateState(str, Enum):
    NO_PAYMENT = "no_payment"
    CHALLENGED = "challenged"
    PAYMENT_PRESENT = "payment_present"
    VERIFYING = "verifying"
    REJECTED = "rejected"
    ACCEPTED = "accepted"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    HANDLER_FAILED = "handler_failed"


class ServiceError(Exception):
    """Raised by a paid handler when it cannot deliver the paid result; always a 502."""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint


@dataclass(frozen=True)
class SettlementContext:
    payment: PaymentReference
    amount: Decimal
    record: Optional[ReplayRecord] = None

    @property
    def settlement(self) -> Settlement:
        return Settlement(
            reference=self.payment.reference,
            network=self.payment.network,
            amount=self.amount,
        )

    def headers(self) -> Dict[str, str]:
        return {
            "X-Payment-Settled": "true",
            "X-Payment-TxHash": safe_header_value(self.payment.reference),
        }


def safe_header_value(value: str) -> str:
    return "".join(ch for ch in value if 0x20 < ord(ch) < 0x7F)[:MAX_REFERENCE_LENGTH]


def extract_payment(request: Request) -> Optional[Tuple[str, str]]:
    """Return ``(reference, network)`` from the payment headers, or None.

    Anything missing or malformed counts as no payment.
    """
    try:
        reference = None
        for name in REFERENCE_HEADERS:
            value = request.headers.get(name)
            if value and value.strip():
                reference = value.strip()
                break
        if not reference:
            return None
        if len(reference) > MAX_REFERENCE_LENGTH or not _REFERENCE_PATTERN.match(reference):
            logger.debug("Ignoring malformed payment reference header")
            return None

        network = (request.headers.get(NETWORK_HEADER) or DEFAULT_NETWORK.value).strip().lower()
        return reference, network
    except (AttributeError, TypeError, UnicodeDecodeError):
        return None


def misconfigured() -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"error": "Service misconfigured: WALLET_ADDRESS not set"},
    )


def _failure(
    reason: ErrorKind,
    error: str = "Payment verification failed",
    detail: Optional[str] = None,
    hint: Optional[str] = VERIFICATION_HINT,
) -> JSONResponse:
    body = VerificationFailure(error=error, reason=reason, detail=detail, hint=hint)
    return JSONResponse(status_code=402, content=body.model_dump(mode="json", exclude_none=True))


class PaymentGate:
    def __init__(
        self,
        verifier: PaymentVerifier,
        replay_guard: ReplayGuard,
        recipients: Mapping[Network, str],
        networks: Optional[Mapping[Network, NetworkConfig]] = None,
    ):
        self.verifier = verifier
        self.replay_guard = replay_guard
        self.recipients = dict(recipients)
        self.networks = dict(networks or {})

    def challenge(
        self,
        resource: str,
        description: str,
        price: PriceSpec,
        output_schema: Optional[Dict[str, Any]] = None,
    ) -> JSONResponse:
        document = build_challenge(
            resource, description, price, self.recipients, output_schema, self.networks
        )
        return JSONResponse(
            status_code=402,
            content=document.model_dump(mode="json", by_alias=True),
        )

    async def _verify_and_settle(
        self, ref: PaymentReference, price: PriceSpec, reservation: ReplayRecord
    ) -> Tuple[VerificationResult, Optional[ReplayRecord]]:
        try:
            result = await self.verifier.verify(
                ref, self.recipients, price.amount, price.assets.get(ref.network)
            )
            if result.valid:
                return result, await self.replay_guard.finalize(ref)
        except BaseException:
            await self.replay_guard.release(ref, reservation)
            raise
        await self.replay_guard.release(ref, reservation)
        return result, None

    async def require_settled_payment(
        self,
        request: Request,
        price: PriceSpec,
        *,
        description: str = "",
        output_schema: Optional[Dict[str, Any]] = None,
        resource: Optional[str] = None,
    ) -> Union[SettlementContext, JSONResponse]:
        """Settle the request's payment, or return the early 402/500 response."""
        resource = resource or request.url.path

        if not self.recipients:
            return misconfigured()

        extracted = extract_payment(request)
        if extracted is None:
            logger.debug(f"{resource}: {GateState.CHALLENGED.value}")
            return self.challenge(resource, description, price, output_schema)

        reference, network_name = extracted
        try:
            network = Network(network_name)
        except ValueError:
            return _failure(
                ErrorKind.UNSUPPORTED_NETWORK,
                detail=f"Unsupported payment network '{network_name[:32]}'",
                hint=f"Supported networks: {', '.join(n.value for n in self.recipients)}",
            )
        try:
            ref = PaymentReference(reference=reference, network=network)
        except ValidationError:
            return _failure(
                ErrorKind.MALFORMED,
                detail=f"Malformed {network.value} transaction reference",
                hint="Send the transaction hash as 0x followed by 64 hex digits.",
            )

        reservation = await self.replay_guard.reserve(ref)
        if reservation is None:
            logger.warning(f"{resource}: replayed payment {ref.replay_key}")
            return _failure(
                ErrorKind.ALREADY_USED, error="Payment already used", hint=ALREADY_USED_HINT
            )

        # Shielded so a client disconnect does not leave the reservation dangling.
        result, record = await asyncio.shield(self._verify_and_settle(ref, price, reservation))

        if not result.valid:
            logger.info(f"{resource}: {GateState.REJECTED.value} {ref.replay_key} ({result.error.value})")
            return _failure(result.error, detail=result.detail)

        logger.info(f"{resource}: {GateState.ACCEPTED.value} {ref.replay_key} amount={result.amount}")
        return SettlementContext(payment=ref, amount=result.amount, record=record)

    async def run(
        self,
        request: Request,
        price: PriceSpec,
        handler: Callable[[SettlementContext], Awaitable[Dict[str, Any]]],
        *,
        description: str = "",
        output_schema: Optional[Dict[str, Any]] = None,
        resource: Optional[str] = None,
    ) -> JSONResponse:
        """Gate ``handler`` behind payment and attach the settlement to its result."""
        outcome = await self.require_settled_payment(
            request,
            price,
            description=description,
            output_schema=output_schema,
            resource=resource,
        )
        if isinstance(outcome, JSONResponse):
            return outcome

        payment = outcome.settlement.model_dump(mode="json")
        try:
            body = await handler(outcome)
        except ServiceError as e:
            logger.warning(f"{GateState.HANDLER_FAILED.value} after payment {outcome.payment.replay_key}: {e.message}")
            content = {"error": "Service execution failed", "message": e.message}
            if e.hint:
                content["hint"] = e.hint
            content["payment"] = payment
            return JSONResponse(status_code=502, content=content, headers=outcome.headers())
        except Exception as e:  # noqa: BLE001
            logger.error(
                f"{GateState.HANDLER_FAILED.value} after payment {outcome.payment.replay_key}: {e}",
                exc_info=True,
            )
            return JSONResponse(
                status_code=502,
                content={
                    "error": "Service execution failed",
                    "message": str(e),
                    "payment": payment,
                },
                headers=outcome.headers(),
            )

        content = dict(body)
        content["payment"] = payment
        return JSONResponse(content=content, headers=outcome.headers())
