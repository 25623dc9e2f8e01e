"""Unit tests for PaymentVerifier dispatch and retry policy."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from paygate.blockchain import ChainAdapterError
from paygate.schemas import ErrorKind, Network, PaymentReference, TransferEffect
from paygate.verifier import PaymentVerifier, RetryPolicy, to_decimal
from tests.conftest import BASE_RECIPIENT, RECIPIENTS, FakeAdapter

REF = PaymentReference(reference="0x" + "cd" * 32, network=Network.BASE)


class FlakyAdapter(FakeAdapter):
    """Fails with the given errors first, then returns the effect."""

    def __init__(self, config, effect, failures):
        super().__init__(config, effect, delay=0)
        self.failures = list(failures)

    async def fetch_transfer_effect(self, reference, expected_recipient=None):
        self.calls.append(reference)
        if self.failures:
            raise self.failures.pop(0)
        return self.effect


def _effect(base_config, amount_raw: int = 5_000) -> TransferEffect:
    return TransferEffect(
        recipient=BASE_RECIPIENT, asset=base_config.asset_address, amount_raw=amount_raw
    )


class TestRetryPolicy:
    def test_exponential_delay(self) -> None:
        policy = RetryPolicy(backoff_seconds=0.5)
        assert policy.delay(1) == 0.5
        assert policy.delay(2) == 1.0
        assert policy.delay(3) == 2.0

    def test_only_rpc_errors_retryable_by_default(self) -> None:
        assert RetryPolicy().retryable == frozenset({ErrorKind.RPC_ERROR})


def test_to_decimal_uses_asset_decimals() -> None:
    assert to_decimal(1, 6) == Decimal("0.000001")
    assert to_decimal(5_000, 6) == Decimal("0.005")


@pytest.mark.asyncio
class TestVerifierRetries:
    async def test_rpc_error_is_retried_until_success(self, base_config) -> None:
        adapter = FlakyAdapter(
            base_config,
            _effect(base_config),
            [ChainAdapterError(ErrorKind.RPC_ERROR, "down")] * 2,
        )
        sleep = AsyncMock()
        verifier = PaymentVerifier(
            {Network.BASE: adapter}, RetryPolicy(max_attempts=3, backoff_seconds=0.5), sleep=sleep
        )

        result = await verifier.verify(REF, RECIPIENTS, Decimal("0.005"))

        assert result.valid is True
        assert len(adapter.calls) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    async def test_retries_are_bounded(self, base_config) -> None:
        adapter = FlakyAdapter(
            base_config,
            _effect(base_config),
            [ChainAdapterError(ErrorKind.RPC_ERROR, "down")] * 5,
        )
        verifier = PaymentVerifier(
            {Network.BASE: adapter}, RetryPolicy(max_attempts=2), sleep=AsyncMock()
        )

        result = await verifier.verify(REF, RECIPIENTS, Decimal("0.005"))

        assert result.valid is False
        assert result.error == ErrorKind.RPC_ERROR
        assert len(adapter.calls) == 2

    @pytest.mark.parametrize(
        "kind", [ErrorKind.NOT_FOUND, ErrorKind.REVERTED, ErrorKind.MALFORMED]
    )
    async def test_non_transient_errors_are_not_retried(self, base_config, kind) -> None:
        adapter = FlakyAdapter(base_config, _effect(base_config), [ChainAdapterError(kind)])
        verifier = PaymentVerifier(
            {Network.BASE: adapter}, RetryPolicy(max_attempts=3), sleep=AsyncMock()
        )

        result = await verifier.verify(REF, RECIPIENTS, Decimal("0.005"))

        assert result.error == kind
        assert len(adapter.calls) == 1

    async def test_custom_retryable_set(self, base_config) -> None:
        adapter = FlakyAdapter(
            base_config, _effect(base_config), [ChainAdapterError(ErrorKind.NOT_FOUND)]
        )
        policy = RetryPolicy(
            max_attempts=2, retryable=frozenset({ErrorKind.RPC_ERROR, ErrorKind.NOT_FOUND})
        )
        verifier = PaymentVerifier({Network.BASE: adapter}, policy, sleep=AsyncMock())

        result = await verifier.verify(REF, RECIPIENTS, Decimal("0.005"))

        assert result.valid is True
        assert len(adapter.calls) == 2

    async def test_timeout_becomes_rpc_error(self, base_config) -> None:
        adapter = FakeAdapter(base_config, _effect(base_config), delay=1.0)
        verifier = PaymentVerifier(
            {Network.BASE: adapter},
            RetryPolicy(max_attempts=1, timeout_seconds=0.01),
        )

        result = await verifier.verify(REF, RECIPIENTS, Decimal("0.005"))

        assert result.valid is False
        assert result.error == ErrorKind.RPC_ERROR
        assert "timed out" in result.detail


@pytest.mark.asyncio
class TestVerifierDispatch:
    async def test_network_without_adapter_is_unsupported(self, base_config) -> None:
        verifier = PaymentVerifier({Network.BASE: FakeAdapter(base_config, _effect(base_config))})
        ref = PaymentReference(reference="abc", network=Network.SOLANA)

        result = await verifier.verify(ref, RECIPIENTS, Decimal("0.005"))

        assert result.error == ErrorKind.UNSUPPORTED_NETWORK

    async def test_network_without_recipient_is_unsupported(self, base_config) -> None:
        adapter = FakeAdapter(base_config, _effect(base_config))
        verifier = PaymentVerifier({Network.BASE: adapter})

        result = await verifier.verify(REF, {Network.SOLANA: "x"}, Decimal("0.005"))

        assert result.error == ErrorKind.UNSUPPORTED_NETWORK
        assert adapter.calls == []

    async def test_unexpected_exception_never_escapes(self, base_config) -> None:
        adapter = FlakyAdapter(base_config, _effect(base_config), [RuntimeError("boom")])
        verifier = PaymentVerifier({Network.BASE: adapter}, RetryPolicy(max_attempts=1))

        result = await verifier.verify(REF, RECIPIENTS, Decimal("0.005"))

        assert result.valid is False
        assert result.error == ErrorKind.RPC_ERROR

    async def test_wrong_asset(self, base_config) -> None:
        effect = TransferEffect(
            recipient=BASE_RECIPIENT,
            asset="0x3333333333333333333333333333333333333333",
            amount_raw=5_000,
        )
        verifier = PaymentVerifier({Network.BASE: FakeAdapter(base_config, effect, delay=0)})

        result = await verifier.verify(REF, RECIPIENTS, Decimal("0.005"))

        assert result.error == ErrorKind.WRONG_ASSET

    async def test_price_asset_overrides_network_default(self, base_config) -> None:
        other_token = "0x3333333333333333333333333333333333333333"
        effect = TransferEffect(recipient=BASE_RECIPIENT, asset=other_token, amount_raw=5_000)
        verifier = PaymentVerifier({Network.BASE: FakeAdapter(base_config, effect, delay=0)})

        accepted = await verifier.verify(REF, RECIPIENTS, Decimal("0.005"), other_token)
        rejected = await verifier.verify(
            REF, RECIPIENTS, Decimal("0.005"), base_config.asset_address
        )

        assert accepted.valid
        assert rejected.error == ErrorKind.WRONG_ASSET

    async def test_concurrent_verifications_are_independent(self, base_config) -> None:
        adapter = FakeAdapter(base_config, _effect(base_config), delay=0.01)
        verifier = PaymentVerifier({Network.BASE: adapter})

        results = await asyncio.gather(
            *(verifier.verify(REF, RECIPIENTS, Decimal("0.005")) for _ in range(5))
        )

        assert all(r.valid for r in results)
        assert len(adapter.calls) == 5
