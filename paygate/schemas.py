import re
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator
from pydantic.alias_generators import to_camel


class Network(str, Enum):
    SOLANA = "solana"
    BASE = "base"


class ErrorKind(str, Enum):
    NO_PAYMENT = "no_payment"
    UNSUPPORTED_NETWORK = "unsupported_network"
    NOT_FOUND = "not_found"
    RPC_ERROR = "rpc_error"
    REVERTED = "reverted"
    MALFORMED = "malformed"
    UNCONFIRMED = "unconfirmed"
    WRONG_RECIPIENT = "wrong_recipient"
    WRONG_ASSET = "wrong_asset"
    INSUFFICIENT_AMOUNT = "insufficient_amount"
    ALREADY_USED = "already_used"


def decimal_str(amount: Decimal) -> str:
    """Render a decimal without exponent or trailing zeros (0.050000 -> 0.05)."""
    return format(amount.normalize(), "f")


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


_EVM_TX_HASH = re.compile(r"^(?:0[xX])?([0-9a-fA-F]{64})$")


def canonical_reference(network: Any, reference: str) -> str:
    """Normalize a transaction reference so one transaction has one replay key.

    EVM hashes are case-insensitive hex and are stored lower-case with ``0x``.
    Solana signatures are base58 and case-sensitive, so they are kept as sent.
    """
    reference = reference.strip()
    if Network(network) is Network.BASE:
        match = _EVM_TX_HASH.match(reference)
        if not match:
            raise ValueError("Base transaction hash must be 32 bytes of hex")
        return "0x" + match.group(1).lower()
    return reference


class PaymentReference(WireModel):
    """Transaction identifier presented by a caller as proof of payment."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    reference: str
    network: Network

    @model_validator(mode="before")
    @classmethod
    def _canonical_reference(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("reference"), str) and "network" in data:
            data = dict(data)
            data["reference"] = canonical_reference(data["network"], data["reference"])
        return data

    @property
    def replay_key(self) -> str:
        return f"{self.network.value}:{self.reference}"


class TransferEffect(WireModel):
    """Normalized token transfer decoded from a chain record. Amount is in raw units."""

    recipient: str
    asset: str
    amount_raw: int
    sender: Optional[str] = None


class PriceSpec(WireModel):
    """Price of one call: an amount of ``asset_symbol``, payable on each network in ``assets``."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    amount: Decimal
    asset_symbol: str = "USDC"
    assets: Dict[Network, str] = Field(default_factory=dict)

    @field_serializer("amount")
    def _amount_as_string(self, amount: Decimal) -> str:
        return format(amount, "f")

    @property
    def amount_str(self) -> str:
        return format(self.amount, "f")

    def with_assets(self, networks: Mapping[Network, Any]) -> "PriceSpec":
        """Copy with the asset address of each configured network filled in."""
        assets = {network: config.asset_address for network, config in networks.items()}
        assets.update(self.assets)
        return self.model_copy(update={"assets": assets})


class VerificationResult(WireModel):
    valid: bool
    amount: Optional[Decimal] = None
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None

    @field_serializer("amount")
    def _amount_as_string(self, amount: Optional[Decimal]) -> Optional[str]:
        return None if amount is None else decimal_str(amount)

    @classmethod
    def rejected(cls, error: ErrorKind, detail: Optional[str] = None) -> "VerificationResult":
        return cls(valid=False, error=error, detail=detail)


class ChallengePrice(WireModel):
    amount: str
    asset: str = "USDC"


class ChallengeNetwork(WireModel):
    network: Network
    chain_id: str
    asset: str
    asset_address: str
    recipient: str
    decimals: int


class ChallengeDocument(WireModel):
    status: int = 402
    resource: str
    description: str
    message: str = "Payment required"
    price: ChallengePrice
    recipients: Dict[str, str]
    networks: List[ChallengeNetwork] = Field(default_factory=list)
    output_schema: Dict[str, Any] = Field(default_factory=dict)


class Settlement(WireModel):
    """Receipt attached to every response produced after a payment was accepted."""

    reference: str
    network: Network
    amount: Decimal
    settled: bool = True

    @field_serializer("amount")
    def _amount_as_string(self, amount: Decimal) -> str:
        return decimal_str(amount)


class VerificationFailure(WireModel):
    error: str
    reason: ErrorKind
    detail: Optional[str] = None
    hint: Optional[str] = None
