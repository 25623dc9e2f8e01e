import logging
from typing import Any, List, Mapping, Optional

from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from paygate.blockchain import TRANSFER_EVENT_TOPIC, ChainAdapterError
from paygate.config import NetworkConfig
from paygate.schemas import ErrorKind, TransferEffect

logger = logging.getLogger(__name__)

WORD_SIZE = 32


def _to_bytes(value: Any) -> bytes:
    """Accept a 0x-prefixed hex string or raw bytes (web3 returns HexBytes)."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return Web3.to_bytes(hexstr=value)
    raise TypeError(f"Expected hex string or bytes, got {type(value).__name__}")


def _parse_status(status: Any) -> int:
    if isinstance(status, str):
        return int(status, 16)
    return int(status)


def canonical_address(address: str) -> str:
    return Web3.to_checksum_address(address)


def _word_to_address(word: bytes) -> str:
    return Web3.to_checksum_address("0x" + word[-20:].hex())


def decode_transfer_log(log: Mapping[str, Any]) -> TransferEffect:
    """Decode an ERC-20 ``Transfer`` log into a transfer effect.

    Raises ChainAdapterError(MALFORMED) when the topics or data are not the fixed widths.
    """
    topics = log.get("topics") or []
    if len(topics) != 3:
        raise ChainAdapterError(
            ErrorKind.MALFORMED, f"Transfer log has {len(topics)} topics, expected 3"
        )
    try:
        words = [_to_bytes(topic) for topic in topics]
        data = _to_bytes(log.get("data") or b"")
    except (TypeError, ValueError) as e:
        raise ChainAdapterError(ErrorKind.MALFORMED, f"Undecodable Transfer log: {e}") from e

    if any(len(word) != WORD_SIZE for word in words):
        raise ChainAdapterError(ErrorKind.MALFORMED, "Transfer topic is not 32 bytes")
    if len(data) != WORD_SIZE:
        raise ChainAdapterError(
            ErrorKind.MALFORMED, f"Transfer data is {len(data)} bytes, expected 32"
        )

    try:
        asset = canonical_address(log["address"])
    except (KeyError, TypeError, ValueError) as e:
        raise ChainAdapterError(ErrorKind.MALFORMED, "Transfer log has no valid address") from e

    return TransferEffect(
        sender=_word_to_address(words[1]),
        recipient=_word_to_address(words[2]),
        asset=asset,
        amount_raw=int.from_bytes(data, "big"),
    )


class BaseAdapter:
    """Reads ERC-20 transfers out of Base transaction receipts."""

    def __init__(self, config: NetworkConfig, w3: AsyncWeb3):
        self.config = config
        self.w3 = w3

    async def _get_receipt(self, reference: str) -> Mapping[str, Any]:
        try:
            receipt = await self.w3.eth.get_transaction_receipt(reference)
        except TransactionNotFound as e:
            raise ChainAdapterError(ErrorKind.NOT_FOUND, "Transaction receipt not found") from e
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Base RPC error for {reference}: {e}")
            raise ChainAdapterError(ErrorKind.RPC_ERROR, f"Base RPC error: {e!s}") from e
        if receipt is None:
            raise ChainAdapterError(ErrorKind.NOT_FOUND, "Transaction receipt not found")
        return receipt

    def _transfer_logs(self, receipt: Mapping[str, Any]) -> List[Mapping[str, Any]]:
        asset = self.config.asset_address.lower()
        matching = []
        for log in receipt.get("logs") or []:
            topics = log.get("topics") or []
            if not topics or str(log.get("address", "")).lower() != asset:
                continue
            try:
                topic0 = Web3.to_hex(_to_bytes(topics[0]))
            except (TypeError, ValueError):
                continue
            if topic0.lower() == TRANSFER_EVENT_TOPIC:
                matching.append(log)
        return matching

    async def fetch_transfer_effect(
        self, reference: str, expected_recipient: Optional[str] = None
    ) -> TransferEffect:
        receipt = await self._get_receipt(reference)

        try:
            status = _parse_status(receipt.get("status"))
        except (TypeError, ValueError) as e:
            raise ChainAdapterError(ErrorKind.MALFORMED, "Receipt has no valid status") from e
        if status == 0:
            raise ChainAdapterError(ErrorKind.REVERTED, "Transaction reverted on chain")

        logs = self._transfer_logs(receipt)
        if not logs:
            raise ChainAdapterError(
                ErrorKind.MALFORMED, "No USDC Transfer log found in transaction receipt"
            )

        effects = [decode_transfer_log(log) for log in logs]
        if len(effects) == 1:
            return effects[0]

        if expected_recipient:
            wanted = expected_recipient.lower()
            for effect in effects:
                if effect.recipient.lower() == wanted:
                    return effect
        raise ChainAdapterError(
            ErrorKind.NOT_FOUND, "No USDC transfer to the expected recipient in transaction"
        )
