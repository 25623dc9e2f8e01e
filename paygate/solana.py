import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import httpx

from paygate.blockchain import ChainAdapterError
from paygate.config import NetworkConfig
from paygate.schemas import ErrorKind, TransferEffect

logger = logging.getLogger(__name__)


@dataclass
class BalanceDelta:
    account_index: int
    owner: Optional[str]
    mint: str
    delta: int


def _raw_amount(entry: Mapping[str, Any]) -> int:
    ui = entry.get("uiTokenAmount") or {}
    return int(ui["amount"])


def token_balance_deltas(meta: Mapping[str, Any]) -> List[BalanceDelta]:
    """Compute per-account token balance changes from ``pre``/``postTokenBalances``.

    Accounts absent from the pre-balances (freshly created token accounts)
    start from zero.
    """
    try:
        pre: Dict[tuple, int] = {
            (entry["accountIndex"], entry["mint"]): _raw_amount(entry)
            for entry in meta.get("preTokenBalances") or []
        }
        deltas = []
        for entry in meta.get("postTokenBalances") or []:
            key = (entry["accountIndex"], entry["mint"])
            delta = _raw_amount(entry) - pre.get(key, 0)
            deltas.append(
                BalanceDelta(
                    account_index=entry["accountIndex"],
                    owner=entry.get("owner"),
                    mint=entry["mint"],
                    delta=delta,
                )
            )
    except (KeyError, TypeError, ValueError) as e:
        raise ChainAdapterError(ErrorKind.MALFORMED, f"Undecodable token balances: {e!s}") from e
    return deltas


class SolanaAdapter:
    """Reads SPL token transfers out of confirmed Solana transactions."""

    def __init__(self, config: NetworkConfig, client: httpx.AsyncClient):
        self.config = config
        self.client = client

    async def _rpc(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            response = await self.client.post(self.config.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Solana RPC {method} failed: {e}")
            raise ChainAdapterError(ErrorKind.RPC_ERROR, f"Solana RPC error: {e!s}") from e

        if not isinstance(body, dict):
            raise ChainAdapterError(ErrorKind.RPC_ERROR, "Solana RPC returned a non-object body")
        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ChainAdapterError(ErrorKind.RPC_ERROR, f"Solana RPC error: {message}")
        return body.get("result")

    async def get_transaction(self, signature: str) -> Optional[Mapping[str, Any]]:
        return await self._rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    def _pick(self, deltas: List[BalanceDelta], expected_recipient: Optional[str]) -> BalanceDelta:
        increases = [d for d in deltas if d.delta > 0]
        if not increases:
            raise ChainAdapterError(ErrorKind.NOT_FOUND, "No token balance increase in transaction")

        mint = self.config.asset_address
        in_asset = [d for d in increases if d.mint == mint]
        if expected_recipient:
            for candidates in (in_asset, increases):
                for d in candidates:
                    if d.owner == expected_recipient:
                        return d
        if len(in_asset) == 1:
            return in_asset[0]
        if len(increases) == 1:
            return increases[0]
        raise ChainAdapterError(
            ErrorKind.NOT_FOUND, "No USDC transfer to the expected recipient in transaction"
        )

    async def fetch_transfer_effect(
        self, reference: str, expected_recipient: Optional[str] = None
    ) -> TransferEffect:
        tx = await self.get_transaction(reference)
        if tx is None:
            raise ChainAdapterError(ErrorKind.NOT_FOUND, "Transaction not found")
        if not isinstance(tx, Mapping):
            raise ChainAdapterError(ErrorKind.MALFORMED, "Unexpected getTransaction result")

        meta = tx.get("meta")
        if not meta or tx.get("slot") is None:
            raise ChainAdapterError(ErrorKind.UNCONFIRMED, "Transaction has no confirmed status")
        if meta.get("err") is not None:
            raise ChainAdapterError(ErrorKind.REVERTED, f"Transaction failed: {meta['err']}")

        delta = self._pick(token_balance_deltas(meta), expected_recipient)
        if not delta.owner:
            raise ChainAdapterError(ErrorKind.MALFORMED, "Token balance entry has no owner")

        return TransferEffect(
            recipient=delta.owner,
            asset=delta.mint,
            amount_raw=delta.delta,
        )
