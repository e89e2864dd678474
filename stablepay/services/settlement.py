"""Client for the settlement backend that relays gasless USDC transfers."""
from __future__ import annotations

import logging
from decimal import Decimal

import httpx
from pydantic import ValidationError

from ..config import settings
from ..schemas import MerchantDetails, MetaTransaction, PreparedAuthorization, SettlementReceipt
from .errors import err_prepare_failed, err_settlement_failed
from .http import build_client, post_json

logger = logging.getLogger("stablepay.settlement")

PREPARE_PATH = "/api/payments/prepare-meta-transaction"
EXECUTE_PATH = "/api/payments/process"


class SettlementClient:
    """Two-phase relay: ``prepare`` returns the typed data to sign, ``execute`` broadcasts."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.backend_url).rstrip("/")
        self.api_key = api_key or settings.backend_api_key
        self.client = client or build_client()

    @property
    def _headers(self) -> dict[str, str]:
        return {"X-API-Key": self.api_key}

    async def prepare(
        self,
        *,
        payer: str,
        recipient: str,
        token: str,
        amount: Decimal,
        chain_id: int,
    ) -> PreparedAuthorization:
        body = await post_json(
            self.client,
            self.base_url + PREPARE_PATH,
            {"from": payer, "to": recipient, "token": token, "value": str(amount), "chainId": chain_id},
            error=err_prepare_failed,
            headers=self._headers,
        )
        try:
            prepared = PreparedAuthorization.model_validate(body.get("data") if isinstance(body, dict) else None)
        except ValidationError as exc:
            raise err_prepare_failed("Malformed prepare response") from exc
        logger.info(
            "meta transaction prepared",
            extra={"chain_id": chain_id, "valid_before": prepared.valid_before},
        )
        return prepared

    async def execute(
        self,
        meta_transaction: MetaTransaction,
        merchant: MerchantDetails,
        chain_id: int,
    ) -> SettlementReceipt:
        body = await post_json(
            self.client,
            self.base_url + EXECUTE_PATH,
            {
                "metaTransactionRequest": meta_transaction.model_dump(mode="json", by_alias=True),
                "upiMerchantDetails": merchant.model_dump(exclude_none=True),
                "chainId": chain_id,
            },
            error=err_settlement_failed,
            headers=self._headers,
        )
        data = (body.get("data") or {}) if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise err_settlement_failed("Malformed settlement response")
        try:
            receipt = SettlementReceipt(
                success=bool(body.get("success")),
                transaction_hash=data.get("transactionHash"),
                receipt=data,
            )
        except ValidationError as exc:
            raise err_settlement_failed("Malformed settlement response") from exc
        logger.info(
            "meta transaction executed",
            extra={"chain_id": chain_id, "success": receipt.success, "txn_hash": receipt.transaction_hash},
        )
        return receipt
