"""Client for the fiat payout rail."""
from __future__ import annotations

import logging
import re
from decimal import Decimal

import httpx
from pydantic import ValidationError

from ..config import settings
from ..schemas import BeneficiaryDetails, PayoutResult
from .errors import ServiceError, err_payout_failed
from .http import build_client, post_json

logger = logging.getLogger("stablepay.payout")

_REMARKS_DISALLOWED = re.compile(r"[^a-zA-Z0-9\s]")


def clean_remarks(merchant_name: str | None, max_length: int | None = None) -> str:
    """Payout rails accept short alphanumeric remarks only."""

    limit = max_length or settings.payout_remarks_max_length
    name = (merchant_name or "Merchant")[:limit]
    return _REMARKS_DISALLOWED.sub("", f"Pay {name}").strip()


def resolve_beneficiary_id(beneficiary: BeneficiaryDetails | None, payee_address: str) -> str:
    """Prefer a registered beneficiary; otherwise let the rail look up the UPI id."""

    if beneficiary and beneficiary.beneficiary_id:
        return beneficiary.beneficiary_id
    return payee_address


class PayoutClient:
    def __init__(self, url: str | None = None, client: httpx.AsyncClient | None = None):
        self.url = url or settings.payout_url
        self.client = client or build_client()

    async def initiate(self, customer_id: str, amount: Decimal, remarks: str) -> PayoutResult:
        """Start a payout. Rejections come back as ``success=False`` rather than raising."""

        try:
            body = await post_json(
                self.client,
                self.url,
                {"customerId": customer_id, "amount": float(amount), "remarks": remarks},
                error=err_payout_failed,
            )
        except ServiceError as exc:
            return PayoutResult(success=False, error=exc.message)

        try:
            result = PayoutResult.model_validate(body)
        except ValidationError:
            return PayoutResult(success=False, error="Malformed payout response")

        logger.info(
            "payout initiated",
            extra={
                "success": result.success,
                "transfer_id": result.payout.transfer_id if result.payout else None,
            },
        )
        return result
