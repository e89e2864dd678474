"""Pydantic schemas for QR payloads, collaborator contracts and API bodies."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QrType(str, Enum):
    PERSONAL = "personal"
    STATIC_MERCHANT = "static_merchant"
    DYNAMIC_MERCHANT = "dynamic_merchant"


class UpiQrData(BaseModel):
    """Parsed ``upi://pay`` payload.

    Every value is the raw decoded string from the URI; interpretation happens in
    validation only. Aliases are the wire keys, so ``model_dump(by_alias=True)``
    reproduces ``pa``/``pn``/``am``... and keys outside the fixed schema live in
    ``extras`` in the order they appeared.
    """

    model_config = ConfigDict(populate_by_name=True)

    payee_address: str = Field(default="", alias="pa")
    payee_name: str | None = Field(default=None, alias="pn")
    amount: str | None = Field(default=None, alias="am")
    currency_code: str | None = Field(default=None, alias="cu")
    merchant_category_code: str | None = Field(default=None, alias="mc")
    transaction_ref: str | None = Field(default=None, alias="tr")
    mode: str | None = None
    purpose: str | None = None
    orgid: str | None = None
    sign: str | None = None
    extras: dict[str, str] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


class ParsedQrResponse(CamelModel):
    qr_type: QrType
    is_valid: bool
    data: UpiQrData
    errors: list[str] | None = None
    formatted_data: str | None = None


class ScanningState(CamelModel):
    is_scanning: bool = False
    has_permission: bool | None = None
    error: str | None = None
    scan_result: str | None = None
    is_loading: bool = False


class ConversionResult(CamelModel):
    """Quote for one fiat amount. A new amount needs a new quote."""

    model_config = ConfigDict(frozen=True)

    inr_amount: Decimal
    usd_amount: Decimal | None = None
    usdc_amount: Decimal
    exchange_rate: Decimal
    network_fee: Decimal
    network_name: str
    total_usdc_amount: Decimal
    last_updated: datetime


class BalanceCheckResult(CamelModel):
    has_sufficient_balance: bool
    balance: Decimal
    required: Decimal
    error: str | None = None


class BeneficiaryDetails(BaseModel):
    beneficiary_id: str | None = None
    beneficiary_name: str | None = None
    vpa: str | None = None


class TypedData(BaseModel):
    domain: dict[str, Any]
    types: dict[str, Any]
    message: dict[str, Any]
    primary_type: str = Field(default="TransferWithAuthorization", alias="primaryType")

    model_config = ConfigDict(populate_by_name=True)


class PreparedAuthorization(CamelModel):
    nonce: str
    valid_after: int
    valid_before: int
    typed_data: TypedData


class SignatureParts(BaseModel):
    v: int
    r: str
    s: str


class MetaTransaction(CamelModel):
    from_address: str = Field(alias="from")
    to: str
    value: str
    valid_after: int
    valid_before: int
    nonce: str
    signature: SignatureParts
    chain_id: int


class MerchantDetails(BaseModel):
    pa: str
    pn: str | None = None
    am: str | None = None
    cu: str = "INR"
    mc: str | None = None
    tr: str | None = None


class SettlementReceipt(CamelModel):
    success: bool
    transaction_hash: str | None = None
    receipt: dict[str, Any] | None = None


class PayoutDetails(CamelModel):
    transfer_id: str | None = None
    amount: Decimal | None = None
    status: str | None = None
    message: str | None = None


class PayoutResult(CamelModel):
    success: bool
    payout: PayoutDetails | None = None
    error: str | None = None


class TransactionRecord(CamelModel):
    """In-memory mirror of one persisted scan-to-pay attempt."""

    model_config = ConfigDict(from_attributes=True)

    id: str | None = None
    upi_id: str
    merchant_name: str
    inr_amount: Decimal
    total_usd_to_pay: Decimal
    chain_id: int
    wallet_address: str | None = None
    txn_hash: str | None = None
    is_success: bool = False
    payout_triggered: bool = False
    payout_transfer_id: str | None = None
    payout_status: str | None = None
    payout_failure_reason: str | None = None
    scanned_at: datetime | None = None
    paid_at: datetime | None = None


# --- HTTP API bodies -------------------------------------------------------


class ScanRequest(CamelModel):
    qr_data: str


class LastScanResponse(CamelModel):
    qr_string: str
    scanned_at: datetime
    parsed_data: ParsedQrResponse


class StoreTransactionRequest(CamelModel):
    upi_id: str = Field(min_length=1)
    merchant_name: str = Field(min_length=1)
    total_usd_to_pay: Decimal = Field(gt=0)
    inr_amount: Decimal = Field(gt=0)
    chain_id: int
    wallet_address: str | None = None
    txn_hash: str | None = None
    is_success: bool = False


class StoreTransactionResponse(CamelModel):
    success: bool = True
    transaction_id: str
    chain: str


class UpdateTransactionRequest(CamelModel):
    wallet_address: str | None = None
    txn_hash: str | None = None
    is_success: bool | None = None
    payout_triggered: bool | None = None
    payout_transfer_id: str | None = None
    payout_status: str | None = None
    payout_failure_reason: str | None = None


class GenerateQRRequest(CamelModel):
    upi_id: str = Field(min_length=3, max_length=255)
    name: str = Field(min_length=1, max_length=99)
    amount: Decimal | None = Field(default=None, gt=0)
    merchant_code: str | None = Field(default=None, pattern=r"^\d{1,8}$")


class GenerateQRResponse(CamelModel):
    payload: str
    qr_type: QrType
    qr_png_base64: str
