"""Helpers to parse, classify, validate and build ``upi://pay`` payment URIs."""
from __future__ import annotations

import logging
import re
import secrets
import string
import time
from decimal import Decimal, InvalidOperation
from urllib.parse import parse_qsl, quote, unquote

from pydantic import ValidationError

from .schemas import ParsedQrResponse, QrType, UpiQrData, ValidationResult

logger = logging.getLogger("stablepay.upi")

UPI_PREFIX = "upi://pay?"

# Wire key -> UpiQrData attribute, in canonical serialization order.
FIELD_KEYS: dict[str, str] = {
    "pa": "payee_address",
    "pn": "payee_name",
    "am": "amount",
    "cu": "currency_code",
    "mc": "merchant_category_code",
    "tr": "transaction_ref",
    "mode": "mode",
    "purpose": "purpose",
    "orgid": "orgid",
    "sign": "sign",
}

_FIELD_LABELS: dict[str, str] = {
    "pn": "Payee Name (pn)",
    "am": "Amount (am)",
    "cu": "Currency (cu)",
    "mc": "Merchant Code (mc)",
    "tr": "Transaction Reference (tr)",
    "mode": "Payment Mode",
    "purpose": "Purpose",
    "orgid": "Organization ID",
    "sign": "Digital Signature",
}

_NUMERIC_RE = re.compile(r"[0-9]+")
_CURRENCY_RE = re.compile(r"[A-Z]{3}")

ERR_PA_MANDATORY = "Payee address (pa) is mandatory"
ERR_CU_REQUIRED = "Currency (cu) is required when amount (am) is present"
ERR_MC_NUMERIC = "Merchant code (mc) must be numeric"
ERR_AM_NUMBER = "Amount (am) must be a valid number"
ERR_CU_FORMAT = "Currency code (cu) must be 3 uppercase letters (e.g., INR, USD)"
ERR_PA_FORMAT = "Payee address (pa) should be a valid UPI ID with @ symbol"
ERR_AM_POSITIVE = "Amount (am) must be a positive number"
ERR_EMPTY = "QR data cannot be empty"
ERR_FORMAT = f'Invalid UPI QR format. Must start with "{UPI_PREFIX}"'


def parse_amount(value: str | None) -> Decimal | None:
    """Return ``value`` as a finite Decimal, or ``None`` if it is not a number."""

    if value is None:
        return None
    text = value.strip()
    if not text or "_" in text:
        return None
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


def parse_upi_uri(qr_string: str) -> UpiQrData | None:
    """Parse a UPI URI into :class:`UpiQrData`; ``None`` when it is not a UPI URI."""

    if not isinstance(qr_string, str) or not qr_string:
        return None

    trimmed = qr_string.strip()
    if not trimmed.startswith(UPI_PREFIX):
        return None

    query = trimmed[len(UPI_PREFIX) :]
    # Decode the query as a whole; a bad escape keeps the raw string instead of failing.
    try:
        decoded = unquote(query, errors="strict")
    except UnicodeError:
        decoded = query

    try:
        pairs = parse_qsl(decoded, keep_blank_values=True)
    except ValueError:
        logger.warning("unparseable upi query", extra={"length": len(query)})
        return None

    fields: dict[str, str] = {}
    extras: dict[str, str] = {}
    for key, value in pairs:
        if key in FIELD_KEYS:
            fields.setdefault(FIELD_KEYS[key], value)
        else:
            extras.setdefault(key, value)

    fields.setdefault("payee_address", "")
    try:
        return UpiQrData(**fields, extras=extras)
    except ValidationError:
        logger.warning("upi payload rejected by schema", extra={"length": len(query)})
        return None


def classify_qr_type(data: UpiQrData) -> QrType:
    """Classify payload as personal, static merchant or dynamic merchant."""

    has_merchant_code = bool(data.merchant_category_code)
    has_amount = bool(data.amount)
    has_currency = bool(data.currency_code)

    if not has_merchant_code and not has_amount:
        return QrType.PERSONAL
    if has_merchant_code and not has_amount:
        return QrType.STATIC_MERCHANT
    if has_merchant_code and has_amount and has_currency:
        return QrType.DYNAMIC_MERCHANT

    # mc with an amount but no currency still reads as a static merchant code.
    return QrType.STATIC_MERCHANT if has_merchant_code else QrType.PERSONAL


def validate_upi_data(data: UpiQrData) -> ValidationResult:
    """Check every protocol rule and collect all violations."""

    errors: list[str] = []
    pa = data.payee_address
    am = data.amount
    cu = data.currency_code
    mc = data.merchant_category_code

    if not pa or not pa.strip():
        errors.append(ERR_PA_MANDATORY)

    if am and (not cu or not cu.strip()):
        errors.append(ERR_CU_REQUIRED)

    if mc and not _NUMERIC_RE.fullmatch(mc):
        errors.append(ERR_MC_NUMERIC)

    amount = parse_amount(am)
    if am and amount is None:
        errors.append(ERR_AM_NUMBER)

    if cu and not _CURRENCY_RE.fullmatch(cu):
        errors.append(ERR_CU_FORMAT)

    if pa and "@" not in pa:
        errors.append(ERR_PA_FORMAT)

    if amount is not None and amount <= 0:
        errors.append(ERR_AM_POSITIVE)

    return ValidationResult(is_valid=not errors, errors=errors)


def _invalid_response(message: str) -> ParsedQrResponse:
    return ParsedQrResponse(
        qr_type=QrType.PERSONAL,
        is_valid=False,
        data=UpiQrData(payee_address=""),
        errors=[message],
    )


def parse_and_validate_qr(qr_string: str) -> ParsedQrResponse:
    """Parse, validate and classify a scanned string. Never raises."""

    if not isinstance(qr_string, str) or not qr_string.strip():
        return _invalid_response(ERR_EMPTY)

    parsed = parse_upi_uri(qr_string)
    if parsed is None:
        return _invalid_response(ERR_FORMAT)

    validation = validate_upi_data(parsed)
    return ParsedQrResponse(
        qr_type=classify_qr_type(parsed),
        is_valid=validation.is_valid,
        data=parsed,
        errors=validation.errors or None,
    )


# The parser decodes the whole query before splitting it, so query syntax characters are
# escaped twice to reach parse_qsl still encoded.
_QUERY_SYNTAX = {"%": "%2525", "&": "%2526", "=": "%253D", "+": "%252B"}


def _encode_component(text: str) -> str:
    return "".join(_QUERY_SYNTAX.get(char) or quote(char, safe="@") for char in text)


def build_upi_uri(data: UpiQrData) -> str:
    """Serialize :class:`UpiQrData` back into a ``upi://pay`` URI that re-parses to the same data."""

    parts: list[str] = []
    for key, attr in FIELD_KEYS.items():
        value = getattr(data, attr)
        if value is None:
            continue
        parts.append(f"{key}={_encode_component(value)}")
    for key, value in data.extras.items():
        parts.append(f"{_encode_component(key)}={_encode_component(value)}")
    return UPI_PREFIX + "&".join(parts)


def generate_upi_qr_data(
    upi_id: str,
    name: str,
    amount: Decimal | None = None,
    merchant_code: str | None = None,
) -> str:
    """Build a merchant payload with INR currency and a fresh transaction reference."""

    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(4))
    data = UpiQrData(
        payee_address=upi_id,
        payee_name=name,
        currency_code="INR",
        amount=f"{amount:.2f}" if amount and amount > 0 else None,
        merchant_category_code=merchant_code or None,
        transaction_ref=f"TXN_{int(time.time() * 1000)}_{suffix}",
    )
    return build_upi_uri(data)


def format_qr_data_for_display(response: ParsedQrResponse) -> str:
    """Render a parsed response as human-readable text."""

    data = response.data
    lines = [
        f"QR Type: {response.qr_type.value.replace('_', ' ').upper()}",
        f"Valid: {'Yes' if response.is_valid else 'No'}",
        "",
    ]
    if response.errors:
        lines.append("Errors:")
        lines.extend(f"- {error}" for error in response.errors)
        lines.append("")

    lines.append("Parsed Data:")
    lines.append(f"- Payee Address (pa): {data.payee_address or 'Not provided'}")
    for key, label in _FIELD_LABELS.items():
        value = getattr(data, FIELD_KEYS[key])
        if value:
            lines.append(f"- {label}: {value}")

    if data.extras:
        lines.append("")
        lines.append("Additional Parameters:")
        lines.extend(f"- {key}: {value}" for key, value in data.extras.items())

    return "\n".join(lines) + "\n"
