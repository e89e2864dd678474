"""Shared service error definitions."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class ServiceError(Exception):
    code: str
    message: str
    status_code: int = 400

    def __str__(self) -> str:  # noqa: D401 override
        return f"{self.code}: {self.message}"


def err_bad_payload(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_BAD_PAYLOAD", message=message or "Invalid request payload", status_code=400)


def err_not_found(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_NOT_FOUND", message=message or "Resource not found", status_code=404)


def err_amount_invalid(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_AMOUNT_INVALID", message=message or "Amount must be a positive number", status_code=422)


def err_currency_unsupported(currency: str | None) -> ServiceError:
    return ServiceError(
        code="ERR_CURRENCY_UNSUPPORTED",
        message=f"Unsupported currency: {currency or 'Unknown'}. This platform only supports INR (Indian Rupees).",
        status_code=422,
    )


def err_unsupported_chain(chain_id: int | None) -> ServiceError:
    return ServiceError(
        code="ERR_UNSUPPORTED_CHAIN",
        message=f"Unsupported network (Chain ID: {chain_id}). Please switch to a supported network.",
        status_code=422,
    )


def err_quote_failed(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_QUOTE_FAILED", message=message or "Failed to convert currency", status_code=502)


def err_balance_check_failed(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_BALANCE_CHECK_FAILED", message=message or "Failed to check USDC balance", status_code=502)


def err_insufficient_balance(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_INSUFFICIENT_BALANCE", message=message or "Insufficient USDC balance", status_code=402)


def err_prepare_failed(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_PREPARE_FAILED", message=message or "Failed to prepare meta transaction", status_code=502)


def err_signature_failed(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_SIGNATURE_FAILED", message=message or "Failed to sign meta transaction", status_code=400)


def err_settlement_failed(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_SETTLEMENT_FAILED", message=message or "Failed to execute meta transaction", status_code=502)


def err_payout_failed(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_PAYOUT_FAILED", message=message or "Payout initiation failed", status_code=502)


def err_persistence_failed(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_PERSISTENCE_FAILED", message=message or "Failed to store transaction", status_code=500)


def err_already_submitted(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_ALREADY_SUBMITTED", message=message or "Transaction already submitted", status_code=409)


def err_scan_in_progress(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_SCAN_IN_PROGRESS", message=message or "A scan session is already active", status_code=409)


def err_interpret_failed(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_INTERPRET_FAILED", message=message or "Failed to parse QR data", status_code=502)
