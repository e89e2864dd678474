"""FastAPI application for stablepay."""
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .chains import get_chain_info, get_supported_chains, is_valid_chain_id
from .config import settings
from .logging_conf import configure_logging
from .middleware import RequestLoggingMiddleware, get_request_id, route_label
from .models import ScanEvent, get_session, init_db
from .monitoring import metrics_payload, record_scan_event, record_service_error
from .renderer import render_qr_payload
from .schemas import (
    GenerateQRRequest,
    GenerateQRResponse,
    LastScanResponse,
    ParsedQrResponse,
    ScanRequest,
    StoreTransactionRequest,
    StoreTransactionResponse,
    TransactionRecord,
    UpdateTransactionRequest,
)
from .services.errors import ServiceError, err_bad_payload, err_not_found, err_unsupported_chain
from .services.transactions import SqlTransactionStore
from .upi import classify_qr_type, format_qr_data_for_display, generate_upi_qr_data, parse_and_validate_qr, parse_upi_uri

app = FastAPI(title="stablepay", version="0.1.0")
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger("stablepay.api")


def _warn_insecure_defaults() -> None:
    if settings.api_key == "dev-secret-key":
        logger.warning(
            "api key is using the default value",
            extra={"config_key": "api_key"},
        )
    if settings.treasury_address == "0x0000000000000000000000000000000000000000":
        logger.warning(
            "treasury address is not configured",
            extra={"config_key": "treasury_address"},
        )


@app.on_event("startup")
async def on_startup() -> None:
    configure_logging()
    _warn_insecure_defaults()
    await init_db()
    logger.info(
        "startup complete",
        extra={"environment": settings.environment, "default_chain_id": settings.default_chain_id},
    )


async def require_api_key(x_api_key: str = Header(...)) -> None:
    if x_api_key != settings.api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def _error_body(code: str, message: str) -> dict[str, str | None]:
    return {"code": code, "message": message, "requestId": get_request_id()}


@app.exception_handler(ServiceError)
async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    path = route_label(request)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("request rejected", extra={"code": exc.code, "path": path, "method": request.method})
    record_service_error(exc.code, path)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message))


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    path = route_label(request)
    logger.exception("unexpected error", extra={"path": path, "method": request.method})
    record_service_error("ERR_INTERNAL", path)
    return JSONResponse(status_code=500, content=_error_body("ERR_INTERNAL", "Internal server error"))


@app.get("/health", tags=["system"])
async def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "environment": settings.environment,
        "chains": [chain.id for chain in get_supported_chains()],
    }


@app.get("/metrics", tags=["system"])
async def metrics() -> Response:
    payload, content_type = metrics_payload()
    return Response(content=payload, media_type=content_type)


@app.post("/v1/scans", response_model=ParsedQrResponse, response_model_exclude_none=True, tags=["scans"])
async def interpret_scan(payload: ScanRequest, session: AsyncSession = Depends(get_session)) -> ParsedQrResponse:
    """Parse and validate scanned QR text on the server."""

    if len(payload.qr_data) > settings.max_qr_length:
        raise err_bad_payload(f"QR data too long. Maximum length is {settings.max_qr_length} characters.")

    qr_string = payload.qr_data.strip()
    parsed = parse_and_validate_qr(qr_string)
    parsed.formatted_data = format_qr_data_for_display(parsed)

    session.add(
        ScanEvent(
            qr_string=qr_string,
            qr_type=parsed.qr_type.value,
            is_valid=parsed.is_valid,
            parsed_json=parsed.model_dump_json(by_alias=True),
        )
    )
    await session.commit()
    record_scan_event("interpreted_valid" if parsed.is_valid else "interpreted_invalid")
    return parsed


@app.get("/v1/scans/last", response_model=LastScanResponse, tags=["scans"], dependencies=[Depends(require_api_key)])
async def last_scan(session: AsyncSession = Depends(get_session)) -> LastScanResponse:
    stmt = select(ScanEvent).order_by(ScanEvent.created_at.desc()).limit(1)
    result = await session.execute(stmt)
    event = result.scalars().first()
    if not event:
        raise err_not_found("No QR code has been scanned yet")

    return LastScanResponse(
        qr_string=event.qr_string,
        scanned_at=event.created_at,
        parsed_data=ParsedQrResponse.model_validate(json.loads(event.parsed_json)),
    )


@app.post(
    "/v1/transactions",
    response_model=StoreTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["transactions"],
    dependencies=[Depends(require_api_key)],
)
async def store_transaction(
    payload: StoreTransactionRequest,
    session: AsyncSession = Depends(get_session),
) -> StoreTransactionResponse:
    if not is_valid_chain_id(payload.chain_id):
        raise err_unsupported_chain(payload.chain_id)

    store = SqlTransactionStore(session)
    transaction_id = await store.create(TransactionRecord(**payload.model_dump()))
    return StoreTransactionResponse(transaction_id=transaction_id, chain=get_chain_info(payload.chain_id).name)


@app.get(
    "/v1/transactions/reconciliation",
    response_model=list[TransactionRecord],
    tags=["transactions"],
    dependencies=[Depends(require_api_key)],
)
async def pending_reconciliation(session: AsyncSession = Depends(get_session)) -> list[TransactionRecord]:
    """Settled payments whose fiat payout failed."""

    return await SqlTransactionStore(session).list_pending_reconciliation()


@app.get(
    "/v1/transactions/{transaction_id}",
    response_model=TransactionRecord,
    tags=["transactions"],
    dependencies=[Depends(require_api_key)],
)
async def get_transaction(transaction_id: str, session: AsyncSession = Depends(get_session)) -> TransactionRecord:
    record = await SqlTransactionStore(session).get(transaction_id)
    if not record:
        raise err_not_found("Transaction not found")
    return record


@app.put(
    "/v1/transactions/{transaction_id}",
    response_model=TransactionRecord,
    tags=["transactions"],
    dependencies=[Depends(require_api_key)],
)
async def update_transaction(
    transaction_id: str,
    payload: UpdateTransactionRequest,
    session: AsyncSession = Depends(get_session),
) -> TransactionRecord:
    return await SqlTransactionStore(session).update(transaction_id, payload)


@app.post("/v1/qr", response_model=GenerateQRResponse, tags=["qr"], dependencies=[Depends(require_api_key)])
async def generate_qr(payload: GenerateQRRequest) -> GenerateQRResponse:
    """Build a merchant UPI payload and render it as a branded PNG."""

    qr_payload = generate_upi_qr_data(
        payload.upi_id,
        payload.name,
        amount=payload.amount,
        merchant_code=payload.merchant_code,
    )
    parsed = parse_upi_uri(qr_payload)
    if parsed is None:
        raise err_bad_payload("Could not build a UPI payload from the given details")

    subtitle = f"INR {payload.amount:.2f}" if payload.amount else None
    render = render_qr_payload(qr_payload, title=payload.name, subtitle=subtitle)
    return GenerateQRResponse(
        payload=qr_payload,
        qr_type=classify_qr_type(parsed),
        qr_png_base64=render["png_base64"],
    )
