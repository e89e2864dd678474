"""Quote and balance helpers: INR -> USDC conversion and on-chain USDC balance."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

import httpx
from pydantic import ValidationError

from ..chains import USDC_DECIMALS, get_chain_info
from ..config import settings
from ..schemas import BalanceCheckResult, ConversionResult
from .errors import err_balance_check_failed, err_quote_failed, err_unsupported_chain
from .http import build_client, post_json

logger = logging.getLogger("stablepay.conversion")

MIN_NETWORK_FEE = Decimal("0.05")
MAX_NETWORK_FEE = Decimal("5.0")
FALLBACK_NETWORK_FEE = Decimal("0.5")
_QUANT = Decimal(1).scaleb(-USDC_DECIMALS)

BALANCE_OF_SELECTOR = "0x70a08231"


def bound_network_fee(fee: Decimal | None) -> Decimal:
    """Clamp an estimated fee into the accepted band; unknown fees use the fallback."""

    if fee is None or not fee.is_finite():
        return FALLBACK_NETWORK_FEE
    return min(max(fee, MIN_NETWORK_FEE), MAX_NETWORK_FEE)


def calculate_quote(
    inr_amount: Decimal,
    inr_per_usd: Decimal,
    network_fee: Decimal,
    network_name: str,
    last_updated: datetime | None = None,
) -> ConversionResult:
    """Build a quote from an INR/USD rate. USDC is treated as 1:1 with USD."""

    if inr_per_usd <= 0:
        raise err_quote_failed("Invalid exchange rate data")
    usd_amount = (inr_amount / inr_per_usd).quantize(_QUANT, rounding=ROUND_HALF_UP)
    fee = bound_network_fee(network_fee)
    return ConversionResult(
        inr_amount=inr_amount,
        usd_amount=usd_amount,
        usdc_amount=usd_amount,
        exchange_rate=(Decimal(1) / inr_per_usd).quantize(_QUANT, rounding=ROUND_HALF_UP),
        network_fee=fee,
        network_name=network_name,
        total_usdc_amount=usd_amount + fee,
        last_updated=last_updated or datetime.now(timezone.utc),
    )


class ConversionClient:
    """Calls the external rate service; keeps the last quote it returned."""

    def __init__(self, url: str | None = None, client: httpx.AsyncClient | None = None):
        self.url = url or settings.conversion_url
        self.client = client or build_client()
        self.last_result: ConversionResult | None = None

    async def convert(self, inr_amount: Decimal, chain_id: int) -> ConversionResult:
        body = await post_json(
            self.client,
            self.url,
            {"amount": float(inr_amount), "chainId": chain_id},
            error=err_quote_failed,
        )
        try:
            result = ConversionResult.model_validate(body)
        except ValidationError as exc:
            logger.warning("malformed quote", extra={"chain_id": chain_id})
            raise err_quote_failed("Invalid exchange rate data") from exc
        if result.total_usdc_amount <= 0:
            raise err_quote_failed("Quote total must be positive")

        self.last_result = result
        logger.info(
            "quote received",
            extra={
                "inr_amount": str(inr_amount),
                "total_usdc": str(result.total_usdc_amount),
                "network": result.network_name,
            },
        )
        return result


def encode_balance_of(address: str) -> str:
    account = address.lower().removeprefix("0x")
    if len(account) != 40:
        raise ValueError(f"invalid address: {address}")
    return BALANCE_OF_SELECTOR + account.rjust(64, "0")


class UsdcBalanceChecker:
    """Reads ``balanceOf`` from the USDC contract via raw JSON-RPC ``eth_call``."""

    def __init__(self, client: httpx.AsyncClient | None = None, rpc_urls: dict[int, str] | None = None):
        self.client = client or build_client()
        self.rpc_urls = rpc_urls or {}
        self.last_result: BalanceCheckResult | None = None
        self._request_id = 0

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def get_balance(self, address: str, chain_id: int) -> Decimal:
        chain = get_chain_info(chain_id)
        if chain is None:
            raise err_unsupported_chain(chain_id)
        try:
            data = encode_balance_of(address)
        except ValueError as exc:
            raise err_balance_check_failed(str(exc)) from exc

        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": "eth_call",
            "params": [{"to": chain.usdc_address, "data": data}, "latest"],
        }
        body = await post_json(
            self.client,
            self.rpc_urls.get(chain_id, chain.rpc_url),
            payload,
            error=err_balance_check_failed,
        )
        if not isinstance(body, dict) or "error" in body or not body.get("result"):
            raise err_balance_check_failed(f"RPC error: {body.get('error') if isinstance(body, dict) else body}")
        try:
            raw = int(body["result"], 16)
        except (TypeError, ValueError) as exc:
            raise err_balance_check_failed("Invalid balance response") from exc
        return Decimal(raw).scaleb(-USDC_DECIMALS)

    async def check(self, address: str, required: Decimal, chain_id: int) -> BalanceCheckResult:
        balance = await self.get_balance(address, chain_id)
        result = BalanceCheckResult(
            has_sufficient_balance=balance >= required,
            balance=balance,
            required=required,
        )
        self.last_result = result
        logger.info(
            "balance checked",
            extra={"chain_id": chain_id, "balance": str(balance), "required": str(required)},
        )
        return result
