"""Thin JSON-over-HTTP helper shared by the collaborator clients."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

from ..config import settings
from ..monitoring import observe_collaborator_call
from .errors import ServiceError

logger = logging.getLogger("stablepay.collaborators")


def build_client(timeout: float | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout or settings.request_timeout_seconds)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or "Unknown error")
    return "Unknown error"


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    payload: dict[str, Any],
    *,
    error: Callable[[str], ServiceError],
    headers: dict[str, str] | None = None,
) -> Any:
    """POST ``payload`` and return the decoded body.

    Transport failures, non-2xx statuses and non-JSON bodies are raised as the
    ``ServiceError`` produced by ``error``. There is no retry.
    """

    host = httpx.URL(url).host or "unknown"
    start = time.perf_counter()
    try:
        response = await client.post(url, json=payload, headers=headers)
    except httpx.HTTPError as exc:
        observe_collaborator_call(host, "unreachable", time.perf_counter() - start)
        logger.warning("collaborator unreachable", extra={"url": url, "error": str(exc)})
        raise error(f"Service unreachable: {exc}") from exc

    elapsed = time.perf_counter() - start
    if response.is_error:
        detail = _error_detail(response)
        observe_collaborator_call(host, "rejected", elapsed)
        logger.warning(
            "collaborator rejected request",
            extra={"url": url, "status_code": response.status_code, "detail": detail},
        )
        raise error(detail)

    try:
        body = response.json()
    except ValueError as exc:
        observe_collaborator_call(host, "rejected", elapsed)
        raise error("Malformed response body") from exc
    observe_collaborator_call(host, "ok", elapsed)
    return body
