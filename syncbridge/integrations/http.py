from __future__ import annotations

import logging
import time
from typing import Any, Mapping

import httpx

from syncbridge.core.config import get_settings
from syncbridge.core.errors import FatalTransportError, RetryableTransportError
from syncbridge.services.telemetry import record_source_call


logger = logging.getLogger(__name__)


def build_http_client(**kwargs: Any) -> httpx.AsyncClient:
    settings = get_settings()
    kwargs.setdefault("timeout", settings.ext_http_timeout_ms / 1000.0)
    kwargs.setdefault("headers", {"User-Agent": f"{settings.app_name}/1.0"})
    return httpx.AsyncClient(**kwargs)


def is_retryable_status(status: int) -> bool:
    # Throttling is transient like a 5xx; every other 4xx is a caller problem.
    return status >= 500 or status == 429


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    integration: str,
    params: Mapping[str, Any] | None = None,
    json: Any = None,
    data: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
    cookies: Mapping[str, str] | None = None,
) -> httpx.Response:
    # Single choke point for source API calls: classify failures and record latency.
    started = time.monotonic()
    try:
        response = await client.request(
            method,
            url,
            params=params,
            json=json,
            data=data,
            headers=headers,
            cookies=cookies,
        )
    except httpx.TimeoutException as exc:
        _record(integration, started, status=None)
        raise RetryableTransportError(f"{method} {url} timed out", url=url) from exc
    except httpx.TransportError as exc:
        _record(integration, started, status=None)
        raise RetryableTransportError(f"{method} {url} failed: {exc}", url=url) from exc
    status = response.status_code
    _record(integration, started, status=status)
    if status >= 400:
        message = f"{method} {url} returned {status}"
        logger.info("source_api_error", extra={"integration": integration, "status": status})
        if is_retryable_status(status):
            raise RetryableTransportError(message, status=status, url=url, body=response.text)
        raise FatalTransportError(message, status=status, url=url, body=response.text)
    return response


def response_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise FatalTransportError(
            f"{response.request.url} returned a non-JSON body",
            status=response.status_code,
            url=str(response.request.url),
            body=response.text,
        ) from exc


def _record(integration: str, started: float, *, status: int | None) -> None:
    record_source_call(integration, latency_ms=(time.monotonic() - started) * 1000.0, status=status)
