from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from syncbridge.core.errors import FatalTransportError, RetryableTransportError
from syncbridge.integrations.documents import Document
from syncbridge.services.resilience import RetryPolicy, Sleep, retry_async
from syncbridge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Page:
    items: list[Document]
    # None or "" marks the terminal page.
    next_cursor: Any = None


@dataclass
class BackfillRun:
    pages: int = 0
    items: int = 0
    cursor: Any = None
    cancelled: bool = False


@dataclass(frozen=True)
class CredentialVerification:
    verified: bool
    message: str = ""
    status: int | None = None


def cursor_is_terminal(cursor: Any) -> bool:
    return cursor is None or cursor == "" or cursor == [] or cursor == {}


def is_retryable_backfill_error(exc: Exception) -> bool:
    if isinstance(exc, FatalTransportError):
        return False
    if isinstance(exc, (RetryableTransportError, TimeoutError, OSError)):
        return True
    return False


class Backfiller(ABC):
    """Drives one paginated pull: fetch a page, apply its items in order, follow the cursor.

    Page fetches are retried per ``policy`` for transient failures only; once
    attempts are exhausted the last error propagates to the caller. A run can be
    stopped between pages through ``cancel``; the returned ``BackfillRun.cursor``
    is where a later run should resume.
    """

    def __init__(self, *, policy: RetryPolicy, sleep: Sleep = asyncio.sleep) -> None:
        self.policy = policy
        self.sleep = sleep

    @abstractmethod
    async def fetch_page(self, cursor: Any) -> Page:
        raise NotImplementedError

    @abstractmethod
    async def handle_item(self, item: Document) -> None:
        raise NotImplementedError

    async def fetch_page_with_retry(self, cursor: Any) -> Page:
        page = await retry_async(
            lambda: self.fetch_page(cursor),
            policy=self.policy,
            retryable=is_retryable_backfill_error,
            sleep=self.sleep,
            counter="backfill_page_retries_total",
        )
        if not isinstance(page, Page):
            raise TypeError(f"{type(self).__name__}.fetch_page returned {type(page).__name__}, expected Page")
        return page

    async def run(self, cursor: Any = None, *, cancel: asyncio.Event | None = None) -> BackfillRun:
        progress = BackfillRun(cursor=cursor)
        while True:
            if cancel is not None and cancel.is_set():
                progress.cancelled = True
                logger.info("backfill_cancelled", extra={"pages": progress.pages, "items": progress.items})
                return progress
            page = await self.fetch_page_with_retry(progress.cursor)
            progress.pages += 1
            for item in page.items:
                await self.handle_item(item)
                progress.items += 1
            progress.cursor = page.next_cursor
            increment_counter("backfill_pages_total")
            if cursor_is_terminal(page.next_cursor):
                return progress


class CallbackBackfiller(Backfiller):
    """Backfiller assembled from two coroutines; integrations use this instead of subclassing."""

    def __init__(
        self,
        fetch: Callable[[Any], Awaitable[Page]],
        handle: Callable[[Document], Awaitable[None]],
        *,
        policy: RetryPolicy,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__(policy=policy, sleep=sleep)
        self._fetch = fetch
        self._handle = handle

    async def fetch_page(self, cursor: Any) -> Page:
        return await self._fetch(cursor)

    async def handle_item(self, item: Document) -> None:
        await self._handle(item)


DEFAULT_VERIFY_MESSAGES: Mapping[int, str] = {
    401: "the credentials were rejected (HTTP 401); double check the key and try again",
    403: "the credentials do not have access (HTTP 403); check the key's permissions",
}


async def verify_with_request(
    request: Callable[[], Awaitable[Any]],
    *,
    messages: Mapping[int, str] = DEFAULT_VERIFY_MESSAGES,
) -> CredentialVerification:
    # One cheap request decides whether onboarding can proceed to a full backfill.
    try:
        await request()
    except FatalTransportError as exc:
        status = exc.status
        message = messages.get(status or 0) or f"the API responded with HTTP {status}; check the credentials"
        return CredentialVerification(verified=False, message=message, status=status)
    except RetryableTransportError as exc:
        return CredentialVerification(
            verified=False,
            message="could not reach the API; check the API URL and try again",
            status=exc.status,
        )
    return CredentialVerification(verified=True)
