"""Async client for the external booking ledger (a spreadsheet-backed HTTP service).

The ledger accepts a flat record per booking on ``POST {base}/entries`` and
returns the same shape from ``GET {base}/entries?from=&to=&page=``. It has no
transactional guarantees and an observed response-size ceiling, so reads are
made in bounded date windows and merged here.
"""
from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any

import httpx
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from clinic_booking.core.errors import LedgerSyncError
from clinic_booking.core.settings import Settings, settings
from clinic_booking.schemas.ledger import LedgerEntry

logger = logging.getLogger("clinic_booking.ledger")

MAX_PAGES_PER_WINDOW = 200


class LedgerUnavailable(Exception):
    """Retryable failure: transport error, timeout or 5xx."""


class LedgerPayloadTooLarge(Exception):
    pass


class LedgerClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_token: str | None = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        window_days: int = 7,
        max_response_bytes: int = 5_000_000,
        max_pages: int = MAX_PAGES_PER_WINDOW,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.window_days = max(1, window_days)
        self.max_response_bytes = max_response_bytes
        self.max_pages = max(1, max_pages)
        self._transport = transport

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "LedgerClient | None":
        if not config.ledger_base_url:
            return None
        return cls(
            config.ledger_base_url,
            api_token=config.ledger_api_token,
            timeout=config.ledger_timeout_seconds,
            max_attempts=config.ledger_max_attempts,
            backoff_seconds=config.ledger_backoff_seconds,
            window_days=config.ledger_window_days,
            max_response_bytes=config.ledger_max_response_bytes,
        )

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=30),
            retry=retry_if_exception_type(LedgerUnavailable),
        )

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise LedgerUnavailable(f"timeout calling ledger {method} {url}") from exc
        except httpx.TransportError as exc:
            raise LedgerUnavailable(f"transport error calling ledger {method} {url}: {exc}") from exc
        if response.status_code >= 500:
            raise LedgerUnavailable(f"ledger returned HTTP {response.status_code}")
        return response

    def _reject(self, response: httpx.Response, what: str) -> LedgerSyncError:
        body = response.text
        logger.warning(
            "Ledger rejected %s (HTTP %s): %s",
            what,
            response.status_code,
            body,
        )
        return LedgerSyncError(
            f"ledger rejected {what} (HTTP {response.status_code})",
            status_code=response.status_code,
            body=body,
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async with self._client() as client:
            try:
                async for attempt in self._retrying():
                    with attempt:
                        return await self._send(client, method, url, **kwargs)
            except RetryError as exc:
                last = exc.last_attempt.exception()
                raise LedgerSyncError(
                    f"ledger unavailable after {self.max_attempts} attempts: {last}"
                ) from last
        raise LedgerSyncError("ledger request did not run")

    async def push_entry(self, entry: LedgerEntry) -> None:
        response = await self._request("POST", "/entries", json=entry.to_payload())
        if response.status_code >= 400:
            raise self._reject(response, f"entry {entry.reserve_id}")
        payload = _json_or_none(response)
        if isinstance(payload, dict) and payload.get("ok") is False:
            raise self._reject(response, f"entry {entry.reserve_id}")

    async def fetch_snapshot(self, start: date, end: date) -> list[LedgerEntry]:
        """Read every ledger entry dated within ``[start, end]``."""
        merged: dict[str, LedgerEntry] = {}
        cursor = start
        while cursor <= end:
            window_end = min(end, cursor + timedelta(days=self.window_days - 1))
            for entry in await self._fetch_window(cursor, window_end):
                merged[entry.reserve_id] = entry
            cursor = window_end + timedelta(days=1)
        return list(merged.values())

    async def _fetch_window(self, start: date, end: date) -> list[LedgerEntry]:
        try:
            return await self._fetch_pages(start, end)
        except LedgerPayloadTooLarge as exc:
            if start >= end:
                raise LedgerSyncError(f"ledger snapshot for {start.isoformat()} is too large: {exc}") from exc
            middle = start + timedelta(days=(end - start).days // 2)
            logger.info(
                "Ledger window too large, splitting",
                extra={"window_start": start.isoformat(), "window_end": end.isoformat()},
            )
            first = await self._fetch_window(start, middle)
            second = await self._fetch_window(middle + timedelta(days=1), end)
            return first + second

    async def _fetch_pages(self, start: date, end: date) -> list[LedgerEntry]:
        entries: list[LedgerEntry] = []
        page: int | None = 1
        pages_read = 0
        while page is not None:
            if pages_read >= self.max_pages:
                # Never return a truncated window.
                raise LedgerPayloadTooLarge(f"more than {self.max_pages} pages")
            params = {"from": start.isoformat(), "to": end.isoformat(), "page": page}
            response = await self._request("GET", "/entries", params=params)
            if len(response.content) > self.max_response_bytes:
                raise LedgerPayloadTooLarge(f"response exceeds {self.max_response_bytes} bytes")
            if response.status_code >= 400:
                raise self._reject(response, f"snapshot {start.isoformat()}..{end.isoformat()}")
            payload = _json_or_none(response)
            if isinstance(payload, dict) and payload.get("ok") is False:
                if payload.get("error") in {"too_large", "response_too_large"}:
                    raise LedgerPayloadTooLarge("ledger reported too_large")
                raise self._reject(response, f"snapshot {start.isoformat()}..{end.isoformat()}")
            rows, page = _rows_and_next_page(payload)
            entries.extend(_parse_rows(rows))
            pages_read += 1
        return entries


def _json_or_none(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _rows_and_next_page(payload: Any) -> tuple[list[Any], int | None]:
    if isinstance(payload, list):
        return payload, None
    if isinstance(payload, dict):
        rows = payload.get("entries") or payload.get("reservations") or []
        next_page = payload.get("next_page")
        return list(rows), int(next_page) if next_page else None
    return [], None


def _parse_rows(rows: list[Any]) -> list[LedgerEntry]:
    parsed: list[LedgerEntry] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        try:
            parsed.append(LedgerEntry.model_validate(row))
        except (ValidationError, ValueError):
            logger.warning("Skipping malformed ledger row: %s", row)
            continue
        if not parsed[-1].reserve_id:
            parsed.pop()
    return parsed
