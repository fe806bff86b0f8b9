"""Retry helper for backend HTTP calls.

Retries transient failures (HTTP 429, 5xx, truncated JSON bodies) with
exponential backoff, honoring a ``Retry-After`` header on 429. Everything
else surfaces immediately as a :class:`~observer.errors.BackendUnavailable`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from observer.errors import BackendUnavailable

logger = logging.getLogger(__name__)

DEFAULT_BACKOFFS: tuple[float, ...] = (1.0, 2.0, 4.0)
MAX_RETRY_AFTER = 30.0


def _retry_after(resp: httpx.Response, fallback: float) -> float:
    raw = resp.headers.get("Retry-After", "")
    try:
        seconds = int(raw)
    except ValueError:
        return fallback
    if seconds <= 0:
        return fallback
    return min(float(seconds), MAX_RETRY_AFTER)


async def post_json_with_retry(
    client: httpx.AsyncClient,
    url: str,
    payload: dict[str, Any],
    *,
    stage: str,
    headers: dict[str, str] | None = None,
    backoffs: tuple[float, ...] = DEFAULT_BACKOFFS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """POST `payload` as JSON and return the decoded body.

    Args:
        client: Shared async client; its timeout bounds each attempt.
        url: Endpoint to call.
        payload: JSON request body.
        stage: Pipeline stage name attached to raised errors.
        headers: Extra request headers.
        backoffs: Delay before each retry; its length is the retry budget.
        sleep: Awaitable sleep, swappable in tests.

    Raises:
        BackendUnavailable: Non-retryable status, transport failure, or all
            retries exhausted.
    """
    max_retries = len(backoffs)
    for attempt in range(max_retries + 1):
        try:
            resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"{stage} request to {url} failed", stage=stage, cause=e) from e

        retryable = resp.status_code == 429 or resp.status_code >= 500
        if resp.status_code == 200:
            try:
                return resp.json()
            except ValueError as e:
                # truncated or malformed body; treated as transient
                if attempt >= max_retries:
                    raise BackendUnavailable(
                        f"{stage} returned malformed JSON", stage=stage, cause=e
                    ) from e
                delay = backoffs[attempt]
                logger.warning(
                    "Retry %d/%d for %s after %.1fs: malformed response",
                    attempt + 1,
                    max_retries,
                    stage,
                    delay,
                )
                await sleep(delay)
                continue

        if not retryable:
            raise BackendUnavailable(
                f"{stage} returned status {resp.status_code}: {resp.text[:200]}",
                stage=stage,
                details={"status": resp.status_code},
            )

        if attempt >= max_retries:
            logger.error("All %d retries exhausted for %s (status %s)", max_retries, stage, resp.status_code)
            raise BackendUnavailable(
                f"{stage} still failing after {max_retries} retries (status {resp.status_code})",
                stage=stage,
                details={"status": resp.status_code},
            )

        delay = backoffs[attempt]
        if resp.status_code == 429:
            delay = _retry_after(resp, delay)
        logger.warning(
            "Retry %d/%d for %s after %.1fs: status %s",
            attempt + 1,
            max_retries,
            stage,
            delay,
            resp.status_code,
        )
        await sleep(delay)

    raise BackendUnavailable(f"{stage} retries exhausted", stage=stage)
