from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Mapping, Optional, Tuple

from festival_sync.crosscutting.logging import (
    log_fetch_complete, log_page_fetched, log_rate_limited
)
from festival_sync.domain.entities import Page
from festival_sync.domain.ports import PageFetcher

logger = logging.getLogger(__name__)

PAGE_LIMIT = 50
MAX_WAIT_SECONDS = 60
MIN_WAIT_SECONDS = 1
BACKOFF_BASE = 2
SAFETY_MARGIN_SECONDS = 0.1
RATE_LIMIT_STATUS = 429


def status_of(error: BaseException) -> Optional[int]:
    """HTTP-like status carried by an error, if any."""
    status = getattr(error, 'status_code', None)
    if status is None:
        # spotipy.SpotifyException
        status = getattr(error, 'http_status', None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def retry_after_of(error: BaseException) -> Optional[Any]:
    """Server-suggested wait carried by an error, from `retry_after` or a `Retry-After` header."""
    value = getattr(error, 'retry_after', None)
    if value is not None:
        return value
    headers = getattr(error, 'headers', None)
    if not headers:
        return None
    try:
        return headers.get('retry-after', headers.get('Retry-After'))
    except AttributeError:
        return None


def compute_wait_seconds(attempt: int, retry_after: Optional[Any] = None) -> float:
    """Wait before retrying a rate-limited page, excluding the safety margin.

    A parseable `retry_after` wins, clamped to [1, 60]; otherwise the wait is
    `2 ** attempt` capped at 60, where `attempt` counts failures on the page so far.
    """
    if retry_after is not None:
        try:
            hinted = int(float(str(retry_after).strip()))
        except (TypeError, ValueError, OverflowError):
            hinted = None
        if hinted is not None:
            return max(MIN_WAIT_SECONDS, min(hinted, MAX_WAIT_SECONDS))
    # cap the exponent too so huge attempt counts stay cheap
    return min(BACKOFF_BASE ** min(attempt, 16), MAX_WAIT_SECONDS)


def _unpack(result: Any) -> Optional[Tuple[List[Any], Optional[int]]]:
    """Return (items, total) or None for a malformed response."""
    if isinstance(result, Page):
        items, total = result.items, result.total
    elif isinstance(result, Mapping):
        items, total = result.get('items'), result.get('total')
    else:
        return None
    if items is None:
        return None
    try:
        total = int(total) if total is not None else None
    except (TypeError, ValueError):
        total = None
    return list(items), total


def fetch_all_pages(page_fetcher: PageFetcher,
                    max_retries: int = 3,
                    limit: int = PAGE_LIMIT,
                    sleep: Callable[[float], None] = time.sleep) -> List[Any]:
    """Drive a paged endpoint until every item is retrieved.

    Pages are requested strictly in sequence. Rate limiting (status 429) is retried on
    the same offset up to `max_retries` attempts per page; any other failure, or a 429
    on the last attempt, propagates unchanged and nothing accumulated is returned.
    A success without `items` ends the fetch early with what was gathered so far.

    Args:
        page_fetcher: Callable performing the remote call for `(offset, limit)`
        max_retries: Attempts allowed per page before a 429 becomes fatal
        limit: Page size requested from the remote endpoint
        sleep: Blocking wait used between retries

    Returns:
        All items in server order
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")
    if limit < 1:
        raise ValueError("limit must be positive")

    items: List[Any] = []
    offset = 0
    page = 0
    total: Optional[int] = None

    while True:
        page += 1
        attempt = 0

        while True:
            try:
                result = page_fetcher(offset, limit)
                break
            except Exception as e:
                attempt += 1
                if status_of(e) == RATE_LIMIT_STATUS and attempt < max_retries:
                    retry_after = retry_after_of(e)
                    wait_seconds = compute_wait_seconds(attempt, retry_after)
                    log_rate_limited(logger, page, attempt, max_retries, wait_seconds,
                                     retry_after=retry_after, offset=offset)
                    sleep(wait_seconds + SAFETY_MARGIN_SECONDS)
                    continue
                logger.error(f"Failed to fetch page {page} (offset {offset}) after {attempt} attempts: {e}")
                raise

        unpacked = _unpack(result)
        if unpacked is None:
            logger.warning(f"Unexpected response on page {page} (offset {offset}); stopping pagination")
            break

        page_items, total = unpacked
        items.extend(page_items)
        log_page_fetched(logger, page, offset, len(page_items), total)

        if not page_items:
            if total is not None and total > len(items):
                logger.warning(f"Empty page {page} at offset {offset} before reaching total {total}; stopping")
            break

        offset += len(page_items)

        if total is None or total <= len(items):
            break

    log_fetch_complete(logger, page, len(items), total)
    return items
