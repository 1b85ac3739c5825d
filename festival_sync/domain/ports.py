from __future__ import annotations

from typing import Any, Mapping, Protocol, Union

from .entities import Page


class PageFetcher(Protocol):
    """Port for one call against a paged remote endpoint.

    Implementations perform the network call and return a `Page` (or the raw paging
    mapping with `items` and `total`). Failures are raised as exceptions carrying a
    `status_code` and optional `retry_after` hint.
    """

    def __call__(self, offset: int, limit: int) -> Union[Page, Mapping[str, Any]]:
        """Fetch `limit` items starting at `offset`."""


class TextDetector(Protocol):
    """Port for OCR services turning an image into plain text."""

    def detect_text(self, image_bytes: bytes) -> str:
        """Return the full detected text block, or an empty string."""
