from __future__ import annotations

import base64
import binascii
from typing import Protocol
from urllib.parse import unquote_to_bytes

import httpx
import structlog

from .contracts import AttachmentRef

log = structlog.get_logger()

TEXT_CONTENT_TYPES = frozenset(
    {
        "application/json",
        "application/javascript",
        "application/xml",
        "application/yaml",
        "application/x-yaml",
    }
)


class AttachmentError(Exception):
    """An attachment could not be turned into inline text."""


class AttachmentResolver(Protocol):
    async def resolve_to_text(self, ref: AttachmentRef) -> str: ...


def is_text_type(content_type: str) -> bool:
    base = content_type.split(";", 1)[0].strip().lower()
    return base.startswith("text/") or base in TEXT_CONTENT_TYPES


def is_image_type(content_type: str) -> bool:
    return content_type.strip().lower().startswith("image/")


def decode_data_url(url: str) -> tuple[str, bytes]:
    """Return (media type, raw bytes) for a `data:` URL."""
    if not url.startswith("data:"):
        raise AttachmentError("Not a data URL.")
    header, sep, data = url[5:].partition(",")
    if not sep:
        raise AttachmentError("Data URL has no payload separator.")
    params = header.split(";")
    media_type = params[0] or "text/plain"
    if "base64" in params[1:]:
        try:
            return media_type, base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise AttachmentError(f"Invalid base64 payload: {e}") from e
    return media_type, unquote_to_bytes(data)


class HttpAttachmentResolver:
    """
    Reference resolver.

    Decodes `data:` URLs inline and fetches `http(s)` URLs. Only text-like
    content types are decoded; images become a placeholder line. Text longer
    than `preview_chars` is cut with a truncation marker.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
        max_bytes: int = 10 * 1024 * 1024,
        preview_chars: int = 2000,
    ):
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True)
        self._max_bytes = max_bytes
        self._preview_chars = preview_chars

    async def close(self) -> None:
        await self._client.aclose()

    def _preview(self, text: str) -> str:
        if len(text) <= self._preview_chars:
            return text
        return text[: self._preview_chars] + "\n... (truncated)"

    def _check_size(self, ref: AttachmentRef, size: int) -> None:
        if size > self._max_bytes:
            raise AttachmentError(f"{ref.name} is {size} bytes; limit is {self._max_bytes}.")

    async def resolve_to_text(self, ref: AttachmentRef) -> str:
        if is_image_type(ref.content_type):
            return f"[Image: {ref.url if not ref.url.startswith('data:') else ref.name}]"
        if not is_text_type(ref.content_type):
            raise AttachmentError(f"Unsupported content type {ref.content_type!r} for {ref.name}.")
        if ref.size is not None:
            self._check_size(ref, ref.size)

        if ref.url.startswith("data:"):
            _, raw = decode_data_url(ref.url)
        elif ref.url.startswith(("http://", "https://")):
            raw = await self._fetch(ref)
        else:
            raise AttachmentError(f"Unsupported URL scheme for {ref.name}.")

        self._check_size(ref, len(raw))
        return self._preview(raw.decode("utf-8", errors="replace"))

    async def _fetch(self, ref: AttachmentRef) -> bytes:
        try:
            async with self._client.stream("GET", ref.url) as resp:
                if resp.status_code >= 400:
                    raise AttachmentError(f"Fetching {ref.name} returned HTTP {resp.status_code}.")
                chunks: list[bytes] = []
                total = 0
                async for chunk in resp.aiter_bytes():
                    total += len(chunk)
                    self._check_size(ref, total)
                    chunks.append(chunk)
        except httpx.HTTPError as e:
            log.warning("attachment_fetch_failed", name=ref.name, error=str(e))
            raise AttachmentError(f"Could not fetch {ref.name}: {e}") from e
        return b"".join(chunks)
