"""Streams vendor-hosted media to operators, with byte-range support.

Stable media references are either a WhatsApp media id, resolved on every
request to a short-lived signed URL, or a legacy direct CDN URL. Every URL
that is fetched must be on the CDN allow-list; without that check this
endpoint would be an open relay.
"""

from __future__ import annotations

import re
from urllib.parse import urlparse

import httpx
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

from app.config import settings
from app.logging import get_logger
from app.services.inbox.errors import (
    MediaNotAllowed,
    MediaResolutionFailed,
    RangeNotSatisfiable,
)

logger = get_logger(__name__)

# at least one alphanumeric, so "." and ".." never reach the Graph path
_MEDIA_ID_RE = re.compile(r"^(?=[^A-Za-z0-9]*[A-Za-z0-9])[A-Za-z0-9_.-]{1,128}$")
_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")
_CONTENT_RANGE_RE = re.compile(r"^bytes (\d+)-(\d+)/(\d+|\*)$")
_DEFAULT_MIME = "application/octet-stream"


def _build_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.meta_http_timeout, follow_redirects=False)


def is_allowed_host(url: str) -> bool:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    host = parsed.hostname.lower().rstrip(".")
    return any(
        host == domain or host.endswith(f".{domain}") for domain in settings.allowed_media_hosts
    )


def parse_range(header: str | None) -> tuple[int | None, int | None] | None:
    """Parse a single ``bytes=`` range. ``(None, n)`` is a suffix range.

    Raises:
        RangeNotSatisfiable: the header is not a single well-formed byte range
    """
    if not header:
        return None
    match = _RANGE_RE.match(header.strip().replace(" ", ""))
    if not match or match.group(0) == "bytes=-":
        raise RangeNotSatisfiable("Unsupported Range header")
    start = int(match.group(1)) if match.group(1) else None
    end = int(match.group(2)) if match.group(2) else None
    if start is None and end == 0:
        raise RangeNotSatisfiable("Empty suffix range")
    if start is not None and end is not None and end < start:
        raise RangeNotSatisfiable("Range end precedes start")
    return start, end


def format_range(byte_range: tuple[int | None, int | None]) -> str:
    start, end = byte_range
    return f"bytes={'' if start is None else start}-{'' if end is None else end}"


def _bounds(byte_range: tuple[int | None, int | None], total: int) -> tuple[int, int]:
    start, end = byte_range
    if start is None:
        # suffix range: the last ``end`` bytes
        start = max(total - (end or 0), 0)
        end = total - 1
    else:
        end = total - 1 if end is None else min(end, total - 1)
    if total == 0 or start >= total:
        raise RangeNotSatisfiable("Range outside of the media", total=total)
    return start, end


async def resolve_whatsapp_media(client: httpx.AsyncClient, media_id: str) -> dict:
    """Look up a fresh signed download URL for a WhatsApp media id.

    The URL is valid for minutes only and is never cached; two calls may
    return two different URLs for the same id.
    """
    if not settings.whatsapp_access_token:
        raise MediaResolutionFailed("WhatsApp access token is not configured")
    try:
        response = await client.get(
            f"{settings.meta_graph_base_url.rstrip('/')}/{media_id}",
            headers={"Authorization": f"Bearer {settings.whatsapp_access_token}"},
        )
    except httpx.HTTPError as exc:
        logger.warning("media_resolve_transport_error media_id=%s error=%s", media_id, exc)
        raise MediaResolutionFailed("Media provider is unreachable") from exc
    if response.status_code >= 400:
        logger.warning(
            "media_resolve_failed media_id=%s status=%s body=%s",
            media_id,
            response.status_code,
            response.text[:300],
        )
        raise MediaResolutionFailed("Media could not be resolved")
    try:
        data = response.json()
    except ValueError as exc:
        raise MediaResolutionFailed("Media provider returned an unreadable response") from exc
    if not data.get("url"):
        raise MediaResolutionFailed("Media provider returned no download URL")
    return data


async def stream_media(media_ref: str, range_header: str | None = None) -> Response:
    """Fetch ``media_ref`` upstream and relay it, honouring ``Range``."""
    if not media_ref:
        raise MediaResolutionFailed("Media reference is required")
    byte_range = parse_range(range_header)

    client = _build_client()
    try:
        headers = {"Accept-Encoding": "identity"}
        mime_hint = None
        if media_ref.startswith(("http://", "https://")):
            url = media_ref
        elif _MEDIA_ID_RE.match(media_ref):
            resolved = await resolve_whatsapp_media(client, media_ref)
            url = resolved["url"]
            mime_hint = resolved.get("mime_type")
            headers["Authorization"] = f"Bearer {settings.whatsapp_access_token}"
        else:
            raise MediaResolutionFailed("Media reference is not valid")

        if not is_allowed_host(url):
            logger.warning("media_proxy_host_rejected host=%s", urlparse(url).hostname)
            raise MediaNotAllowed("Media host is not allowed")

        if byte_range is not None:
            headers["Range"] = format_range(byte_range)
        try:
            upstream = await client.send(client.build_request("GET", url, headers=headers), stream=True)
        except httpx.HTTPError as exc:
            logger.warning("media_fetch_transport_error host=%s error=%s", urlparse(url).hostname, exc)
            raise MediaResolutionFailed("Media provider is unreachable") from exc
    except BaseException:
        await client.aclose()
        raise

    return await _relay(client, upstream, byte_range, mime_hint)


async def _relay(
    client: httpx.AsyncClient,
    upstream: httpx.Response,
    byte_range: tuple[int | None, int | None] | None,
    mime_hint: str | None,
) -> Response:
    async def _close() -> None:
        await upstream.aclose()
        await client.aclose()

    try:
        content_type = upstream.headers.get("content-type") or mime_hint or _DEFAULT_MIME
        status = upstream.status_code

        if status == 416:
            total = _total_from_content_range(upstream.headers.get("content-range"))
            raise RangeNotSatisfiable("Range outside of the media", total=total)
        if status not in (200, 206):
            logger.warning("media_fetch_failed status=%s", status)
            raise MediaResolutionFailed("Media could not be fetched")

        base_headers = {"Accept-Ranges": "bytes", "Cache-Control": "private, max-age=300"}

        if status == 206:
            headers = dict(base_headers)
            for name in ("content-range", "content-length"):
                if upstream.headers.get(name):
                    headers[name.title()] = upstream.headers[name]
            return StreamingResponse(
                upstream.aiter_bytes(),
                status_code=206,
                media_type=content_type,
                headers=headers,
                background=BackgroundTask(_close),
            )

        if byte_range is not None:
            # Upstream ignored the range; slice the full body here.
            body = await upstream.aread()
            await _close()
            start, end = _bounds(byte_range, len(body))
            chunk = body[start : end + 1]
            return Response(
                content=chunk,
                status_code=206,
                media_type=content_type,
                headers={
                    **base_headers,
                    "Content-Range": f"bytes {start}-{end}/{len(body)}",
                    "Content-Length": str(len(chunk)),
                },
            )

        headers = dict(base_headers)
        if upstream.headers.get("content-length"):
            headers["Content-Length"] = upstream.headers["content-length"]
        return StreamingResponse(
            upstream.aiter_bytes(),
            status_code=200,
            media_type=content_type,
            headers=headers,
            background=BackgroundTask(_close),
        )
    except BaseException:
        await _close()
        raise


def _total_from_content_range(value: str | None) -> int | None:
    if not value:
        return None
    match = re.match(r"^bytes \*/(\d+)$", value.strip())
    if match:
        return int(match.group(1))
    match = _CONTENT_RANGE_RE.match(value.strip())
    if match and match.group(3) != "*":
        return int(match.group(3))
    return None
