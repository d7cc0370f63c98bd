"""Tests for the media proxy: reference resolution, allow-list and byte ranges."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from app.services.inbox import media_proxy
from app.services.inbox.errors import MediaNotAllowed, MediaResolutionFailed, RangeNotSatisfiable
from tests.mocks import FakeGraphAPI

BODY = bytes(range(256)) * 4  # 1000+ bytes of distinguishable content
CDN_URL = "https://scontent.xx.fbcdn.net/v/t1/photo.jpg?oh=abc"
SIGNED_PATH = "/whatsapp_business/attachments/"


def _run_async(coro):
    # Run coroutine in a dedicated thread to avoid nested event loops from anyio.
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(asyncio.run, coro)
        return future.result()


@pytest.fixture()
def upstream(monkeypatch):
    fake = FakeGraphAPI()
    monkeypatch.setattr(media_proxy, "_build_client", fake.async_client)
    return fake


def _full_body(request: httpx.Request) -> httpx.Response:
    """A CDN that ignores Range and always answers with the whole file."""
    return httpx.Response(200, content=BODY[:1000], headers={"Content-Type": "image/jpeg"})


def _ranged_body(request: httpx.Request) -> httpx.Response:
    start, end = request.headers["Range"].removeprefix("bytes=").split("-")
    chunk = BODY[int(start) : int(end) + 1]
    return httpx.Response(
        206,
        content=chunk,
        headers={"Content-Type": "image/jpeg", "Content-Range": f"bytes {start}-{end}/1000"},
    )


def _get(client, headers, ref, range_header=None):
    request_headers = dict(headers)
    if range_header:
        request_headers["Range"] = range_header
    return client.get("/api/v1/inbox/media", params={"ref": ref}, headers=request_headers)


class TestParseRange:
    @pytest.mark.parametrize(
        "header, expected",
        [
            (None, None),
            ("", None),
            ("bytes=0-99", (0, 99)),
            ("bytes=100-", (100, None)),
            ("bytes=-500", (None, 500)),
        ],
    )
    def test_valid(self, header, expected):
        assert media_proxy.parse_range(header) == expected

    @pytest.mark.parametrize(
        "header",
        ["bytes=-", "bytes=-0", "bytes=10-5", "items=0-10", "bytes=0-1,5-9", "bytes=abc"],
    )
    def test_invalid(self, header):
        with pytest.raises(RangeNotSatisfiable):
            media_proxy.parse_range(header)


@pytest.mark.parametrize(
    "url, allowed",
    [
        ("https://scontent.xx.fbcdn.net/a.jpg", True),
        ("https://fbcdn.net/a.jpg", True),
        ("https://lookaside.fbsbx.com/x", True),
        ("https://evilfbcdn.net/a.jpg", False),
        ("https://fbcdn.net.evil.com/a.jpg", False),
        ("ftp://scontent.xx.fbcdn.net/a.jpg", False),
        ("http://169.254.169.254/latest/meta-data", False),
    ],
)
def test_is_allowed_host(url, allowed):
    assert media_proxy.is_allowed_host(url) is allowed


class TestRanges:
    def test_upstream_ignoring_range_is_sliced_locally(self, client, operator_headers, upstream):
        upstream.add("GET", "/photo.jpg", handler=_full_body)

        response = _get(client, operator_headers, CDN_URL, "bytes=100-199")

        assert response.status_code == 206
        assert response.headers["Content-Range"] == "bytes 100-199/1000"
        assert response.headers["Content-Length"] == "100"
        assert response.headers["Accept-Ranges"] == "bytes"
        assert response.content == BODY[100:200]
        # the Range header is still forwarded upstream
        assert upstream.requests[0].headers["Range"] == "bytes=100-199"
        assert upstream.requests[0].headers["Accept-Encoding"] == "identity"

    def test_forwarded_range_is_the_parsed_one(self, client, operator_headers, upstream):
        upstream.add("GET", "/photo.jpg", handler=_full_body)

        response = _get(client, operator_headers, CDN_URL, "bytes= 0100-0199")

        assert response.status_code == 206
        assert response.headers["Content-Range"] == "bytes 100-199/1000"
        assert upstream.requests[0].headers["Range"] == "bytes=100-199"

    def test_suffix_range_is_sliced_locally(self, client, operator_headers, upstream):
        upstream.add("GET", "/photo.jpg", handler=_full_body)

        response = _get(client, operator_headers, CDN_URL, "bytes=-10")

        assert response.status_code == 206
        assert response.headers["Content-Range"] == "bytes 990-999/1000"
        assert response.content == BODY[990:1000]

    def test_upstream_partial_content_passes_through(self, client, operator_headers, upstream):
        upstream.add("GET", "/photo.jpg", handler=_ranged_body)

        response = _get(client, operator_headers, CDN_URL, "bytes=0-49")

        assert response.status_code == 206
        assert response.headers["Content-Range"] == "bytes 0-49/1000"
        assert response.content == BODY[0:50]

    def test_no_range_streams_whole_body(self, client, operator_headers, upstream):
        upstream.add("GET", "/photo.jpg", handler=_full_body)

        response = _get(client, operator_headers, CDN_URL)

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/jpeg"
        assert response.headers["Cache-Control"] == "private, max-age=300"
        assert response.content == BODY[:1000]
        assert "Range" not in upstream.requests[0].headers

    def test_range_past_end_is_not_satisfiable(self, client, operator_headers, upstream):
        upstream.add("GET", "/photo.jpg", handler=_full_body)

        response = _get(client, operator_headers, CDN_URL, "bytes=5000-")

        assert response.status_code == 416
        assert response.headers["Content-Range"] == "bytes */1000"
        assert response.json()["code"] == "range_not_satisfiable"

    def test_upstream_416_is_relayed(self, client, operator_headers, upstream):
        upstream.add(
            "GET", "/photo.jpg", status_code=416, headers={"Content-Range": "bytes */1000"}
        )

        response = _get(client, operator_headers, CDN_URL, "bytes=5000-5100")

        assert response.status_code == 416
        assert response.headers["Content-Range"] == "bytes */1000"

    def test_malformed_range_is_rejected_before_fetching(self, client, operator_headers, upstream):
        response = _get(client, operator_headers, CDN_URL, "bytes=9-3")

        assert response.status_code == 416
        assert upstream.requests == []


class TestReferences:
    def test_disallowed_host_is_forbidden(self, client, operator_headers, upstream):
        response = _get(client, operator_headers, "https://example.com/secret.png")

        assert response.status_code == 403
        assert response.json()["code"] == "media_not_allowed"
        assert upstream.requests == []

    @pytest.mark.parametrize("ref", ["../../etc/passwd", "..", ".", "-_."])
    def test_invalid_reference_is_rejected(self, client, operator_headers, upstream, ref):
        response = _get(client, operator_headers, ref)

        assert response.status_code == 502
        assert upstream.requests == []

    def test_whatsapp_media_id_is_resolved_on_every_request(self, client, operator_headers, upstream):
        resolved = iter(["sig-1", "sig-2"])

        def _resolve(request):
            return httpx.Response(
                200,
                json={
                    "url": f"https://lookaside.fbsbx.com{SIGNED_PATH}?mid=1234567890&sig={next(resolved)}",
                    "mime_type": "audio/ogg",
                },
            )

        def _download(request):
            assert request.headers["Authorization"] == "Bearer wa-token"
            return httpx.Response(200, content=b"OggS-voice")

        upstream.add("GET", "/1234567890", handler=_resolve)
        upstream.add("GET", SIGNED_PATH, handler=_download)

        first = _get(client, operator_headers, "1234567890")
        second = _get(client, operator_headers, "1234567890")

        assert first.status_code == second.status_code == 200
        assert first.content == b"OggS-voice"
        assert first.headers["content-type"].startswith("audio/ogg")
        assert len(upstream.calls("GET", "/1234567890")) == 2
        signatures = [r.url.params["sig"] for r in upstream.calls("GET", SIGNED_PATH)]
        assert signatures == ["sig-1", "sig-2"]

    def test_resolved_url_off_the_allow_list_is_forbidden(self, client, operator_headers, upstream):
        upstream.add("GET", "/1234567890", json={"url": "https://attacker.example/x"})

        response = _get(client, operator_headers, "1234567890")

        assert response.status_code == 403

    def test_resolution_failure_is_bad_gateway(self, client, operator_headers, upstream):
        upstream.add("GET", "/1234567890", status_code=400, json={"error": {"message": "bad id"}})

        response = _get(client, operator_headers, "1234567890")

        assert response.status_code == 502
        assert response.json()["code"] == "media_resolution_failed"

    def test_redirects_are_not_followed(self, client, operator_headers, upstream):
        upstream.add(
            "GET", "/photo.jpg", status_code=302, headers={"Location": "http://169.254.169.254/"}
        )

        response = _get(client, operator_headers, CDN_URL)

        assert response.status_code == 502
        assert len(upstream.requests) == 1

    def test_requires_operator(self, client, upstream):
        response = client.get("/api/v1/inbox/media", params={"ref": CDN_URL})

        assert response.status_code == 401


def test_stream_media_closes_upstream_on_errors(upstream):
    upstream.add("GET", "/photo.jpg", status_code=500)

    with pytest.raises(MediaResolutionFailed):
        _run_async(media_proxy.stream_media(CDN_URL))

    with pytest.raises(MediaNotAllowed):
        _run_async(media_proxy.stream_media("https://example.com/a.png"))
