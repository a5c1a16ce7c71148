"""Unit tests for the HTTP metadata fetcher"""

import httpx
import pytest

from freshwatch.services.errors import FetchTimeoutError, NetworkError
from freshwatch.services.metadata_fetcher import HttpMetadataFetcher

PAGE = """
<html>
<head>
    <title>Fallback Title</title>
    <meta property="og:title" content="Example Product">
    <meta name="description" content="Tracks freshness of listings">
    <meta name="keywords" content="monitoring, freshness, ,seo">
    <meta name="author" content="Jane Doe">
    <meta property="article:published_time" content="2025-01-01T00:00:00Z">
    <meta property="og:image" content="/images/cover.png">
    <meta name="twitter:image" content="https://cdn.example.com/card.png">
</head>
<body>
    <nav>Navigation</nav>
    <main>
        <h1>Example Product</h1>
        <p>Keeps   listings
        current.</p>
        <script>var tracking = true;</script>
    </main>
    <footer>Footer</footer>
</body>
</html>
"""


def make_fetcher(handler) -> HttpMetadataFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpMetadataFetcher(client=client)


def test_parse_extracts_metadata():
    """Test metadata extraction from meta tags"""
    fetcher = make_fetcher(lambda request: httpx.Response(200))

    content, metadata, images = fetcher.parse(PAGE, "https://example.com/product")

    assert metadata == {
        "title": "Example Product",
        "description": "Tracks freshness of listings",
        "tags": ["monitoring", "freshness", "seo"],
        "author": "Jane Doe",
        "published_date": "2025-01-01T00:00:00Z",
    }
    assert images == [
        "https://example.com/images/cover.png",
        "https://cdn.example.com/card.png",
    ]
    assert content == "Example Product Keeps listings current."


def test_parse_falls_back_to_title_and_body():
    """Test extraction without Open Graph tags or a <main> element"""
    fetcher = make_fetcher(lambda request: httpx.Response(200))
    html = "<html><head><title>Plain Page</title></head><body><p>Hello</p></body></html>"

    content, metadata, images = fetcher.parse(html, "https://example.com")

    assert metadata == {"title": "Plain Page"}
    assert images == []
    assert content == "Hello"


class TestFetch:
    """Test fetch status handling"""

    @pytest.mark.asyncio
    async def test_successful_fetch(self):
        def handler(request):
            assert request.url == "https://example.com/product"
            return httpx.Response(200, text=PAGE)

        fetcher = make_fetcher(handler)
        page = await fetcher.fetch("https://example.com/product")
        await fetcher.close()

        assert page.status_code == 200
        assert page.url == "https://example.com/product"
        assert page.metadata["title"] == "Example Product"
        assert page.bytes_processed == len(PAGE.encode())
        assert page.network_requests == 1

    @pytest.mark.asyncio
    async def test_client_error_is_returned_unparsed(self):
        fetcher = make_fetcher(lambda request: httpx.Response(404, text=PAGE))

        page = await fetcher.fetch("https://example.com/missing")

        assert page.status_code == 404
        assert page.metadata == {}
        assert page.raw_content == ""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 503, 429])
    async def test_server_errors_are_transient(self, status):
        fetcher = make_fetcher(lambda request: httpx.Response(status))

        with pytest.raises(NetworkError, match=f"HTTP {status}"):
            await fetcher.fetch("https://example.com/product")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        fetcher = make_fetcher(handler)

        with pytest.raises(FetchTimeoutError):
            await fetcher.fetch("https://example.com/product")

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        fetcher = make_fetcher(handler)

        with pytest.raises(NetworkError) as exc_info:
            await fetcher.fetch("https://example.com/product")

        assert not isinstance(exc_info.value, FetchTimeoutError)
