import httpx
import pytest

from accessaudit.audit.discovery import (
    CrawlDiscoveryAdapter,
    ManualDiscoveryAdapter,
    SitemapDiscoveryAdapter,
    get_discovery_adapter,
)
from accessaudit.schemas import CrawlerDiscoveryConfig, ManualDiscoveryConfig, SitemapDiscoveryConfig

pytestmark = pytest.mark.anyio

NS = 'xmlns="http://www.sitemaps.org/schemas/sitemap/0.9"'

SITEMAPS = {
    "/sitemap.xml": f"""<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex {NS}>
  <sitemap><loc>https://ex.com/sitemap-pages.xml</loc></sitemap>
  <sitemap><loc>https://ex.com/sitemap-missing.xml</loc></sitemap>
  <sitemap><loc>https://ex.com/sitemap-blog.xml</loc></sitemap>
</sitemapindex>""",
    "/sitemap-pages.xml": f"""<?xml version="1.0" encoding="UTF-8"?>
<urlset {NS}>
  <url><loc>https://ex.com/</loc></url>
  <url><loc>https://ex.com/about/</loc></url>
  <url><loc>https://ex.com/logo.png</loc></url>
  <url><loc>https://ex.com/about?utm_source=news</loc></url>
</urlset>""",
    "/sitemap-blog.xml": f"""<?xml version="1.0" encoding="UTF-8"?>
<urlset {NS}>
  <url><loc>https://ex.com/blog/one</loc></url>
  <url><loc>https://ex.com/blog/two</loc></url>
</urlset>""",
}


def _sitemap_handler(requested):
    def handler(request):
        requested.append(request.url.path)
        body = SITEMAPS.get(request.url.path)
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, text=body, headers={"content-type": "application/xml"})

    return handler


async def test_manual_discovery_cleans_list():
    config = ManualDiscoveryConfig(
        urls=["https://ex.com/a/", "https://ex.com/a", "https://ex.com/file.pdf", "https://ex.com/b#x"]
    )
    result = await ManualDiscoveryAdapter().discover(config)
    assert result.urls == ["https://ex.com/a", "https://ex.com/b"]


async def test_sitemap_index_is_followed():
    requested = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_sitemap_handler(requested))) as client:
        adapter = SitemapDiscoveryAdapter(client)
        result = await adapter.discover(SitemapDiscoveryConfig(sitemap_url="https://ex.com/sitemap.xml"))

    assert result.urls == [
        "https://ex.com/",
        "https://ex.com/about",
        "https://ex.com/blog/one",
        "https://ex.com/blog/two",
    ]
    assert "/sitemap-missing.xml" in requested
    assert result.meta["sitemaps_fetched"] == 4


async def test_sitemap_respects_max_pages():
    requested = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_sitemap_handler(requested))) as client:
        adapter = SitemapDiscoveryAdapter(client)
        result = await adapter.discover(
            SitemapDiscoveryConfig(sitemap_url="https://ex.com/sitemap.xml", max_pages=2)
        )

    assert result.urls == ["https://ex.com/", "https://ex.com/about"]
    assert "/sitemap-blog.xml" not in requested


async def test_unreachable_sitemap_yields_nothing():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
        result = await SitemapDiscoveryAdapter(client).discover(
            SitemapDiscoveryConfig(sitemap_url="https://ex.com/sitemap.xml")
        )
    assert result.urls == []


SITE = {
    "/docs": '<a href="/docs/a">A</a> <a href="/docs/b">B</a> <a href="/admin/x">Admin</a>'
             '<a href="/docs/private/x">Private</a> <a href="https://other.com/docs/z">Other</a>',
    "/docs/a": '<a href="/docs/c">C</a> <a href="/docs">Up</a>',
    "/docs/b": '<a href="/docs/gone">Gone</a>',
    "/docs/c": '<a href="/docs/d">D</a>',
    "/docs/d": "",
}


def _site_handler(visited):
    def handler(request):
        visited.append(str(request.url))
        body = SITE.get(request.url.path)
        if body is None or request.url.host != "ex.com":
            return httpx.Response(404)
        return httpx.Response(200, text=f"<html><body>{body}</body></html>")

    return handler


async def test_crawl_stays_in_scope():
    visited = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_site_handler(visited))) as client:
        adapter = CrawlDiscoveryAdapter(client)
        result = await adapter.discover(
            CrawlerDiscoveryConfig(
                start_url="https://ex.com/docs", depth=2, max_pages=10, exclude_paths=["/docs/private/*"]
            )
        )

    assert set(result.urls) == {
        "https://ex.com/docs",
        "https://ex.com/docs/a",
        "https://ex.com/docs/b",
        "https://ex.com/docs/c",
        "https://ex.com/docs/gone",
    }
    assert result.urls[0] == "https://ex.com/docs"
    # depth 2 pages are fetched but not expanded
    assert "https://ex.com/docs/d" not in result.urls
    assert not any("admin" in u or "private" in u or "other.com" in u for u in visited)
    assert result.meta["pages_visited"] == len(set(visited))


async def test_crawl_stops_at_candidate_target():
    async with httpx.AsyncClient(transport=httpx.MockTransport(_site_handler([]))) as client:
        result = await CrawlDiscoveryAdapter(client).discover(
            CrawlerDiscoveryConfig(start_url="https://ex.com/docs", depth=3, max_pages=1)
        )
    # ceil(1 * 1.5) == 2
    assert len(result.urls) == 2


async def test_get_discovery_adapter():
    assert isinstance(get_discovery_adapter("manual"), ManualDiscoveryAdapter)
    with pytest.raises(ValueError):
        get_discovery_adapter("sitemap")
    async with httpx.AsyncClient() as client:
        assert isinstance(get_discovery_adapter("crawler", client=client), CrawlDiscoveryAdapter)
        with pytest.raises(ValueError):
            get_discovery_adapter("carrier-pigeon", client=client)
