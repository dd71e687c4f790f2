# accessaudit/audit/discovery.py
"""
Candidate URL discovery.

Three strategies, one per discovery method:

- manual:  the caller's list, cleaned up; never touches the network
- sitemap: <loc> entries of a sitemap, following sitemap indexes
- crawler: breadth-first crawl from a start URL, scoped to its path

Every adapter returns canonical, de-duplicated, HTML-looking URLs. Network
failures during discovery are logged and produce a shorter list rather than
an error.
"""
import logging
import math
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from ..config import Settings, get_settings
from ..schemas import (
    CrawlerDiscoveryConfig,
    ManualDiscoveryConfig,
    SitemapDiscoveryConfig,
    SubdomainConfig,
)
from .links import extract_links
from .urls import canonicalize, is_html_url, is_within_path_scope, matches_exclude_path

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    urls: List[str] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)


def _unique_html(urls, limit: Optional[int] = None) -> List[str]:
    out: List[str] = []
    seen: Set[str] = set()
    for raw in urls:
        url = canonicalize((raw or "").strip())
        if not url or url in seen or not is_html_url(url):
            continue
        seen.add(url)
        out.append(url)
        if limit is not None and len(out) >= limit:
            break
    return out


class DiscoveryAdapter(ABC):
    method: str = ""

    @abstractmethod
    async def discover(self, config) -> DiscoveryResult:
        raise NotImplementedError


# ============================================================
# Manual
# ============================================================

class ManualDiscoveryAdapter(DiscoveryAdapter):
    method = "manual"

    async def discover(self, config: ManualDiscoveryConfig) -> DiscoveryResult:
        urls = _unique_html(config.urls)
        logger.info("Manual discovery: %d of %d URLs kept", len(urls), len(config.urls))
        return DiscoveryResult(urls=urls, meta={"method": self.method, "provided": len(config.urls)})


# ============================================================
# Sitemap
# ============================================================

class SitemapDiscoveryAdapter(DiscoveryAdapter):
    method = "sitemap"

    def __init__(self, client: httpx.AsyncClient, settings: Optional[Settings] = None) -> None:
        self.client = client
        self.settings = settings or get_settings()

    async def _fetch_xml(self, url: str) -> Optional[BeautifulSoup]:
        try:
            resp = await self.client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Sitemap fetch failed for %s: %s", url, e)
            return None
        return BeautifulSoup(resp.text, "xml")

    async def discover(self, config: SitemapDiscoveryConfig) -> DiscoveryResult:
        max_nesting = self.settings.SITEMAP_MAX_NESTING
        fetched: Set[str] = set()
        collected: List[str] = []
        seen: Set[str] = set()

        async def walk(sitemap_url: str, level: int) -> None:
            if len(collected) >= config.max_pages or sitemap_url in fetched:
                return
            fetched.add(sitemap_url)
            soup = await self._fetch_xml(sitemap_url)
            if soup is None:
                return

            if soup.find("sitemapindex") is not None:
                if level >= max_nesting:
                    logger.warning("Sitemap nesting limit (%d) reached at %s", max_nesting, sitemap_url)
                    return
                for entry in soup.find_all("sitemap"):
                    loc = entry.find("loc")
                    child = (loc.get_text() if loc is not None else "").strip()
                    if child:
                        await walk(child, level + 1)
                    if len(collected) >= config.max_pages:
                        return
                return

            locs = [u.find("loc") for u in soup.find_all("url")] or soup.find_all("loc")
            for loc in locs:
                if loc is None:
                    continue
                url = canonicalize((loc.get_text() or "").strip())
                if not url or url in seen or not is_html_url(url):
                    continue
                seen.add(url)
                collected.append(url)
                if len(collected) >= config.max_pages:
                    return

        await walk(config.sitemap_url, 0)
        logger.info(
            "Sitemap discovery: %d URLs from %d sitemap(s) (max %d)",
            len(collected), len(fetched), config.max_pages,
        )
        return DiscoveryResult(
            urls=collected,
            meta={"method": self.method, "sitemaps_fetched": len(fetched), "from_sitemap": len(collected)},
        )


# ============================================================
# Crawler
# ============================================================

class CrawlDiscoveryAdapter(DiscoveryAdapter):
    method = "crawler"

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        subdomain: Optional[SubdomainConfig] = None,
    ) -> None:
        self.client = client
        self.settings = settings or get_settings()
        self.subdomain = subdomain or SubdomainConfig()

    async def discover(self, config: CrawlerDiscoveryConfig) -> DiscoveryResult:
        target = int(math.ceil(config.max_pages * self.settings.AUDIT_CANDIDATE_MARGIN))
        start = canonicalize(config.start_url)
        base_path = urlparse(config.start_url).path or "/"
        excludes = config.exclude_paths or []

        def in_scope(url: str) -> bool:
            if not is_within_path_scope(url, base_path):
                return False
            return not matches_exclude_path(urlparse(url).path or "/", excludes)

        queue = deque([(start, 0)])
        visited: Set[str] = set()
        discovered: List[str] = []
        known: Set[str] = set()
        pages_visited = 0

        logger.info(
            "Crawl from %s (scope %s, depth %d, excludes %s), looking for %d candidates",
            start, base_path, config.depth, excludes or "none", target,
        )

        while queue and len(discovered) < target:
            url, depth = queue.popleft()
            if url in visited or depth > config.depth:
                continue
            if not in_scope(url):
                logger.debug("Out of scope: %s", url)
                continue
            visited.add(url)
            pages_visited += 1

            try:
                resp = await self.client.get(url)
            except httpx.HTTPError as e:
                logger.warning("Crawl fetch failed for %s: %s", url, e)
                continue
            if resp.status_code >= 400:
                logger.info("Crawl skipping %s (HTTP %d)", url, resp.status_code)
                continue

            if url not in known:
                known.add(url)
                discovered.append(url)

            if depth >= config.depth or len(discovered) >= target:
                continue

            for link in extract_links(resp.text, str(resp.url), config.start_url, self.subdomain):
                link = canonicalize(link)
                if link in visited or not in_scope(link):
                    continue
                if link not in known:
                    known.add(link)
                    discovered.append(link)
                    if len(discovered) >= target:
                        break
                queue.append((link, depth + 1))

        urls = _unique_html(discovered, limit=target)
        logger.info("Crawl finished: %d URLs (%d pages visited)", len(urls), pages_visited)
        return DiscoveryResult(
            urls=urls,
            meta={"method": self.method, "pages_visited": pages_visited, "from_crawl": len(urls)},
        )


def get_discovery_adapter(
    method: str,
    client: Optional[httpx.AsyncClient] = None,
    settings: Optional[Settings] = None,
    subdomain: Optional[SubdomainConfig] = None,
) -> DiscoveryAdapter:
    if method == "manual":
        return ManualDiscoveryAdapter()
    if client is None:
        raise ValueError(f"Discovery method {method!r} needs an HTTP client")
    if method == "sitemap":
        return SitemapDiscoveryAdapter(client, settings)
    if method == "crawler":
        return CrawlDiscoveryAdapter(client, settings, subdomain)
    raise ValueError(f"Unknown discovery method: {method!r}")
