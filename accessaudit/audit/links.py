# accessaudit/audit/links.py
import logging
from typing import List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from ..schemas import SubdomainConfig
from .urls import is_host_allowed, is_static_path

logger = logging.getLogger(__name__)

SKIP_PREFIXES = ("#", "javascript:", "mailto:", "tel:")


def _is_skippable(href: str) -> bool:
    if not href:
        return True
    return href.strip().lower().startswith(SKIP_PREFIXES)


def extract_links(
    html: str,
    page_url: str,
    base_url: str,
    subdomain: Optional[SubdomainConfig] = None,
) -> List[str]:
    """
    Internal links found in <a href> tags of a page, as origin + path.

    Relative hrefs resolve against page_url. Hosts must pass the subdomain
    policy relative to base_url; static files are dropped. Document order,
    no duplicates.
    """
    subdomain = subdomain or SubdomainConfig()
    base_host = urlparse(base_url).hostname or ""
    soup = BeautifulSoup(html or "", "html.parser")

    out: List[str] = []
    seen = set()
    stats = {"total": 0, "skipped": 0, "blocked": 0, "static": 0}

    for a in soup.find_all("a", href=True):
        stats["total"] += 1
        href = (a.get("href") or "").strip()
        if _is_skippable(href):
            stats["skipped"] += 1
            continue

        try:
            parsed = urlparse(urljoin(page_url, href))
        except ValueError:
            stats["skipped"] += 1
            continue
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            stats["skipped"] += 1
            continue

        if not is_host_allowed(
            parsed.hostname, base_host, subdomain.policy, subdomain.allowed_subdomains
        ):
            stats["blocked"] += 1
            continue

        if is_static_path(parsed.path):
            stats["static"] += 1
            continue

        clean = f"{parsed.scheme}://{parsed.netloc}{parsed.path or '/'}"
        if clean not in seen:
            seen.add(clean)
            out.append(clean)

    logger.debug(
        "Links on %s: total=%d skipped=%d blocked=%d static=%d kept=%d",
        page_url, stats["total"], stats["skipped"], stats["blocked"], stats["static"], len(out),
    )
    return out
