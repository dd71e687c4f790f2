# accessaudit/audit/urls.py
import re
from typing import Iterable, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlparse

# Query parameters that never change page content
TRACKING_PARAMS = frozenset({
    # Google Analytics / Ads
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    "gclid", "gclsrc", "dclid",
    # Facebook
    "fbclid", "fb_action_ids", "fb_action_types", "fb_source",
    # Microsoft / Bing
    "msclkid",
    # Hubspot
    "hsa_acc", "hsa_cam", "hsa_grp", "hsa_ad", "hsa_src", "hsa_tgt", "hsa_kw",
    "hsa_mt", "hsa_net", "hsa_ver",
    # Mailchimp
    "mc_cid", "mc_eid",
    # Misc
    "_ga", "_gl", "ref", "source", "campaign",
})

NON_HTML_EXTENSIONS = (
    ".xml", ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".css", ".js",
    ".json", ".ico", ".woff", ".woff2", ".ttf", ".eot",
)

STATIC_FILE_RE = re.compile(
    r"\.(pdf|zip|png|jpg|jpeg|gif|svg|css|js|ico|xml|json|woff|woff2|ttf|eot)$",
    re.IGNORECASE,
)

_BASE_DOMAIN_PREFIX_RE = re.compile(r"^(www\.|m\.|mobile\.|api\.|cdn\.|static\.|assets\.)")

# Hosts treated as the main site regardless of policy
MAIN_SUBDOMAINS = ("www", "m", "mobile")


def _split(raw: str):
    try:
        parsed = urlparse(raw)
        port = parsed.port  # raises on a malformed port
    except ValueError:
        return None, None
    if not parsed.scheme or not parsed.hostname:
        return None, None
    return parsed, port


def canonicalize(raw: str) -> str:
    """
    Canonical string form used for de-duplication and the tried set.

    - hostname lower-cased, path case preserved
    - explicit port kept
    - trailing slashes removed except for the root path
    - tracking parameters dropped, others kept in order (blank values too)
    - fragment dropped

    Anything that does not parse as scheme://host is returned unchanged.
    """
    if not isinstance(raw, str):
        return raw
    parsed, port = _split(raw.strip())
    if parsed is None:
        return raw

    out = f"{parsed.scheme.lower()}://{parsed.hostname.lower()}"
    if port is not None:
        out += f":{port}"

    path = parsed.path.rstrip("/") or "/"
    out += path

    params = [
        (k, v)
        for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if k.lower() not in TRACKING_PARAMS
    ]
    if params:
        out += "?" + urlencode(params)
    return out


def relative_path(url: str, base_url: str) -> str:
    """Path (+query) of url when it shares base_url's origin, else url itself."""
    u, u_port = _split(url)
    b, b_port = _split(base_url)
    if u is None or b is None:
        return "/"
    same_origin = (
        u.scheme.lower() == b.scheme.lower()
        and u.hostname.lower() == b.hostname.lower()
        and u_port == b_port
    )
    if not same_origin:
        return url
    path = u.path or "/"
    if u.query:
        path += "?" + u.query
    return path


def is_html_url(url: str) -> bool:
    lower = (url or "").lower()
    if "sitemap" in lower:
        return False
    return not lower.endswith(NON_HTML_EXTENSIONS)


def is_static_path(path: str) -> bool:
    return bool(STATIC_FILE_RE.search(path or ""))


def _strip_trailing_slash(path: str) -> str:
    if len(path) > 1 and path.endswith("/"):
        return path[:-1]
    return path


def is_within_path_scope(url: str, base_path: str) -> bool:
    """True when url's path starts with base_path (trailing slashes ignored)."""
    try:
        url_path = urlparse(url).path or "/"
    except ValueError:
        return False
    return _strip_trailing_slash(url_path).startswith(_strip_trailing_slash(base_path or "/"))


def matches_exclude_path(path: str, patterns: Iterable[str]) -> bool:
    """Simple globs: `/admin/*` excludes everything below /admin/."""
    for pattern in patterns or ():
        if not pattern:
            continue
        regex = re.escape(pattern).replace(r"\*", ".*")
        if re.fullmatch(regex, path or ""):
            return True
    return False


def base_domain(hostname: str) -> str:
    """www.example.com / api.example.com -> example.com"""
    return _BASE_DOMAIN_PREFIX_RE.sub("", (hostname or "").lower())


def subdomain_of(hostname: str, domain: str) -> Optional[str]:
    host = (hostname or "").lower()
    if host == domain or host == "www." + domain:
        return None
    suffix = "." + domain
    if host.endswith(suffix):
        return host[: -len(suffix)]
    return None


def is_host_allowed(
    hostname: str,
    base_hostname: str,
    policy: str = "main_only",
    allowed_subdomains: Sequence[str] = (),
) -> bool:
    """
    Apply the subdomain policy to a link host.

    A completely different domain is never allowed; the main domain and its
    www/m/mobile variants always are.
    """
    domain = base_domain(base_hostname)
    host = (hostname or "").lower()
    if host != domain and not host.endswith("." + domain):
        return False

    sub = subdomain_of(hostname, domain)
    if sub is None or sub in MAIN_SUBDOMAINS:
        return True

    policy = getattr(policy, "value", policy)
    if policy == "all_subdomains":
        return True
    if policy == "specific":
        return sub in {s.lower() for s in (allowed_subdomains or ())}
    return False
