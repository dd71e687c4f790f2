# accessaudit/audit/http.py
from typing import Dict, Optional

import httpx

from ..config import Settings, get_settings
from ..schemas import AuthConfig


def auth_headers(auth: Optional[AuthConfig]) -> Dict[str, str]:
    """Request headers carrying the caller's credentials, if any."""
    headers: Dict[str, str] = {}
    if auth is None:
        return headers
    if auth.type == "bearer" and auth.token:
        headers["Authorization"] = f"Bearer {auth.token}"
    elif auth.type == "cookie" and auth.cookies:
        headers["Cookie"] = auth.cookies
    headers.update(auth.headers or {})
    return headers


def build_client(
    auth: Optional[AuthConfig] = None,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    settings = settings or get_settings()
    headers = {"User-Agent": settings.USER_AGENT}
    headers.update(auth_headers(auth))
    return httpx.AsyncClient(
        headers=headers,
        timeout=settings.DISCOVERY_TIMEOUT,
        follow_redirects=True,
        transport=transport,
    )
