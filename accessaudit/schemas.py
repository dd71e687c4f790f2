from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ------------------------------
# Enumerations
# ------------------------------
class AuditStatus(str, Enum):
    PENDING = "PENDING"
    DISCOVERING = "DISCOVERING"
    AUDITING = "AUDITING"
    AGGREGATING = "AGGREGATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (AuditStatus.COMPLETED, AuditStatus.FAILED, AuditStatus.CANCELLED)


IN_PROGRESS_STATUSES = (
    AuditStatus.PENDING,
    AuditStatus.DISCOVERING,
    AuditStatus.AUDITING,
    AuditStatus.AGGREGATING,
)


class Severity(str, Enum):
    CRITICAL = "critical"
    SERIOUS = "serious"
    MODERATE = "moderate"
    MINOR = "minor"


SEVERITIES = (Severity.CRITICAL, Severity.SERIOUS, Severity.MODERATE, Severity.MINOR)


class BrokenPageErrorType(str, Enum):
    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    CONNECTION_ERROR = "connection_error"
    SSL_ERROR = "ssl_error"
    OTHER = "other"


class PageAuditStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SubdomainPolicy(str, Enum):
    MAIN_ONLY = "main_only"
    ALL_SUBDOMAINS = "all_subdomains"
    SPECIFIC = "specific"


def _require_http_url(v: str) -> str:
    v = (v or "").strip()
    parsed = urlparse(v)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Expected an absolute http(s) URL, got {v!r}")
    return v


# ------------------------------
# Discovery configuration
# ------------------------------
class ManualDiscoveryConfig(BaseModel):
    method: Literal["manual"] = "manual"
    urls: List[str] = Field(..., min_length=1)

    @field_validator("urls")
    @classmethod
    def _check_urls(cls, v: List[str]) -> List[str]:
        return [_require_http_url(u) for u in v]


class SitemapDiscoveryConfig(BaseModel):
    method: Literal["sitemap"] = "sitemap"
    sitemap_url: str
    max_pages: int = Field(default=10, ge=1, le=1000)

    @field_validator("sitemap_url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        return _require_http_url(v)


class CrawlerDiscoveryConfig(BaseModel):
    method: Literal["crawler"] = "crawler"
    start_url: str
    depth: int = Field(default=2, ge=1, le=3)
    max_pages: int = Field(default=10, ge=1, le=1000)
    exclude_paths: List[str] = Field(default_factory=list)

    @field_validator("start_url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        return _require_http_url(v)


DiscoveryConfig = Annotated[
    Union[ManualDiscoveryConfig, SitemapDiscoveryConfig, CrawlerDiscoveryConfig],
    Field(discriminator="method"),
]


class SubdomainConfig(BaseModel):
    policy: SubdomainPolicy = SubdomainPolicy.MAIN_ONLY
    allowed_subdomains: List[str] = Field(default_factory=list)


class AuthConfig(BaseModel):
    """Pass-through credentials; obtaining them is someone else's job."""
    type: Literal["none", "bearer", "cookie"] = "none"
    token: Optional[str] = None
    cookies: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)


# ------------------------------
# Audit job input
# ------------------------------
class AuditRequest(BaseModel):
    audit_id: Optional[int] = None
    project_id: str = "default"
    discovery: DiscoveryConfig
    wcag_levels: List[Literal["A", "AA", "AAA"]] = Field(default_factory=lambda: ["A", "AA"])
    include_best_practices: bool = True
    auth: Optional[AuthConfig] = None
    subdomain: SubdomainConfig = Field(default_factory=SubdomainConfig)

    @property
    def requested_pages(self) -> int:
        if isinstance(self.discovery, ManualDiscoveryConfig):
            return len(self.discovery.urls)
        return self.discovery.max_pages

    @property
    def base_url(self) -> str:
        d = self.discovery
        if isinstance(d, ManualDiscoveryConfig):
            return d.urls[0]
        if isinstance(d, SitemapDiscoveryConfig):
            p = urlparse(d.sitemap_url)
            return f"{p.scheme}://{p.netloc}"
        return d.start_url


# ------------------------------
# Audit job output
# ------------------------------
class PatternCounts(BaseModel):
    critical: int = 0
    serious: int = 0
    moderate: int = 0
    minor: int = 0
    total: int = 0


class AuditSummary(BaseModel):
    critical: int = 0
    serious: int = 0
    moderate: int = 0
    minor: int = 0
    total: int = 0
    patterns: Optional[PatternCounts] = None


class AuditResult(BaseModel):
    audit_id: Optional[int] = None
    summary: AuditSummary
    pages_audited: int
    pages_requested: int
    broken_pages: int
    target_reached: bool
    cancelled: bool = False
    health_score: Optional[int] = None


# ------------------------------
# API views
# ------------------------------
class AuditStatusOut(BaseModel):
    id: int
    status: AuditStatus
    total_pages: int
    processed_pages: int
    failed_pages: int
    crawl_iterations: int
    error_message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AuditOut(AuditStatusOut):
    project_id: str
    discovery_method: str
    is_scheduled: bool
    broken_pages_count: int
    summary: Optional[AuditSummary] = None
    health_score: Optional[int] = None
    previous_audit_id: Optional[int] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class AggregatedViolationOut(BaseModel):
    fingerprint: str
    rule_id: str
    impact: Severity
    help: str
    occurrences: int
    page_count: int
    affected_pages: List[str]
    unique_elements: List[dict]
    priority: int
    sample_selector: Optional[str] = None
    sample_page_url: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ScheduleCreate(BaseModel):
    request: AuditRequest
    interval_hours: int = Field(default=24, ge=1)
