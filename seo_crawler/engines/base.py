"""
Type contracts shared by every crawl engine.

Design principles:
- The job configuration is validated once, at submission, and snapshotted
- Loosely shaped page facts (structured data, social tags, custom extraction)
  are modelled as tagged unions with an explicit "unparsed" variant
- CrawlRecord is the exact shape persisted per crawled URL
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class Severity(str, Enum):
    ERROR = "error"         # Page is broken or unindexable - fix immediately
    WARNING = "warning"     # Hurts search visibility - fix soon
    INFO = "info"           # Worth knowing, no action required


class IssueCategory(str, Enum):
    CRAWLABILITY = "crawlability"
    INDEXABILITY = "indexability"
    REDIRECTS = "redirects"
    ON_PAGE = "on_page"
    CONTENT = "content"
    IMAGES = "images"
    CANONICAL = "canonical"
    INTERNATIONAL = "international"
    STRUCTURED_DATA = "structured_data"
    PERFORMANCE = "performance"
    ACCESSIBILITY = "accessibility"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED)


class ResourceType(str, Enum):
    PAGE = "page"
    IMAGE = "image"
    CSS = "css"
    JS = "js"


# ─────────────────────────────────────────────
# Issues
# ─────────────────────────────────────────────

class Issue(BaseModel):
    """A single discrete problem found on one crawled URL."""
    type: str
    severity: Severity
    category: IssueCategory
    message: str

    model_config = ConfigDict(use_enum_values=True)


# ─────────────────────────────────────────────
# Custom extraction rules (tagged union)
# ─────────────────────────────────────────────

class CssExtractionRule(BaseModel):
    kind: Literal["css"] = "css"
    name: str = Field(min_length=1, max_length=100)
    selector: str = Field(min_length=1)
    attribute: str | None = None   # None -> element text


class RegexExtractionRule(BaseModel):
    kind: Literal["regex"] = "regex"
    name: str = Field(min_length=1, max_length=100)
    pattern: str = Field(min_length=1)

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regex '{v}': {e}") from e
        return v


ExtractionRule = Annotated[Union[CssExtractionRule, RegexExtractionRule], Field(discriminator="kind")]


# ─────────────────────────────────────────────
# Structured data / social tags
# ─────────────────────────────────────────────

class JsonLdBlock(BaseModel):
    kind: Literal["json-ld"] = "json-ld"
    types: list[str] = Field(default_factory=list)
    data: Any = None


class UnparsedBlock(BaseModel):
    """A structured data block that could not be parsed; kept for reporting."""
    kind: Literal["unparsed"] = "unparsed"
    raw: str = ""
    error: str


StructuredDataBlock = Annotated[Union[JsonLdBlock, UnparsedBlock], Field(discriminator="kind")]


class OpenGraphTags(BaseModel):
    title: str | None = None
    description: str | None = None
    image: str | None = None
    url: str | None = None
    type: str | None = None
    site_name: str | None = None
    extra: dict[str, str] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not any(self.model_dump(exclude={"extra"}).values()) and not self.extra


class TwitterCard(BaseModel):
    card: str | None = None
    title: str | None = None
    description: str | None = None
    image: str | None = None
    site: str | None = None
    extra: dict[str, str] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not any(self.model_dump(exclude={"extra"}).values()) and not self.extra


class HreflangEntry(BaseModel):
    lang: str
    href: str


class RedirectHop(BaseModel):
    url: str
    status_code: int
    location: str


# ─────────────────────────────────────────────
# Job configuration
# ─────────────────────────────────────────────

def _validate_absolute_url(value: str) -> str:
    value = value.strip()
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"'{value}' is not an absolute http(s) URL")
    return value


class CrawlConfig(BaseModel):
    """Configuration snapshot for one crawl job. All fields except target_url are optional."""

    target_url: str
    max_pages: int = Field(500, ge=1, le=50_000)
    max_depth: int = Field(10, ge=0, le=100)
    crawl_delay_ms: int = Field(200, ge=0, le=60_000)
    concurrency: int = Field(5, ge=1, le=50)
    respect_robots_txt: bool = True
    follow_external_links: bool = False
    follow_subdomains: bool = False
    include_images: bool = True
    include_css: bool = False
    include_js: bool = False
    check_canonical: bool = True
    check_hreflang: bool = True
    extract_structured_data: bool = True
    check_accessibility: bool = False
    custom_user_agent: str | None = Field(None, max_length=500)
    custom_robots_txt: str | None = None
    url_list: list[str] | None = None
    include_patterns: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=list)
    custom_extraction: list[ExtractionRule] = Field(default_factory=list)

    @field_validator("target_url")
    @classmethod
    def validate_target_url(cls, v: str) -> str:
        return _validate_absolute_url(v)

    @field_validator("url_list")
    @classmethod
    def validate_url_list(cls, v: list[str] | None) -> list[str] | None:
        if not v:
            return None
        return [_validate_absolute_url(u) for u in v]

    @field_validator("include_patterns", "exclude_patterns", mode="before")
    @classmethod
    def validate_patterns(cls, v: list[str] | None) -> list[str]:
        if v is None:
            return []
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid pattern '{pattern}': {e}") from e
        return v

    @model_validator(mode="after")
    def normalize_blank_overrides(self) -> "CrawlConfig":
        if self.custom_user_agent is not None and not self.custom_user_agent.strip():
            self.custom_user_agent = None
        if self.custom_robots_txt is not None and not self.custom_robots_txt.strip():
            self.custom_robots_txt = None
        return self

    @property
    def crawl_type(self) -> str:
        """'list' crawls fetch only url_list; 'spider' crawls follow links."""
        return "list" if self.url_list else "spider"


# ─────────────────────────────────────────────
# Persisted record
# ─────────────────────────────────────────────

class CrawlRecord(BaseModel):
    """Everything persisted for one crawled (or robots-skipped) URL."""

    url: str
    url_hash: str
    parent_url: str | None = None
    depth: int = 0
    resource_type: ResourceType = ResourceType.PAGE

    status_code: int | None = None
    content_type: str | None = None
    response_time_ms: int | None = None
    content_size: int | None = None
    content_hash: str | None = None
    error_message: str | None = None

    redirect_url: str | None = None
    redirect_type: str | None = None
    redirect_chain: list[RedirectHop] = Field(default_factory=list)

    title: str | None = None
    title_length: int | None = None
    meta_description: str | None = None
    meta_description_length: int | None = None
    meta_keywords: str | None = None
    canonical_url: str | None = None
    canonical_is_self: bool | None = None
    h1: list[str] = Field(default_factory=list)
    h1_count: int = 0
    h2: list[str] = Field(default_factory=list)
    h2_count: int = 0
    robots_meta: str | None = None
    robots_txt_allowed: bool = True
    x_robots_tag: str | None = None

    internal_links_count: int = 0
    external_links_count: int = 0
    images_count: int = 0
    images_without_alt: int = 0
    images_alt_text: dict[str, str] | None = None
    link_targets: list[str] = Field(default_factory=list)

    hreflang: list[HreflangEntry] = Field(default_factory=list)
    hreflang_errors: list[str] = Field(default_factory=list)
    structured_data: list[StructuredDataBlock] = Field(default_factory=list)
    structured_data_errors: list[str] = Field(default_factory=list)
    og_tags: OpenGraphTags | None = None
    twitter_tags: TwitterCard | None = None

    word_count: int | None = None
    text_ratio: float | None = None
    custom_data: dict[str, list[str]] | None = None
    accessibility_issues: list[Issue] = Field(default_factory=list)

    indexable: bool = False
    indexability_reason: str | None = None
    issues: list[Issue] = Field(default_factory=list)

    model_config = ConfigDict(use_enum_values=True)

    @property
    def fetched(self) -> bool:
        return self.status_code is not None

    @property
    def is_error(self) -> bool:
        """Network failure or HTTP error response."""
        return self.status_code is not None and (self.status_code == 0 or self.status_code >= 400)

    @property
    def warning_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == Severity.WARNING.value)
