"""
Page Analyzer Engine

Extracts per-page SEO facts from fetched HTML:
- Title, meta description and keywords (raw text + length)
- Canonical link and whether it points at the page itself
- H1/H2 headings
- Internal/external links (counts persisted, URLs returned for frontier expansion)
- Images and alt text
- hreflang annotations with validation
- JSON-LD, Open Graph and Twitter cards
- Operator-defined CSS/regex extraction
- Accessibility checks
- Visible-text word count, text ratio and content hash

Thresholds are not applied here; they live in the issue rule definitions.
The analyzer is synchronous and CPU-bound: the runner calls it via asyncio.to_thread.
"""

from __future__ import annotations

import hashlib
import re
from urllib.parse import urljoin

import structlog
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from seo_crawler.engines.analyzer.accessibility import check_accessibility
from seo_crawler.engines.analyzer.structured_data import (
    extract_json_ld,
    extract_open_graph,
    extract_twitter_card,
)
from seo_crawler.engines.base import (
    CrawlConfig,
    CssExtractionRule,
    HreflangEntry,
    Issue,
    OpenGraphTags,
    RegexExtractionRule,
    ResourceType,
    StructuredDataBlock,
    TwitterCard,
)
from seo_crawler.engines.crawler.urls import SiteScope, URLNormalizer

logger = structlog.get_logger(__name__)

NON_VISIBLE_TAGS = ["script", "style", "noscript", "template"]
HREFLANG_RE = re.compile(r"^(x-default|[a-z]{2,3}(-[a-z]{4})?(-([a-z]{2}|\d{3}))?)$", re.IGNORECASE)
MAX_ALT_MAP_ENTRIES = 100
MAX_CUSTOM_VALUES = 50


class PageAnalysis(BaseModel):
    """Facts extracted from one HTML page. Link lists are transient and never persisted."""

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

    word_count: int = 0
    text_ratio: float = 0.0
    content_hash: str | None = None
    custom_data: dict[str, list[str]] | None = None
    accessibility_issues: list[Issue] = Field(default_factory=list)

    internal_links: list[str] = Field(default_factory=list, exclude=True)
    external_links: list[str] = Field(default_factory=list, exclude=True)
    resource_links: list[tuple[str, ResourceType]] = Field(default_factory=list, exclude=True)


# ─────────────────────────────────────────────
# Content fingerprinting
# ─────────────────────────────────────────────

def normalize_text(text: str) -> str:
    """Collapse whitespace runs to one space and trim. Case is preserved."""
    return " ".join(text.split())


def content_hash_for_text(text: str) -> str | None:
    normalized = normalize_text(text)
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def content_hash_for_bytes(body: bytes) -> str | None:
    if not body:
        return None
    return hashlib.sha256(body).hexdigest()


# ─────────────────────────────────────────────
# Indexability
# ─────────────────────────────────────────────

def has_noindex(directive: str | None) -> bool:
    if not directive:
        return False
    tokens = {t.strip().lower() for part in directive.split(",") for t in part.split(":")[-1:]}
    return "noindex" in tokens or "none" in tokens


def evaluate_indexability(
    status_code: int | None,
    robots_txt_allowed: bool,
    robots_meta: str | None = None,
    x_robots_tag: str | None = None,
) -> tuple[bool, str]:
    """First rule that fires names the reason; otherwise the page is indexable."""
    if not robots_txt_allowed:
        return False, "Blocked by robots.txt"
    if status_code is None or status_code == 0:
        return False, "Fetch failed"
    if not 200 <= status_code < 300:
        return False, f"HTTP status {status_code}"
    if has_noindex(robots_meta):
        return False, "noindex in robots meta tag"
    if has_noindex(x_robots_tag):
        return False, "noindex in X-Robots-Tag header"
    return True, "indexable"


def _comparable(url: str) -> str:
    return URLNormalizer.normalize(url) or url.split("#", 1)[0].rstrip("/")


# ─────────────────────────────────────────────
# Analyzer
# ─────────────────────────────────────────────

class PageAnalyzer:
    """Per-job analyzer; feature toggles come from the job's CrawlConfig."""

    def __init__(self, config: CrawlConfig, scope: SiteScope):
        self.config = config
        self.scope = scope

    def analyze(self, html: str, url: str, headers: dict[str, str] | None = None) -> PageAnalysis:
        soup = BeautifulSoup(html, "lxml")
        base_url = self._base_url(soup, url)
        result = PageAnalysis()

        self._extract_meta(soup, result)
        if self.config.check_canonical:
            self._extract_canonical(soup, url, base_url, result)
        self._extract_headings(soup, result)
        self._extract_links(soup, base_url, result)
        self._extract_images(soup, base_url, result)
        self._extract_resources(soup, base_url, result)
        result.link_targets = list(dict.fromkeys(
            [*result.internal_links, *result.external_links, *(link for link, _ in result.resource_links)]
        ))
        if self.config.check_hreflang:
            self._extract_hreflang(soup, url, base_url, result)
        if self.config.extract_structured_data:
            result.structured_data, result.structured_data_errors = extract_json_ld(soup)
            result.og_tags = extract_open_graph(soup)
            result.twitter_tags = extract_twitter_card(soup)
        if self.config.custom_extraction:
            result.custom_data = self._custom_extraction(soup, html)
        if self.config.check_accessibility:
            result.accessibility_issues = check_accessibility(soup)

        # Visible text last: it mutates the tree
        self._extract_text(soup, html, result)
        return result

    @staticmethod
    def _base_url(soup: BeautifulSoup, url: str) -> str:
        base = soup.find("base", href=True)
        if base is not None:
            return urljoin(url, base["href"].strip())
        return url

    def _extract_meta(self, soup: BeautifulSoup, result: PageAnalysis) -> None:
        title_tag = soup.find("title")
        if title_tag is not None:
            title = normalize_text(title_tag.get_text())
            result.title = title or None
        result.title_length = len(result.title) if result.title else 0

        for tag in soup.find_all("meta"):
            name = (tag.get("name") or "").strip().lower()
            content = (tag.get("content") or "").strip()
            if name == "description" and result.meta_description is None:
                result.meta_description = content or None
            elif name == "keywords" and result.meta_keywords is None:
                result.meta_keywords = content or None
            elif name == "robots" and result.robots_meta is None:
                result.robots_meta = content or None
        result.meta_description_length = len(result.meta_description) if result.meta_description else 0

    def _extract_canonical(self, soup: BeautifulSoup, url: str, base_url: str, result: PageAnalysis) -> None:
        for link in soup.find_all("link", href=True):
            rels = [r.lower() for r in (link.get("rel") or [])]
            if "canonical" in rels:
                canonical = urljoin(base_url, link["href"].strip())
                result.canonical_url = canonical
                result.canonical_is_self = _comparable(canonical) == _comparable(url)
                return

    @staticmethod
    def _extract_headings(soup: BeautifulSoup, result: PageAnalysis) -> None:
        result.h1 = [normalize_text(h.get_text()) for h in soup.find_all("h1")]
        result.h1_count = len(result.h1)
        result.h2 = [normalize_text(h.get_text()) for h in soup.find_all("h2")]
        result.h2_count = len(result.h2)

    def _extract_links(self, soup: BeautifulSoup, base_url: str, result: PageAnalysis) -> None:
        internal: dict[str, None] = {}
        external: dict[str, None] = {}
        for a in soup.find_all("a", href=True):
            normalized = URLNormalizer.normalize(a["href"], base_url)
            if normalized is None:
                continue
            if self.scope.is_internal(normalized):
                internal[normalized] = None
            else:
                external[normalized] = None
        result.internal_links = list(internal)
        result.external_links = list(external)
        result.internal_links_count = len(internal)
        result.external_links_count = len(external)

    def _extract_images(self, soup: BeautifulSoup, base_url: str, result: PageAnalysis) -> None:
        images = soup.find_all("img")
        result.images_count = len(images)
        result.images_without_alt = sum(1 for img in images if not (img.get("alt") or "").strip())
        if not self.config.include_images:
            return
        alt_map: dict[str, str] = {}
        for img in images:
            src = img.get("src") or img.get("data-src")
            if not src:
                continue
            alt_map.setdefault(urljoin(base_url, src.strip()), (img.get("alt") or "").strip())
            if len(alt_map) >= MAX_ALT_MAP_ENTRIES:
                break
        result.images_alt_text = alt_map

    @staticmethod
    def _extract_resources(soup: BeautifulSoup, base_url: str, result: PageAnalysis) -> None:
        found: dict[str, ResourceType] = {}

        def add(raw: str | None, expected: ResourceType) -> None:
            normalized = URLNormalizer.normalize(raw or "", base_url)
            if normalized is None or normalized in found:
                return
            found[normalized] = expected

        for img in soup.find_all("img"):
            add(img.get("src"), ResourceType.IMAGE)
        for link in soup.find_all("link", href=True):
            rels = [r.lower() for r in (link.get("rel") or [])]
            if "stylesheet" in rels:
                add(link["href"], ResourceType.CSS)
        for script in soup.find_all("script", src=True):
            add(script["src"], ResourceType.JS)
        result.resource_links = list(found.items())

    def _extract_hreflang(self, soup: BeautifulSoup, url: str, base_url: str, result: PageAnalysis) -> None:
        entries: list[HreflangEntry] = []
        errors: list[str] = []
        seen_langs: set[str] = set()

        for link in soup.find_all("link", hreflang=True):
            rels = [r.lower() for r in (link.get("rel") or [])]
            if "alternate" not in rels:
                continue
            lang = (link.get("hreflang") or "").strip()
            href = (link.get("href") or "").strip()

            if not HREFLANG_RE.match(lang):
                errors.append(f"Invalid hreflang code '{lang}'")
            if not href:
                errors.append(f"hreflang '{lang}' has no href")
                continue
            if not href.lower().startswith(("http://", "https://")):
                errors.append(f"hreflang '{lang}' uses a relative URL: {href}")
            if lang.lower() in seen_langs:
                errors.append(f"Duplicate hreflang '{lang}'")
            seen_langs.add(lang.lower())
            entries.append(HreflangEntry(lang=lang, href=urljoin(base_url, href)))

        if entries:
            self_url = _comparable(url)
            if not any(_comparable(e.href) == self_url for e in entries):
                errors.append("hreflang set has no self-referencing entry")

        result.hreflang = entries
        result.hreflang_errors = errors

    def _custom_extraction(self, soup: BeautifulSoup, html: str) -> dict[str, list[str]]:
        data: dict[str, list[str]] = {}
        for rule in self.config.custom_extraction:
            values: list[str] = []
            if isinstance(rule, CssExtractionRule):
                try:
                    elements = soup.select(rule.selector)
                except Exception as e:
                    logger.warning("custom_extraction_selector_failed", name=rule.name, selector=rule.selector, error=str(e))
                    elements = []
                for el in elements[:MAX_CUSTOM_VALUES]:
                    if rule.attribute:
                        value = el.get(rule.attribute)
                        if isinstance(value, list):
                            value = " ".join(value)
                    else:
                        value = normalize_text(el.get_text())
                    if value:
                        values.append(value)
            elif isinstance(rule, RegexExtractionRule):
                for match in re.finditer(rule.pattern, html):
                    values.append(match.group(1) if match.groups() else match.group(0))
                    if len(values) >= MAX_CUSTOM_VALUES:
                        break
            data[rule.name] = values
        return data

    @staticmethod
    def _extract_text(soup: BeautifulSoup, html: str, result: PageAnalysis) -> None:
        for tag in soup(NON_VISIBLE_TAGS):
            tag.decompose()
        root = soup.body or soup
        text = normalize_text(root.get_text(separator=" "))
        result.word_count = len(text.split()) if text else 0
        result.text_ratio = round(len(text) / len(html) * 100, 2) if html else 0.0
        result.content_hash = content_hash_for_text(text)
