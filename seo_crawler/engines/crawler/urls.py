"""
URL normalization, resource classification and site scope.

Normalized URLs are the identity of a crawl: the frontier's visited set and the
per-job url_hash uniqueness constraint both key on them.
"""

from __future__ import annotations

import hashlib
from urllib.parse import parse_qsl, urldefrag, urlencode, urljoin, urlparse, urlunparse

import tldextract

from seo_crawler.engines.base import ResourceType

# Offline extractor: uses the public suffix snapshot bundled with tldextract
_tld_extract = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)


class URLNormalizer:
    """Normalizes URLs for deduplication and comparison."""

    IGNORED_PARAMS = {"utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term", "fbclid", "gclid", "msclkid"}
    SKIPPED_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "ftp:", "sms:")
    DEFAULT_PORTS = {"http": 80, "https": 443}
    MAX_URL_LENGTH = 2048

    IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".avif", ".ico", ".bmp"}
    CSS_EXTENSIONS = {".css"}
    JS_EXTENSIONS = {".js", ".mjs"}
    # Binary documents that are never enqueued
    OTHER_EXTENSIONS = {
        ".pdf", ".zip", ".tar", ".gz", ".rar", ".7z", ".exe", ".dmg",
        ".mp4", ".mp3", ".wav", ".avi", ".mov", ".webm", ".ogg",
        ".woff", ".woff2", ".ttf", ".eot", ".otf",
        ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".xml", ".json",
    }

    @classmethod
    def normalize(cls, url: str, base_url: str | None = None) -> str | None:
        """
        Normalize a URL, resolving it against base_url when relative.
        Returns None if the URL is not crawlable (non-http scheme, no host, malformed).
        """
        if not url:
            return None
        url = url.strip()
        if url.lower().startswith(cls.SKIPPED_SCHEMES) or url.startswith("#"):
            return None
        # httpx refuses to build requests for these
        if len(url) > cls.MAX_URL_LENGTH or any(ord(c) < 0x20 or ord(c) == 0x7F for c in url):
            return None

        try:
            if base_url:
                url = urljoin(base_url, url)
            url, _ = urldefrag(url)
            parsed = urlparse(url)
            port = parsed.port
        except ValueError:
            return None

        scheme = parsed.scheme.lower()
        if scheme not in ("http", "https") or not parsed.hostname:
            return None

        host = parsed.hostname.lower().rstrip(".")
        netloc = host
        if port is not None and port != cls.DEFAULT_PORTS[scheme]:
            netloc = f"{host}:{port}"

        path = parsed.path or "/"
        if path != "/" and path.endswith("/"):
            path = path.rstrip("/") or "/"

        query = ""
        if parsed.query:
            params = [
                (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
                if k.lower() not in cls.IGNORED_PARAMS
            ]
            query = urlencode(params, doseq=True)

        normalized = urlunparse((scheme, netloc, path, parsed.params, query, ""))
        return normalized if len(normalized) <= cls.MAX_URL_LENGTH else None

    @classmethod
    def url_fingerprint(cls, url: str) -> str:
        """MD5 of the normalized URL, persisted as url_hash."""
        return hashlib.md5(url.encode("utf-8")).hexdigest()

    @classmethod
    def resource_type(cls, url: str) -> ResourceType | None:
        """
        Classify a URL by path extension.
        Returns None for binary documents (PDFs, archives, media, fonts).
        """
        path = urlparse(url).path.lower()
        dot = path.rfind(".")
        if dot == -1 or "/" in path[dot:]:
            return ResourceType.PAGE
        ext = path[dot:]
        if ext in cls.IMAGE_EXTENSIONS:
            return ResourceType.IMAGE
        if ext in cls.CSS_EXTENSIONS:
            return ResourceType.CSS
        if ext in cls.JS_EXTENSIONS:
            return ResourceType.JS
        if ext in cls.OTHER_EXTENSIONS:
            return None
        return ResourceType.PAGE


def host_of(url: str) -> str:
    """Lowercased host[:port] of a URL."""
    return urlparse(url).netloc.lower()


def strip_www(host: str) -> str:
    return host[4:] if host.startswith("www.") else host


def registrable_domain(host: str) -> str:
    """example.co.uk for shop.example.co.uk; the bare host for IPs and localhost."""
    hostname = host.split(":", 1)[0]
    ext = _tld_extract(hostname)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return hostname


class SiteScope:
    """
    Decides whether a URL belongs to the crawled site.

    - follow_subdomains=False: same host, treating the www. variant as the same host
    - follow_subdomains=True: any host under the seed's registrable domain
    """

    def __init__(self, seed_url: str, follow_subdomains: bool = False):
        self.seed_host = host_of(seed_url)
        self.follow_subdomains = follow_subdomains
        self._seed_bare = strip_www(self.seed_host)
        self._seed_domain = registrable_domain(self.seed_host)

    def is_internal(self, url: str) -> bool:
        host = host_of(url)
        if not host:
            return False
        if strip_www(host) == self._seed_bare:
            return True
        if self.follow_subdomains:
            return registrable_domain(host) == self._seed_domain
        return False
