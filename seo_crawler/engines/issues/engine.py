"""
Issue classification for crawled URLs.

Each record is flattened into a fact dict and run through the JSON rule
rule set; every rule that fires becomes one Issue on the record.
"""

from __future__ import annotations

from typing import Any

import structlog

from seo_crawler.core.rule_engine import RuleSet, get_rule_set
from seo_crawler.engines.analyzer.engine import has_noindex
from seo_crawler.engines.base import CrawlRecord, Issue, IssueCategory, Severity
from seo_crawler.engines.crawler.fetcher import HTML_CONTENT_TYPES

logger = structlog.get_logger(__name__)


def analysis_failed_issue(error: str) -> Issue:
    return Issue(
        type="analysis_failed",
        severity=Severity.ERROR,
        category=IssueCategory.CRAWLABILITY,
        message=f"Page could not be analyzed: {error}",
    )


class IssueClassifier:
    """Applies the loaded rule set to one CrawlRecord at a time."""

    def __init__(self, rules: RuleSet | None = None, check_canonical: bool = True):
        self.rules = rules if rules is not None else get_rule_set()
        self.check_canonical = check_canonical

    def build_facts(self, record: CrawlRecord, error_kind: str | None = None) -> dict[str, Any]:
        facts = record.model_dump(mode="json")
        status = record.status_code
        content_type = (record.content_type or "").lower()
        is_html_ok = (
            status is not None
            and 200 <= status < 300
            and any(t in content_type for t in HTML_CONTENT_TYPES)
        )
        facts.update(
            fetched=record.fetched,
            is_html_ok=is_html_ok,
            canonical_checked=is_html_ok and self.check_canonical,
            redirect_hops=len(record.redirect_chain),
            robots_noindex=has_noindex(record.robots_meta) or has_noindex(record.x_robots_tag),
            structured_data_errors_count=len(record.structured_data_errors),
            hreflang_errors_count=len(record.hreflang_errors),
            error_kind=error_kind or "error",
        )
        return facts

    def classify(self, record: CrawlRecord, error_kind: str | None = None) -> list[Issue]:
        facts = self.build_facts(record, error_kind)
        return [
            Issue(type=rule.id, severity=rule.severity, category=rule.category, message=rule.render_message(facts))
            for rule in self.rules.firing(facts)
        ]
