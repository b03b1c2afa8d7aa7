"""
Tests for the JSON rule engine and the issue classifier built on it.
"""

import json

import pytest
from pydantic import ValidationError

from seo_crawler.core.rule_engine import (
    DEFAULT_RULES_DIR,
    Rule,
    RuleCondition,
    RuleSet,
    resolve_field,
)
from seo_crawler.engines.base import CrawlRecord, IssueCategory, RedirectHop, Severity
from seo_crawler.engines.issues.engine import IssueClassifier, analysis_failed_issue


# ─────────────────────────────────────────────
# Rule Engine
# ─────────────────────────────────────────────

def _rule(conditions, logic="AND", message="") -> Rule:
    return Rule(
        id="test_rule",
        name="Test rule",
        message=message,
        category=IssueCategory.ON_PAGE,
        severity=Severity.WARNING,
        conditions=conditions,
        condition_logic=logic,
    )


class TestRule:

    def test_resolve_field(self):
        facts = {"redirect_chain": [{"status_code": 302}], "h1": ["a", "b"]}
        assert resolve_field(facts, "redirect_chain.0.status_code") == 302
        assert resolve_field(facts, "h1.1") == "b"
        assert resolve_field(facts, "h1.5") is None
        assert resolve_field(facts, "missing.path") is None

    def test_and_logic(self):
        rule = _rule([
            RuleCondition(field="is_html_ok", operator="is_true"),
            RuleCondition(field="title", operator="not_exists"),
        ])
        assert rule.matches({"is_html_ok": True, "title": None})
        assert not rule.matches({"is_html_ok": False, "title": None})

    def test_or_logic(self):
        rule = _rule(
            [
                RuleCondition(field="a", operator="eq", value=1),
                RuleCondition(field="b", operator="eq", value=1),
            ],
            logic="or",
        )
        assert rule.condition_logic == "OR"
        assert rule.matches({"a": 0, "b": 1})

    def test_unfetched_values_never_compare(self):
        assert _rule([RuleCondition(field="status_code", operator="between", value=[400, 499])]).matches(
            {"status_code": 404}
        )
        assert not _rule([RuleCondition(field="status_code", operator="between", value=[400, 499])]).matches(
            {"status_code": None}
        )
        assert not _rule([RuleCondition(field="response_time_ms", operator="gt", value=3000)]).matches(
            {"response_time_ms": None}
        )

    def test_type_mismatch_does_not_fire(self):
        rule = _rule([RuleCondition(field="word_count", operator="lt", value=300)])
        assert not rule.matches({"word_count": "many"})

    def test_no_conditions_never_fires(self):
        assert not _rule([]).matches({})

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            RuleCondition(field="x", operator="approximately", value=1)

    def test_between_needs_pair(self):
        with pytest.raises(ValidationError):
            RuleCondition(field="status_code", operator="between", value=400)

    def test_render_message(self):
        rule = _rule([], message="Title is {title_length} characters")
        assert rule.render_message({"title_length": 72}) == "Title is 72 characters"
        assert rule.render_message({}) == "Title is {title_length} characters"
        assert _rule([]).render_message({}) == "Test rule"

    def test_invalid_rule_id(self):
        with pytest.raises(ValueError):
            Rule.model_validate({
                "id": "Bad ID",
                "name": "x",
                "category": "on_page",
                "severity": "info",
                "conditions": [],
            })


class TestRuleSet:

    def test_shipped_rules_load(self):
        rules = RuleSet.from_directory(DEFAULT_RULES_DIR)
        ids = {rule.id for rule in rules}
        assert {
            "fetch_failed", "client_error", "server_error", "redirect_chain", "redirect_temporary",
            "missing_title", "title_too_long", "title_too_short", "missing_meta_description",
            "meta_description_too_long", "meta_description_too_short", "missing_h1", "multiple_h1",
            "images_missing_alt", "thin_content", "low_text_ratio", "missing_canonical",
            "canonical_not_self", "noindex", "structured_data_invalid", "hreflang_invalid",
            "slow_response", "blocked_by_robots",
        } <= ids

    def test_invalid_files_are_skipped(self, tmp_path):
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
        (tmp_path / "invalid.json").write_text(json.dumps({"id": "x"}), encoding="utf-8")
        (tmp_path / "bad_operator.json").write_text(json.dumps({
            "id": "fuzzy_rule",
            "name": "Fuzzy",
            "category": "content",
            "severity": "info",
            "conditions": [{"field": "word_count", "operator": "roughly", "value": 5}],
        }), encoding="utf-8")
        (tmp_path / "good.json").write_text(json.dumps({
            "id": "custom_rule",
            "name": "Custom",
            "category": "content",
            "severity": "info",
            "conditions": [{"field": "word_count", "operator": "lt", "value": 5}],
        }), encoding="utf-8")
        (tmp_path / "disabled.json").write_text(json.dumps({
            "id": "disabled_rule",
            "name": "Off",
            "category": "content",
            "severity": "info",
            "conditions": [],
            "enabled": False,
        }), encoding="utf-8")

        rules = RuleSet.from_directory(tmp_path)
        assert [r.id for r in rules] == ["custom_rule"]
        assert rules.get("custom_rule").severity == Severity.INFO
        assert rules.by_category(IssueCategory.CONTENT)[0].id == "custom_rule"
        assert [r.id for r in rules.firing({"word_count": 2})] == ["custom_rule"]


# ─────────────────────────────────────────────
# Issue Classifier
# ─────────────────────────────────────────────

@pytest.fixture(scope="module")
def classifier() -> IssueClassifier:
    return IssueClassifier(RuleSet.from_directory(DEFAULT_RULES_DIR))


def _page(**fields) -> CrawlRecord:
    base = dict(
        url="https://example.com/",
        url_hash="0" * 32,
        status_code=200,
        content_type="text/html; charset=utf-8",
        response_time_ms=120,
        title="A perfectly reasonable page title for tests",
        title_length=43,
        meta_description="A meta description that is long enough to stay clear of the short threshold here.",
        meta_description_length=82,
        canonical_url="https://example.com/",
        canonical_is_self=True,
        h1=["Heading"],
        h1_count=1,
        word_count=800,
        text_ratio=25.0,
        indexable=True,
    )
    base.update(fields)
    return CrawlRecord(**base)


def _types(classifier: IssueClassifier, record: CrawlRecord, error_kind=None) -> set[str]:
    return {issue.type for issue in classifier.classify(record, error_kind)}


class TestIssueClassifier:

    def test_healthy_page_has_no_issues(self, classifier):
        assert _types(classifier, _page()) == set()

    def test_on_page_problems(self, classifier):
        record = _page(title=None, title_length=0, h1=[], h1_count=0, meta_description=None, meta_description_length=0)
        types = _types(classifier, record)
        assert {"missing_title", "missing_h1", "missing_meta_description"} <= types
        assert "title_too_short" not in types

    def test_title_length_thresholds(self, classifier):
        assert "title_too_long" in _types(classifier, _page(title="x" * 61, title_length=61))
        assert "title_too_short" in _types(classifier, _page(title="Short", title_length=5))

    def test_not_found(self, classifier):
        record = _page(status_code=404, title=None, title_length=0, h1=[], h1_count=0)
        types = _types(classifier, record)
        assert "client_error" in types
        # Page rules only apply to successful HTML responses
        assert "missing_title" not in types

    def test_fetch_failed_message(self, classifier):
        record = CrawlRecord(url="https://example.com/x", url_hash="1" * 32, status_code=0, error_message="refused")
        issues = classifier.classify(record, "connection_refused")
        assert [i.type for i in issues] == ["fetch_failed"]
        assert issues[0].message == "Request failed (connection_refused): refused"
        assert issues[0].severity == "error"

    def test_blocked_by_robots(self, classifier):
        record = CrawlRecord(url="https://example.com/private/", url_hash="2" * 32, robots_txt_allowed=False)
        assert _types(classifier, record) == {"blocked_by_robots"}

    def test_redirects(self, classifier):
        chain = [
            RedirectHop(url="https://example.com/a", status_code=302, location="https://example.com/b"),
            RedirectHop(url="https://example.com/b", status_code=301, location="https://example.com/c"),
        ]
        record = CrawlRecord(
            url="https://example.com/a",
            url_hash="3" * 32,
            status_code=302,
            redirect_url="https://example.com/c",
            redirect_type="temporary",
            redirect_chain=chain,
        )
        assert _types(classifier, record) == {"redirect_chain", "redirect_temporary"}

    def test_noindex_and_canonical(self, classifier):
        record = _page(robots_meta="noindex", canonical_url="https://example.com/other", canonical_is_self=False)
        types = _types(classifier, record)
        assert {"noindex", "canonical_not_self"} <= types

    def test_canonical_rules_respect_toggle(self):
        no_canonical = IssueClassifier(RuleSet.from_directory(DEFAULT_RULES_DIR), check_canonical=False)
        assert "missing_canonical" not in _types(no_canonical, _page(canonical_url=None, canonical_is_self=None))

    def test_warning_count(self, classifier):
        record = _page(title="x" * 61, title_length=61, response_time_ms=5000)
        record.issues = classifier.classify(record)
        assert record.warning_count == 2

    def test_analysis_failed_issue(self):
        issue = analysis_failed_issue("boom")
        assert issue.type == "analysis_failed"
        assert issue.severity == "error"
