"""
Rule Engine - JSON-defined checks evaluated against one crawled URL at a time.

A rule is a list of field/operator/value conditions joined by AND or OR.
Rules are validated and compiled into predicates when their file is loaded:
an unknown operator or a malformed file is rejected at load time, so a rule
that loads is a rule that can fire. A rule that evaluates True means the
issue is present on the URL, and its id becomes the issue type.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Callable

import structlog
from pydantic import BaseModel, Field, PrivateAttr, ValidationError, field_validator, model_validator

from seo_crawler.core.config import get_settings
from seo_crawler.engines.base import IssueCategory, Severity

logger = structlog.get_logger(__name__)

DEFAULT_RULES_DIR = Path(__file__).parent.parent / "rules" / "definitions"

Facts = dict[str, Any]
Predicate = Callable[[Facts], bool]


# ─────────────────────────────────────────────
# Operators
# ─────────────────────────────────────────────

def _present(value: Any) -> bool:
    return value is not None and value != "" and value != []


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    # Unfetched URLs carry None for status, timing and lengths; None never compares
    def check(actual: Any, expected: Any) -> bool:
        return actual is not None and compare(actual, expected)
    return check


def _between(actual: Any, bounds: list[Any]) -> bool:
    low, high = bounds
    return actual is not None and low <= actual <= high


def _matches(actual: Any, pattern: str) -> bool:
    return actual is not None and re.search(pattern, str(actual)) is not None


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda actual, expected: actual == expected,
    "ne": lambda actual, expected: actual != expected,
    "lt": _ordered(lambda a, b: a < b),
    "lte": _ordered(lambda a, b: a <= b),
    "gt": _ordered(lambda a, b: a > b),
    "gte": _ordered(lambda a, b: a >= b),
    "between": _between,
    "in": lambda actual, options: actual in options,
    "not_in": lambda actual, options: actual not in options,
    "is_true": lambda actual, _: actual is True,
    "is_false": lambda actual, _: actual is False,
    "exists": lambda actual, _: _present(actual),
    "not_exists": lambda actual, _: not _present(actual),
    "contains": lambda actual, needle: _present(actual) and needle in actual,
    "matches": _matches,
}


def resolve_field(facts: Facts, path: str) -> Any:
    """
    Follow a dot path through nested dicts and lists.
    resolve_field(facts, "redirect_chain.0.status_code") -> 302
    Missing keys and out-of-range indexes resolve to None.
    """
    current: Any = facts
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


# ─────────────────────────────────────────────
# Rule Schema
# ─────────────────────────────────────────────

class RuleCondition(BaseModel):
    field: str
    operator: str
    value: Any = None

    @field_validator("operator")
    @classmethod
    def known_operator(cls, v: str) -> str:
        if v not in OPERATORS:
            raise ValueError(f"Unknown operator '{v}'; expected one of {sorted(OPERATORS)}")
        return v

    @model_validator(mode="after")
    def between_needs_bounds(self) -> RuleCondition:
        if self.operator == "between" and not (isinstance(self.value, list) and len(self.value) == 2):
            raise ValueError("'between' takes a [low, high] pair")
        return self

    def compile(self) -> Predicate:
        check = OPERATORS[self.operator]
        field, expected = self.field, self.value

        def predicate(facts: Facts) -> bool:
            try:
                return bool(check(resolve_field(facts, field), expected))
            except (TypeError, re.error) as e:
                logger.debug("rule_condition_error", field=field, operator=self.operator, error=str(e))
                return False

        return predicate


class Rule(BaseModel):
    """
    Complete rule definition loaded from JSON.
    The message is a str.format template over the URL's facts.
    """
    id: str
    name: str
    description: str = ""
    message: str = ""
    category: IssueCategory
    severity: Severity
    conditions: list[RuleCondition]
    condition_logic: str = "AND"
    recommendation: str = ""
    enabled: bool = True
    tags: list[str] = Field(default_factory=list)

    _predicates: list[Predicate] = PrivateAttr(default_factory=list)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not re.match(r"^[a-z][a-z0-9_-]{2,63}$", v):
            raise ValueError(f"Rule ID '{v}' must be lowercase alphanumeric with hyphens/underscores")
        return v

    @field_validator("condition_logic")
    @classmethod
    def validate_logic(cls, v: str) -> str:
        v = v.upper()
        if v not in ("AND", "OR"):
            raise ValueError("condition_logic must be AND or OR")
        return v

    def model_post_init(self, __context: Any) -> None:
        self._predicates = [condition.compile() for condition in self.conditions]

    def matches(self, facts: Facts) -> bool:
        """True when the issue is present. A rule without conditions never fires."""
        if not self._predicates:
            return False
        combine = any if self.condition_logic == "OR" else all
        return combine(predicate(facts) for predicate in self._predicates)

    def render_message(self, facts: Facts) -> str:
        if not self.message:
            return self.name
        try:
            return self.message.format(**facts)
        except (KeyError, IndexError, ValueError):
            return self.message


# ─────────────────────────────────────────────
# Rule Set
# ─────────────────────────────────────────────

class RuleSet:
    """
    Enabled rules loaded from a directory of JSON files, in file order.
    Each file holds one rule object or a list of them; a file that fails to
    parse or validate is skipped whole.
    """

    def __init__(self, rules: list[Rule] | None = None):
        self._rules: dict[str, Rule] = {rule.id: rule for rule in rules or []}

    @classmethod
    def from_directory(cls, rules_dir: Path) -> RuleSet:
        rules: list[Rule] = []
        files = sorted(rules_dir.glob("**/*.json"))
        for path in files:
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                loaded = [Rule.model_validate(item) for item in (data if isinstance(data, list) else [data])]
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.error("rule_file_rejected", file=str(path), error=str(e))
                continue
            rules.extend(rule for rule in loaded if rule.enabled)

        rule_set = cls(rules)
        logger.info("rules_loaded", rules=len(rule_set), files=len(files), directory=str(rules_dir))
        return rule_set

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self):
        return iter(self._rules.values())

    def get(self, rule_id: str) -> Rule | None:
        return self._rules.get(rule_id)

    def by_category(self, category: IssueCategory) -> list[Rule]:
        return [rule for rule in self if rule.category == category]

    def firing(self, facts: Facts) -> list[Rule]:
        return [rule for rule in self if rule.matches(facts)]


_default_rules: RuleSet | None = None


def get_rule_set() -> RuleSet:
    """Rules from CRAWLER_RULES_DIR, or the shipped definitions. Loaded once per process."""
    global _default_rules
    if _default_rules is None:
        configured = get_settings().CRAWLER_RULES_DIR
        _default_rules = RuleSet.from_directory(Path(configured) if configured else DEFAULT_RULES_DIR)
    return _default_rules
