"""
Static accessibility checks on fetched HTML.

Only what can be decided from markup alone: no rendering, no contrast checks.
"""

from __future__ import annotations

from bs4 import BeautifulSoup, Tag

from seo_crawler.engines.base import Issue, IssueCategory, Severity

INPUT_TYPES_WITHOUT_LABEL = {"hidden", "submit", "button", "reset", "image"}


def _issue(type_: str, severity: Severity, message: str) -> Issue:
    return Issue(type=type_, severity=severity, category=IssueCategory.ACCESSIBILITY, message=message)


def _has_accessible_name(tag: Tag) -> bool:
    if tag.get("aria-label", "").strip() or tag.get("aria-labelledby", "").strip():
        return True
    if tag.get("title", "").strip():
        return True
    if tag.get_text(strip=True):
        return True
    # An image with alt text inside a link or button names it
    return any(img.get("alt", "").strip() for img in tag.find_all("img"))


def check_accessibility(soup: BeautifulSoup) -> list[Issue]:
    issues: list[Issue] = []

    html = soup.find("html")
    if html is None or not (html.get("lang") or "").strip():
        issues.append(_issue("missing_html_lang", Severity.WARNING, "<html> element has no lang attribute"))

    # alt="" is valid for decorative images; only a missing attribute is flagged
    no_alt = [img for img in soup.find_all("img") if img.get("alt") is None]
    if no_alt:
        issues.append(_issue(
            "img_missing_alt_attribute",
            Severity.WARNING,
            f"{len(no_alt)} image(s) have no alt attribute",
        ))

    empty_links = [a for a in soup.find_all("a", href=True) if not _has_accessible_name(a)]
    if empty_links:
        issues.append(_issue(
            "link_without_text",
            Severity.WARNING,
            f"{len(empty_links)} link(s) have no accessible text",
        ))

    unnamed_buttons = [
        b for b in soup.find_all("button") if not _has_accessible_name(b)
    ] + [
        i for i in soup.find_all("input", attrs={"type": ["button", "submit", "reset"]})
        if not (i.get("value", "").strip() or i.get("aria-label", "").strip())
    ]
    if unnamed_buttons:
        issues.append(_issue(
            "button_without_name",
            Severity.WARNING,
            f"{len(unnamed_buttons)} button(s) have no accessible name",
        ))

    labelled_ids = {label.get("for") for label in soup.find_all("label") if label.get("for")}
    unlabeled = []
    for field in soup.find_all(["input", "select", "textarea"]):
        if field.name == "input" and (field.get("type") or "text").lower() in INPUT_TYPES_WITHOUT_LABEL:
            continue
        if field.get("id") and field.get("id") in labelled_ids:
            continue
        if field.get("aria-label", "").strip() or field.get("aria-labelledby", "").strip():
            continue
        if field.get("title", "").strip() or field.find_parent("label") is not None:
            continue
        unlabeled.append(field)
    if unlabeled:
        issues.append(_issue(
            "input_without_label",
            Severity.WARNING,
            f"{len(unlabeled)} form field(s) have no label",
        ))

    previous_level = 0
    skips: list[str] = []
    for heading in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
        level = int(heading.name[1])
        if previous_level and level > previous_level + 1:
            skips.append(f"h{previous_level}->h{level}")
        previous_level = level
    if skips:
        issues.append(_issue(
            "heading_level_skipped",
            Severity.INFO,
            f"Heading levels skipped: {', '.join(skips[:5])}",
        ))

    return issues
