"""
Structured data and social tag extraction.

JSON-LD blocks that fail to parse are kept as UnparsedBlock entries so the
report can show exactly what was wrong; nothing here raises on bad markup.
"""

from __future__ import annotations

import json
from typing import Any

from bs4 import BeautifulSoup

from seo_crawler.engines.base import JsonLdBlock, OpenGraphTags, TwitterCard, UnparsedBlock

# Raw snippets stored for unparsed blocks are truncated to this many characters
MAX_RAW_SNIPPET = 500


def _collect_types(data: Any, types: list[str]) -> None:
    """Recursively collect @type values, descending into @graph."""
    if isinstance(data, list):
        for item in data:
            _collect_types(item, types)
        return
    if not isinstance(data, dict):
        return
    type_val = data.get("@type")
    if isinstance(type_val, str):
        types.append(type_val)
    elif isinstance(type_val, list):
        types.extend(t for t in type_val if isinstance(t, str))
    graph = data.get("@graph")
    if isinstance(graph, list):
        _collect_types(graph, types)


def extract_json_ld(soup: BeautifulSoup) -> tuple[list[JsonLdBlock | UnparsedBlock], list[str]]:
    """Returns (blocks, errors). Each <script type="application/ld+json"> yields one block."""
    blocks: list[JsonLdBlock | UnparsedBlock] = []
    errors: list[str] = []

    for index, script in enumerate(soup.find_all("script", attrs={"type": "application/ld+json"})):
        raw = (script.string or script.get_text() or "").strip()
        if not raw:
            errors.append(f"JSON-LD block {index + 1} is empty")
            blocks.append(UnparsedBlock(raw="", error="empty block"))
            continue
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            message = f"JSON-LD block {index + 1}: {e.msg} at line {e.lineno} column {e.colno}"
            errors.append(message)
            blocks.append(UnparsedBlock(raw=raw[:MAX_RAW_SNIPPET], error=message))
            continue

        types: list[str] = []
        _collect_types(data, types)
        if not types:
            errors.append(f"JSON-LD block {index + 1} has no @type")
        blocks.append(JsonLdBlock(types=types, data=data))

    return blocks, errors


def _meta_content(tag) -> str | None:
    content = tag.get("content")
    if content is None:
        return None
    content = content.strip()
    return content or None


def extract_open_graph(soup: BeautifulSoup) -> OpenGraphTags | None:
    known = set(OpenGraphTags.model_fields) - {"extra"}
    values: dict[str, str] = {}
    extra: dict[str, str] = {}

    for tag in soup.find_all("meta"):
        prop = (tag.get("property") or tag.get("name") or "").strip().lower()
        if not prop.startswith("og:"):
            continue
        content = _meta_content(tag)
        if content is None:
            continue
        key = prop[3:]
        if key in known:
            values.setdefault(key, content)
        else:
            extra.setdefault(key, content)

    if not values and not extra:
        return None
    return OpenGraphTags(**values, extra=extra)


def extract_twitter_card(soup: BeautifulSoup) -> TwitterCard | None:
    known = set(TwitterCard.model_fields) - {"extra"}
    values: dict[str, str] = {}
    extra: dict[str, str] = {}

    for tag in soup.find_all("meta"):
        name = (tag.get("name") or tag.get("property") or "").strip().lower()
        if not name.startswith("twitter:"):
            continue
        content = _meta_content(tag)
        if content is None:
            continue
        key = name[len("twitter:"):]
        if key in known:
            values.setdefault(key, content)
        else:
            extra.setdefault(key, content)

    if not values and not extra:
        return None
    return TwitterCard(**values, extra=extra)
