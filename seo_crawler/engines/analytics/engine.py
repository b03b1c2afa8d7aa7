"""
Post-Crawl Analytics - reports derived from persisted crawl results.

All reports read straight from crawl_results, so they work on running jobs
as well as finished ones:
- duplicate content clusters (shared content hash)
- redirect report
- issue summary
- broken links (errored URLs joined to the page that linked to them)
- job summary
- job-to-job comparison
- CSV / JSON export
"""

from __future__ import annotations

import csv
import io
import json
import uuid
from collections import Counter, defaultdict
from typing import Any

import structlog
from sqlalchemy import func, or_, select

from seo_crawler.models.models import CrawlResult
from seo_crawler.services.store import CrawlStore

logger = structlog.get_logger(__name__)

SEVERITY_ORDER = {"error": 0, "warning": 1, "info": 2}
EXAMPLE_URLS_PER_ISSUE = 5
EXPORT_HEADERS = ["URL", "Status Code", "Title", "Meta Description", "Indexable", "Issues Count"]
COMPARED_FIELDS = ("status_code", "title", "word_count", "indexable")


class CrawlAnalytics:

    def __init__(self, store: CrawlStore):
        self.store = store

    async def duplicate_clusters(self, job_id: uuid.UUID) -> list[dict[str, Any]]:
        async with self.store.session() as session:
            hashes = (
                select(CrawlResult.content_hash)
                .where(CrawlResult.job_id == job_id, CrawlResult.content_hash.is_not(None))
                .group_by(CrawlResult.content_hash)
                .having(func.count() > 1)
            )
            result = await session.execute(
                select(CrawlResult.content_hash, CrawlResult.url)
                .where(CrawlResult.job_id == job_id, CrawlResult.content_hash.in_(hashes))
                .order_by(CrawlResult.url)
            )
            rows = result.all()

        clusters: dict[str, list[str]] = defaultdict(list)
        for content_hash, url in rows:
            clusters[content_hash].append(url)
        return sorted(
            (
                {"content_hash": content_hash, "count": len(urls), "urls": urls}
                for content_hash, urls in clusters.items()
            ),
            key=lambda c: (-c["count"], c["content_hash"]),
        )

    async def redirect_report(self, job_id: uuid.UUID) -> list[dict[str, Any]]:
        async with self.store.session() as session:
            result = await session.execute(
                select(
                    CrawlResult.url,
                    CrawlResult.redirect_url,
                    CrawlResult.redirect_type,
                    CrawlResult.redirect_chain,
                    CrawlResult.status_code,
                ).where(CrawlResult.job_id == job_id, CrawlResult.redirect_url.is_not(None))
            )
            rows = result.all()

        report = [
            {
                "url": row.url,
                "redirect_url": row.redirect_url,
                "redirect_type": row.redirect_type,
                "status_code": row.status_code,
                "chain_length": len(row.redirect_chain or []),
                "redirect_chain": row.redirect_chain or [],
            }
            for row in rows
        ]
        report.sort(key=lambda r: (-r["chain_length"], r["url"]))
        return report

    async def issue_summary(self, job_id: uuid.UUID) -> list[dict[str, Any]]:
        async with self.store.session() as session:
            result = await session.execute(
                select(CrawlResult.url, CrawlResult.issues).where(CrawlResult.job_id == job_id)
            )
            rows = result.all()

        groups: dict[tuple[str, str], dict[str, Any]] = {}
        for url, issues in rows:
            for issue in issues or []:
                key = (issue.get("type", "unknown"), issue.get("severity", "info"))
                group = groups.setdefault(key, {
                    "type": key[0],
                    "severity": key[1],
                    "category": issue.get("category"),
                    "count": 0,
                    "example_urls": [],
                })
                group["count"] += 1
                if len(group["example_urls"]) < EXAMPLE_URLS_PER_ISSUE:
                    group["example_urls"].append(url)

        return sorted(
            groups.values(),
            key=lambda g: (SEVERITY_ORDER.get(g["severity"], 9), -g["count"], g["type"]),
        )

    async def broken_links(self, job_id: uuid.UUID) -> list[dict[str, Any]]:
        """
        Errored URLs with every crawled page that links to them.

        `source_url` is the page that discovered the URL. `sources` lists all
        linking pages, the discoverer first.
        """
        async with self.store.session() as session:
            result = await session.execute(
                select(
                    CrawlResult.url,
                    CrawlResult.status_code,
                    CrawlResult.error_message,
                    CrawlResult.resource_type,
                    CrawlResult.parent_url,
                )
                .where(
                    CrawlResult.job_id == job_id,
                    or_(CrawlResult.status_code == 0, CrawlResult.status_code >= 400),
                )
                .order_by(CrawlResult.status_code.desc(), CrawlResult.url)
            )
            broken = result.all()
            if not broken:
                return []
            result = await session.execute(
                select(CrawlResult.url, CrawlResult.title, CrawlResult.link_targets)
                .where(CrawlResult.job_id == job_id)
                .order_by(CrawlResult.url)
            )
            pages = result.all()

        titles = {page.url: page.title for page in pages}
        linked_from: dict[str, list[str]] = {row.url: [] for row in broken}
        for page in pages:
            for target in page.link_targets or []:
                if target in linked_from and target != page.url:
                    linked_from[target].append(page.url)

        report = []
        for row in broken:
            sources = linked_from[row.url]
            # Redirect targets and sitemap seeds are discovered without an <a> link
            if row.parent_url is not None:
                sources = [row.parent_url, *(s for s in sources if s != row.parent_url)]
            report.append({
                "url": row.url,
                "status_code": row.status_code,
                "error_message": row.error_message,
                "resource_type": row.resource_type,
                "source_url": row.parent_url,
                "source_title": titles.get(row.parent_url),
                "sources": [{"url": s, "title": titles.get(s)} for s in sources],
            })
        return report

    async def summary(self, job_id: uuid.UUID) -> dict[str, Any]:
        async with self.store.session() as session:
            result = await session.execute(
                select(
                    CrawlResult.status_code,
                    CrawlResult.indexable,
                    CrawlResult.response_time_ms,
                    CrawlResult.issues,
                ).where(CrawlResult.job_id == job_id)
            )
            rows = result.all()

        status_codes: Counter[str] = Counter()
        severities: Counter[str] = Counter()
        response_times: list[int] = []
        indexable = 0
        for row in rows:
            status_codes["not_fetched" if row.status_code is None else str(row.status_code)] += 1
            if row.indexable:
                indexable += 1
            if row.status_code and row.response_time_ms is not None:
                response_times.append(row.response_time_ms)
            for issue in row.issues or []:
                severities[issue.get("severity", "info")] += 1

        clusters = await self.duplicate_clusters(job_id)
        return {
            "total_results": len(rows),
            "status_codes": dict(sorted(status_codes.items())),
            "indexable": indexable,
            "non_indexable": len(rows) - indexable,
            "avg_response_time_ms": round(sum(response_times) / len(response_times), 1) if response_times else None,
            "issues_by_severity": {s: severities.get(s, 0) for s in SEVERITY_ORDER},
            "duplicate_clusters": len(clusters),
        }

    async def compare_jobs(self, job_a: uuid.UUID, job_b: uuid.UUID) -> dict[str, Any]:
        """Per-URL diff of job_a (baseline) against job_b."""
        rows_a = await self._comparable_rows(job_a)
        rows_b = await self._comparable_rows(job_b)

        added = sorted(set(rows_b) - set(rows_a))
        removed = sorted(set(rows_a) - set(rows_b))
        changed = []
        for url in sorted(set(rows_a) & set(rows_b)):
            before, after = rows_a[url], rows_b[url]
            diffs = {
                field: {"before": before[field], "after": after[field]}
                for field in COMPARED_FIELDS
                if before[field] != after[field]
            }
            if diffs:
                changed.append({"url": url, "changes": diffs})

        return {
            "job_a": str(job_a),
            "job_b": str(job_b),
            "added": added,
            "removed": removed,
            "changed": changed,
            "summary": {
                "added": len(added),
                "removed": len(removed),
                "changed": len(changed),
                "unchanged": len(set(rows_a) & set(rows_b)) - len(changed),
            },
        }

    async def _comparable_rows(self, job_id: uuid.UUID) -> dict[str, dict[str, Any]]:
        async with self.store.session() as session:
            result = await session.execute(
                select(CrawlResult.url, *(getattr(CrawlResult, f) for f in COMPARED_FIELDS))
                .where(CrawlResult.job_id == job_id)
            )
            return {row.url: {f: getattr(row, f) for f in COMPARED_FIELDS} for row in result.all()}

    async def export_rows(self, job_id: uuid.UUID) -> list[dict[str, Any]]:
        rows = await self.store.all_results(job_id)
        return [
            {
                "url": row.url,
                "status_code": row.status_code,
                "title": row.title,
                "meta_description": row.meta_description,
                "indexable": row.indexable,
                "issues_count": len(row.issues or []),
                "depth": row.depth,
                "resource_type": row.resource_type,
                "indexability_reason": row.indexability_reason,
                "issues": row.issues or [],
            }
            for row in rows
        ]


def render_csv(rows: list[dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_HEADERS)
    for row in rows:
        writer.writerow([
            row["url"],
            "" if row["status_code"] is None else row["status_code"],
            row["title"] or "",
            row["meta_description"] or "",
            "true" if row["indexable"] else "false",
            row["issues_count"],
        ])
    return buffer.getvalue()


def render_json(rows: list[dict[str, Any]]) -> str:
    return json.dumps(rows, ensure_ascii=False, indent=2)
