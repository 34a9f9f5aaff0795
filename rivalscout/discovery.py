"""Discovery stage: run the search queries, score results for relevance and persist Sources."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy.orm import Session

from rivalscout.brands import get_domain, normalize_url
from rivalscout.models import Source, SourceStatus
from rivalscout.queries import ProjectProfile, build_queries, relevance_tokens
from rivalscout.runlog import append_log
from rivalscout.search import SearchProvider, SearchResult
from rivalscout.utils import utcnow

log = logging.getLogger(__name__)

RESULTS_PER_QUERY = 10
FALLBACK_LIMIT = 3


def score_result(result: SearchResult, tokens: set[str], competitors: list[str]) -> int:
    """Relevance of one search result against the project's token bag.

    +1 per token found in title/snippet/url (+2 for tokens of six characters or more),
    +2 per declared competitor named verbatim.  An empty token bag accepts everything.
    """
    body = f"{result.title or ''} {result.snippet or ''} {result.url or ''}".lower()
    score = 0
    if not tokens:
        score = 1
    else:
        for token in tokens:
            if len(token) < 3:
                continue
            if token in body:
                score += 2 if len(token) >= 6 else 1
    for competitor in competitors:
        if competitor and competitor.lower() in body:
            score += 2
    return score


def select_results(
    results: list[SearchResult], tokens: set[str], competitors: list[str], seen: set[str],
) -> list[SearchResult]:
    """Relevant (score > 0) unseen results, or the first three unseen ones when none score."""
    relevant: list[SearchResult] = []
    fallback: list[SearchResult] = []
    for result in results:
        url = normalize_url(result.url)
        if not url or url in seen:
            continue
        fallback.append(result)
        if score_result(result, tokens, competitors) > 0:
            relevant.append(result)
    return relevant if relevant else fallback[:FALLBACK_LIMIT]


@dataclass
class DiscoveryResult:
    queries: list[str]
    sources: list[Source] = field(default_factory=list)
    stale: int = 0
    failed_queries: int = 0


async def run_discovery(
    session: Session,
    run_id: int,
    profile: ProjectProfile,
    search: SearchProvider,
    staleness_days: int,
) -> DiscoveryResult:
    """Query the search provider sequentially and persist the selected, de-duplicated Sources."""
    queries = build_queries(profile)
    tokens = relevance_tokens(profile)
    result = DiscoveryResult(queries=queries)
    log.info("Run %s: %d queries, %d relevance tokens", run_id, len(queries), len(tokens))

    now = utcnow()
    stale_before = now - timedelta(days=staleness_days)
    seen: set[str] = set()

    for query in queries:
        try:
            hits = await search.search(query, num=RESULTS_PER_QUERY, freshness_days=staleness_days)
        except Exception as exc:
            result.failed_queries += 1
            log.warning("Search error for %r: %s", query, exc)
            append_log(session, run_id, f'Search error "{query}": {exc}')
            continue

        for hit in select_results(hits, tokens, profile.competitors, seen):
            url = normalize_url(hit.url)
            if not url or url in seen:
                continue
            seen.add(url)
            is_stale = hit.published_at is not None and hit.published_at < stale_before
            source = Source(
                run_id=run_id,
                url=url,
                domain=get_domain(url),
                title=hit.title or None,
                snippet=hit.snippet,
                origin=hit.source or "search",
                published_at=hit.published_at,
                fetched_at=now,
                status=SourceStatus.OK,
                is_stale=is_stale,
                notes=f"Stale source: published {hit.published_at.isoformat()}" if is_stale else None,
            )
            session.add(source)
            result.sources.append(source)
            if is_stale:
                result.stale += 1
                append_log(
                    session, run_id,
                    f"Warning: Stale source detected - {url} (published: {hit.published_at.isoformat()})",
                )

    session.commit()
    log.info("Run %s: %d unique sources discovered", run_id, len(result.sources))
    return result
