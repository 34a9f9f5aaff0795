"""Tests for query building, relevance scoring and the discovery stage."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from rivalscout.discovery import run_discovery, score_result, select_results
from rivalscout.models import RunLog, Source
from rivalscout.queries import MAX_QUERIES, ProjectProfile, build_queries, profile_from_project, relevance_tokens
from rivalscout.search import SearchResult
from rivalscout.tests.fakes import FakeSearch
from rivalscout.utils import utcnow


def _result(url: str, title: str = "", snippet: str = "", published_at=None) -> SearchResult:
    return SearchResult(title=title, url=url, snippet=snippet, published_at=published_at, source="fake")


class TestQueries:
    def test_bounded_and_unique(self):
        profile = ProjectProfile(
            name="Acme", category="billing",
            competitors=["A1", "B2", "C3", "D4", "E5"],
            keywords=["k1", "k2", "k3", "k4"], features=["f1", "f2"], segments=["s1", "s2"], regions=["EU"],
        )
        queries = build_queries(profile)
        assert len(queries) == MAX_QUERIES
        assert len(set(queries)) == len(queries)
        assert queries[0] == "A1 pricing"

    def test_subject_falls_back_to_industry_then_name(self):
        assert "fintech alternatives" in build_queries(ProjectProfile(name="Acme", industry="fintech"))
        assert "Acme alternatives" in build_queries(ProjectProfile(name="Acme"))

    def test_relevance_tokens(self):
        profile = ProjectProfile(
            name="Acme Pay", category="payments platform", keywords=["fraud detection"],
            description="Checkout for marketplaces", competitors=["Stripe"], features=["SSO"], segments=["SMB"],
        )
        tokens = relevance_tokens(profile)
        assert {"acme", "pay", "payments", "platform", "fraud", "detection", "stripe", "sso", "smb"} <= tokens
        assert "checkout" in tokens
        assert "for" not in tokens

    def test_profile_from_project_folds_context(self, project):
        profile = profile_from_project(project, ["Single Sign On"])
        assert "Segments: SMB" in profile.description
        assert "Core features: Single Sign On" in profile.description
        assert profile.competitors == ["Stripe"]


class TestScoring:
    def test_long_tokens_score_double(self):
        result = _result("https://x.test/a", title="Payments for stripe users")
        assert score_result(result, {"payments"}, []) == 2
        assert score_result(result, {"for"}, []) == 1

    def test_competitor_named_adds_two(self):
        result = _result("https://x.test/a", title="Stripe vs Adyen")
        assert score_result(result, {"zzz"}, ["Stripe"]) == 2

    def test_empty_token_bag_accepts(self):
        assert score_result(_result("https://x.test/a"), set(), []) == 1

    def test_all_zero_scores_fall_back_to_first_three(self):
        results = [_result(f"https://x.test/{i}", title="unrelated") for i in range(6)]
        picked = select_results(results, {"payments"}, [], seen=set())
        assert [r.url for r in picked] == [r.url for r in results[:3]]

    def test_relevant_results_only(self):
        results = [
            _result("https://x.test/1", title="unrelated"),
            _result("https://x.test/2", title="payments platform"),
        ]
        picked = select_results(results, {"payments"}, [], seen=set())
        assert [r.url for r in picked] == ["https://x.test/2"]

    def test_seen_and_invalid_urls_skipped(self):
        results = [_result("https://x.test/1", title="payments"), _result("ftp://x.test/2", title="payments")]
        assert select_results(results, {"payments"}, [], seen={"https://x.test/1"}) == []


class TestRunDiscovery:
    @pytest.mark.asyncio
    async def test_persists_unique_sources(self, session, run, project):
        search = FakeSearch([
            _result("https://stripe.com/pricing", title="Stripe pricing", snippet="payments"),
            _result("https://stripe.com/pricing#plans", title="Stripe pricing again", snippet="payments"),
            _result("https://adyen.com/features", title="Adyen payments platform"),
        ])
        profile = profile_from_project(project, [])
        result = await run_discovery(session, run.id, profile, search, staleness_days=180)

        urls = sorted(s.url for s in session.execute(select(Source).where(Source.run_id == run.id)).scalars())
        assert urls == ["https://adyen.com/features", "https://stripe.com/pricing"]
        assert len(result.sources) == 2
        assert len(search.calls) == len(result.queries)

    @pytest.mark.asyncio
    async def test_stale_sources_flagged_and_logged(self, session, run, project):
        old = utcnow() - timedelta(days=400)
        search = FakeSearch([_result("https://stripe.com/blog/a", title="Stripe payments", published_at=old)])
        result = await run_discovery(session, run.id, profile_from_project(project, []), search, staleness_days=180)

        assert result.stale == 1
        source = result.sources[0]
        assert source.is_stale
        assert source.notes.startswith("Stale source")
        lines = session.execute(select(RunLog.line).where(RunLog.run_id == run.id)).scalars().all()
        assert any(line.startswith("Warning: Stale source detected") for line in lines)

    @pytest.mark.asyncio
    async def test_query_errors_are_logged_and_skipped(self, session, run, project):
        profile = profile_from_project(project, [])
        first = build_queries(profile)[0]
        search = FakeSearch([_result("https://stripe.com/docs", title="Stripe payments")], failing={first})
        result = await run_discovery(session, run.id, profile, search, staleness_days=180)

        assert result.failed_queries == 1
        assert len(result.sources) == 1
        lines = session.execute(select(RunLog.line).where(RunLog.run_id == run.id)).scalars().all()
        assert f'Search error "{first}": rate limited' in lines
