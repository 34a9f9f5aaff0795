"""End-to-end tests for the run orchestrator with fake collaborators."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from rivalscout import orchestrator
from rivalscout.models import ChangeDetection, Finding, Report, Run, RunLog, RunStatus, Source, SourceStatus
from rivalscout.orchestrator import RunNotFoundError, orchestrate_run
from rivalscout.search import SearchResult
from rivalscout.tests.fakes import FakeSearch, PageFetcher, RecordingLLM, RecordingNotifier

STRIPE_URL = "https://stripe.com/pricing"
ADYEN_URL = "https://adyen.com/features"

STRIPE_HTML = """<html><head><title>Stripe Pricing</title><script>track()</script></head><body>
<h1>Pricing</h1>
<h2>Starter</h2><p>$50/mo</p>
<h2>Pro</h2><p>$200/mo</p>
<p>Enterprise SSO and 2FA for every workspace. Connect Slack and HubSpot.</p>
<p>SOC 2 and GDPR compliant. Webhooks and dashboards included.</p>
</body></html>"""

EXPECTED_STATUSES = [
    RunStatus.DISCOVERING,
    RunStatus.EXTRACTING,
    RunStatus.EXTRACTING,
    RunStatus.SYNTHESIZING,
    RunStatus.SYNTHESIZING,
    RunStatus.QA,
    RunStatus.QA,
    RunStatus.COMPLETE,
]


def _search() -> FakeSearch:
    return FakeSearch([
        SearchResult(title="Stripe Pricing", url=STRIPE_URL, snippet="Payments pricing", source="fake"),
        SearchResult(title="Adyen payments platform", url=ADYEN_URL, snippet="Unified commerce", source="fake"),
    ])


def _logs(session, run_id: int) -> list[str]:
    return list(session.execute(select(RunLog.line).where(RunLog.run_id == run_id).order_by(RunLog.id)).scalars())


@pytest.fixture()
def status_spy():
    with patch.object(orchestrator, "set_status", wraps=orchestrator.set_status) as spy:
        yield spy


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_statuses_persisted_in_order(self, session, run, make_deps, status_spy):
        deps = make_deps(search=_search(), fetch=PageFetcher({STRIPE_URL: STRIPE_HTML}))

        status = await orchestrate_run(run.id, deps)

        assert status == RunStatus.COMPLETE
        assert [c.args[2] for c in status_spy.call_args_list] == EXPECTED_STATUSES
        session.expire_all()
        done = session.get(Run, run.id)
        assert done.status == RunStatus.COMPLETE
        assert done.started_at is not None and done.completed_at is not None
        assert done.started_at <= done.completed_at

    @pytest.mark.asyncio
    async def test_results_persisted_and_owner_notified(self, session, run, make_deps):
        notifier = RecordingNotifier()
        deps = make_deps(search=_search(), fetch=PageFetcher({STRIPE_URL: STRIPE_HTML}), notifier=notifier)

        await orchestrate_run(run.id, deps)

        session.expire_all()
        sources = {s.url: s for s in session.execute(select(Source).where(Source.run_id == run.id)).scalars()}
        assert sources[STRIPE_URL].status == SourceStatus.OK
        assert "track()" not in sources[STRIPE_URL].content
        assert sources[ADYEN_URL].status == SourceStatus.ERROR

        findings = session.execute(select(Finding).where(Finding.run_id == run.id)).scalars().all()
        assert findings
        report = session.execute(select(Report).where(Report.run_id == run.id)).scalars().one()
        assert report.headline == "Acme Pay Competitive Report"
        assert report.md_content.startswith("# Acme Pay: Competitive Landscape (FINTECH)")
        assert session.get(Run, run.id).last_note == f"Report ready: {report.id}"

        assert notifier.sent[0]["email"] == "owner@acmepay.test"
        assert notifier.sent[0]["run_id"] == run.id

        lines = _logs(session, run.id)
        assert "No previous runs found for change detection" in lines
        assert any(line.startswith("Guardrails: ") for line in lines)
        assert lines[-1] == "Email notification sent to owner@acmepay.test"

    @pytest.mark.asyncio
    async def test_no_ai_configured_means_no_ai_calls(self, run, make_deps):
        deps = make_deps(search=_search(), fetch=PageFetcher({STRIPE_URL: STRIPE_HTML}), llm=None)
        with patch("rivalscout.extraction.extract_structured_data", new_callable=AsyncMock) as mock_extract, \
             patch("rivalscout.synthesis.generate_synthetic_insights", new_callable=AsyncMock) as mock_insights:
            status = await orchestrate_run(run.id, deps)

        assert status == RunStatus.COMPLETE
        mock_extract.assert_not_called()
        mock_insights.assert_not_called()

    @pytest.mark.asyncio
    async def test_ai_configured_adds_summary_and_strategy(self, session, run, make_deps):
        def responder(system, user):
            if "competitive intelligence analyst" in system:
                return {"capabilities": [{"name": "Payouts", "description": "Instant payouts", "category": "Other"}],
                        "summary": "Stripe pricing page."}
            if "standardization engine" in system:
                return {"capabilities": [{"normalizedName": "Payouts", "category": "Other", "sourceName": "Payouts",
                                          "description": "Instant payouts", "keep": True}]}
            return {"executiveSummary": "Stripe dominates.",
                    "risks": [{"text": "Incumbent bundling", "confidence": 0.7}],
                    "recommendations": [{"text": "Focus on marketplaces", "confidence": 0.8}]}

        llm = RecordingLLM(responder)
        deps = make_deps(search=_search(), fetch=PageFetcher({STRIPE_URL: STRIPE_HTML}), llm=llm)

        await orchestrate_run(run.id, deps)

        assert len(llm.calls) == 3
        session.expire_all()
        kinds = {f.kind for f in session.execute(select(Finding).where(Finding.run_id == run.id)).scalars()}
        assert {"RISK", "RECOMMENDATION"} <= kinds
        report = session.execute(select(Report).where(Report.run_id == run.id)).scalars().one()
        assert "## Executive Summary" in report.md_content
        assert "Stripe dominates." in report.md_content


class TestShortCircuits:
    @pytest.mark.asyncio
    async def test_skipped_run_touches_nothing(self, session, run, make_deps, status_spy):
        run.status = RunStatus.SKIPPED
        session.commit()
        deps = make_deps(search=_search(), fetch=PageFetcher({STRIPE_URL: STRIPE_HTML}))

        status = await orchestrate_run(run.id, deps)

        assert status == RunStatus.SKIPPED
        assert deps.search.calls == []
        assert deps.fetch.calls == []
        assert deps.notifier.sent == []
        status_spy.assert_not_called()
        assert _logs(session, run.id) == []

    @pytest.mark.asyncio
    async def test_unknown_run(self, make_deps):
        with pytest.raises(RunNotFoundError):
            await orchestrate_run(9999, make_deps())


class TestFailures:
    @pytest.mark.asyncio
    async def test_uncaught_error_marks_run_and_reraises(self, session, run, make_deps):
        deps = make_deps(search=_search(), fetch=PageFetcher({STRIPE_URL: STRIPE_HTML}))
        with patch.object(orchestrator, "run_extraction", new=AsyncMock(side_effect=RuntimeError("disk full"))):
            with pytest.raises(RuntimeError, match="disk full"):
                await orchestrate_run(run.id, deps)

        session.expire_all()
        failed = session.get(Run, run.id)
        assert failed.status == RunStatus.ERROR
        assert failed.last_note == "Error: disk full"
        assert failed.completed_at is not None
        fatal = [line for line in _logs(session, run.id) if line.startswith("FATAL ERROR: disk full")]
        assert len(fatal) == 1
        assert "Traceback" in fatal[0]

    @pytest.mark.asyncio
    async def test_change_detection_failure_is_not_fatal(self, session, project, run, make_deps):
        previous = Run(project_id=project.id, status=RunStatus.COMPLETE)
        session.add(previous)
        session.commit()
        detector = MagicMock()
        detector.detect_source_changes.side_effect = RuntimeError("diff exploded")
        deps = make_deps(search=_search(), change_detector=detector)

        status = await orchestrate_run(run.id, deps)

        assert status == RunStatus.COMPLETE
        assert "Change detection failed: diff exploded" in _logs(session, run.id)

    @pytest.mark.asyncio
    async def test_notification_failure_is_not_fatal(self, session, run, make_deps):
        notifier = MagicMock()
        notifier.send_report_completion = AsyncMock(side_effect=ConnectionError("smtp down"))
        deps = make_deps(search=_search(), notifier=notifier)

        status = await orchestrate_run(run.id, deps)

        assert status == RunStatus.COMPLETE
        session.expire_all()
        assert session.get(Run, run.id).status == RunStatus.COMPLETE
        assert _logs(session, run.id)[-1] == "Email notification failed: smtp down"

    @pytest.mark.asyncio
    async def test_notifier_declining_is_logged(self, session, run, make_deps):
        deps = make_deps(search=_search(), notifier=RecordingNotifier(result=False))
        await orchestrate_run(run.id, deps)
        assert _logs(session, run.id)[-1] == "Failed to send email notification"


class TestChangeDetection:
    @pytest.mark.asyncio
    async def test_compares_with_previous_complete_run(self, session, project, make_deps):
        previous = Run(project_id=project.id, status=RunStatus.COMPLETE)
        session.add(previous)
        session.flush()
        session.add(Source(run_id=previous.id, url=STRIPE_URL, title="Stripe Pricing",
                           status=SourceStatus.OK, content="Starter $40/mo"))
        session.add(Source(run_id=previous.id, url="https://gone.test/page", title="Old page",
                           status=SourceStatus.OK, content="old"))
        current = Run(project_id=project.id, status=RunStatus.NEW)
        session.add(current)
        session.commit()
        deps = make_deps(search=_search(), fetch=PageFetcher({STRIPE_URL: STRIPE_HTML}))

        await orchestrate_run(current.id, deps)

        row = session.execute(select(ChangeDetection)).scalars().one()
        assert (row.previous_run_id, row.current_run_id) == (previous.id, current.id)
        lines = _logs(session, current.id)
        assert f"ALERT: Pricing page changed: {STRIPE_URL} (critical)" in lines
        assert "Change detection completed: 1 added, 1 removed, 1 modified" in lines
