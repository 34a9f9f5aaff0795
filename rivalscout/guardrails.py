"""Non-fatal data-quality checks run after synthesis."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rivalscout.models import Capability, Competitor, Finding, Source, SourceStatus

log = logging.getLogger(__name__)

MIN_SOURCES = 5
MIN_CAPABILITIES = 10
MAX_FAILURE_RATE = 0.3


@dataclass
class GuardrailReport:
    issues: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.issues

    @property
    def summary(self) -> str:
        return "All checks passed" if self.passed else "; ".join(self.issues)


def evaluate(
    *,
    sources: int,
    failed_sources: int,
    stale_sources: int,
    capabilities: int,
    competitors: int,
    uncited_findings: int,
    staleness_days: int,
) -> GuardrailReport:
    """Pure check battery over run counts."""
    report = GuardrailReport()
    if uncited_findings:
        report.issues.append(f"Findings without citations: {uncited_findings}")
    if sources < MIN_SOURCES:
        report.issues.append(f"Low source count: Only {sources} sources found. Consider expanding search queries.")
    if capabilities < MIN_CAPABILITIES:
        report.issues.append(
            f"Low capability count: Only {capabilities} capabilities extracted. May indicate limited source content."
        )
    if competitors == 0:
        report.issues.append("No competitors identified. Consider adding competitor names to project inputs.")
    if stale_sources:
        report.issues.append(
            f"Stale sources detected: {stale_sources} sources are older than {staleness_days} days"
        )
    if failed_sources > sources * MAX_FAILURE_RATE:
        report.issues.append(
            f"High source fetch failure rate: {failed_sources}/{sources} sources failed to fetch"
        )
    return report


def run_guardrails(session: Session, run_id: int, staleness_days: int) -> GuardrailReport:
    """Evaluate the checks against the run's persisted state.  Never changes the run."""
    def count(stmt) -> int:
        return session.execute(stmt).scalar_one()

    sources = session.execute(select(Source).where(Source.run_id == run_id)).scalars().all()
    findings = session.execute(select(Finding.citations).where(Finding.run_id == run_id)).scalars().all()
    report = evaluate(
        sources=len(sources),
        failed_sources=sum(1 for s in sources if s.status == SourceStatus.ERROR),
        stale_sources=sum(1 for s in sources if s.is_stale),
        capabilities=count(select(func.count()).select_from(Capability).where(Capability.run_id == run_id)),
        competitors=count(select(func.count()).select_from(Competitor).where(Competitor.run_id == run_id)),
        uncited_findings=sum(1 for c in findings if not c),
        staleness_days=staleness_days,
    )
    log.info("Run %s guardrails: %s", run_id, report.summary)
    return report
