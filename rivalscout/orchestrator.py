"""Run orchestrator: drives one Run through discovery, extraction, synthesis and QA.

The flow is strictly sequential.  Every status transition is persisted through
``set_status`` together with a human-readable note; the run's ``RunLog`` lines
are the only progress surface callers see.  Stage-level problems (a failed
fetch, a failed AI call, a failed search query) are recovered inside the stages;
anything that escapes them marks the run ERROR and is re-raised to the caller.
"""
from __future__ import annotations

import logging
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from rivalscout.config import Settings, load_settings, validate_settings
from rivalscout.db import get_session_factory, session_scope
from rivalscout.discovery import run_discovery
from rivalscout.extraction import Fetch, fetch_sources, run_extraction, seed_competitors
from rivalscout.features import declared_feature_names, feature_key
from rivalscout.fetcher import fetch_text
from rivalscout.guardrails import run_guardrails
from rivalscout.llm import CompletionProvider, build_completion_provider
from rivalscout.models import Finding, Project, Report, Run, RunStatus
from rivalscout.monitoring import ChangeDetector, SourceChangeDetector
from rivalscout.notifications import LogNotifier, Notifier
from rivalscout.queries import profile_from_project
from rivalscout.report import generate_markdown
from rivalscout.runlog import append_log, write_status
from rivalscout.search import SearchProvider, make_search
from rivalscout.synthesis import FindingDraft, load_run_facts, synthesize
from rivalscout.verticals import infer_vertical

log = logging.getLogger(__name__)

NOTIFICATION_FINDINGS = 5


class RunNotFoundError(LookupError):
    def __init__(self, run_id: int):
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


@dataclass
class PipelineDeps:
    """Collaborators for one or more runs.  Tests swap any of them for fakes."""
    session_factory: Callable[[], Session]
    settings: Settings
    search: SearchProvider
    llm: CompletionProvider | None = None
    notifier: Notifier = field(default_factory=LogNotifier)
    fetch: Fetch = fetch_text
    change_detector: ChangeDetector = field(default_factory=SourceChangeDetector)


def build_pipeline_deps(settings: Settings | None = None) -> PipelineDeps:
    """Production wiring from configuration.  Requires ``init_db()`` to have run."""
    if settings is None:
        with session_scope() as session:
            settings = load_settings(session)
    validate_settings(settings)
    return PipelineDeps(
        session_factory=get_session_factory(),
        settings=settings,
        search=make_search(settings),
        llm=build_completion_provider(settings),
    )


def set_status(session: Session, run_id: int, status: RunStatus, note: str | None = None) -> None:
    write_status(session, run_id, status, note)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def orchestrate_run(run_id: int, deps: PipelineDeps) -> RunStatus:
    """Execute run *run_id* to a terminal status and return that status.

    Raises ``RunNotFoundError`` for unknown runs.  A run already marked SKIPPED
    returns immediately without touching any collaborator.
    """
    session = deps.session_factory()
    try:
        run = session.get(Run, run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.status == RunStatus.SKIPPED:
            log.info("Run %s is SKIPPED; nothing to do", run_id)
            return RunStatus.SKIPPED

        try:
            await _execute(session, run, deps)
        except Exception as exc:
            trace = traceback.format_exc()
            message = str(exc) or exc.__class__.__name__
            log.exception("Run %s failed", run_id)
            session.rollback()
            try:
                set_status(session, run_id, RunStatus.ERROR, f"Error: {message}")
            except Exception:
                log.exception("Could not mark run %s as ERROR", run_id)
                session.rollback()
            append_log(session, run_id, f"FATAL ERROR: {message}\n{trace}")
            raise
        return RunStatus.COMPLETE
    finally:
        session.close()


async def _execute(session: Session, run: Run, deps: PipelineDeps) -> None:
    run_id = run.id
    project = session.get(Project, run.project_id)
    if project is None:
        raise LookupError(f"Project not found: {run.project_id}")

    declared = declared_feature_names(session, project.id)
    profile = profile_from_project(project, declared)
    seed_competitors(session, run_id, profile.competitors)
    if deps.llm is None:
        append_log(session, run_id, "AI provider not configured; using heuristic extraction")

    # -- discovery -------------------------------------------------------
    set_status(session, run_id, RunStatus.DISCOVERING, "Starting discovery…")
    discovery = await run_discovery(session, run_id, profile, deps.search, deps.settings.staleness_days)

    # -- extraction ------------------------------------------------------
    set_status(
        session, run_id, RunStatus.EXTRACTING,
        f"Fetched {len(discovery.sources)} sources; extracting content…",
    )
    pages = await fetch_sources(session, run_id, discovery.sources, deps.fetch)
    set_status(session, run_id, RunStatus.EXTRACTING, "Extracting capabilities, integrations, compliance, pricing…")
    vertical = infer_vertical(project.industry, project.sub_industry)
    await run_extraction(session, run_id, pages, profile, vertical, deps.llm)

    # -- synthesis -------------------------------------------------------
    set_status(session, run_id, RunStatus.SYNTHESIZING, "Synthesizing findings…")
    facts = load_run_facts(session, run_id, project.industry or None)
    declared_keys = [(name, feature_key(name).normalized) for name in declared]
    result = await synthesize(
        facts, profile, declared_keys, deps.llm,
        on_log=lambda line: append_log(session, run_id, line),
    )
    findings = _persist_findings(session, run_id, result.findings)

    set_status(session, run_id, RunStatus.SYNTHESIZING, "Generating report…")
    markdown = generate_markdown(
        f"{project.name}: Competitive Landscape ({vertical.label})",
        vertical,
        facts.competitors,
        facts.pricing,
        findings,
        facts.capabilities,
        facts.compliance,
        facts.integrations,
        executive_summary=result.executive_summary,
    )
    report = Report(
        project_id=project.id, run_id=run_id,
        headline=f"{project.name} Competitive Report", md_content=markdown, format="MARKDOWN",
    )
    session.add(report)
    session.commit()

    # -- QA --------------------------------------------------------------
    set_status(session, run_id, RunStatus.QA, "Running change detection…")
    _detect_changes(session, run, deps.change_detector)

    set_status(session, run_id, RunStatus.QA, "Running guardrails…")
    _check_guardrails(session, run_id, deps.settings.staleness_days)

    set_status(session, run_id, RunStatus.COMPLETE, f"Report ready: {report.id}")
    await _notify(session, run_id, project, findings, deps.notifier)


# ---------------------------------------------------------------------------
# Stage helpers
# ---------------------------------------------------------------------------


def _persist_findings(session: Session, run_id: int, drafts: list[FindingDraft]) -> list[Finding]:
    findings = [
        Finding(run_id=run_id, kind=d.kind, text=d.text, confidence=d.confidence, citations=list(d.citations))
        for d in drafts
    ]
    session.add_all(findings)
    session.commit()
    append_log(session, run_id, f"Generated {len(findings)} findings")
    return findings


def previous_complete_run(session: Session, run: Run) -> Run | None:
    """Most recent COMPLETE run of the same project created before *run*."""
    earlier = or_(
        Run.created_at < run.created_at,
        and_(Run.created_at == run.created_at, Run.id < run.id),
    )
    return session.execute(
        select(Run)
        .where(Run.project_id == run.project_id, Run.id != run.id, Run.status == RunStatus.COMPLETE, earlier)
        .order_by(Run.created_at.desc(), Run.id.desc())
    ).scalars().first()


def _detect_changes(session: Session, run: Run, detector: ChangeDetector) -> None:
    try:
        previous = previous_complete_run(session, run)
        if previous is None:
            append_log(session, run.id, "No previous runs found for change detection")
            return
        changes = detector.detect_source_changes(session, previous.id, run.id)
        detector.store_change_detection(session, run.project_id, previous.id, run.id, changes)
        for alert in detector.check_for_alerts(session, run.project_id, changes):
            append_log(session, run.id, f"ALERT: {alert.message} ({alert.severity})")
        append_log(
            session, run.id,
            f"Change detection completed: {len(changes.added_sources)} added, "
            f"{len(changes.removed_sources)} removed, {len(changes.modified_sources)} modified",
        )
    except Exception as exc:
        session.rollback()
        log.warning("Change detection failed for run %s: %s", run.id, exc)
        append_log(session, run.id, f"Change detection failed: {exc}")


def _check_guardrails(session: Session, run_id: int, staleness_days: int) -> None:
    try:
        report = run_guardrails(session, run_id, staleness_days)
    except Exception as exc:
        session.rollback()
        log.warning("Guardrails failed for run %s: %s", run_id, exc)
        append_log(session, run_id, f"Guardrails failed: {exc}")
        return
    append_log(session, run_id, f"Guardrails: {report.summary}")


async def _notify(
    session: Session, run_id: int, project: Project, findings: list[Finding], notifier: Notifier,
) -> None:
    user = project.user
    if user is None or not user.email:
        return
    try:
        sent = await notifier.send_report_completion(
            user.email, user.name or user.email, project.name, run_id,
            [f.text for f in findings[:NOTIFICATION_FINDINGS]],
        )
    except Exception as exc:
        log.warning("Email notification failed for run %s: %s", run_id, exc)
        append_log(session, run_id, f"Email notification failed: {exc}")
        return
    if sent:
        append_log(session, run_id, f"Email notification sent to {user.email}")
    else:
        append_log(session, run_id, "Failed to send email notification")
