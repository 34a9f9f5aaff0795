"""Shared business logic for the HTTP surface, the CLI and the scheduler."""
from __future__ import annotations

import csv
import io
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from rivalscout.features import ensure_project_features
from rivalscout.models import (
    TERMINAL_STATUSES, Competitor, Feature, FeatureDefinition, Finding, Project, Report, Run, RunLog, RunStatus, User,
)
from rivalscout.normalize import canonical_feature_name
from rivalscout.utils import utcnow

log = logging.getLogger(__name__)


class InsufficientCreditsError(Exception):
    """The user's run budget is used up."""


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def project_summary(project: Project) -> dict:
    return {
        "id": project.id, "user_id": project.user_id, "name": project.name,
        "category": project.category, "industry": project.industry, "sub_industry": project.sub_industry,
        "description": project.description, "keywords": project.keywords or [],
        "competitors": project.competitors or [], "target_segments": project.target_segments or [],
        "regions": project.regions or [],
        "features": [pf.feature_definition.name for pf in project.project_features],
    }


def run_summary(run: Run) -> dict:
    return {
        "id": run.id, "project_id": run.project_id, "status": str(run.status),
        "last_note": run.last_note, "created_at": _iso(run.created_at),
        "started_at": _iso(run.started_at), "completed_at": _iso(run.completed_at),
    }


def finding_summary(finding: Finding) -> dict:
    return {
        "id": finding.id, "kind": str(finding.kind), "text": finding.text,
        "confidence": finding.confidence, "citations": finding.citations or [],
    }


# ---------------------------------------------------------------------------
# Projects and runs
# ---------------------------------------------------------------------------


def create_project(session: Session, data: dict[str, Any], user_id: int | None = None) -> Project:
    """Create a project and link its declared features (caller has validated *data*)."""
    features = data.pop("features", []) or []
    project = Project(user_id=user_id, **data)
    session.add(project)
    session.flush()
    ensure_project_features(session, project.id, features)
    session.commit()
    session.refresh(project)
    return project


def create_run(session: Session, project_id: int) -> Run:
    run = Run(project_id=project_id, status=RunStatus.NEW)
    session.add(run)
    session.commit()
    return run


def skip_run(session: Session, run: Run, note: str = "Skipped") -> Run:
    """Mark a run that has not started as SKIPPED.  Runs already under way are left alone."""
    if run.status != RunStatus.NEW:
        raise ValueError(f"Run {run.id} is {run.status}; only NEW runs can be skipped")
    run.status = RunStatus.SKIPPED
    run.last_note = note
    run.completed_at = utcnow()
    session.commit()
    return run


def latest_run(session: Session, project_id: int) -> Run | None:
    return session.execute(
        select(Run).where(Run.project_id == project_id).order_by(Run.created_at.desc(), Run.id.desc())
    ).scalars().first()


def run_logs(session: Session, run_id: int) -> list[str]:
    return list(session.execute(
        select(RunLog.line).where(RunLog.run_id == run_id).order_by(RunLog.id)
    ).scalars())


def run_findings(session: Session, run_id: int) -> list[Finding]:
    return list(session.execute(select(Finding).where(Finding.run_id == run_id).order_by(Finding.id)).scalars())


def run_report(session: Session, run_id: int) -> Report | None:
    return session.execute(
        select(Report).where(Report.run_id == run_id).order_by(Report.id.desc())
    ).scalars().first()


def is_active(run: Run) -> bool:
    return run.status not in TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


def get_credit_usage(session: Session, user_id: int) -> dict[str, int]:
    user = session.get(User, user_id)
    if user is None:
        raise LookupError(f"User not found: {user_id}")
    return {
        "limit": user.credit_limit,
        "used": user.credits_used,
        "remaining": max(0, user.credit_limit - user.credits_used),
    }


def consume_credits(session: Session, user_id: int, amount: int = 1) -> int:
    """Charge *amount* credits; returns the remaining balance.  The caller commits."""
    user = session.get(User, user_id)
    if user is None:
        raise LookupError(f"User not found: {user_id}")
    if user.credits_used + amount > user.credit_limit:
        raise InsufficientCreditsError(
            f"User {user_id} has {user.credit_limit - user.credits_used} credits left, needs {amount}"
        )
    user.credits_used += amount
    return user.credit_limit - user.credits_used


# ---------------------------------------------------------------------------
# Feature matrix
# ---------------------------------------------------------------------------


def feature_matrix(session: Session, run_id: int) -> tuple[list[str], list[tuple[str, list[int]]]]:
    """Competitor names and, per canonical feature, 1/0 presence flags in competitor order."""
    competitors = list(session.execute(
        select(Competitor).where(Competitor.run_id == run_id).order_by(Competitor.id)
    ).scalars())
    rows = session.execute(
        select(Feature.competitor_id, Feature.name, FeatureDefinition.name)
        .outerjoin(FeatureDefinition, FeatureDefinition.id == Feature.feature_definition_id)
        .where(Feature.run_id == run_id, Feature.competitor_id.is_not(None))
        .order_by(Feature.id)
    ).all()

    present: dict[str, set[int]] = {}
    for competitor_id, raw_name, def_name in rows:
        name = def_name or canonical_feature_name(raw_name) or raw_name
        present.setdefault(name, set()).add(competitor_id)

    matrix = [
        (name, [1 if c.id in ids else 0 for c in competitors])
        for name, ids in sorted(present.items(), key=lambda kv: kv[0].lower())
    ]
    return [c.name for c in competitors], matrix


def feature_matrix_csv(session: Session, run_id: int) -> str:
    names, matrix = feature_matrix(session, run_id)
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(["Feature", *names])
    for feature, flags in matrix:
        writer.writerow([feature, *flags])
    return buf.getvalue()
