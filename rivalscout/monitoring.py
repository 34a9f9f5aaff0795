"""Default change-detection collaborator: compares the sources of two runs of one project."""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from rivalscout.brands import looks_like_pricing_page
from rivalscout.models import ChangeDetection, Source, SourceStatus

log = logging.getLogger(__name__)

CHURN_ALERT_RATIO = 0.5


@dataclass
class SourceChanges:
    added_sources: list[str] = field(default_factory=list)
    removed_sources: list[str] = field(default_factory=list)
    modified_sources: list[str] = field(default_factory=list)
    previous_run_id: int | None = None
    current_run_id: int | None = None

    @property
    def total(self) -> int:
        return len(self.added_sources) + len(self.removed_sources) + len(self.modified_sources)

    def as_dict(self) -> dict[str, list[str]]:
        return {
            "added_sources": self.added_sources,
            "removed_sources": self.removed_sources,
            "modified_sources": self.modified_sources,
        }


@dataclass
class Alert:
    severity: str  # "info" | "warning" | "critical"
    message: str


class ChangeDetector(Protocol):
    def detect_source_changes(self, session: Session, previous_run_id: int, current_run_id: int) -> SourceChanges: ...

    def store_change_detection(
        self, session: Session, project_id: int, previous_run_id: int, current_run_id: int, changes: SourceChanges,
    ) -> ChangeDetection: ...

    def check_for_alerts(self, session: Session, project_id: int, changes: SourceChanges) -> list[Alert]: ...


def _digest(content: str | None) -> str | None:
    if not content:
        return None
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _snapshot(session: Session, run_id: int) -> dict[str, str | None]:
    """``{url: content digest}`` for every source of the run; the digest is ``None`` unless fetched OK."""
    rows = session.execute(select(Source).where(Source.run_id == run_id)).scalars()
    return {s.url: _digest(s.content) if s.status == SourceStatus.OK else None for s in rows}


def detect_source_changes(session: Session, previous_run_id: int, current_run_id: int) -> SourceChanges:
    """URLs added or removed between the runs, and URLs fetched OK in both whose content differs."""
    before = _snapshot(session, previous_run_id)
    after = _snapshot(session, current_run_id)
    changes = SourceChanges(
        added_sources=sorted(set(after) - set(before)),
        removed_sources=sorted(set(before) - set(after)),
        previous_run_id=previous_run_id,
        current_run_id=current_run_id,
    )
    for url in sorted(set(before) & set(after)):
        old, new = before[url], after[url]
        if old and new and old != new:
            changes.modified_sources.append(url)
    return changes


def store_change_detection(
    session: Session, project_id: int, previous_run_id: int, current_run_id: int, changes: SourceChanges,
) -> ChangeDetection:
    row = ChangeDetection(
        project_id=project_id,
        previous_run_id=previous_run_id,
        current_run_id=current_run_id,
        changes_json=json.dumps(changes.as_dict()),
    )
    session.add(row)
    session.commit()
    return row


def check_for_alerts(session: Session, project_id: int, changes: SourceChanges) -> list[Alert]:
    """Alert rules: pricing pages that changed, large churn, and many lost sources."""
    alerts: list[Alert] = []
    if changes.modified_sources:
        query = select(Source).where(Source.url.in_(changes.modified_sources))
        run_ids = [r for r in (changes.previous_run_id, changes.current_run_id) if r is not None]
        if run_ids:
            query = query.where(Source.run_id.in_(run_ids))
        titles = {s.url: s.title for s in session.execute(query).scalars() if s.title}
        pricing = [u for u in changes.modified_sources if looks_like_pricing_page(titles.get(u), u)]
        if pricing:
            alerts.append(Alert("critical", f"Pricing page changed: {', '.join(pricing[:5])}"))

    churn = len(changes.added_sources) + len(changes.removed_sources)
    if churn >= 5 and churn / changes.total > CHURN_ALERT_RATIO:
        alerts.append(Alert(
            "warning",
            f"Large source churn for project {project_id}: "
            f"{len(changes.added_sources)} added, {len(changes.removed_sources)} removed",
        ))
    if len(changes.removed_sources) >= 5:
        alerts.append(Alert("info", f"{len(changes.removed_sources)} previously tracked sources disappeared"))
    return alerts


class SourceChangeDetector:
    """``ChangeDetector`` backed by the functions above."""

    def detect_source_changes(self, session: Session, previous_run_id: int, current_run_id: int) -> SourceChanges:
        return detect_source_changes(session, previous_run_id, current_run_id)

    def store_change_detection(
        self, session: Session, project_id: int, previous_run_id: int, current_run_id: int, changes: SourceChanges,
    ) -> ChangeDetection:
        return store_change_detection(session, project_id, previous_run_id, current_run_id, changes)

    def check_for_alerts(self, session: Session, project_id: int, changes: SourceChanges) -> list[Alert]:
        return check_for_alerts(session, project_id, changes)
