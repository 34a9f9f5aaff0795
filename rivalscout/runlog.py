"""Per-run progress surface: status transitions and the append-only run log."""
from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from rivalscout.models import TERMINAL_STATUSES, Run, RunLog, RunStatus
from rivalscout.utils import utcnow

log = logging.getLogger(__name__)


def append_log(session: Session, run_id: int, line: str) -> None:
    """Persist one log line for the run; on failure fall back to ``Run.last_note``.

    Never raises: a broken log stream must not fail the run.
    """
    log.info("[run %s] %s", run_id, line)
    try:
        session.add(RunLog(run_id=run_id, line=line))
        session.commit()
    except Exception:
        log.warning("RunLog write failed for run %s; falling back to last_note", run_id, exc_info=True)
        session.rollback()
        try:
            run = session.get(Run, run_id)
            if run is not None:
                run.last_note = line
                session.commit()
        except Exception:
            log.exception("Could not record log line for run %s", run_id)
            session.rollback()


def write_status(session: Session, run_id: int, status: RunStatus, note: str | None = None) -> Run:
    """Persist *status* and *note*, stamping ``started_at`` / ``completed_at`` as appropriate."""
    run = session.get(Run, run_id)
    if run is None:
        raise LookupError(f"Run not found: {run_id}")
    run.status = status
    run.last_note = note
    if status == RunStatus.DISCOVERING and run.started_at is None:
        run.started_at = utcnow()
    if status in TERMINAL_STATUSES:
        run.completed_at = utcnow()
    session.commit()
    log.info("Run %s -> %s%s", run_id, status, f" ({note})" if note else "")
    return run
