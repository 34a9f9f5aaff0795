from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Generator

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from rivalscout import services
from rivalscout.config import ConfigError, load_settings, set_settings, validate_settings
from rivalscout.db import get_session, get_session_factory, init_db
from rivalscout.models import Project, Run, User
from rivalscout.orchestrator import PipelineDeps, build_pipeline_deps, orchestrate_run
from rivalscout.scheduler import (
    ScheduledTask, Scheduler, cancel_project_monitoring, schedule_project_monitoring,
)
from rivalscout.schemas import (
    CreditUsageOut,
    FindingOut,
    MonitoringRequest,
    ProjectCreate,
    ProjectOut,
    ReportOut,
    RunOut,
    SettingsUpdate,
    TaskOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    scheduler = Scheduler(get_session_factory())
    scheduler.start()
    app.state.scheduler = scheduler
    yield
    await scheduler.stop()


app = FastAPI(
    title="RivalScout",
    version="0.1.0",
    description=(
        "Competitive intelligence API. Describe a product, trigger an analysis run, "
        "and read back findings, reports and the feature matrix. "
        "All endpoints return JSON unless noted. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Projects", "description": "Create and inspect projects."},
        {"name": "Runs", "description": "Trigger analysis runs and read their progress and results."},
        {"name": "Monitoring", "description": "Scheduled re-runs and the task queue."},
        {"name": "Admin", "description": "Settings and credit usage."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def pipeline_deps() -> PipelineDeps:
    try:
        return build_pipeline_deps()
    except ConfigError as exc:
        raise HTTPException(400, str(exc))


def get_scheduler(request: Request) -> Scheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(503, "Scheduler not running")
    return scheduler


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _task_out(task: ScheduledTask) -> TaskOut:
    return TaskOut(
        id=task.id, type=str(task.type), project_id=task.project_id,
        user_id=task.data.get("user_id"), scheduled_for=task.scheduled_for.isoformat(),
    )


async def _run_in_background(run_id: int, deps: PipelineDeps) -> None:
    try:
        await orchestrate_run(run_id, deps)
    except Exception:
        # The orchestrator has already stamped ERROR on the run.
        log.exception("Background run %s failed", run_id)


# ---------------------------------------------------------------------------
# Routes: Projects
# ---------------------------------------------------------------------------


@app.post("/api/projects", response_model=ProjectOut, status_code=201, tags=["Projects"],
          summary="Create a project")
async def create_project(body: ProjectCreate, session: Session = Depends(db_session)):
    if body.user_id is not None:
        _get_or_404(session, User, body.user_id, "User")
    data = body.model_dump(exclude={"user_id"})
    project = services.create_project(session, data, user_id=body.user_id)
    return services.project_summary(project)


@app.get("/api/projects/{project_id}", response_model=ProjectOut, tags=["Projects"], summary="Get a project")
async def get_project(project_id: int, session: Session = Depends(db_session)):
    return services.project_summary(_get_or_404(session, Project, project_id, "Project"))


@app.get("/api/projects/{project_id}/runs", response_model=list[RunOut], tags=["Projects"],
         summary="List a project's runs, newest first")
async def list_project_runs(project_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Project, project_id, "Project")
    runs = session.execute(
        select(Run).where(Run.project_id == project_id).order_by(Run.created_at.desc(), Run.id.desc())
    ).scalars()
    return [services.run_summary(r) for r in runs]


# ---------------------------------------------------------------------------
# Routes: Runs
# ---------------------------------------------------------------------------


@app.post("/api/projects/{project_id}/runs", response_model=RunOut, status_code=202, tags=["Runs"],
          summary="Start an analysis run in the background")
async def trigger_run(
    project_id: int,
    background: BackgroundTasks,
    session: Session = Depends(db_session),
    deps: PipelineDeps = Depends(pipeline_deps),
):
    project = _get_or_404(session, Project, project_id, "Project")
    if project.user_id is not None:
        try:
            services.consume_credits(session, project.user_id, 1)
        except services.InsufficientCreditsError as exc:
            session.rollback()
            raise HTTPException(402, str(exc))
    run = services.create_run(session, project_id)
    background.add_task(_run_in_background, run.id, deps)
    return services.run_summary(run)


@app.get("/api/runs/{run_id}", response_model=RunOut, tags=["Runs"], summary="Run status")
async def get_run(run_id: int, session: Session = Depends(db_session)):
    return services.run_summary(_get_or_404(session, Run, run_id, "Run"))


@app.post("/api/runs/{run_id}/skip", response_model=RunOut, tags=["Runs"], summary="Skip a run that has not started")
async def skip_run(run_id: int, session: Session = Depends(db_session)):
    run = _get_or_404(session, Run, run_id, "Run")
    try:
        services.skip_run(session, run)
    except ValueError as exc:
        raise HTTPException(409, str(exc))
    return services.run_summary(run)


@app.get("/api/runs/{run_id}/logs", response_model=list[str], tags=["Runs"], summary="Run log lines in order")
async def get_run_logs(run_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Run, run_id, "Run")
    return services.run_logs(session, run_id)


@app.get("/api/runs/{run_id}/findings", response_model=list[FindingOut], tags=["Runs"], summary="Run findings")
async def get_run_findings(run_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Run, run_id, "Run")
    return [services.finding_summary(f) for f in services.run_findings(session, run_id)]


@app.get("/api/runs/{run_id}/report", response_model=ReportOut, tags=["Runs"], summary="Markdown report")
async def get_run_report(run_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Run, run_id, "Run")
    report = services.run_report(session, run_id)
    if report is None:
        raise HTTPException(404, "Report not found")
    return ReportOut(
        id=report.id, run_id=report.run_id, headline=report.headline,
        format=report.format, md_content=report.md_content,
    )


@app.get("/api/runs/{run_id}/matrix.csv", response_class=PlainTextResponse, tags=["Runs"],
         summary="Feature presence matrix as CSV")
async def get_feature_matrix(run_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Run, run_id, "Run")
    return PlainTextResponse(services.feature_matrix_csv(session, run_id), media_type="text/csv")


# ---------------------------------------------------------------------------
# Routes: Monitoring
# ---------------------------------------------------------------------------


@app.post("/api/projects/{project_id}/monitoring", response_model=TaskOut, status_code=201, tags=["Monitoring"],
          summary="Schedule a re-run for tomorrow morning")
async def start_monitoring(
    project_id: int,
    body: MonitoringRequest,
    session: Session = Depends(db_session),
    scheduler: Scheduler = Depends(get_scheduler),
):
    _get_or_404(session, Project, project_id, "Project")
    _get_or_404(session, User, body.user_id, "User")
    task_id = schedule_project_monitoring(scheduler, project_id, body.user_id)
    task = next(t for t in scheduler.list_tasks() if t.id == task_id)
    return _task_out(task)


@app.delete("/api/projects/{project_id}/monitoring", tags=["Monitoring"], summary="Cancel scheduled re-runs")
async def stop_monitoring(project_id: int, scheduler: Scheduler = Depends(get_scheduler)):
    return {"cancelled": cancel_project_monitoring(scheduler, project_id)}


@app.get("/api/tasks", response_model=list[TaskOut], tags=["Monitoring"], summary="Pending scheduled tasks")
async def list_tasks(scheduler: Scheduler = Depends(get_scheduler)):
    return [_task_out(t) for t in scheduler.list_tasks()]


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.get("/api/users/{user_id}/credits", response_model=CreditUsageOut, tags=["Admin"], summary="Credit usage")
async def get_credits(user_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, User, user_id, "User")
    return services.get_credit_usage(session, user_id)


def _settings_view(session: Session) -> dict:
    settings = load_settings(session)
    return {
        "search_provider": settings.search_provider,
        "staleness_days": settings.staleness_days,
        "ai_provider": settings.ai_provider,
        "ai_enabled": settings.ai_enabled,
        "tavily_configured": bool(settings.tavily_api_key),
    }


@app.get("/api/settings", tags=["Admin"], summary="Effective settings (secrets hidden)")
async def get_settings(session: Session = Depends(db_session)):
    return _settings_view(session)


@app.put("/api/settings", tags=["Admin"], summary="Override settings in the database")
async def update_settings(body: SettingsUpdate, session: Session = Depends(db_session)):
    values = body.model_dump(exclude_unset=True)
    try:
        validate_settings(replace(load_settings(session), **values))
    except ConfigError as exc:
        raise HTTPException(400, str(exc))
    set_settings(session, **values)
    return _settings_view(session)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("rivalscout.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
