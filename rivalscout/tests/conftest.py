from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from rivalscout.config import Settings, invalidate_settings_cache
from rivalscout.features import ensure_project_features
from rivalscout.models import Base, Project, Run, RunStatus, User
from rivalscout.orchestrator import PipelineDeps
from rivalscout.tests.fakes import FakeSearch, PageFetcher, RecordingNotifier


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    """In-memory SQLite shared by every connection (StaticPool)."""
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory) -> Session:
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture(autouse=True)
def _fresh_settings_cache():
    invalidate_settings_cache()
    yield
    invalidate_settings_cache()


# ---------------------------------------------------------------------------
# Domain rows
# ---------------------------------------------------------------------------


@pytest.fixture()
def user(session: Session) -> User:
    u = User(email="owner@acmepay.test", name="Owner", credit_limit=10, credits_used=0)
    session.add(u)
    session.commit()
    return u


@pytest.fixture()
def project(session: Session, user: User) -> Project:
    proj = Project(
        user_id=user.id,
        name="Acme Pay",
        category="payments platform",
        industry="Fintech",
        sub_industry="Payments",
        description="Checkout and payouts for online marketplaces",
        keywords=["fraud detection", "payouts"],
        competitors=["Stripe"],
        target_segments=["SMB"],
    )
    session.add(proj)
    session.flush()
    ensure_project_features(session, proj.id, ["SSO", "Fraud Detection"])
    session.commit()
    return proj


@pytest.fixture()
def run(session: Session, project: Project) -> Run:
    r = Run(project_id=project.id, status=RunStatus.NEW)
    session.add(r)
    session.commit()
    return r


# ---------------------------------------------------------------------------
# Pipeline wiring
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_deps(session_factory):
    """Build ``PipelineDeps`` backed by fakes; keyword overrides replace any collaborator."""
    def _make(**overrides) -> PipelineDeps:
        values = dict(
            session_factory=session_factory,
            settings=Settings(search_provider=None, staleness_days=180),
            search=FakeSearch(),
            llm=None,
            notifier=RecordingNotifier(),
            fetch=PageFetcher(),
        )
        values.update(overrides)
        return PipelineDeps(**values)
    return _make
