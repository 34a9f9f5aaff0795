"""Tests for the shared service layer: projects, runs, credits and the feature matrix."""
from __future__ import annotations

import pytest

from rivalscout.features import ensure_feature_definitions
from rivalscout.models import Competitor, Feature, RunStatus
from rivalscout.services import (
    InsufficientCreditsError,
    consume_credits,
    create_project,
    create_run,
    feature_matrix_csv,
    get_credit_usage,
    latest_run,
    project_summary,
    skip_run,
)


class TestProjectsAndRuns:
    def test_create_project_links_declared_features(self, session, user):
        project = create_project(
            session,
            {"name": "Ledgerly", "industry": "Fintech", "features": ["2FA", "Audit Logs"]},
            user_id=user.id,
        )
        summary = project_summary(project)
        assert summary["name"] == "Ledgerly"
        assert summary["user_id"] == user.id
        assert sorted(summary["features"]) == ["Audit Logs", "Multi Factor Authentication"]

    def test_latest_run_prefers_newest(self, session, project, run):
        newer = create_run(session, project.id)
        assert latest_run(session, project.id).id == newer.id

    def test_skip_run(self, session, run):
        skip_run(session, run)
        assert run.status == RunStatus.SKIPPED
        assert run.completed_at is not None

        with pytest.raises(ValueError, match="only NEW runs"):
            skip_run(session, run)


class TestCredits:
    def test_consume_until_exhausted(self, session, user):
        assert consume_credits(session, user.id, 3) == 7
        session.commit()
        assert get_credit_usage(session, user.id) == {"limit": 10, "used": 3, "remaining": 7}

        with pytest.raises(InsufficientCreditsError):
            consume_credits(session, user.id, 8)
        assert get_credit_usage(session, user.id)["used"] == 3

    def test_unknown_user(self, session):
        with pytest.raises(LookupError):
            get_credit_usage(session, 404)
        with pytest.raises(LookupError):
            consume_credits(session, 404)


class TestFeatureMatrix:
    def test_csv_rows_per_canonical_feature(self, session, run):
        stripe = Competitor(run_id=run.id, name="Stripe")
        adyen = Competitor(run_id=run.id, name="Adyen")
        session.add_all([stripe, adyen])
        session.flush()
        (sso,) = ensure_feature_definitions(session, ["SSO"])
        session.add_all([
            Feature(run_id=run.id, competitor_id=stripe.id, feature_definition_id=sso.id,
                    name="SSO", normalized="single sign on"),
            Feature(run_id=run.id, competitor_id=adyen.id, name="webhooks", normalized="webhook"),
            Feature(run_id=run.id, competitor_id=None, name="Payouts", normalized="payout"),
        ])
        session.commit()

        assert feature_matrix_csv(session, run.id) == (
            "Feature,Stripe,Adyen\n"
            "Single Sign On,1,0\n"
            "Webhooks,0,1\n"
        )
