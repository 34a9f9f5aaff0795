"""Tests for the durable feature catalog."""
from __future__ import annotations

from sqlalchemy import func, select

from rivalscout.db import insert_if_absent
from rivalscout.features import (
    declared_feature_names,
    ensure_feature_definitions,
    ensure_project_features,
    feature_key,
)
from rivalscout.models import FeatureDefinition, FeatureOrigin, Project, ProjectFeature


def _definition_count(session) -> int:
    return session.execute(select(func.count()).select_from(FeatureDefinition)).scalar_one()


class TestFeatureKey:
    def test_synonyms_share_a_key(self):
        assert feature_key("SSO").normalized == feature_key("Single Sign-On").normalized
        assert feature_key("SSO").canonical == "Single Sign On"

    def test_plain_name(self):
        key = feature_key("  Fraud Detection ")
        assert key.original == "Fraud Detection"
        assert key.normalized == "fraud detection"
        assert key.canonical == "Fraud Detection"


class TestEnsureFeatureDefinitions:
    def test_synonyms_create_one_definition_with_both_aliases(self, session):
        defs = ensure_feature_definitions(session, ["SSO", "Single Sign-On"])
        session.commit()

        assert len(defs) == 1
        assert _definition_count(session) == 1
        definition = defs[0]
        assert definition.name == "Single Sign On"
        assert "SSO" in definition.aliases
        assert "Single Sign-On" in definition.aliases

    def test_idempotent(self, session):
        first = ensure_feature_definitions(session, ["Webhooks", "Audit Logs"])
        session.commit()
        second = ensure_feature_definitions(session, ["Webhooks", "Audit Logs"])
        session.commit()

        assert [d.id for d in first] == [d.id for d in second]
        assert _definition_count(session) == 2

    def test_aliases_accumulate_across_calls(self, session):
        ensure_feature_definitions(session, ["SSO"])
        session.commit()
        (definition,) = ensure_feature_definitions(session, ["Enterprise SSO"])
        session.commit()

        assert _definition_count(session) == 1
        assert set(definition.aliases) >= {"SSO", "Enterprise SSO"}

    def test_blank_names_ignored(self, session):
        assert ensure_feature_definitions(session, ["", "   ", "!!!"]) == []
        assert _definition_count(session) == 0

    def test_origin_and_category_recorded_on_insert(self, session):
        (definition,) = ensure_feature_definitions(
            session, ["Payouts"], origin=FeatureOrigin.USER, category="Payments",
        )
        session.commit()
        assert definition.origin == FeatureOrigin.USER
        assert definition.category == "Payments"

    def test_existing_row_wins_over_concurrent_insert(self, session):
        insert_if_absent(
            session, FeatureDefinition,
            [{"name": "Webhooks", "normalized": "webhooks", "aliases": [], "origin": "COMPETITOR"}],
            ["normalized"],
        )
        session.commit()
        (definition,) = ensure_feature_definitions(session, ["webhooks"])
        session.commit()
        assert definition.name == "Webhooks"
        assert _definition_count(session) == 1


class TestProjectFeatures:
    def test_links_skip_duplicates(self, session):
        project = Project(name="Acme")
        session.add(project)
        session.flush()

        ensure_project_features(session, project.id, ["SSO", "Payouts"])
        ensure_project_features(session, project.id, ["Single Sign-On", "Payouts"])
        session.commit()

        links = session.execute(
            select(func.count()).select_from(ProjectFeature).where(ProjectFeature.project_id == project.id)
        ).scalar_one()
        assert links == 2
        assert declared_feature_names(session, project.id) == ["Single Sign On", "Payouts"]

    def test_user_origin(self, session):
        project = Project(name="Acme")
        session.add(project)
        session.flush()
        (definition,) = ensure_project_features(session, project.id, ["Ledger Exports"])
        assert definition.origin == FeatureOrigin.USER
