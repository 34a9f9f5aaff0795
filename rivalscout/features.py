"""Durable feature catalog: idempotent upsert of canonical feature names and alias accumulation."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from rivalscout.capabilities import CAPABILITY_SYNONYMS, normalize_capability_term
from rivalscout.db import insert_if_absent
from rivalscout.models import FeatureDefinition, FeatureOrigin, ProjectFeature
from rivalscout.normalize import canonical_feature_name, normalize_feature

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureKey:
    original: str
    normalized: str
    canonical: str


def feature_key(name: str) -> FeatureKey:
    """Catalog key for a raw feature name.

    Names that belong to a synonym group collapse onto the group's display name, so
    ``SSO`` and ``Single Sign-On`` share one definition.
    """
    original = name.strip()
    synonym = CAPABILITY_SYNONYMS.get(normalize_capability_term(original))
    if synonym is not None:
        return FeatureKey(original, normalize_feature(synonym.display), synonym.display)
    return FeatureKey(original, normalize_feature(original), canonical_feature_name(original))


def ensure_feature_definitions(
    session: Session,
    names: list[str],
    origin: FeatureOrigin = FeatureOrigin.COMPETITOR,
    category: str | None = None,
) -> list[FeatureDefinition]:
    """Make sure every name has a catalog entry; return one definition per normalized key.

    New keys are inserted with ``ON CONFLICT DO NOTHING`` so concurrent runs never
    create duplicates.  Existing definitions only gain aliases.  The caller commits.
    """
    entries = [feature_key(n) for n in names if isinstance(n, str) and n.strip()]
    entries = [e for e in entries if e.normalized]
    if not entries:
        return []

    keys = list(dict.fromkeys(e.normalized for e in entries))
    existing = session.execute(
        select(FeatureDefinition).where(FeatureDefinition.normalized.in_(keys))
    ).scalars().all()
    by_normalized = {d.normalized: d for d in existing}

    pending: dict[str, dict] = {}
    for entry in entries:
        if entry.normalized in by_normalized or entry.normalized in pending:
            continue
        canonical = entry.canonical or entry.original
        pending[entry.normalized] = {
            "name": canonical,
            "normalized": entry.normalized,
            "description": None,
            "category": category,
            "origin": str(origin),
            "aliases": [entry.original] if canonical != entry.original else [],
        }
    if pending:
        insert_if_absent(session, FeatureDefinition, list(pending.values()), ["normalized"])
        session.flush()
        created = session.execute(
            select(FeatureDefinition).where(FeatureDefinition.normalized.in_(list(pending)))
        ).scalars().all()
        for definition in created:
            by_normalized[definition.normalized] = definition
        log.debug("Feature catalog: %d new definition(s)", len(pending))

    next_aliases: dict[str, list[str]] = {}
    for entry in entries:
        definition = by_normalized.get(entry.normalized)
        if definition is None:
            continue
        aliases = next_aliases.setdefault(definition.normalized, list(definition.aliases or []))
        canonical = entry.canonical or entry.original
        if definition.name != canonical and canonical not in aliases:
            aliases.append(canonical)
        if entry.original and entry.original != canonical and entry.original not in aliases:
            aliases.append(entry.original)

    for normalized, aliases in next_aliases.items():
        definition = by_normalized[normalized]
        if sorted(aliases) != sorted(definition.aliases or []):
            definition.aliases = aliases
    session.flush()

    return [by_normalized[k] for k in keys if k in by_normalized]


def ensure_project_features(session: Session, project_id: int, names: list[str]) -> list[FeatureDefinition]:
    """Link USER-origin definitions for *names* to a project, skipping existing links."""
    definitions = ensure_feature_definitions(session, names, origin=FeatureOrigin.USER)
    if not definitions:
        return []
    insert_if_absent(
        session, ProjectFeature,
        [{"project_id": project_id, "feature_definition_id": d.id, "importance": None} for d in definitions],
        ["project_id", "feature_definition_id"],
    )
    session.flush()
    return definitions


def declared_feature_names(session: Session, project_id: int) -> list[str]:
    rows = session.execute(
        select(FeatureDefinition.name)
        .join(ProjectFeature, ProjectFeature.feature_definition_id == FeatureDefinition.id)
        .where(ProjectFeature.project_id == project_id)
        .order_by(ProjectFeature.id)
    ).scalars().all()
    return list(rows)
