"""Extraction stage: fetch pages, resolve competitors, extract facts (AI first, regex fallback)."""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from rivalscout.ai import extract_structured_data, keep_all_capabilities, standardize_and_filter_capabilities
from rivalscout.brands import guess_brand_name, is_likely_competitor_name, looks_like_pricing_page, short_url
from rivalscout.capabilities import (
    canonicalize_capability, extract_capabilities, extract_compliance, extract_feature_description,
    extract_integrations, infer_integration_category, normalize_capability_term,
)
from rivalscout.db import insert_if_absent
from rivalscout.features import ensure_feature_definitions, feature_key
from rivalscout.fetcher import MAX_TEXT, html_to_text
from rivalscout.llm import CompletionProvider
from rivalscout.models import (
    Capability, Competitor, ComplianceItem, Feature, FeatureOrigin, Integration, PricingPoint, Source, SourceStatus,
)
from rivalscout.pricing import extract_pricing
from rivalscout.queries import ProjectProfile
from rivalscout.runlog import append_log
from rivalscout.verticals import VerticalProfile

log = logging.getLogger(__name__)

FEATURE_CONFIDENCE = 0.6

Fetch = Callable[[str], Awaitable[str]]


@dataclass
class FetchedPage:
    source_id: int
    url: str
    title: str | None
    domain: str | None
    content: str


@dataclass
class FeatureCandidate:
    name: str
    normalized: str
    source_id: int
    competitor_id: int | None
    description: str | None = None


@dataclass
class ExtractionBatch:
    """Rows queued for one transactional write at the end of the stage."""
    capabilities: list[dict[str, Any]] = field(default_factory=list)
    features: list[FeatureCandidate] = field(default_factory=list)
    compliance: list[dict[str, Any]] = field(default_factory=list)
    integrations: list[dict[str, Any]] = field(default_factory=list)
    pricing: list[dict[str, Any]] = field(default_factory=list)
    ai_pages: int = 0
    regex_pages: int = 0

    def merge(self, other: ExtractionBatch) -> None:
        self.capabilities.extend(other.capabilities)
        self.features.extend(other.features)
        self.compliance.extend(other.compliance)
        self.integrations.extend(other.integrations)
        self.pricing.extend(other.pricing)


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------


async def fetch_sources(session: Session, run_id: int, sources: list[Source], fetch: Fetch) -> list[FetchedPage]:
    """Fetch each source once, in order.  Failures mark the Source ERROR and move on."""
    pages: list[FetchedPage] = []
    for source in sources:
        try:
            raw = await fetch(source.url)
            text = html_to_text(raw)[:MAX_TEXT]
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            source.status = SourceStatus.ERROR
            source.notes = message
            session.commit()
            log.warning("Fetch failed %s: %s", source.url, message)
            append_log(session, run_id, f"Fetch failed {source.url}: {message}")
            continue
        source.content = text
        source.status = SourceStatus.OK
        session.commit()
        pages.append(FetchedPage(source.id, source.url, source.title, source.domain, text))
    return pages


# ---------------------------------------------------------------------------
# Competitors
# ---------------------------------------------------------------------------


def upsert_competitors(session: Session, run_id: int, rows: list[dict[str, Any]]) -> dict[str, int]:
    """Insert-if-absent on (run, name); returns ``{name: id}`` for every requested name."""
    rows = [r for r in rows if r.get("name")]
    if not rows:
        return {}
    insert_if_absent(
        session, Competitor,
        [{"run_id": run_id, "name": r["name"], "website": r.get("website")} for r in rows],
        ["run_id", "name"],
    )
    session.flush()
    names = [r["name"] for r in rows]
    found = session.execute(
        select(Competitor).where(Competitor.run_id == run_id, Competitor.name.in_(names))
    ).scalars().all()
    return {c.name: c.id for c in found}


def seed_competitors(session: Session, run_id: int, names: list[str]) -> dict[str, int]:
    """Declared competitor names become Competitor rows before discovery starts."""
    ids = upsert_competitors(session, run_id, [{"name": n.strip()} for n in names if n and n.strip()])
    session.commit()
    return ids


def resolve_competitor(
    session: Session, run_id: int, page: FetchedPage, known: dict[str, int],
) -> tuple[str | None, int | None]:
    brand = guess_brand_name(page.title, page.domain)
    if not brand or not is_likely_competitor_name(brand, title=page.title, domain=page.domain):
        return brand, None
    if brand in known:
        return brand, known[brand]
    website = f"https://{page.domain}" if page.domain else None
    ids = upsert_competitors(session, run_id, [{"name": brand, "website": website}])
    session.commit()
    if brand in ids:
        known[brand] = ids[brand]
    return brand, ids.get(brand)


# ---------------------------------------------------------------------------
# Per-page extraction paths
# ---------------------------------------------------------------------------


def _queue_capability(batch: ExtractionBatch, page: FetchedPage, competitor_id: int | None,
                      category: str, name: str, normalized: str, description: str | None) -> None:
    batch.capabilities.append({"category": category, "name": name, "normalized": normalized})
    key = feature_key(name)
    batch.features.append(FeatureCandidate(
        name=name,
        normalized=key.normalized or normalized,
        source_id=page.source_id,
        competitor_id=competitor_id,
        description=description,
    ))


async def extract_with_ai(
    session: Session,
    run_id: int,
    page: FetchedPage,
    brand: str,
    competitor_id: int,
    llm: CompletionProvider,
    profile: ProjectProfile,
    vertical: VerticalProfile,
    batch: ExtractionBatch,
) -> bool:
    """AI path for one page; returns False when nothing usable came back.

    Rows are staged locally and reach *batch* only once every step has succeeded.
    """
    data = await extract_structured_data(llm, brand, page.content, profile.industry, profile.keywords)
    if data is None:
        return False
    append_log(session, run_id, f"AI extraction succeeded for {brand} from {short_url(page.url)}")
    staged = ExtractionBatch()

    if data.capabilities:
        try:
            standardized = await standardize_and_filter_capabilities(llm, data.capabilities, vertical)
        except Exception as exc:
            log.warning("Standardization failed for %s: %s", brand, exc)
            append_log(session, run_id, f"Standardization failed for {brand}: {exc}")
            standardized = keep_all_capabilities(data.capabilities)
        append_log(
            session, run_id,
            f"Standardized {len(data.capabilities)} capabilities to {len(standardized)} relevant capabilities for {brand}",
        )
        for cap in standardized:
            raw_name = cap.normalized_name or cap.source_name
            canonical = canonicalize_capability(normalize_capability_term(raw_name), raw_name)
            if not canonical.normalized:
                continue
            _queue_capability(
                staged, page, competitor_id, cap.category, canonical.display, canonical.normalized,
                cap.description or f"Mentioned under {cap.category}",
            )

    for plan in data.pricing_plans:
        staged.pricing.append({
            "competitor_id": competitor_id,
            "plan_name": plan.plan_name,
            "price_monthly": plan.price_monthly,
            "price_annual": plan.price_annual,
            "transaction_fee": plan.transaction_fee,
            "currency": plan.currency or "USD",
        })
    for item in data.compliance_items:
        staged.compliance.append({
            "framework": item.framework.upper(),
            "status": item.status or "Claims",
            "notes": item.notes or f"Extracted from {short_url(page.url)}",
        })
    for integ in data.integrations:
        staged.integrations.append({
            "name": integ.name, "vendor": integ.vendor, "category": integ.category, "url": integ.url or page.url,
        })
    if data.summary:
        source = session.get(Source, page.source_id)
        if source is not None:
            source.ai_summary = data.summary
            session.commit()
    batch.merge(staged)
    return True


def extract_with_regex(
    session: Session, run_id: int, page: FetchedPage, competitor_id: int | None, batch: ExtractionBatch,
) -> None:
    text = page.content
    hits = extract_capabilities(text)
    for hit in hits:
        _queue_capability(
            batch, page, competitor_id, hit.category, hit.name, hit.normalized,
            extract_feature_description(text, hit.mention) or f"Mentioned under {hit.category}",
        )
    for vendor in extract_integrations(text):
        batch.integrations.append({
            "name": vendor, "vendor": vendor, "category": infer_integration_category(vendor), "url": page.url,
        })
    for framework in extract_compliance(text):
        batch.compliance.append({
            "framework": framework, "status": "Claims", "notes": f"Mentioned at {short_url(page.url)}",
        })

    plans = 0
    if competitor_id is not None and looks_like_pricing_page(page.title, text):
        try:
            rows = extract_pricing(text)
        except Exception as exc:
            log.warning("Pricing parse failed for %s: %s", page.url, exc)
            append_log(session, run_id, f"Pricing parse failed {page.url}: {exc}")
            rows = []
        for row in rows:
            batch.pricing.append({
                "competitor_id": competitor_id,
                "plan_name": row.plan_name,
                "price_monthly": row.price_monthly,
                "price_annual": row.price_annual,
                "transaction_fee": row.transaction_fee,
                "currency": row.currency,
            })
        plans = len(rows)
    append_log(
        session, run_id,
        f"Regex extraction for {short_url(page.url)}: {len(hits)} capabilities, {plans} pricing plans",
    )


# ---------------------------------------------------------------------------
# Dedup and persistence
# ---------------------------------------------------------------------------


def dedup_capabilities(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep the first row per (category, normalized); later duplicates are dropped."""
    seen: set[tuple[str, str]] = set()
    out = []
    for row in rows:
        key = (row["category"], row["normalized"].lower())
        if key in seen:
            continue
        seen.add(key)
        out.append(row)
    return out


def dedup_features(candidates: list[FeatureCandidate]) -> list[FeatureCandidate]:
    """First observation wins per (competitor or global, normalized)."""
    by_key: dict[tuple[int | None, str], FeatureCandidate] = {}
    for candidate in candidates:
        by_key.setdefault((candidate.competitor_id, candidate.normalized), candidate)
    return list(by_key.values())


def persist_batch(session: Session, run_id: int, batch: ExtractionBatch) -> dict[str, int]:
    """Write every queued row in one transaction, linking features to catalog definitions."""
    capabilities = dedup_capabilities(batch.capabilities)
    features = dedup_features(batch.features)
    definitions = ensure_feature_definitions(session, [f.name for f in features], origin=FeatureOrigin.COMPETITOR)
    def_by_normalized = {d.normalized: d for d in definitions}

    session.add_all(Capability(run_id=run_id, **row) for row in capabilities)
    for f in features:
        definition = def_by_normalized.get(f.normalized)
        session.add(Feature(
            run_id=run_id,
            competitor_id=f.competitor_id,
            feature_definition_id=definition.id if definition else None,
            source_id=f.source_id,
            name=f.name,
            normalized=f.normalized,
            description=f.description,
            confidence=FEATURE_CONFIDENCE,
            origin=FeatureOrigin.COMPETITOR,
        ))
    session.add_all(ComplianceItem(run_id=run_id, **row) for row in batch.compliance)
    session.add_all(Integration(run_id=run_id, **row) for row in batch.integrations)
    session.add_all(PricingPoint(run_id=run_id, **row) for row in batch.pricing)
    session.commit()
    return {
        "capabilities": len(capabilities),
        "features": len(features),
        "compliance": len(batch.compliance),
        "integrations": len(batch.integrations),
        "pricing": len(batch.pricing),
    }


# ---------------------------------------------------------------------------
# Stage entry point
# ---------------------------------------------------------------------------


async def run_extraction(
    session: Session,
    run_id: int,
    pages: list[FetchedPage],
    profile: ProjectProfile,
    vertical: VerticalProfile,
    llm: CompletionProvider | None,
) -> ExtractionBatch:
    """Extract facts from every fetched page and persist them.

    The AI path runs only when *llm* is set and the page resolved to a competitor;
    otherwise, or when the AI call fails, the regex extractors are used instead.
    """
    append_log(session, run_id, f"Using Vertical Profile: {vertical.key}")
    known = {
        c.name: c.id
        for c in session.execute(select(Competitor).where(Competitor.run_id == run_id)).scalars()
    }
    batch = ExtractionBatch()

    for page in pages:
        brand, competitor_id = resolve_competitor(session, run_id, page, known)
        used_ai = False
        if llm is not None and brand and competitor_id is not None:
            try:
                used_ai = await extract_with_ai(
                    session, run_id, page, brand, competitor_id, llm, profile, vertical, batch,
                )
            except Exception as exc:
                session.rollback()
                log.warning("AI extraction failed for %s (%s): %s", brand, page.url, exc)
                append_log(session, run_id, f"AI extraction failed for {short_url(page.url)}: {exc}")
        if used_ai:
            batch.ai_pages += 1
        else:
            extract_with_regex(session, run_id, page, competitor_id, batch)
            batch.regex_pages += 1

    counts = persist_batch(session, run_id, batch)
    log.info("Run %s extraction persisted: %s", run_id, counts)
    return batch

