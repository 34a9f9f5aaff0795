"""Synthesis stage: deterministic findings over the run's extracted facts, plus optional AI insights."""
from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from rivalscout.ai import generate_synthetic_insights
from rivalscout.llm import CompletionProvider
from rivalscout.models import (
    Capability, Competitor, ComplianceItem, Feature, FindingKind, Integration, PricingPoint, Project, Run, Source,
)
from rivalscout.normalize import canonical_feature_name, normalize_feature
from rivalscout.queries import ProjectProfile
from rivalscout.utils import clamp

log = logging.getLogger(__name__)

HISTORY_LIMIT = 300
TOP_COMMON = 10
TOP_DIFFERENTIATORS = 10
TOP_OPPORTUNITIES = 5
MAX_CITATIONS = 3


@dataclass
class FindingDraft:
    kind: FindingKind
    text: str
    confidence: float
    citations: list[Any] = field(default_factory=list)


@dataclass
class RunFacts:
    """Everything synthesis reads, loaded once."""
    sources: list[Source]
    capabilities: list[Capability]
    features: list[Feature]
    competitors: list[Competitor]
    pricing: list[PricingPoint]
    integrations: list[Integration]
    compliance: list[ComplianceItem]
    historical: list[Feature] = field(default_factory=list)


@dataclass
class SynthesisResult:
    findings: list[FindingDraft]
    executive_summary: str | None = None


def load_run_facts(session: Session, run_id: int, industry: str | None) -> RunFacts:
    def rows(model):
        return list(session.execute(select(model).where(model.run_id == run_id).order_by(model.id)).scalars())

    features = list(session.execute(
        select(Feature)
        .options(joinedload(Feature.feature_definition), joinedload(Feature.competitor))
        .where(Feature.run_id == run_id)
        .order_by(Feature.id)
    ).scalars())

    history = (
        select(Feature)
        .options(joinedload(Feature.feature_definition), joinedload(Feature.competitor))
        .where(Feature.run_id != run_id, Feature.feature_definition_id.is_not(None))
    )
    if industry:
        history = history.join(Run, Run.id == Feature.run_id).join(Project, Project.id == Run.project_id) \
            .where(Project.industry == industry)
    historical = list(session.execute(
        history.order_by(Feature.created_at.desc(), Feature.id.desc()).limit(HISTORY_LIMIT)
    ).scalars())

    return RunFacts(
        sources=rows(Source),
        capabilities=rows(Capability),
        features=features,
        competitors=rows(Competitor),
        pricing=rows(PricingPoint),
        integrations=rows(Integration),
        compliance=rows(ComplianceItem),
        historical=historical,
    )


# ---------------------------------------------------------------------------
# Deterministic findings
# ---------------------------------------------------------------------------


def _group_capabilities(capabilities: list[Capability]) -> dict[tuple[str, str], list[Capability]]:
    groups: dict[tuple[str, str], list[Capability]] = defaultdict(list)
    for cap in capabilities:
        groups[(cap.category, cap.normalized.lower())].append(cap)
    return groups


def common_features(facts: RunFacts) -> list[FindingDraft]:
    groups = _group_capabilities(facts.capabilities)
    ranked = sorted(groups.items(), key=lambda kv: len(kv[1]), reverse=True)[:TOP_COMMON]
    source_ids = [s.id for s in facts.sources]
    findings = []
    for (category, norm), instances in ranked:
        count = len(instances)
        findings.append(FindingDraft(
            kind=FindingKind.COMMON_FEATURE,
            text=f'{category}: "{norm}" appears across {count} sources, indicating this is a market standard.',
            confidence=min(0.9, 0.6 + 0.05 * count),
            citations=source_ids[:min(count, MAX_CITATIONS)],
        ))
    return findings


def differentiators(facts: RunFacts) -> list[FindingDraft]:
    if len(facts.capabilities) < 5:
        return []
    groups = _group_capabilities(facts.capabilities)
    singles = [key for key, instances in groups.items() if len(instances) == 1][:TOP_DIFFERENTIATORS]
    first_source = [facts.sources[0].id] if facts.sources else []
    return [
        FindingDraft(
            kind=FindingKind.DIFFERENTIATOR,
            text=f'Potential differentiator: {category} - "{norm}" appears uniquely in the market. '
                 f"This could be a competitive advantage.",
            confidence=0.6,
            citations=list(first_source),
        )
        for category, norm in singles
    ]


def present_feature_keys(facts: RunFacts) -> set[str]:
    present = {normalize_feature(c.normalized) for c in facts.capabilities}
    for feat in facts.features:
        key = feat.feature_definition.normalized if feat.feature_definition else normalize_feature(feat.normalized or feat.name)
        present.add(key)
    present.discard("")
    return present


def gaps(facts: RunFacts, profile: ProjectProfile, declared_keys: list[tuple[str, str]]) -> list[FindingDraft]:
    """Declared features (and, with enough data, declared keywords) absent from the market."""
    present = present_feature_keys(facts)
    findings = []
    declared = set()
    for name, key in declared_keys:
        if not key:
            continue
        declared.add(key)
        if key not in present:
            findings.append(FindingDraft(
                kind=FindingKind.GAP,
                text=f'Feature gap: "{name}" was not observed across the analysed competitor set. '
                     f"Validate whether the market under-indexes this capability or if messaging needs amplification.",
                confidence=0.6,
            ))

    if len(facts.capabilities) >= 3:
        for kw in dict.fromkeys(normalize_feature(k) for k in profile.keywords):
            if not kw or kw in declared or kw in present:
                continue
            findings.append(FindingDraft(
                kind=FindingKind.GAP,
                text=f'Market gap: "{canonical_feature_name(kw)}" did not appear in competitor capabilities '
                     f"or feature narratives. This could represent whitespace or signal a positioning opportunity.",
                confidence=0.62,
            ))
    return findings


@dataclass
class _Evidence:
    name: str
    competitors: list[str] = field(default_factory=list)
    citations: list[int] = field(default_factory=list)
    current: int = 0
    historical: int = 0


def opportunities(facts: RunFacts, declared: set[str]) -> list[FindingDraft]:
    """Top non-declared features by current + historical sightings."""
    evidence: dict[str, _Evidence] = {}

    def record(feat: Feature, current: bool) -> None:
        definition = feat.feature_definition
        key = normalize_feature(definition.normalized if definition else (feat.normalized or feat.name))
        if not key:
            return
        entry = evidence.setdefault(key, _Evidence(name=canonical_feature_name(definition.name if definition else feat.name) or key))
        if feat.competitor is not None and feat.competitor.name not in entry.competitors:
            entry.competitors.append(feat.competitor.name)
        if current:
            entry.current += 1
            if feat.source_id is not None and feat.source_id not in entry.citations:
                entry.citations.append(feat.source_id)
        else:
            entry.historical += 1

    for feat in facts.features:
        record(feat, current=True)
    for feat in facts.historical:
        record(feat, current=False)

    ranked = sorted(
        ((k, e) for k, e in evidence.items() if k not in declared),
        key=lambda kv: kv[1].current + kv[1].historical,
        reverse=True,
    )[:TOP_OPPORTUNITIES]

    findings = []
    for _, entry in ranked:
        mentions = []
        if entry.current:
            mentions.append(f"{entry.current} competitor{'s' if entry.current > 1 else ''} in this run")
        if entry.historical:
            mentions.append(f"{entry.historical} sightings in prior analyses")
        examples = entry.competitors[:3]
        example_text = f" (e.g., {', '.join(examples)})" if examples else ""
        findings.append(FindingDraft(
            kind=FindingKind.INSIGHT,
            text=f'Opportunity: "{entry.name}" appears across {" and ".join(mentions)}{example_text}. '
                 f"Consider adding or strengthening this capability to keep pace with the market.",
            confidence=0.7 if entry.current else 0.55,
            citations=entry.citations[:MAX_CITATIONS],
        ))
    return findings


def pricing_spread(pricing: list[PricingPoint]) -> list[FindingDraft]:
    prices = [p.price_monthly for p in pricing if isinstance(p.price_monthly, (int, float)) and p.price_monthly > 0]
    if not prices:
        return []
    low, high = min(prices), max(prices)
    if high / low <= 3:
        return []
    avg = sum(prices) / len(prices)
    return [FindingDraft(
        kind=FindingKind.INSIGHT,
        text=f"Pricing analysis: Wide price range detected (${low:.0f} - ${high:.0f}/mo), "
             f"suggesting multiple market segments. Average: ${avg:.0f}/mo.",
        confidence=0.8,
    )]


def integration_ecosystem(integrations: list[Integration]) -> list[FindingDraft]:
    unique = {i.name.lower() for i in integrations}
    if len(unique) <= 20:
        return []
    return [FindingDraft(
        kind=FindingKind.INSIGHT,
        text=f"Integration ecosystem: Found {len(unique)} unique integrations across competitors, "
             f"indicating a mature integration market.",
        confidence=0.75,
    )]


def compliance_landscape(compliance: list[ComplianceItem]) -> list[FindingDraft]:
    if not compliance:
        return []
    frameworks = list(dict.fromkeys(c.framework for c in compliance))
    return [FindingDraft(
        kind=FindingKind.INSIGHT,
        text=f"Compliance landscape: {len(frameworks)} different compliance frameworks mentioned "
             f"({', '.join(frameworks)}), showing industry focus on security and compliance.",
        confidence=0.8,
    )]


def market_landscape(competitors: list[Competitor]) -> list[FindingDraft]:
    if not competitors:
        return []
    n = len(competitors)
    crowding = "indicating a crowded market" if n > 10 else "suggesting moderate competition"
    return [FindingDraft(
        kind=FindingKind.INSIGHT,
        text=f"Market landscape: Identified {n} competitors in this space, {crowding}.",
        confidence=0.7,
    )]


def deterministic_findings(
    facts: RunFacts, profile: ProjectProfile, declared_keys: list[tuple[str, str]],
) -> list[FindingDraft]:
    declared = {key for _, key in declared_keys if key}
    return [
        *common_features(facts),
        *gaps(facts, profile, declared_keys),
        *opportunities(facts, declared),
        *differentiators(facts),
        *pricing_spread(facts.pricing),
        *integration_ecosystem(facts.integrations),
        *compliance_landscape(facts.compliance),
        *market_landscape(facts.competitors),
    ]


# ---------------------------------------------------------------------------
# AI insights
# ---------------------------------------------------------------------------


def _ai_context(facts: RunFacts, profile: ProjectProfile, findings: list[FindingDraft]) -> dict[str, Any]:
    per_competitor_caps: dict[int, int] = defaultdict(int)
    for feat in facts.features:
        if feat.competitor_id is not None:
            per_competitor_caps[feat.competitor_id] += 1
    per_competitor_plans: dict[int, int] = defaultdict(int)
    for point in facts.pricing:
        per_competitor_plans[point.competitor_id] += 1
    return {
        "project": {
            "name": profile.name, "industry": profile.industry,
            "segments": profile.segments, "keywords": profile.keywords,
        },
        "competitors": [
            {"name": c.name, "capabilities": per_competitor_caps[c.id], "plans": per_competitor_plans[c.id]}
            for c in facts.competitors
        ],
        "capabilities": [{"name": c.name, "category": c.category} for c in facts.capabilities],
        "pricing_count": len(facts.pricing),
        "findings": [{"kind": str(f.kind), "text": f.text} for f in findings],
    }


async def synthesize(
    facts: RunFacts,
    profile: ProjectProfile,
    declared_keys: list[tuple[str, str]],
    llm: CompletionProvider | None,
    on_log: Callable[[str], None] | None = None,
) -> SynthesisResult:
    """Deterministic findings, extended with AI risks/recommendations when *llm* is set.

    AI failures are reported through *on_log* and never abort synthesis.
    """
    findings = deterministic_findings(facts, profile, declared_keys)
    result = SynthesisResult(findings=findings)
    if not facts.capabilities and on_log:
        on_log("No capabilities extracted - sources may be sparse or parsing failed.")
    if llm is None:
        return result

    if on_log:
        on_log("Generating AI insights (risks and recommendations)…")
    try:
        insights = await generate_synthetic_insights(llm, _ai_context(facts, profile, findings))
    except Exception as exc:
        log.warning("AI synthesis failed: %s", exc)
        if on_log:
            on_log(f"AI synthesis failed: {exc}")
        return result

    result.executive_summary = insights.executive_summary or None
    for risk in insights.risks:
        findings.append(FindingDraft(FindingKind.RISK, risk.text, clamp(risk.confidence), risk.citations))
    for rec in insights.recommendations:
        findings.append(FindingDraft(FindingKind.RECOMMENDATION, rec.text, clamp(rec.confidence), rec.citations))
    if on_log:
        on_log(f"Generated {len(insights.risks)} risks and {len(insights.recommendations)} recommendations from AI")
    return result
