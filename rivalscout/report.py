from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from typing import Any

from rivalscout.models import Capability, Competitor, ComplianceItem, FindingKind, Integration, PricingPoint
from rivalscout.verticals import VerticalProfile

_SECTIONS = [
    (FindingKind.GAP, "Gaps"),
    (FindingKind.DIFFERENTIATOR, "Differentiators"),
    (FindingKind.COMMON_FEATURE, "Market Standards"),
    (FindingKind.INSIGHT, "Insights"),
    (FindingKind.RISK, "Risks"),
    (FindingKind.RECOMMENDATION, "Recommendations"),
]


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:,.2f}".rstrip("0").rstrip(".")
    return str(value).replace("|", "\\|")


def _table(header: list[str], rows: Iterable[list[Any]]) -> list[str]:
    lines = ["| " + " | ".join(header) + " |", "|" + "---|" * len(header)]
    lines += ["| " + " | ".join(_cell(v) for v in row) + " |" for row in rows]
    return lines


def generate_markdown(
    headline: str,
    profile: VerticalProfile,
    competitors: list[Competitor],
    pricing: list[PricingPoint],
    findings: list[Any],
    capabilities: list[Capability],
    compliance: list[ComplianceItem],
    integrations: list[Integration],
    executive_summary: str | None = None,
) -> str:
    """Render the run's report.  *findings* need ``kind``, ``text`` and ``confidence`` attributes."""
    out = [f"# {headline}", "", f"_Vertical: {profile.label}_", ""]

    if executive_summary:
        out += ["## Executive Summary", "", executive_summary.strip(), ""]

    out += ["## Competitors", ""]
    if competitors:
        out += [f"- **{c.name}**" + (f" ({c.website})" if c.website else "") for c in competitors]
    else:
        out.append("No competitors identified.")
    out.append("")

    by_kind: dict[str, list[Any]] = defaultdict(list)
    for finding in findings:
        by_kind[str(finding.kind)].append(finding)
    for kind, title in _SECTIONS:
        items = by_kind.get(str(kind))
        if not items:
            continue
        out += [f"## {title}", ""]
        out += [f"- {f.text} _(confidence {f.confidence:.2f})_" for f in items]
        out.append("")

    if pricing:
        names = {c.id: c.name for c in competitors}
        out += ["## Pricing", ""]
        out += _table(
            ["Competitor", "Plan", "Monthly", "Annual", "Fee %", "Currency"],
            (
                [names.get(p.competitor_id, "?"), p.plan_name, p.price_monthly, p.price_annual,
                 p.transaction_fee, p.currency]
                for p in pricing
            ),
        )
        out.append("")

    if capabilities:
        grouped: dict[str, list[str]] = defaultdict(list)
        for cap in capabilities:
            if cap.name not in grouped[cap.category]:
                grouped[cap.category].append(cap.name)
        out += ["## Capabilities by Category", ""]
        for category in sorted(grouped):
            out.append(f"- **{category}**: {', '.join(grouped[category])}")
        out.append("")

    if compliance:
        frameworks = list(dict.fromkeys(c.framework for c in compliance))
        out += ["## Compliance", "", ", ".join(frameworks), ""]

    if integrations:
        by_category: dict[str, list[str]] = defaultdict(list)
        for integ in integrations:
            bucket = by_category[integ.category or "Other"]
            if integ.name not in bucket:
                bucket.append(integ.name)
        out += ["## Integrations", ""]
        for category in sorted(by_category):
            out.append(f"- **{category}**: {', '.join(by_category[category])}")
        out.append("")

    return "\n".join(out).rstrip() + "\n"
