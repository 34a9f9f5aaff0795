"""AI-assisted extraction, capability standardisation and strategic synthesis.

Every function here takes a ``CompletionProvider`` and validates whatever JSON
comes back: missing or mistyped fields degrade to empty values rather than
raising.  Provider failures propagate to the caller, which decides the fallback
(``keep_all_capabilities`` for a failed standardisation pass).
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from rivalscout.capabilities import CAPABILITY_CATEGORIES
from rivalscout.llm import CompletionProvider, LLMCallError
from rivalscout.utils import clamp
from rivalscout.verticals import VerticalProfile

log = logging.getLogger(__name__)

MAX_CONTENT = 200_000
DEFAULT_AI_CONFIDENCE = 0.85


@dataclass
class ExtractedCapability:
    name: str
    description: str = ""
    category: str = "Other"


@dataclass
class NormalizedCapability:
    normalized_name: str
    category: str
    source_name: str
    description: str
    keep: bool = True


@dataclass
class ExtractedPlan:
    plan_name: str
    price_monthly: float | None = None
    price_annual: float | None = None
    transaction_fee: float | None = None
    currency: str = "USD"


@dataclass
class ExtractedCompliance:
    framework: str
    status: str | None = None
    notes: str | None = None


@dataclass
class ExtractedIntegration:
    name: str
    vendor: str | None = None
    category: str | None = None
    url: str | None = None


@dataclass
class ExtractedCompetitorData:
    capabilities: list[ExtractedCapability] = field(default_factory=list)
    pricing_plans: list[ExtractedPlan] = field(default_factory=list)
    compliance_items: list[ExtractedCompliance] = field(default_factory=list)
    integrations: list[ExtractedIntegration] = field(default_factory=list)
    summary: str = ""


@dataclass
class AIFinding:
    text: str
    citations: list[str] = field(default_factory=list)
    confidence: float = DEFAULT_AI_CONFIDENCE


@dataclass
class SyntheticInsights:
    executive_summary: str = ""
    risks: list[AIFinding] = field(default_factory=list)
    recommendations: list[AIFinding] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Response validation helpers
# ---------------------------------------------------------------------------


def _as_dict(response: Any) -> dict:
    if isinstance(response, str):
        try:
            response = json.loads(response)
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {response[:200]}") from exc
    if not isinstance(response, dict):
        raise LLMCallError(f"LLM returned {type(response).__name__}, expected a JSON object")
    return response


def _list(data: dict, key: str) -> list[dict]:
    value = data.get(key)
    return [v for v in value if isinstance(v, dict)] if isinstance(value, list) else []


def _str(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


def _num(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

EXTRACTION_SCHEMA = """{
  "capabilities": [{"name": "string", "description": "string", "category": "string"}],
  "pricingPlans": [{"planName": "string", "priceMonthly": number|null, "priceAnnual": number|null, "transactionFee": number|null, "currency": "string"}],
  "complianceItems": [{"framework": "string", "status": "string|null", "notes": "string|null"}],
  "integrations": [{"name": "string", "vendor": "string|null", "category": "string|null", "url": "string|null"}],
  "summary": "2-3 sentence summary of the page"
}"""


async def extract_structured_data(
    llm: CompletionProvider,
    competitor_name: str,
    content: str,
    industry: str | None = None,
    keywords: list[str] | None = None,
) -> ExtractedCompetitorData | None:
    """Ask the model for capabilities, pricing, compliance and integrations on one page.

    Returns ``None`` for empty pages.  Raises ``LLMCallError`` when the call fails.
    """
    if not content or not content.strip():
        log.warning("Skipping AI extraction for %s: page content is empty", competitor_name)
        return None

    body = content if len(content) <= MAX_CONTENT else content[:MAX_CONTENT] + "\n\n[Content truncated...]"
    system = (
        "You are an expert competitive intelligence analyst. Extract structured data about "
        f"{competitor_name} from the provided web page content. Return ONLY valid JSON matching "
        "the exact schema provided. Do not include any explanatory text outside the JSON."
    )
    context = [f"Competitor: {competitor_name}"]
    if industry:
        context.append(f"Industry: {industry}")
    if keywords:
        context.append(f"Keywords: {', '.join(keywords)}")
    user = (
        "\n".join(context)
        + f"\n\nWeb Page Content:\n---\n{body}\n---\n\n"
        + "Extract all capabilities, pricing plans, compliance certifications, and integrations "
        + f"mentioned for {competitor_name}. Return the data as a JSON object with this exact structure:\n"
        + EXTRACTION_SCHEMA
    )

    data = _as_dict(await llm.complete(system, user, json_mode=True, temperature=0.1))

    result = ExtractedCompetitorData(summary=_str(data.get("summary")) or "")
    for cap in _list(data, "capabilities"):
        name = _str(cap.get("name"))
        if name:
            result.capabilities.append(ExtractedCapability(
                name=name,
                description=_str(cap.get("description")) or "",
                category=_str(cap.get("category")) or "Other",
            ))
    for plan in _list(data, "pricingPlans"):
        plan_name = _str(plan.get("planName"))
        if plan_name:
            result.pricing_plans.append(ExtractedPlan(
                plan_name=plan_name,
                price_monthly=_num(plan.get("priceMonthly")),
                price_annual=_num(plan.get("priceAnnual")),
                transaction_fee=_num(plan.get("transactionFee")),
                currency=_str(plan.get("currency")) or "USD",
            ))
    for item in _list(data, "complianceItems"):
        framework = _str(item.get("framework"))
        if framework:
            result.compliance_items.append(ExtractedCompliance(
                framework=framework, status=_str(item.get("status")), notes=_str(item.get("notes")),
            ))
    for integ in _list(data, "integrations"):
        name = _str(integ.get("name"))
        if name:
            result.integrations.append(ExtractedIntegration(
                name=name,
                vendor=_str(integ.get("vendor")),
                category=_str(integ.get("category")),
                url=_str(integ.get("url")),
            ))

    log.info(
        "Extracted %d capabilities, %d pricing plans, %d compliance items for %s",
        len(result.capabilities), len(result.pricing_plans), len(result.compliance_items), competitor_name,
    )
    return result


# ---------------------------------------------------------------------------
# Standardisation
# ---------------------------------------------------------------------------


def keep_all_capabilities(capabilities: list[ExtractedCapability]) -> list[NormalizedCapability]:
    return [
        NormalizedCapability(
            normalized_name=c.name, category=c.category, source_name=c.name,
            description=c.description, keep=True,
        )
        for c in capabilities
    ]


async def standardize_and_filter_capabilities(
    llm: CompletionProvider | None,
    capabilities: list[ExtractedCapability],
    vertical: VerticalProfile,
) -> list[NormalizedCapability]:
    """Map capabilities to canonical names and standard categories; drop the irrelevant ones.

    With no provider, or an unexpected response shape, every capability is kept as-is.
    Errors raised by the provider propagate.
    """
    if not capabilities:
        return []
    if llm is None:
        return keep_all_capabilities(capabilities)

    emphasis = vertical.emphasize
    context = [
        f"Project Vertical: {vertical.key}.",
        f"Target Categories: {', '.join(emphasis.capabilities)}.",
    ]
    if emphasis.must_have:
        context.append(f"Must-Haves: {', '.join(emphasis.must_have)}.")
    if emphasis.compliance:
        context.append(f"Compliance Focus: {', '.join(emphasis.compliance)}.")
    context.append("Filter out any capabilities NOT relevant to this context.")

    system = (
        "You are a feature standardization engine. For each capability provided:\n\n"
        "1. Map its name to a concise, canonical, and normalized English term (e.g., 'RBAC' -> "
        "'Role-Based Access Control', 'SSO' -> 'Single Sign-On', 'MFA' -> 'Multi-Factor Authentication').\n"
        f"2. Re-categorize the capability into one of the standard categories: {', '.join(CAPABILITY_CATEGORIES)}.\n"
        "3. Review the capability against the provided Vertical Profile context.\n"
        "4. Set 'keep' to true ONLY if the capability is relevant to the vertical's target categories, "
        "is a core SaaS feature (security, integrations, analytics, etc.), or matches a must-have item. "
        "Otherwise set 'keep' to false.\n\n"
        'You MUST return a JSON object with a "capabilities" array conforming to the exact schema.'
    )
    payload = [{"name": c.name, "description": c.description, "category": c.category} for c in capabilities]
    user = (
        f"Vertical Context: {' '.join(context)}\n\n---\n\nCapabilities to Standardize and Filter:\n\n"
        f"{json.dumps(payload, indent=2)}\n\n"
        'Return a JSON object with this structure:\n{"capabilities": [{"normalizedName": "string", '
        '"category": "string", "sourceName": "string", "description": "string", "keep": boolean}]}'
    )

    response = await llm.complete(system, user, json_mode=True, temperature=0.2)
    if isinstance(response, list):
        items = [r for r in response if isinstance(r, dict)]
    else:
        data = _as_dict(response)
        items = _list(data, "capabilities") or _list(data, "result")
        if not items and not isinstance(data.get("capabilities"), list):
            log.warning("Unexpected standardization response shape; keeping all capabilities")
            return keep_all_capabilities(capabilities)

    valid: list[NormalizedCapability] = []
    for item in items:
        if not (
            isinstance(item.get("normalizedName"), str)
            and isinstance(item.get("category"), str)
            and isinstance(item.get("sourceName"), str)
            and isinstance(item.get("description"), str)
            and isinstance(item.get("keep"), bool)
        ):
            continue
        if item["keep"] and item["normalizedName"].strip():
            valid.append(NormalizedCapability(
                normalized_name=item["normalizedName"].strip(),
                category=item["category"].strip() or "Other",
                source_name=item["sourceName"],
                description=item["description"],
                keep=True,
            ))
    log.info(
        "Standardized %d capabilities to %d relevant capabilities for vertical %s",
        len(capabilities), len(valid), vertical.key,
    )
    return valid


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


def _ai_findings(data: dict, key: str) -> list[AIFinding]:
    out = []
    for item in _list(data, key):
        text = _str(item.get("text"))
        if not text:
            continue
        citations = item.get("citations")
        confidence = _num(item.get("confidence"))
        out.append(AIFinding(
            text=text,
            citations=[str(c) for c in citations] if isinstance(citations, list) else [],
            confidence=clamp(confidence) if confidence is not None else DEFAULT_AI_CONFIDENCE,
        ))
    return out


async def generate_synthetic_insights(llm: CompletionProvider, context: dict[str, Any]) -> SyntheticInsights:
    """Executive summary plus 3-5 risks and 3-5 recommendations, grounded in the computed findings.

    *context* keys: ``project`` (name/industry/segments/keywords), ``competitors``
    (name, capability and plan counts), ``capabilities`` and ``findings``.
    """
    project = context.get("project", {})
    competitors = context.get("competitors", [])
    capabilities = context.get("capabilities", [])
    findings = context.get("findings", [])

    lines = [
        f"Project: {project.get('name', '')}",
        f"Industry: {project.get('industry') or 'Unknown'}",
        f"Target Segments: {', '.join(project.get('segments', []))}",
    ]
    if project.get("keywords"):
        lines.append(f"Focus Keywords: {', '.join(project['keywords'])}")
    lines += [
        "",
        "Competitive Data:",
        f"- {len(competitors)} competitors analyzed",
        f"- {len(capabilities)} capabilities identified",
        f"- {context.get('pricing_count', 0)} pricing plans found",
    ]
    if competitors:
        lines += ["", "Competitors:"] + [
            f"- {c['name']}: {c.get('capabilities', 0)} capabilities, {c.get('plans', 0)} pricing plans"
            for c in competitors
        ]
    if capabilities:
        lines += ["", "Key Capabilities:"] + [f"- {c['category']}: {c['name']}" for c in capabilities[:20]]
    if findings:
        lines += ["", "Existing Findings:"] + [f"- [{f['kind']}] {f['text']}" for f in findings[:10]]
    lines += [
        "",
        "Generate:",
        "1. A 3-paragraph Executive Summary analyzing the competitive landscape",
        "2. 3-5 strategic RISKs (threats or challenges based on competitor strengths)",
        "3. 3-5 actionable RECOMMENDATIONs (what the project should do based on market gaps)",
        "",
        'Return as JSON:\n{"executiveSummary": "string", '
        '"risks": [{"text": "string", "citations": ["capability name or finding reference"], "confidence": 0.0-1.0}], '
        '"recommendations": [{"text": "string", "citations": ["..."], "confidence": 0.0-1.0}]}',
    ]
    system = (
        "You are a Chief Competitive Strategist. Analyze the provided competitive intelligence data and "
        "generate strategic insights in the form of Risks and Recommendations. Be specific, actionable, "
        "and cite data points to support your insights."
    )

    data = _as_dict(await llm.complete(system, "\n".join(lines), json_mode=True, temperature=0.7))
    insights = SyntheticInsights(
        executive_summary=_str(data.get("executiveSummary")) or "",
        risks=_ai_findings(data, "risks"),
        recommendations=_ai_findings(data, "recommendations"),
    )
    log.info("Generated %d risks and %d recommendations", len(insights.risks), len(insights.recommendations))
    return insights
