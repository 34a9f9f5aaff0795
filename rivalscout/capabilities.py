"""Capability canonicalisation and the regex extractors used when AI extraction is unavailable.

The synonym table is built once at import time from ``SYNONYM_GROUPS``.  When two
groups claim the same normalised variant, the group listed first keeps it.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from rivalscout.normalize import canonical_feature_name, normalize_feature
from rivalscout.utils import uniq


@dataclass(frozen=True)
class CapabilityHit:
    category: str
    name: str
    normalized: str
    mention: str


@dataclass(frozen=True)
class CanonicalCapability:
    normalized: str
    display: str


# ---------------------------------------------------------------------------
# Synonym groups
# ---------------------------------------------------------------------------

SYNONYM_GROUPS: list[tuple[str, list[str]]] = [
    ("Single Sign On", ["Single Sign On", "Single Sign-On", "SSO", "Enterprise SSO", "SSO Support"]),
    ("Multi Factor Authentication", [
        "Multi Factor Authentication", "Multi-Factor Authentication", "MFA",
        "Two Factor Authentication", "Two-Factor Authentication", "2FA",
        "Two Step Verification", "Two-Step Verification",
    ]),
    ("Role Based Access Control", [
        "Role Based Access Control", "Role-Based Access Control", "RBAC",
        "Role Management", "Role & Permission Management",
    ]),
    ("Audit Logs", ["Audit Logs", "Audit Log", "Audit Trails", "Audit Trail", "Activity Logs", "Security Logs"]),
    ("User Provisioning", ["User Provisioning", "Automated Provisioning", "Directory Sync", "SCIM", "SCIM Provisioning"]),
    ("API Access", [
        "API", "APIs", "REST API", "RESTful API", "GraphQL API", "GraphQL", "Public API",
        "Open API", "OpenAPI", "Developer API", "API Access",
    ]),
    ("Workflow Automation", [
        "Workflow Automation", "Workflow Automations", "Workflows", "Automation",
        "Automations", "Automation Builder", "Automated Workflows",
    ]),
    ("Reporting & Analytics", [
        "Reporting", "Analytics", "Analytics Dashboard", "Reporting Dashboard", "Insights",
        "Analytics & Reporting", "Reporting & Analytics", "Data Visualization",
    ]),
    ("Integration Marketplace", [
        "Integration Marketplace", "App Marketplace", "Marketplace",
        "Integration Directory", "Partner Integrations",
    ]),
    ("User Management", ["User Management", "User Administration", "User Admin", "User Manager"]),
    ("Team Management", ["Team Management", "Team Permissions", "Team Roles", "Team Administration"]),
    ("Access Controls", [
        "Access Controls", "Access Control", "Permission Management",
        "Permissions Management", "Permissions",
    ]),
]

SINGULAR_EXCEPTIONS = {"analytics", "news", "access"}
STOP_WORDS = {"and", "or", "the", "a", "an", "&", "with", "for"}

_PLURAL_ES = re.compile(r"(xes|ses|ches|shes)$")


def singularize(token: str) -> str:
    if len(token) <= 3 or token in SINGULAR_EXCEPTIONS:
        return token
    if token.endswith("ies"):
        return token[:-3] + "y"
    if _PLURAL_ES.search(token):
        return token[:-2]
    if token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def normalize_capability_term(term: str) -> str:
    base = normalize_feature(term)
    if not base:
        return ""
    tokens = [singularize(t) for t in base.split(" ") if t and t not in STOP_WORDS]
    return " ".join(tokens)


def _build_synonym_map() -> dict[str, CanonicalCapability]:
    mapping: dict[str, CanonicalCapability] = {}
    for display, variants in SYNONYM_GROUPS:
        normalized = normalize_capability_term(display)
        if not normalized:
            continue
        canonical = CanonicalCapability(normalized=normalized, display=display)
        mapping.setdefault(normalized, canonical)
        for variant in variants:
            variant_norm = normalize_capability_term(variant)
            if variant_norm:
                mapping.setdefault(variant_norm, canonical)
    return mapping


CAPABILITY_SYNONYMS: dict[str, CanonicalCapability] = _build_synonym_map()


def canonicalize_capability(norm: str, mention: str) -> CanonicalCapability:
    """Map a normalised capability term to its canonical (normalized, display) pair."""
    mapped = CAPABILITY_SYNONYMS.get(norm)
    if mapped:
        return mapped
    if not norm:
        return CanonicalCapability(normalized=norm, display=mention)
    # Short all-caps mentions are acronyms: keep them verbatim.
    if " " not in norm and mention and len(mention) <= 6 and mention == mention.upper():
        return CanonicalCapability(normalized=norm, display=mention)
    return CanonicalCapability(normalized=norm, display=canonical_feature_name(norm) or mention)


# ---------------------------------------------------------------------------
# Regex extraction
# ---------------------------------------------------------------------------

CATEGORY_PATTERNS: list[tuple[str, list[re.Pattern[str]]]] = [
    ("Integrations", [
        re.compile(r"integrat(e|ion|ions) with ([A-Z][\w \-+.]{2,40})", re.IGNORECASE),
        re.compile(r"\b(Shopify|Salesforce|HubSpot|Zapier|Stripe|Segment|Snowflake|Slack|Google Analytics)\b", re.IGNORECASE),
    ]),
    ("Security", [
        re.compile(
            r"\b(SSO|SAML|SCIM|RBAC|encryption at rest|encryption in transit|audit logs?|MFA|2FA"
            r"|two[- ]factor authentication|multi[- ]factor authentication|single sign[- ]on)\b",
            re.IGNORECASE,
        ),
    ]),
    ("Compliance", [re.compile(r"\b(SOC\s*2|HIPAA|GDPR|PCI[-\s]?DSS|ISO\s*27001|BAA)\b", re.IGNORECASE)]),
    ("API", [re.compile(r"\b(OpenAPI|Swagger|REST|GraphQL|webhooks?|SDKs?)\b", re.IGNORECASE)]),
    ("Performance", [re.compile(r"\b(latency|throughput|SLA|RPS|QPS|cold start)\b|\b(99\.9+%)", re.IGNORECASE)]),
    ("Automation", [re.compile(r"\b(workflows?|automations?|triggers?|rules engine|playbooks?)\b", re.IGNORECASE)]),
    ("Analytics", [re.compile(r"\b(dashboards?|reporting|attribution|cohort|funnel)\b", re.IGNORECASE)]),
    ("Permissions", [re.compile(r"\b(RBAC|ABAC|roles?|permissions?|orgs?|teams?)\b", re.IGNORECASE)]),
    ("Growth", [re.compile(r"\b(referral|invite|waitlist|viral|A/B|experiments?)\b", re.IGNORECASE)]),
]

CAPABILITY_CATEGORIES = [category for category, _ in CATEGORY_PATTERNS] + ["Other"]


def _mention(match: re.Match[str]) -> str:
    groups = [g for g in match.groups()[:2] if g is not None]
    return (groups[-1] if groups else match.group(0)).strip()


def extract_capabilities(text: str) -> list[CapabilityHit]:
    """Pattern-match capability mentions, canonicalise them, dedup on (category, normalized)."""
    hits: list[CapabilityHit] = []
    seen: set[tuple[str, str]] = set()
    for category, patterns in CATEGORY_PATTERNS:
        for pattern in patterns:
            for match in pattern.finditer(text or ""):
                mention = _mention(match)
                norm = normalize_capability_term(mention)
                if len(norm) < 2:
                    continue
                canonical = canonicalize_capability(norm, mention)
                key = (category, canonical.normalized)
                if key in seen:
                    continue
                seen.add(key)
                hits.append(CapabilityHit(
                    category=category, name=canonical.display,
                    normalized=canonical.normalized, mention=mention,
                ))
    return hits


VENDOR_RE = re.compile(
    r"(Shopify|Salesforce|HubSpot|Zapier|Stripe|Segment|Snowflake|Slack|Google Analytics|Datadog"
    r"|Amplitude|Notion|Zendesk|PayPal|Adyen|Paddle|Klaviyo|Marketo|Intercom)",
    re.IGNORECASE,
)
COMPLIANCE_RE = re.compile(r"\b(SOC\s*2|HIPAA|GDPR|PCI[-\s]?DSS|ISO\s*27001|BAA)\b", re.IGNORECASE)

_INTEGRATION_CATEGORIES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"shopify|woocommerce|magento"), "Ecommerce"),
    (re.compile(r"salesforce|hubspot|pipedrive|zoho"), "CRM"),
    (re.compile(r"segment|snowflake|amplitude|google analytics|datadog"), "Data/Analytics"),
    (re.compile(r"stripe|paypal|adyen|paddle"), "Payments"),
    (re.compile(r"slack|notion"), "Productivity"),
]


def infer_integration_category(vendor: str) -> str | None:
    lowered = vendor.lower()
    for pattern, category in _INTEGRATION_CATEGORIES:
        if pattern.search(lowered):
            return category
    return None


def extract_integrations(text: str) -> list[str]:
    """Vendor names mentioned in *text*, first spelling wins per vendor."""
    by_key: dict[str, str] = {}
    for match in VENDOR_RE.finditer(text or ""):
        by_key.setdefault(match.group(1).lower(), match.group(1))
    return list(by_key.values())


def extract_compliance(text: str) -> list[str]:
    """Compliance frameworks mentioned in *text*, upper-cased with single spaces."""
    return uniq(
        re.sub(r"\s+", " ", match.group(1).upper())
        for match in COMPLIANCE_RE.finditer(text or "")
    )


_SENTENCE_SPLIT = re.compile(r"[.!?]\s+")


def extract_feature_description(text: str, term: str) -> str | None:
    """First sentence of *text* that mentions *term*, capped at 240 characters."""
    lowered = term.lower()
    for sentence in _SENTENCE_SPLIT.split(text or ""):
        if lowered in sentence.lower():
            return sentence.strip()[:240]
    return None
