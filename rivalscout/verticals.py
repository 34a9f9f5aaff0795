"""Industry vertical profiles used to steer capability standardisation and the report headline."""
from __future__ import annotations

import re
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Emphasis:
    capabilities: list[str]
    must_have: list[str] = field(default_factory=list)
    compliance: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class VerticalProfile:
    key: str
    emphasize: Emphasis

    @property
    def label(self) -> str:
        return self.key.replace("_", " ")


PROFILES: dict[str, VerticalProfile] = {
    "FINTECH": VerticalProfile("FINTECH", Emphasis(
        capabilities=["Security", "Compliance", "Integrations", "API"],
        must_have=["Fraud Detection", "Multi Factor Authentication", "Audit Logs", "Payouts"],
        compliance=["PCI-DSS", "SOC 2", "GDPR"],
    )),
    "HEALTHTECH": VerticalProfile("HEALTHTECH", Emphasis(
        capabilities=["Compliance", "Security", "Integrations", "Permissions"],
        must_have=["Patient Records", "Role Based Access Control", "Audit Logs"],
        compliance=["HIPAA", "BAA", "SOC 2", "GDPR"],
    )),
    "DEVTOOLS": VerticalProfile("DEVTOOLS", Emphasis(
        capabilities=["API", "Performance", "Integrations", "Automation"],
        must_have=["API Access", "Webhooks", "SDK", "Single Sign On"],
        compliance=["SOC 2"],
    )),
    "ECOMMERCE": VerticalProfile("ECOMMERCE", Emphasis(
        capabilities=["Integrations", "Analytics", "Growth", "Automation"],
        must_have=["Checkout", "Inventory Management", "Reporting & Analytics"],
        compliance=["PCI-DSS", "GDPR"],
    )),
    "MARTECH": VerticalProfile("MARTECH", Emphasis(
        capabilities=["Analytics", "Automation", "Growth", "Integrations"],
        must_have=["Attribution", "Workflow Automation", "A/B Testing"],
        compliance=["GDPR"],
    )),
    "GENERAL_SAAS": VerticalProfile("GENERAL_SAAS", Emphasis(
        capabilities=["Security", "Integrations", "Analytics", "Permissions", "API"],
        must_have=["Single Sign On", "Role Based Access Control", "API Access"],
        compliance=["SOC 2", "GDPR"],
    )),
}

# Checked in order; first match wins.
_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(fin ?tech|payments?|banking|lending|insur\w*|crypto|wallet|invoic\w*|accounting)\b"), "FINTECH"),
    (re.compile(r"\b(health\w*|medical|clinic\w*|patients?|pharma\w*|telehealth|care)\b"), "HEALTHTECH"),
    (re.compile(r"\b(dev ?tools?|developer\w*|devops|api|sdk|observability|ci/cd|infrastructure|cloud)\b"), "DEVTOOLS"),
    (re.compile(r"\b(e-?commerce|retail|shop\w*|store|marketplace|dtc|d2c)\b"), "ECOMMERCE"),
    (re.compile(r"\b(mar ?tech|marketing|advertising|ads|seo|crm|email marketing|growth)\b"), "MARTECH"),
]


def infer_vertical(industry: str | None = None, sub_industry: str | None = None) -> VerticalProfile:
    text = f"{industry or ''} {sub_industry or ''}".lower().strip()
    if text:
        for pattern, key in _RULES:
            if pattern.search(text):
                return PROFILES[key]
    return PROFILES["GENERAL_SAAS"]
