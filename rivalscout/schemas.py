"""Pydantic request/response schemas for the RivalScout API."""
from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

_TAG_RE = re.compile(r"<[^>]*>")
_SCRIPT_RES = [
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.I),
    re.compile(r"javascript:", re.I),
    re.compile(r"on\w+\s*=", re.I),
    re.compile(r"data:text/html", re.I),
    re.compile(r"vbscript:", re.I),
]
_ENTITIES = {"&lt;": "<", "&gt;": ">", "&amp;": "&", "&quot;": '"', "&#x27;": "'", "&#x2F;": "/"}
_LEFTOVER_ENTITY_RE = re.compile(r"&#?[a-zA-Z0-9]+;")


def sanitize_text(value: str | None) -> str:
    """Strip markup and script-like fragments, decode the common entities, drop the rest."""
    if not isinstance(value, str):
        return ""
    text = _TAG_RE.sub("", value.strip())
    for pattern in _SCRIPT_RES:
        text = pattern.sub("", text)
    for entity, char in _ENTITIES.items():
        text = text.replace(entity, char)
    text = _LEFTOVER_ENTITY_RE.sub("", text)
    return text.strip()


class ProjectCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=255)
    user_id: int | None = None
    description: str = Field(default="", max_length=5000)
    category: str = Field(default="", max_length=255)
    industry: str = Field(default="", max_length=255)
    sub_industry: str = Field(default="", max_length=255)
    target_segments: list[str] = []
    regions: list[str] = []
    keywords: list[str] = []
    competitors: list[str] = []
    platforms: list[str] = []
    features: list[str] = []
    problem: str = Field(default="", max_length=5000)
    solution: str = Field(default="", max_length=5000)
    notes: str = Field(default="", max_length=5000)

    @field_validator("name", "description", "category", "industry", "sub_industry", "problem", "solution", "notes",
                     mode="before")
    @classmethod
    def clean_text(cls, v):
        return sanitize_text(v) if v is not None else ""

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v:
            raise ValueError("Project name is required")
        return v

    @field_validator("target_segments", "regions", "keywords", "competitors", "platforms", "features")
    @classmethod
    def clean_list(cls, v: list[str]) -> list[str]:
        if any(len(item) > 255 for item in v):
            raise ValueError("list entries must be 255 characters or less")
        return [s for s in (sanitize_text(item) for item in v) if s]


class ProjectOut(BaseModel):
    id: int
    user_id: int | None = None
    name: str
    category: str = ""
    industry: str = ""
    sub_industry: str = ""
    description: str = ""
    keywords: list[str] = []
    competitors: list[str] = []
    target_segments: list[str] = []
    regions: list[str] = []
    features: list[str] = []


class RunOut(BaseModel):
    id: int
    project_id: int
    status: str
    last_note: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


class FindingOut(BaseModel):
    id: int
    kind: str
    text: str
    confidence: float
    citations: list[int | str] = []


class ReportOut(BaseModel):
    id: int
    run_id: int
    headline: str
    format: str
    md_content: str


class MonitoringRequest(BaseModel):
    user_id: int


class TaskOut(BaseModel):
    id: str
    type: str
    project_id: int | None = None
    user_id: int | None = None
    scheduled_for: str


class CreditUsageOut(BaseModel):
    limit: int
    used: int
    remaining: int


class SettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    search_provider: str | None = None
    tavily_api_key: str | None = None
    staleness_days: int | None = None
    ai_provider: str | None = None
    anthropic_api_key: str | None = None
    anthropic_model: str | None = None
    openai_api_key: str | None = None
    openai_model: str | None = None
    openai_base_url: str | None = None
