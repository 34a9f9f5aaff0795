"""Search query construction and relevance tokens derived from a project profile."""
from __future__ import annotations

import re
from dataclasses import dataclass, field

from rivalscout.models import Project
from rivalscout.utils import uniq

MAX_QUERIES = 12

_NAME_SPLIT = re.compile(r"[\s/\-|]+")
_DESCRIPTION_SPLIT = re.compile(r"[\s,;.\-/]+")


@dataclass
class ProjectProfile:
    """Read-only view of the project inputs the pipeline consumes."""
    name: str
    category: str = ""
    industry: str = ""
    sub_industry: str = ""
    description: str = ""
    keywords: list[str] = field(default_factory=list)
    competitors: list[str] = field(default_factory=list)
    features: list[str] = field(default_factory=list)
    segments: list[str] = field(default_factory=list)
    regions: list[str] = field(default_factory=list)


def profile_from_project(project: Project, declared_features: list[str]) -> ProjectProfile:
    """Build the profile, folding problem/solution/platform/segment text into the description."""
    pieces = [project.description, project.problem, project.solution, project.notes]
    if project.platforms:
        pieces.append(f"Platforms: {', '.join(project.platforms)}")
    if project.target_segments:
        pieces.append(f"Segments: {', '.join(project.target_segments)}")
    if declared_features:
        pieces.append(f"Core features: {', '.join(declared_features)}")
    return ProjectProfile(
        name=project.name,
        category=project.category or "",
        industry=project.industry or "",
        sub_industry=project.sub_industry or "",
        description=" ".join(p for p in pieces if p),
        keywords=[k for k in (project.keywords or []) if isinstance(k, str) and k.strip()],
        competitors=[c.strip() for c in (project.competitors or []) if isinstance(c, str) and c.strip()],
        features=list(declared_features),
        segments=list(project.target_segments or []),
        regions=list(project.regions or []),
    )


def _split(value: str, pattern: re.Pattern[str], min_len: int) -> list[str]:
    return [t for t in (p.strip().lower() for p in pattern.split(value or "")) if len(t) > min_len]


def relevance_tokens(profile: ProjectProfile) -> set[str]:
    """Lowercase token bag used to score search results against the project."""
    tokens: list[str] = []
    tokens += _split(profile.name, _NAME_SPLIT, 2)
    tokens += _split(profile.category, _NAME_SPLIT, 2)
    for keyword in profile.keywords:
        tokens += _split(keyword, _NAME_SPLIT, 2)
    tokens += _split(profile.description, _DESCRIPTION_SPLIT, 3)
    for competitor in profile.competitors:
        tokens += _split(competitor, _NAME_SPLIT, 2)
    tokens += [f.lower() for f in profile.features if f and len(f) > 2]
    tokens += [s.lower() for s in profile.segments if s]
    return {t for t in tokens if t}


def build_queries(profile: ProjectProfile) -> list[str]:
    """Bounded template expansion over the profile; at most ``MAX_QUERIES`` unique queries."""
    subject = profile.category or profile.industry or profile.name
    queries: list[str] = []

    for competitor in profile.competitors[:4]:
        queries.append(f"{competitor} pricing")
        queries.append(f"{competitor} features")
    queries.append(f"{subject} software pricing")
    queries.append(f"best {subject} tools")
    queries.append(f"{subject} alternatives")
    for keyword in profile.keywords[:3]:
        queries.append(f"{keyword} {subject}")
    for feature in profile.features[:2]:
        queries.append(f"{subject} {feature}")
    for segment in profile.segments[:2]:
        queries.append(f"{subject} for {segment}")
    if profile.regions:
        queries.append(f"{subject} {profile.regions[0]}")
    if profile.name and profile.name.lower() != subject.lower():
        queries.append(f"{profile.name} competitors")

    cleaned = (re.sub(r"\s+", " ", q).strip() for q in queries)
    return uniq(q for q in cleaned if q)[:MAX_QUERIES]
