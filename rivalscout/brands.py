"""Brand-name inference from page titles and domains, and the competitor plausibility filter."""
from __future__ import annotations

import re
from urllib.parse import urlsplit, urlunsplit

_TITLE_SUFFIX = re.compile(r"\s*[-–|·].*$")
_MARKETING_SUFFIX = re.compile(
    r"\b(pricing|plan|plans|features|feature|reviews?|case study|overview|comparison|guide)\b$",
    re.IGNORECASE,
)
_VERSUS_SUFFIX = re.compile(r"\b(vs|versus)\b$", re.IGNORECASE)

SKIP_DOMAIN_LABELS = {"www", "blog", "news", "learn", "info", "docs", "support", "help"}
TWO_PART_TLDS = {"co.uk", "com.au", "com.br", "com.mx"}

AGGREGATOR_DOMAINS = {
    "medium.com", "substack.com", "youtube.com", "x.com", "twitter.com", "linkedin.com",
    "facebook.com", "news.ycombinator.com", "reddit.com", "github.com", "dev.to",
    "hashnode.dev", "producthunt.com", "stackshare.io", "g2.com", "g2crowd.com",
    "capterra.com", "getapp.com", "wordpress.com", "blogspot.com", "notion.site",
}

COMPETITOR_NAME_STOPWORDS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\btop\s*\d+", r"\bbest\b", r"\balternatives?\b", r"\bcomparison\b", r"\bcompare\b",
        r"\bvs\b", r"\bversus\b", r"\bguide\b", r"\boverview\b", r"\btutorial\b",
        r"\broundup\b", r"\bchecklist\b", r"\btrends?\b", r"\bnews\b", r"\breviews?\b",
        r"\bcase study\b", r"\bhow to\b", r"\bwhat is\b",
    )
]
_LISTICLE_TITLE = re.compile(
    r"\b(top\s*\d+|best|alternatives?|roundup|guide|tutorial|overview|list|blog|checklist|trends?|news|comparison)\b"
)
_PRICING_PAGE = re.compile(r"\b(pricing|plans?|fees?)\b", re.IGNORECASE)


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------


def normalize_url(url: str | None) -> str:
    """Fragment-stripped absolute URL, or ``""`` when *url* is not a usable http(s) URL."""
    if not url or not isinstance(url, str):
        return ""
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return ""
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return ""
    path = parts.path or "/"
    return urlunsplit((parts.scheme, parts.netloc.lower(), path, parts.query, ""))


def get_domain(url: str | None) -> str | None:
    if not url:
        return None
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return None
    return host.removeprefix("www.") or None


def short_url(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    return f"{parts.hostname or ''}{parts.path}" if parts.hostname else url


def looks_like_pricing_page(title: str | None, text: str | None) -> bool:
    return bool(_PRICING_PAGE.search(f"{title or ''} {(text or '')[:3000]}"))


# ---------------------------------------------------------------------------
# Brand inference
# ---------------------------------------------------------------------------


def sanitize_brand_candidate(candidate: str) -> str:
    result = candidate.strip()
    if not result:
        return ""
    result = _MARKETING_SUFFIX.sub("", result).strip()
    return _VERSUS_SUFFIX.sub("", result).strip()


def brand_from_domain(domain: str) -> str | None:
    trimmed = re.sub(r"^https?://", "", domain).removeprefix("www.").lower()
    parts = [p for p in trimmed.split(".") if p]
    if not parts:
        return None
    limit = len(parts) - 2 if ".".join(parts[-2:]) in TWO_PART_TLDS else len(parts) - 1

    candidate = None
    for label in parts[:limit]:
        if label and label not in SKIP_DOMAIN_LABELS:
            candidate = label
    if not candidate:
        candidate = parts[limit - 1] if limit >= 1 else parts[0]
    if len(candidate) < 2:
        return None
    return candidate[0].upper() + candidate[1:]


def guess_brand_name(title: str | None, domain: str | None) -> str | None:
    """Brand from the page title (before any `` - ``/``|`` suffix), else from the domain."""
    if title:
        sanitized = sanitize_brand_candidate(_TITLE_SUFFIX.sub("", title).strip())
        if sanitized and len(sanitized) <= 50:
            return sanitized
    if domain:
        return brand_from_domain(domain)
    return None


def is_aggregator_domain(domain: str | None) -> bool:
    host = (domain or "").lower().removeprefix("www.")
    return any(host == agg or host.endswith(f".{agg}") for agg in AGGREGATOR_DOMAINS)


def is_likely_competitor_name(name: str, title: str | None = None, domain: str | None = None) -> bool:
    """Reject listicles, comparison pages and aggregator hosts as competitor identities."""
    candidate = (name or "").strip()
    if len(candidate) < 3 or len(candidate.split()) > 6:
        return False
    lowered = candidate.lower()
    if any(p.search(lowered) for p in COMPETITOR_NAME_STOPWORDS):
        return False
    if title and _LISTICLE_TITLE.search(title.lower()):
        if not re.search(r"\bpricing\b", lowered) and not re.search(r"\bplatform\b", lowered):
            return False
    return not is_aggregator_domain(domain)
