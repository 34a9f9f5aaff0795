"""Feature-name normalisation shared by extraction, synthesis and the catalog."""
from __future__ import annotations

import re
import unicodedata

_MULTISPACE = re.compile(r"\s+")
_NON_ALPHANUM = re.compile(r"[^a-z0-9+]")


def normalize_feature(raw: str) -> str:
    """Return the lookup key for a feature name.

    NFKD-decomposes, drops combining marks, lowercases, turns everything except
    ``[a-z0-9+]`` into spaces and collapses whitespace.  Idempotent.
    """
    decomposed = unicodedata.normalize("NFKD", raw or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    lowered = _NON_ALPHANUM.sub(" ", stripped.lower())
    return _MULTISPACE.sub(" ", lowered).strip()


def canonical_feature_name(raw: str) -> str:
    """Title-case each token of the normalised form (``"single sign-on"`` -> ``"Single Sign On"``)."""
    norm = normalize_feature(raw)
    if not norm:
        return ""
    return " ".join(part[0].upper() + part[1:] for part in norm.split(" ") if part)


def normalize_price_to_monthly(price: float, cadence: str) -> float:
    return price / 12 if cadence == "annual" else price
