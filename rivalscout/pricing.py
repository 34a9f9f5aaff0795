"""Pricing-table parser for fetched pricing pages (regex extraction path)."""
from __future__ import annotations

import re
from dataclasses import dataclass

from rivalscout.normalize import normalize_price_to_monthly

_PLAN_NAME_RE = re.compile(
    r"^(free|hobby|personal|starter|basic|essentials?|standard|pro|professional|plus|premium"
    r"|team|teams|business|growth|scale|startup|advanced|ultimate|enterprise)(?:\s+plan)?$",
    re.IGNORECASE,
)
_PRICE_RE = re.compile(
    r"([$€£])\s?(\d+(?:,\d{3})*)(?:\.(\d{1,2}))?"
    r"(?:\s*(?:/|per)\s*(?:user\s*/\s*)?(mo|month|yr|year))?",
    re.IGNORECASE,
)
_FEE_RE = re.compile(r"(\d+(?:\.\d+)?)\s?%\s*(?:\+\s*(?:[$€£]\s?\d+(?:\.\d+)?|\d+\s?¢))?", re.IGNORECASE)
_ANNUAL_HINT = re.compile(r"\b(per year|/\s*yr|/\s*year|annually|annual)\b", re.IGNORECASE)
_CURRENCIES = {"$": "USD", "€": "EUR", "£": "GBP"}
_LOOKAHEAD = 6


@dataclass
class PricingRow:
    plan_name: str
    price_monthly: float | None = None
    price_annual: float | None = None
    transaction_fee: float | None = None
    currency: str = "USD"


def _parse_price(match: re.Match[str]) -> tuple[float, str, str]:
    whole = match.group(2).replace(",", "")
    cents = match.group(3) or "0"
    amount = float(f"{whole}.{cents}")
    unit = (match.group(4) or "").lower()
    cadence = "annual" if unit in ("yr", "year") else "monthly"
    return amount, cadence, _CURRENCIES.get(match.group(1), "USD")


def extract_pricing(text: str) -> list[PricingRow]:
    """Find plan headings and the first price / transaction fee listed beneath each.

    A plan heading is a short line naming a common tier (``Starter``, ``Pro plan``,
    ``Enterprise``...).  Prices are looked for in the next few lines, stopping at the
    next heading.  Plans with neither a price nor a fee are dropped, except free tiers.
    """
    lines = [ln.strip() for ln in (text or "").splitlines() if ln.strip()]
    rows: list[PricingRow] = []
    seen: set[str] = set()

    for idx, line in enumerate(lines):
        if len(line) > 30 or not _PLAN_NAME_RE.match(line):
            continue
        plan_name = line.title()
        key = plan_name.lower().removesuffix(" plan")
        if key in seen:
            continue

        row = PricingRow(plan_name=plan_name)
        for follow in lines[idx + 1: idx + 1 + _LOOKAHEAD]:
            if len(follow) <= 30 and _PLAN_NAME_RE.match(follow):
                break
            if row.price_monthly is None:
                price_match = _PRICE_RE.search(follow)
                if price_match:
                    amount, cadence, currency = _parse_price(price_match)
                    if cadence == "monthly" and _ANNUAL_HINT.search(follow) and "/mo" not in follow.lower():
                        cadence = "annual"
                    row.currency = currency
                    row.price_monthly = round(normalize_price_to_monthly(amount, cadence), 2)
                    row.price_annual = amount if cadence == "annual" else round(amount * 12, 2)
            if row.transaction_fee is None:
                fee_match = _FEE_RE.search(follow)
                if fee_match and ("transaction" in follow.lower() or "+" in fee_match.group(0)):
                    row.transaction_fee = float(fee_match.group(1))

        if row.price_monthly is None and row.transaction_fee is None:
            if key != "free":
                continue
            row.price_monthly = 0.0
            row.price_annual = 0.0
        seen.add(key)
        rows.append(row)
    return rows
