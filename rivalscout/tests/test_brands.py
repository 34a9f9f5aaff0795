"""Tests for URL helpers, brand inference and the competitor-name filter."""
from __future__ import annotations

import pytest

from rivalscout.brands import (
    brand_from_domain,
    get_domain,
    guess_brand_name,
    is_aggregator_domain,
    is_likely_competitor_name,
    looks_like_pricing_page,
    normalize_url,
    sanitize_brand_candidate,
    short_url,
)


class TestUrlHelpers:
    def test_normalize_url(self):
        assert normalize_url("HTTPS://Stripe.com/pricing#plans") == "https://stripe.com/pricing"
        assert normalize_url("https://stripe.com") == "https://stripe.com/"
        assert normalize_url("ftp://stripe.com/file") == ""
        assert normalize_url(None) == ""

    def test_get_domain_drops_www(self):
        assert get_domain("https://www.Stripe.com/pricing") == "stripe.com"
        assert get_domain("not a url") is None
        assert get_domain("") is None

    def test_short_url(self):
        assert short_url("https://stripe.com/pricing?ref=x") == "stripe.com/pricing"
        assert short_url("relative/path") == "relative/path"

    def test_pricing_page_detection(self):
        assert looks_like_pricing_page("Stripe Plans", None)
        assert looks_like_pricing_page(None, "Transparent fees for every business")
        assert not looks_like_pricing_page("About us", "Our team")


class TestBrandFromDomain:
    @pytest.mark.parametrize("domain, brand", [
        ("stripe.com", "Stripe"),
        ("https://www.wise.com", "Wise"),
        ("checkout.co.uk", "Checkout"),
        ("shop.acme.co.uk", "Acme"),
        ("blog.stripe.com", "Stripe"),
        ("docs.adyen.com", "Adyen"),
    ])
    def test_brand(self, domain, brand):
        assert brand_from_domain(domain) == brand

    def test_single_letter_label_rejected(self):
        assert brand_from_domain("x.io") is None

    def test_empty(self):
        assert brand_from_domain("") is None


class TestGuessBrandName:
    @pytest.mark.parametrize("candidate, expected", [
        ("Stripe Pricing", "Stripe"),
        ("Square Reviews", "Square"),
        ("Adyen vs", "Adyen"),
        ("  ", ""),
    ])
    def test_sanitize(self, candidate, expected):
        assert sanitize_brand_candidate(candidate) == expected

    def test_title_before_separator(self):
        assert guess_brand_name("Stripe Pricing | Stripe", "stripe.com") == "Stripe"

    def test_falls_back_to_domain(self):
        assert guess_brand_name(None, "docs.paddle.com") == "Paddle"
        assert guess_brand_name("Pricing", "paddle.com") == "Paddle"
        assert guess_brand_name(None, None) is None


class TestCompetitorFilter:
    def test_plain_brand_accepted(self):
        assert is_likely_competitor_name("Stripe", title="Stripe Pricing", domain="stripe.com")

    @pytest.mark.parametrize("name", [
        "Top 10 Payment Gateways",
        "Stripe Alternatives",
        "Stripe vs Adyen",
        "How to accept payments",
        "Payments news",
    ])
    def test_listicle_names_rejected(self, name):
        assert not is_likely_competitor_name(name)

    def test_listicle_title_rejects_unless_pricing_or_platform(self):
        title = "Best corporate cards for startups"
        assert not is_likely_competitor_name("Ramp", title=title)
        assert is_likely_competitor_name("Ramp platform", title=title)

    def test_short_or_long_names_rejected(self):
        assert not is_likely_competitor_name("Go")
        assert not is_likely_competitor_name("one two three four five six seven")

    def test_aggregator_domains_rejected(self):
        assert is_aggregator_domain("www.g2.com")
        assert is_aggregator_domain("payments.medium.com")
        assert not is_aggregator_domain("notg2.com")
        assert not is_likely_competitor_name("Acme Writes", domain="medium.com")
