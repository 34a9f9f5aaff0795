"""Tests for page fetching and HTML-to-text conversion."""
from __future__ import annotations

import asyncio

import httpx
import pytest

from rivalscout.capabilities import extract_capabilities
from rivalscout.fetcher import MAX_TEXT, FetchError, fetch_text, html_to_text
from rivalscout.pricing import extract_pricing


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestFetchText:
    @pytest.mark.asyncio
    async def test_returns_body(self):
        async with _client(lambda request: httpx.Response(200, text="<p>Pro</p>")) as client:
            assert await fetch_text("https://stripe.com/pricing", client=client) == "<p>Pro</p>"

    @pytest.mark.asyncio
    async def test_json_body_is_serialized(self):
        async with _client(lambda request: httpx.Response(200, json={"plans": ["Pro"]})) as client:
            assert await fetch_text("https://api.stripe.test/plans", client=client) == '{"plans": ["Pro"]}'

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        async with _client(lambda request: httpx.Response(404)) as client:
            with pytest.raises(FetchError, match="HTTP 404"):
                await fetch_text("https://gone.test/page", client=client)

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(FetchError, match="connection refused"):
                await fetch_text("https://down.test/", client=client)

    @pytest.mark.asyncio
    async def test_slow_response_times_out(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, text="late")

        async with _client(handler) as client:
            with pytest.raises(FetchError, match="^Timed out"):
                await fetch_text("https://slow.test/", timeout=0.05, client=client)


class TestHtmlToText:
    def test_scripts_styles_and_comments_dropped(self):
        raw = (
            "<html><head><style>.x{color:red}</style></head><body>"
            "<!-- hidden note --><script>track()</script><h1>Pricing</h1><p>Pro</p></body></html>"
        )
        text = html_to_text(raw)
        assert text == "Pricing\nPro"

    def test_table_cells_and_inline_siblings_stay_separate(self):
        raw = (
            "<table><tr><td>SSO</td><td>SCIM</td><td>Audit logs</td></tr></table>"
            "<span>Webhooks</span><span>GraphQL</span>"
        )
        text = html_to_text(raw)
        assert text.split() == ["SSO", "SCIM", "Audit", "logs", "Webhooks", "GraphQL"]

        names = {h.name for h in extract_capabilities(text) if h.category == "Security"}
        assert {"Single Sign On", "User Provisioning", "Audit Logs"} <= names

    def test_pricing_table_is_parseable(self):
        raw = (
            "<table><tr><td>Starter</td><td>$50/mo</td></tr>"
            "<tr><td>Pro</td><td><b>$200</b>/mo</td></tr></table>"
        )
        rows = extract_pricing(html_to_text(raw))
        assert [(r.plan_name, r.price_monthly) for r in rows] == [("Starter", 50.0), ("Pro", 200.0)]

    def test_limit(self):
        assert len(html_to_text("<p>" + "a" * 50 + "</p>", limit=10)) == 10
        assert len(html_to_text("<p>" + "word " * 70_000 + "</p>")) == MAX_TEXT

    def test_blank_input(self):
        assert html_to_text("") == ""
        assert html_to_text("   \n") == ""
