from __future__ import annotations

import asyncio
import json
import logging
import re

import httpx
from lxml import etree, html as lxml_html

log = logging.getLogger(__name__)

_USER_AGENT = "Mozilla/5.0 (compatible; IntelBot/1.0; +https://example.com)"
_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
FETCH_TIMEOUT = 20.0
MAX_TEXT = 300_000

_BLOCK_TAGS = (
    "p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "li", "ul", "ol", "br", "section", "article",
    "table", "tr", "td", "th",
)


class FetchError(Exception):
    """A page could not be fetched (HTTP error, network failure or timeout)."""


async def _get(url: str, client: httpx.AsyncClient) -> str:
    resp = await client.get(url)
    if resp.status_code >= 400:
        raise FetchError(f"HTTP {resp.status_code}")
    content_type = resp.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return json.dumps(resp.json())
        except ValueError:
            return resp.text
    return resp.text


async def fetch_text(url: str, timeout: float = FETCH_TIMEOUT, client: httpx.AsyncClient | None = None) -> str:
    """GET *url* and return the body text.

    The whole request (connect, redirects, body) must finish within *timeout*
    seconds; on expiry only this request is cancelled.
    """
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT, "Accept": _ACCEPT},
        )
    try:
        return await asyncio.wait_for(_get(url, client), timeout=timeout)
    except FetchError:
        raise
    except TimeoutError as exc:
        raise FetchError(f"Timed out after {timeout:.0f}s") from exc
    except httpx.HTTPError as exc:
        raise FetchError(str(exc) or exc.__class__.__name__) from exc
    finally:
        if owns_client:
            await client.aclose()


def _collapse(text: str) -> str:
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def html_to_text(raw: str, limit: int = MAX_TEXT) -> str:
    """Readable text from HTML: scripts, styles and comments dropped, block elements on their own lines.

    Every text node is separated from its neighbours so inline siblings
    (spans, links, table cells) never run together.
    """
    if not raw or not raw.strip():
        return ""
    try:
        tree = lxml_html.fromstring(raw)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return _collapse(raw)[:limit]
    etree.strip_elements(tree, etree.Comment, "script", "style", with_tail=False)
    for el in tree.iter(*_BLOCK_TAGS):
        el.tail = "\n" + (el.tail or "")
    return _collapse(" ".join(tree.itertext()))[:limit]
