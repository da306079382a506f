"""
Web access: fetch a URL as text and search via the DuckDuckGo HTML endpoint.
"""

from __future__ import annotations

import html
import json
import re
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import httpx
from pydantic import BaseModel, Field

from ..models import ToolContext, ToolResult
from ..registry import ToolDefinition, ToolExecutionError

MAX_RESPONSE_CHARS = 100_000
DEFAULT_TIMEOUT_SECONDS = 15.0
MAX_SEARCH_RESULTS = 10
SEARCH_URL = "https://html.duckduckgo.com/html/"
USER_AGENT = "codeagent/0.1 (coding assistant)"

_SCRIPT_STYLE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_MAIN_SECTIONS = (
    re.compile(r"<main[^>]*>(.*?)</main>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<article[^>]*>(.*?)</article>", re.IGNORECASE | re.DOTALL),
)
_BODY = re.compile(r"<body[^>]*>(.*?)</body>", re.IGNORECASE | re.DOTALL)
_RESULT_LINK = re.compile(r'<a[^>]*class="result__a"[^>]*href="([^"]*)"[^>]*>(.*?)</a>', re.IGNORECASE | re.DOTALL)
_RESULT_SNIPPET = re.compile(r'<a[^>]*class="result__snippet"[^>]*>(.*?)</a>', re.IGNORECASE | re.DOTALL)


def html_to_text(markup: str) -> str:
    text = _SCRIPT_STYLE.sub("", markup)
    text = _TAG.sub(" ", text)
    text = html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def extract_main_content(markup: str) -> str:
    """Prefer <main>/<article> when they hold real content, else the body."""
    for section in _MAIN_SECTIONS:
        match = section.search(markup)
        if match:
            text = html_to_text(match.group(1))
            if len(text) > 100:
                return text
    body = _BODY.search(markup)
    return html_to_text(body.group(1) if body else markup)


def _unwrap_redirect(url: str) -> str:
    # DuckDuckGo wraps result links as //duckduckgo.com/l/?uddg=<target>
    parsed = urlparse(html.unescape(url))
    if parsed.path.startswith("/l/"):
        target = parse_qs(parsed.query).get("uddg")
        if target:
            return target[0]
    if url.startswith("//"):
        return "https:" + url
    return url


def parse_search_results(markup: str, limit: int = MAX_SEARCH_RESULTS) -> List[Dict[str, str]]:
    snippets = [html_to_text(m.group(1)) for m in _RESULT_SNIPPET.finditer(markup)]
    results: List[Dict[str, str]] = []
    for index, match in enumerate(_RESULT_LINK.finditer(markup)):
        url = _unwrap_redirect(match.group(1))
        title = html_to_text(match.group(2))
        if not url or not title:
            continue
        results.append({"title": title, "url": url, "snippet": snippets[index] if index < len(snippets) else ""})
        if len(results) >= limit:
            break
    return results


def _client(ctx: ToolContext, timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
        transport=ctx.services.get("http_transport"),
    )


# -- web_fetch --------------------------------------------------------------


class WebFetchParams(BaseModel):
    url: str = Field(..., description="http(s) URL to fetch")
    timeout: float = Field(DEFAULT_TIMEOUT_SECONDS, gt=0, le=60, description="Timeout in seconds")
    raw: bool = Field(False, description="Return the body without HTML-to-text conversion")


async def web_fetch(params: WebFetchParams, ctx: ToolContext) -> ToolResult:
    parsed = urlparse(params.url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ToolExecutionError(f"Unsupported or invalid URL: {params.url}")

    async with _client(ctx, params.timeout) as client:
        resp = await ctx.token.guard(
            client.get(
                params.url,
                headers={"Accept": "text/html,application/xhtml+xml,application/json;q=0.9,text/plain;q=0.8,*/*;q=0.7"},
            )
        )
    if resp.status_code >= 400:
        raise ToolExecutionError(f"HTTP error: {resp.status_code} {resp.reason_phrase}")

    content_type = resp.headers.get("content-type", "")
    text = resp.text
    truncated = len(text) > MAX_RESPONSE_CHARS
    if truncated:
        text = text[:MAX_RESPONSE_CHARS]

    if params.raw:
        output = text
    elif "application/json" in content_type:
        try:
            output = json.dumps(json.loads(text), indent=2)
        except ValueError:
            output = text
    elif "text/html" in content_type:
        output = extract_main_content(text)
    else:
        output = text
    if truncated:
        output += "\n\n(content truncated)"

    return ToolResult(
        title=f"Fetched: {parsed.netloc}{parsed.path[:30]}",
        output=output or "(empty response)",
        metadata={"url": params.url, "status": resp.status_code, "content_type": content_type, "size": len(text)},
    )


# -- web_search -------------------------------------------------------------


class WebSearchParams(BaseModel):
    query: str = Field(..., min_length=1, description="Search query")
    site: Optional[str] = Field(None, description='Restrict results to one site, e.g. "docs.python.org"')


async def web_search(params: WebSearchParams, ctx: ToolContext) -> ToolResult:
    query = f"site:{params.site} {params.query}" if params.site else params.query
    async with _client(ctx, DEFAULT_TIMEOUT_SECONDS) as client:
        resp = await ctx.token.guard(client.get(SEARCH_URL, params={"q": query}, headers={"Accept": "text/html"}))
    if resp.status_code >= 400:
        raise ToolExecutionError(f"Search failed: HTTP {resp.status_code}")

    results = parse_search_results(resp.text)
    title = f"Search: {params.query}"
    if not results:
        return ToolResult(
            title=title,
            output="No results found. Try a different search query.",
            metadata={"query": params.query, "result_count": 0},
        )
    lines = [
        f"{number}. {item['title']}\n   {item['url']}\n   {item['snippet']}"
        for number, item in enumerate(results, start=1)
    ]
    return ToolResult(
        title=title,
        output=f"Found {len(results)} results:\n\n" + "\n\n".join(lines),
        metadata={"query": params.query, "site": params.site, "result_count": len(results)},
    )


WEB_TOOLS = [
    ToolDefinition(
        id="web_fetch",
        description="Fetch a URL and return its content as text. HTML is converted to plain text; output is capped at 100KB.",
        parameters=WebFetchParams,
        execute=web_fetch,
        read_only=True,
    ),
    ToolDefinition(
        id="web_search",
        description="Search the web and return the top results with title, URL and snippet.",
        parameters=WebSearchParams,
        execute=web_search,
        read_only=True,
    ),
]
