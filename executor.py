"""
executor.py — Capability Executor: perform a validated capability and return
a uniform Result Envelope.

Most capabilities are thin proxies onto the SEOAgent internal API.  Technical
on-page analysis runs locally (httpx + BeautifulSoup).  execute() never raises:
every failure mode ends up as ResultEnvelope(success=False, error=...).
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from capabilities import Capability, CapabilityArgs

logger = logging.getLogger("seo-agent")

SEOAGENT_API_URL = os.getenv("SEOAGENT_API_URL", "http://localhost:3000")
SEOAGENT_API_TIMEOUT = float(os.getenv("SEOAGENT_API_TIMEOUT_SECONDS", "20"))
USER_AGENT = "SEOAgentBot/1.0"


# ---------------------------------------------------------------------------
# Result envelope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResultEnvelope:
    success: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ResultEnvelope":
        return cls(True, data=data)

    @classmethod
    def fail(cls, error: str, data: Any = None) -> "ResultEnvelope":
        return cls(False, data=data, error=error)

    @classmethod
    def from_backend(cls, payload: Any) -> "ResultEnvelope":
        """Map an internal API response body onto an envelope."""
        if isinstance(payload, dict) and "success" in payload:
            if payload["success"]:
                return cls.ok(payload)
            return cls.fail(str(payload.get("error") or "Request failed"), data=payload.get("details"))
        return cls.ok(payload)

    def to_dict(self) -> dict:
        out: dict = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        return out


# ---------------------------------------------------------------------------
# Internal API client
# ---------------------------------------------------------------------------

class SeoAgentBackend:
    """Calls the SEOAgent internal API on behalf of one user."""

    def __init__(
        self,
        user_token: str,
        base_url: str = SEOAGENT_API_URL,
        timeout: float = SEOAGENT_API_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_token = user_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def request(
        self,
        method: str,
        path: str,
        payload: Optional[dict] = None,
    ) -> ResultEnvelope:
        payload = dict(payload or {})
        payload["userToken"] = self.user_token
        kwargs: dict = {"params": payload} if method == "GET" else {"json": payload}

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"User-Agent": USER_AGENT},
            ) as http:
                resp = await http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Backend {method} {path} failed: {type(e).__name__}: {e}")
            return ResultEnvelope.fail(f"Backend request failed: {type(e).__name__}")

        try:
            body = resp.json()
        except ValueError:
            body = {"raw_response": resp.text[:500]}

        if resp.status_code >= 400:
            detail = body.get("error") if isinstance(body, dict) else None
            logger.warning(f"Backend {method} {path} returned {resp.status_code}: {detail}")
            return ResultEnvelope.fail(str(detail or f"Backend returned HTTP {resp.status_code}"))

        return ResultEnvelope.from_backend(body)


# ---------------------------------------------------------------------------
# Local technical analysis
# ---------------------------------------------------------------------------

async def analyze_technical_page(
    url: str,
    check_mobile: bool = True,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ResultEnvelope:
    """Fetch a page and extract on-page technical SEO signals."""
    try:
        async with httpx.AsyncClient(
            timeout=12.0,
            follow_redirects=True,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        ) as http:
            resp = await http.get(url)
            resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Technical fetch failed for {url}: {e}")
        return ResultEnvelope.fail(f"Could not fetch {url}: {type(e).__name__}")

    html = resp.text
    soup = BeautifulSoup(html, "html.parser")

    title = soup.title.string.strip() if soup.title and soup.title.string else ""
    meta_desc_tag = soup.find("meta", attrs={"name": "description"})
    meta_desc = meta_desc_tag.get("content", "").strip() if meta_desc_tag else ""
    h1_tags = soup.find_all("h1")
    canon = soup.find("link", rel="canonical")
    vp = soup.find("meta", attrs={"name": "viewport"})
    robots_meta = soup.find("meta", attrs={"name": "robots"})

    schemas = []
    for script in soup.find_all("script", type="application/ld+json"):
        try:
            schema = json.loads(script.string or "{}")
            schemas.append(schema.get("@type", "Unknown") if isinstance(schema, dict) else "Unknown")
        except json.JSONDecodeError:
            schemas.append("Unknown")

    imgs = soup.find_all("img")
    missing_alt = [img.get("src", "unknown")[:80] for img in imgs if not img.get("alt")]

    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    word_count = len(soup.get_text(separator=" ", strip=True).split())

    signals = {
        "https": urlparse(str(resp.url)).scheme == "https",
        "status_code": resp.status_code,
        "title": title,
        "title_length": len(title),
        "meta_description": meta_desc,
        "h1_count": len(h1_tags),
        "canonical": canon.get("href", "") if canon else None,
        "viewport": vp.get("content", "") if vp else None,
        "robots_meta": robots_meta.get("content", "") if robots_meta else None,
        "schemas": schemas,
        "images_total": len(imgs),
        "images_missing_alt": missing_alt[:20],
        "word_count": word_count,
    }

    issues = []
    if not signals["https"]:
        issues.append("Page is not served over HTTPS")
    if not title:
        issues.append("Missing title tag")
    elif len(title) > 60:
        issues.append("Title longer than 60 characters")
    if not meta_desc:
        issues.append("Missing meta description")
    if signals["h1_count"] == 0:
        issues.append("Missing H1")
    elif signals["h1_count"] > 1:
        issues.append("Multiple H1 tags")
    if not signals["canonical"]:
        issues.append("Missing canonical link")
    if signals["robots_meta"] and "noindex" in signals["robots_meta"].lower():
        issues.append("Page is marked noindex")
    if check_mobile and not signals["viewport"]:
        issues.append("Missing viewport meta tag (mobile)")
    if missing_alt:
        issues.append(f"{len(missing_alt)} images missing alt text")
    if word_count < 300:
        issues.append("Thin content (<300 words)")

    return ResultEnvelope.ok({"url": url, "signals": signals, "issues": issues})


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

Handler = Callable[["CapabilityExecutor", Any], Awaitable[ResultEnvelope]]


def _proxy(method: str, path: str, **extra) -> Handler:
    """Handler that forwards the validated arguments to one internal API route."""
    async def handler(executor: "CapabilityExecutor", args: CapabilityArgs) -> ResultEnvelope:
        payload = args.model_dump(mode="json", exclude_none=True)
        payload.update(extra)
        return await executor.backend.request(method, path, payload)
    return handler


async def _generate_article(executor: "CapabilityExecutor", args) -> ResultEnvelope:
    payload = args.model_dump(mode="json", exclude_none=True)
    topic = args.resolved_topic
    payload.pop("specific_topic", None)
    if topic:
        payload["topic"] = topic
        payload["include_internal_links"] = True
    else:
        # No topic: let the backend pick from keyword opportunities
        payload["use_suggestions"] = True
    return await executor.backend.request("POST", "/api/articles/generate", payload)


async def _sync_gsc(executor: "CapabilityExecutor", args) -> ResultEnvelope:
    payload = {"site_url": args.site_url, "date_range": getattr(args, "date_range", "30d")}
    return await executor.backend.request("POST", "/api/gsc/sync", payload)


async def _analyze_technical(executor: "CapabilityExecutor", args) -> ResultEnvelope:
    url = args.site_url
    if url.startswith("sc-domain:"):
        url = "https://" + url.removeprefix("sc-domain:")
    return await analyze_technical_page(url, args.check_mobile, transport=executor.page_transport)


_HANDLERS: dict[Capability, Handler] = {
    Capability.GSC_SYNC_DATA: _sync_gsc,
    Capability.SYNC_GSC_DATA: _sync_gsc,
    Capability.KEYWORDS_GET_STRATEGY: _proxy("GET", "/api/keyword-strategy"),
    Capability.KEYWORDS_ADD_KEYWORDS: _proxy("POST", "/api/keyword-strategy"),
    Capability.KEYWORDS_BRAINSTORM: _proxy("POST", "/api/keyword-strategy/brainstorm"),
    Capability.CONTENT_OPTIMIZE_EXISTING: _proxy("POST", "/api/content/optimize"),
    Capability.SEO_APPLY_FIXES: _proxy("POST", "/api/technical-seo/auto-fix"),
    Capability.SEO_ANALYZE_TECHNICAL: _analyze_technical,
    Capability.SEO_CRAWL_WEBSITE: _proxy("POST", "/api/crawl/plan"),
    Capability.SITEMAP_GENERATE_SUBMIT: _proxy("POST", "/api/technical-seo/generate-sitemap"),
    Capability.CMS_STRAPI_PUBLISH: _proxy("POST", "/api/articles/publish", cms_type="strapi"),
    Capability.CMS_WORDPRESS_PUBLISH: _proxy("POST", "/api/articles/publish", cms_type="wordpress"),
    Capability.VERIFY_CHECK_CHANGES: _proxy("POST", "/api/agent/verify"),
    Capability.CONTENT_GENERATE_ARTICLE: _generate_article,
    Capability.GENERATE_ARTICLE: _generate_article,
    Capability.CONTENT_SUGGEST_IDEAS: _proxy("POST", "/api/agent/content-gap-analysis"),
    Capability.CONTENT_GET_CONTEXT: _proxy("GET", "/api/agent/summary"),
    Capability.CONNECT_GSC: _proxy("POST", "/api/gsc/connection"),
    Capability.CREATE_IDEA: _proxy("POST", "/api/agent/ideas"),
    Capability.GET_SITE_STATUS: _proxy("GET", "/api/site/status"),
    Capability.AUDIT_SITE: _proxy("POST", "/api/audits/start"),
}

_unhandled = set(Capability) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Capabilities without a handler: {sorted(c.value for c in _unhandled)}")


class CapabilityExecutor:
    """Executes validated capabilities for one user."""

    def __init__(
        self,
        user_token: str,
        backend: Optional[SeoAgentBackend] = None,
        page_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_token = user_token
        self.backend = backend or SeoAgentBackend(user_token)
        self.page_transport = page_transport

    async def execute(self, capability: Capability, args: CapabilityArgs) -> ResultEnvelope:
        handler = _HANDLERS[capability]
        try:
            result = await handler(self, args)
        except Exception as e:
            logger.error(f"Capability {capability.value} raised: {type(e).__name__}: {e}", exc_info=True)
            return ResultEnvelope.fail(str(e) or type(e).__name__)
        if not isinstance(result, ResultEnvelope):
            return ResultEnvelope.ok(result)
        return result
