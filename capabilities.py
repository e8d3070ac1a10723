"""
capabilities.py — Closed catalogue of the capabilities the agent may invoke.

Every capability the model can call is a member of the ``Capability`` enum and
carries a typed argument model.  The registry is built once at import time and
is read-only afterwards, so it is safe to share across concurrent requests.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Annotated, Any, Literal, Mapping, Optional
from urllib.parse import urlparse

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Capability identifiers
# ---------------------------------------------------------------------------

class Capability(str, Enum):
    # Agent capability functions
    GSC_SYNC_DATA = "GSC_sync_data"
    KEYWORDS_GET_STRATEGY = "KEYWORDS_get_strategy"
    KEYWORDS_ADD_KEYWORDS = "KEYWORDS_add_keywords"
    KEYWORDS_BRAINSTORM = "KEYWORDS_brainstorm"
    CONTENT_OPTIMIZE_EXISTING = "CONTENT_optimize_existing"
    SEO_APPLY_FIXES = "SEO_apply_fixes"
    SEO_ANALYZE_TECHNICAL = "SEO_analyze_technical"
    SEO_CRAWL_WEBSITE = "SEO_crawl_website"
    SITEMAP_GENERATE_SUBMIT = "SITEMAP_generate_submit"
    CMS_STRAPI_PUBLISH = "CMS_strapi_publish"
    CMS_WORDPRESS_PUBLISH = "CMS_wordpress_publish"
    VERIFY_CHECK_CHANGES = "VERIFY_check_changes"
    CONTENT_GENERATE_ARTICLE = "CONTENT_generate_article"
    CONTENT_SUGGEST_IDEAS = "CONTENT_suggest_ideas"
    CONTENT_GET_CONTEXT = "CONTENT_get_context"
    # Legacy names still emitted by older prompts and saved conversations
    CONNECT_GSC = "connect_gsc"
    SYNC_GSC_DATA = "sync_gsc_data"
    GENERATE_ARTICLE = "generate_article"
    CREATE_IDEA = "create_idea"
    GET_SITE_STATUS = "get_site_status"
    AUDIT_SITE = "audit_site"


Category = Literal[
    "setup", "optimization", "content", "monitoring",
    "analytics", "seo", "cms", "verification",
]


# ---------------------------------------------------------------------------
# Shared field types
# ---------------------------------------------------------------------------

def _flexible_url(value: str) -> str:
    """Accept bare domains and GSC domain properties as well as full URLs."""
    value = value.strip()
    if value.startswith("sc-domain:"):
        return value
    if not value.startswith(("http://", "https://")):
        value = f"https://{value}"
    parsed = urlparse(value)
    if not parsed.netloc or " " in parsed.netloc or "." not in parsed.netloc:
        raise ValueError("Must be a valid URL or domain")
    return value


FlexibleUrl = Annotated[str, AfterValidator(_flexible_url)]

ArticleType = Literal["how_to", "listicle", "guide", "faq", "comparison", "evergreen", "blog"]
Tone = Literal["professional", "casual", "technical"]


class CapabilityArgs(BaseModel):
    """Base for validated arguments. Instances are immutable once built."""

    model_config = ConfigDict(frozen=True, extra="ignore")


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------

class GscSyncDataArgs(CapabilityArgs):
    site_url: FlexibleUrl = Field(description="Website URL to sync GSC data for")
    date_range: str = Field("30d", description='Date range for data sync (e.g., "30d", "3m")')


class SiteOnlyArgs(CapabilityArgs):
    site_url: Optional[str] = Field(None, description="Website URL (optional; primary site used if omitted)")


class KeywordEntry(CapabilityArgs):
    keyword: str = Field(min_length=1, description="Keyword phrase")
    keyword_type: Literal["primary", "secondary", "long_tail"] = "long_tail"
    topic_cluster: Optional[str] = Field(None, description="Optional topic cluster name")


class KeywordsAddArgs(CapabilityArgs):
    site_url: Optional[str] = Field(None, description="Website URL (optional; primary site used if omitted)")
    keywords: list[KeywordEntry] = Field(description="Keywords to add to strategy")


class KeywordsBrainstormArgs(CapabilityArgs):
    site_url: Optional[str] = Field(None, description="Website URL (optional; primary site used if omitted)")
    base_keywords: list[str] = Field(default_factory=list, description="Seed keywords to guide brainstorming")
    topic_focus: Optional[str] = Field(None, description="Optional topic/theme to focus keyword ideas")
    generate_count: int = Field(10, ge=1, le=50, description="How many keywords to generate")
    avoid_duplicates: bool = Field(True, description="Avoid duplicates from tracked keywords")


class ContentOptimizeArgs(CapabilityArgs):
    page_url: FlexibleUrl = Field(description="URL of the page to optimize")
    target_keywords: list[str] = Field(description="Keywords to optimize for")


class SeoApplyFixesArgs(CapabilityArgs):
    site_url: FlexibleUrl = Field(description="Website URL to apply fixes to")
    fix_types: list[str] = Field(description="Types of fixes to apply")


class SeoAnalyzeTechnicalArgs(CapabilityArgs):
    site_url: FlexibleUrl = Field(description="Website URL to analyze")
    check_mobile: bool = Field(True, description="Include mobile-specific checks")


class SeoCrawlArgs(CapabilityArgs):
    site_url: FlexibleUrl = Field(description="Website URL to crawl")
    max_pages: int = Field(50, ge=1, le=1000, description="Maximum pages to crawl")
    crawl_depth: int = Field(3, ge=1, le=10, description="Maximum crawl depth")


class SitemapArgs(CapabilityArgs):
    site_url: FlexibleUrl = Field(description="Website URL to generate sitemap for")
    submit_to_gsc: bool = Field(True, description="Submit to Google Search Console")


class CmsPublishArgs(CapabilityArgs):
    content: dict[str, Any] = Field(description="Content to publish")
    publish: bool = Field(True, description="Publish immediately or save as draft")


class VerifyChangesArgs(CapabilityArgs):
    target_url: FlexibleUrl = Field(description="URL to verify changes on")
    expected_changes: list[str] = Field(description="List of expected changes to verify")


class ContentGenerateArticleArgs(CapabilityArgs):
    site_url: Optional[str] = Field(None, description="Website URL (optional, will use primary website if not provided)")
    topic: Optional[str] = Field(None, description="Main topic for the article")
    specific_topic: Optional[str] = Field(
        None, description="Specific article topic (optional, will suggest based on keyword opportunities if not provided)"
    )
    use_suggestion: Optional[int] = Field(None, ge=0, description="Use a specific suggested topic by index (optional)")
    article_type: ArticleType = Field("blog", description="Type of article to generate")
    tone: Tone = Field("professional", description="Writing tone")
    target_keywords: Optional[list[str]] = Field(None, description="Target keywords for SEO optimization")
    word_count: Optional[int] = Field(None, ge=300, le=5000, description="Desired word count for the article")

    @property
    def resolved_topic(self) -> Optional[str]:
        return self.specific_topic or self.topic


class ContentSuggestIdeasArgs(CapabilityArgs):
    site_url: Optional[str] = Field(None, description="Website URL (optional, will use primary website if not provided)")
    max_suggestions: int = Field(5, ge=1, le=10, description="Maximum number of suggestions to return")


class SiteUrlArgs(CapabilityArgs):
    site_url: FlexibleUrl = Field(description="Website URL")


class LegacyGenerateArticleArgs(CapabilityArgs):
    site_url: Optional[str] = Field(None, description="Website URL (optional, will use primary website if not provided)")
    specific_topic: Optional[str] = Field(None, description="Specific article topic")
    article_type: ArticleType = Field("blog", description="Type of article to generate")
    tone: Tone = Field("professional", description="Writing tone")

    @property
    def resolved_topic(self) -> Optional[str]:
        return self.specific_topic


class CreateIdeaArgs(CapabilityArgs):
    site_url: FlexibleUrl = Field(description="Website URL this idea applies to")
    title: str = Field(min_length=1, description="Clear, concise title for the idea")
    hypothesis: str = Field(min_length=10, description="The hypothesis or reasoning behind this idea")
    evidence: dict[str, Any] = Field(default_factory=dict, description="Supporting evidence, data, or context")
    ice_score: int = Field(70, ge=1, le=100, description="Impact/Confidence/Ease score (1-100) for prioritization")


class AuditSiteArgs(CapabilityArgs):
    site_url: FlexibleUrl = Field(description="Website URL to audit")
    include_gsc_data: bool = Field(True, description="Include Google Search Console performance data")
    audit_type: Literal["technical", "content", "performance", "full"] = Field(
        "full", description="Type of audit to perform"
    )


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CapabilityDescriptor:
    capability: Capability
    category: Category
    args_model: type[CapabilityArgs]
    description: str
    requires_setup: bool = False
    output_shape: Optional[Mapping[str, str]] = None

    @property
    def name(self) -> str:
        return self.capability.value

    @property
    def input_schema(self) -> dict:
        return self.args_model.model_json_schema()

    def tool_schema(self) -> dict:
        """Render the descriptor the way the model provider expects a tool."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


_ARTICLE_OUTPUT = {"article_id": "string", "title": "string", "status": "string"}

_DESCRIPTORS = [
    CapabilityDescriptor(Capability.GSC_SYNC_DATA, "analytics", GscSyncDataArgs,
                         "Sync Google Search Console data", requires_setup=True),
    CapabilityDescriptor(Capability.KEYWORDS_GET_STRATEGY, "content", SiteOnlyArgs,
                         "Get the current keyword strategy (tracked keywords and clusters) for a website"),
    CapabilityDescriptor(Capability.KEYWORDS_ADD_KEYWORDS, "content", KeywordsAddArgs,
                         "Add keywords to the strategy (tracked keywords) with optional types and clusters"),
    CapabilityDescriptor(Capability.KEYWORDS_BRAINSTORM, "content", KeywordsBrainstormArgs,
                         "Brainstorm long-tail keyword ideas for a website"),
    CapabilityDescriptor(Capability.CONTENT_OPTIMIZE_EXISTING, "content", ContentOptimizeArgs,
                         "Optimize existing page content for better SEO performance"),
    CapabilityDescriptor(Capability.SEO_APPLY_FIXES, "seo", SeoApplyFixesArgs,
                         "Apply automated technical SEO fixes to a website"),
    CapabilityDescriptor(Capability.SEO_ANALYZE_TECHNICAL, "seo", SeoAnalyzeTechnicalArgs,
                         "Analyze technical SEO issues on a website",
                         output_shape={"url": "string", "signals": "object", "issues": "array"}),
    CapabilityDescriptor(Capability.SEO_CRAWL_WEBSITE, "seo", SeoCrawlArgs,
                         "Crawl website for comprehensive technical SEO analysis"),
    CapabilityDescriptor(Capability.SITEMAP_GENERATE_SUBMIT, "seo", SitemapArgs,
                         "Generate and submit sitemap to search engines"),
    CapabilityDescriptor(Capability.CMS_STRAPI_PUBLISH, "cms", CmsPublishArgs,
                         "Publish content to Strapi CMS", requires_setup=True),
    CapabilityDescriptor(Capability.CMS_WORDPRESS_PUBLISH, "cms", CmsPublishArgs,
                         "Publish content to WordPress", requires_setup=True),
    CapabilityDescriptor(Capability.VERIFY_CHECK_CHANGES, "verification", VerifyChangesArgs,
                         "Verify that applied changes are working correctly"),
    CapabilityDescriptor(Capability.CONTENT_GENERATE_ARTICLE, "content", ContentGenerateArticleArgs,
                         "Generate SEO-optimized article content using intelligent suggestions from website data",
                         output_shape=_ARTICLE_OUTPUT),
    CapabilityDescriptor(Capability.CONTENT_SUGGEST_IDEAS, "content", ContentSuggestIdeasArgs,
                         "Get intelligent content suggestions based on website keyword performance and opportunities"),
    CapabilityDescriptor(Capability.CONTENT_GET_CONTEXT, "content", SiteOnlyArgs,
                         "Get comprehensive content context including CMS info, keywords, and opportunities for a website"),
    CapabilityDescriptor(Capability.CONNECT_GSC, "setup", SiteUrlArgs,
                         "Connect Google Search Console for a website to enable performance tracking"),
    CapabilityDescriptor(Capability.SYNC_GSC_DATA, "monitoring", SiteUrlArgs,
                         "Sync performance data from Google Search Console for analysis", requires_setup=True),
    CapabilityDescriptor(Capability.GENERATE_ARTICLE, "content", LegacyGenerateArticleArgs,
                         "Generate SEO-optimized article content using intelligent keyword analysis from website data",
                         output_shape=_ARTICLE_OUTPUT),
    CapabilityDescriptor(Capability.CREATE_IDEA, "optimization", CreateIdeaArgs,
                         "Create a new SEO improvement idea from evidence and hypothesis"),
    CapabilityDescriptor(Capability.GET_SITE_STATUS, "monitoring", SiteUrlArgs,
                         "Get comprehensive status overview of a website including all integrations"),
    CapabilityDescriptor(Capability.AUDIT_SITE, "monitoring", AuditSiteArgs,
                         "Perform comprehensive SEO audit using GSC data and website analysis", requires_setup=True),
]

REGISTRY: Mapping[Capability, CapabilityDescriptor] = MappingProxyType(
    {d.capability: d for d in _DESCRIPTORS}
)

_missing = set(Capability) - set(REGISTRY)
if _missing:
    raise RuntimeError(f"Capabilities without a descriptor: {sorted(c.value for c in _missing)}")


# ---------------------------------------------------------------------------
# Lookup and catalogue helpers
# ---------------------------------------------------------------------------

def get_capability(name: str) -> Optional[Capability]:
    try:
        return Capability(name)
    except ValueError:
        return None


def get_descriptor(name: str) -> Optional[CapabilityDescriptor]:
    capability = get_capability(name)
    return REGISTRY[capability] if capability is not None else None


def get_tool_schemas(
    categories: Optional[list[str]] = None,
    requires_setup: Optional[bool] = None,
    names: Optional[list[str]] = None,
) -> list[dict]:
    """Return the tool catalogue offered to the model, optionally filtered."""
    descriptors = list(REGISTRY.values())
    if categories:
        descriptors = [d for d in descriptors if d.category in categories]
    if requires_setup is not None:
        descriptors = [d for d in descriptors if d.requires_setup == requires_setup]
    if names:
        wanted = set(names)
        descriptors = [d for d in descriptors if d.name in wanted]
    return [d.tool_schema() for d in descriptors]


def tools_for_setup(gsc_connected: bool) -> list[str]:
    """Tool names to expose for a site given how far its setup has progressed."""
    tools = [Capability.GET_SITE_STATUS.value, Capability.CREATE_IDEA.value]
    if not gsc_connected:
        tools.append(Capability.CONNECT_GSC.value)
    else:
        tools += [Capability.SYNC_GSC_DATA.value, Capability.AUDIT_SITE.value]
    tools.append(Capability.GENERATE_ARTICLE.value)
    return tools
