"""Sample SEO tools exposed to the model through the registry."""

import re
import time
from typing import Any, Dict, List, Optional

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from .tools import ToolRegistry

TITLE_RANGE = (30, 60)
DESCRIPTION_RANGE = (70, 160)
USER_AGENT = "seo-agent/0.1"
_WORD_RE = re.compile(r"[\w'-]+", re.UNICODE)


class AnalyzeArgs(BaseModel):
    """Analyze a website's SEO."""

    url: str = Field(pattern=r"^https?://", description="Absolute page URL")


class AnalyzeKeywordsArgs(BaseModel):
    """Analyze keyword effectiveness in a piece of content."""

    keywords: List[str] = Field(min_length=1)
    text: str = Field(default="", description="Content the keywords should appear in")


class AnalyzeMetaArgs(BaseModel):
    """Check meta tag optimization."""

    url: str = Field(pattern=r"^https?://")


class GenerateMetaTagsArgs(BaseModel):
    """Generate optimized meta tags."""

    title: str
    description: str
    keywords: List[str] = Field(default_factory=list)


def _length_check(value: str, bounds: tuple) -> str:
    low, high = bounds
    if not value:
        return "missing"
    if len(value) < low:
        return "too_short"
    if len(value) > high:
        return "too_long"
    return "ok"


def _clamp(value: str, limit: int) -> str:
    value = " ".join(value.split())
    if len(value) <= limit:
        return value
    cut = value[: limit - 3].rsplit(" ", 1)[0]
    return f"{cut}..."


def _escape(value: str) -> str:
    return value.replace("&", "&amp;").replace('"', "&quot;").replace("<", "&lt;").replace(">", "&gt;")


def extract_meta(html: str) -> Dict[str, Any]:
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""

    def meta(name: str) -> str:
        tag = soup.find("meta", attrs={"name": name}) or soup.find("meta", attrs={"property": f"og:{name}"})
        return (tag.get("content") or "").strip() if tag else ""

    keywords = [k.strip() for k in meta("keywords").split(",") if k.strip()]
    return {
        "title": title,
        "description": meta("description"),
        "keywords": keywords,
        "headings": {level: len(soup.find_all(level)) for level in ("h1", "h2", "h3")},
        "images_without_alt": sum(1 for img in soup.find_all("img") if not img.get("alt")),
        "viewport": bool(soup.find("meta", attrs={"name": "viewport"})),
    }


def recommendations(meta: Dict[str, Any], https: bool) -> List[str]:
    tips: List[str] = []
    title_state = _length_check(meta["title"], TITLE_RANGE)
    if title_state != "ok":
        tips.append(f"Title is {title_state.replace('_', ' ')}; aim for {TITLE_RANGE[0]}-{TITLE_RANGE[1]} characters")
    desc_state = _length_check(meta["description"], DESCRIPTION_RANGE)
    if desc_state != "ok":
        tips.append(
            f"Meta description is {desc_state.replace('_', ' ')}; "
            f"aim for {DESCRIPTION_RANGE[0]}-{DESCRIPTION_RANGE[1]} characters"
        )
    if meta["headings"].get("h1", 0) != 1:
        tips.append("Use exactly one h1 heading")
    if meta["images_without_alt"]:
        tips.append(f"Add alt text to {meta['images_without_alt']} image(s)")
    if not meta["viewport"]:
        tips.append("Add a viewport meta tag for mobile rendering")
    if not https:
        tips.append("Serve the page over HTTPS")
    return tips


def keyword_report(keywords: List[str], text: str) -> Dict[str, Any]:
    words = [w.lower() for w in _WORD_RE.findall(text)]
    total = len(words)
    lowered = " ".join(words)
    scores = []
    for keyword in keywords:
        phrase = " ".join(w.lower() for w in _WORD_RE.findall(keyword))
        if not phrase:
            continue
        count = len(re.findall(rf"(?<![\w'-]){re.escape(phrase)}(?![\w'-])", lowered))
        density = round(count * len(phrase.split()) / total * 100, 2) if total else 0.0
        scores.append({"keyword": keyword, "occurrences": count, "density": density})
    return {"word_count": total, "scores": scores}


def meta_tags(title: str, description: str, keywords: List[str]) -> Dict[str, Any]:
    title = _clamp(title, TITLE_RANGE[1])
    description = _clamp(description, DESCRIPTION_RANGE[1])
    keywords = [k.strip() for k in keywords if k.strip()]
    lines = [
        f"<title>{_escape(title)}</title>",
        f'<meta name="description" content="{_escape(description)}">',
        f'<meta property="og:title" content="{_escape(title)}">',
        f'<meta property="og:description" content="{_escape(description)}">',
        '<meta name="twitter:card" content="summary_large_image">',
    ]
    if keywords:
        lines.insert(2, f'<meta name="keywords" content="{_escape(", ".join(keywords))}">')
    return {"title": title, "description": description, "keywords": keywords, "html": "\n".join(lines)}


class SEOToolkit:
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0) -> None:
        self.http_client = http_client
        self.timeout = timeout

    async def _fetch(self, url: str) -> Dict[str, Any]:
        headers = {"User-Agent": USER_AGENT}
        started = time.perf_counter()
        if self.http_client is not None:
            resp = await self.http_client.get(url, headers=headers, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(url, headers=headers, follow_redirects=True)
        elapsed = time.perf_counter() - started
        return {"response": resp, "elapsed_s": round(elapsed, 3)}

    async def analyze(self, args: Dict[str, Any]) -> Dict[str, Any]:
        fetched = await self._fetch(args["url"])
        resp: httpx.Response = fetched["response"]
        meta = extract_meta(resp.text)
        https = str(resp.url).startswith("https://")
        tips = recommendations(meta, https)
        return {
            "url": str(resp.url),
            "status": resp.status_code,
            "https": https,
            "load_time_s": fetched["elapsed_s"],
            "title": meta["title"],
            "description": meta["description"],
            "headings": meta["headings"],
            "score": max(0, 100 - 12 * len(tips)),
            "recommendations": tips,
        }

    async def analyze_keywords(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return keyword_report(args["keywords"], args.get("text") or "")

    async def analyze_meta(self, args: Dict[str, Any]) -> Dict[str, Any]:
        fetched = await self._fetch(args["url"])
        meta = extract_meta(fetched["response"].text)
        return {
            "title": meta["title"],
            "title_check": _length_check(meta["title"], TITLE_RANGE),
            "description": meta["description"],
            "description_check": _length_check(meta["description"], DESCRIPTION_RANGE),
            "keywords": meta["keywords"],
        }

    async def generate_meta_tags(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return meta_tags(args["title"], args["description"], args.get("keywords") or [])


def build_default_registry(http_client: Optional[httpx.AsyncClient] = None) -> ToolRegistry:
    toolkit = SEOToolkit(http_client=http_client)
    registry = ToolRegistry()
    registry.register("analyze", AnalyzeArgs, toolkit.analyze)
    registry.register("analyzeKeywords", AnalyzeKeywordsArgs, toolkit.analyze_keywords)
    registry.register("analyzeMeta", AnalyzeMetaArgs, toolkit.analyze_meta)
    registry.register("generateMetaTags", GenerateMetaTagsArgs, toolkit.generate_meta_tags)
    return registry.freeze()
