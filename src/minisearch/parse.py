from __future__ import annotations
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from urllib.parse import urljoin, urlsplit, urlunsplit, parse_qs, urlencode

import idna
from bs4 import BeautifulSoup

from .errors import ParseError

logger = logging.getLogger(__name__)

UTM_PARAMS = {
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_term',
    'utm_content', 'utm_id', 'utm_source_platform',
    'utm_creative_format', 'utm_marketing_tactic'
}

DEFAULT_PORTS = {'http': 80, 'https': 443}

# Removed before body text is taken
NON_CONTENT_TAGS = ['script', 'style', 'nav', 'footer', 'header', 'aside', 'noscript']


@dataclass
class ExtractedLink:
    url: str
    text: str
    link_type: str  # "internal" or "external"


@dataclass
class PageContent:
    title: str = ""
    meta_description: str = ""
    headings: dict = field(default_factory=lambda: {"h1": [], "h2": [], "h3": []})
    body_text: str = ""
    links: list[ExtractedLink] = field(default_factory=list)
    images: list[dict] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    text_length: int = 0


# ------------------ URL helpers ------------------

@lru_cache(maxsize=10000)
def normalize_url_hardened(url: str) -> str:
    """
    URL normalization used for every discovered link:
    - lowercase scheme and host, host converted to punycode
    - default port stripped
    - utm_* parameters removed, remaining parameters sorted
    - fragment dropped
    """
    parsed = urlsplit(url)
    scheme = parsed.scheme.lower()

    host = (parsed.hostname or "").lower()
    try:
        host = idna.encode(host, uts46=True).decode('ascii') if host else host
    except (idna.IDNAError, UnicodeError):
        pass

    netloc = host
    port = parsed.port  # raises ValueError on a malformed port
    if port and port != DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{port}"

    query = parsed.query
    if query:
        params = parse_qs(query, keep_blank_values=True)
        kept = sorted((k, v) for k, v in params.items() if k.lower() not in UTM_PARAMS)
        query = urlencode(kept, doseq=True) if kept else ""

    return urlunsplit((scheme, netloc, parsed.path or "/", query, ""))


def extract_domain(url: str) -> str:
    """Lowercased host of a url, without port."""
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError as e:
        raise ParseError(f"Malformed url: {url}") from e


def _site(domain: str) -> str:
    return domain[4:] if domain.startswith("www.") else domain


def link_type_for(url: str, base_domain: str) -> str:
    return "internal" if _site(extract_domain(url)) == _site(base_domain) else "external"


# ------------------ extractors ------------------

def _extract_links(soup: BeautifulSoup, base_url: str, base_domain: str) -> list[ExtractedLink]:
    links: list[ExtractedLink] = []
    seen: set[str] = set()
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        # Same-document anchors and fragment variants are not separate pages
        if not href or "#" in href:
            continue
        try:
            absolute = urljoin(base_url, href)
            if urlsplit(absolute).scheme.lower() not in ("http", "https"):
                continue
            url = normalize_url_hardened(absolute)
        except ValueError:
            logger.debug("Skipping malformed href %r on %s", href, base_url)
            continue
        if url in seen:
            continue
        seen.add(url)
        links.append(ExtractedLink(url=url, text=a.get_text(" ", strip=True), link_type=link_type_for(url, base_domain)))
    return links


def extract_content(html: str, base_url: str) -> PageContent:
    """Pull title, description, headings, visible text, links, images and keywords out of a page."""
    if html is None:
        raise ParseError(f"No content for {base_url}")
    try:
        soup = BeautifulSoup(html, "html.parser")
    except Exception as e:  # bs4 surfaces parser failures as assorted exception types
        raise ParseError(f"Could not parse HTML for {base_url}: {e}") from e

    base_domain = extract_domain(base_url)
    content = PageContent()

    title_tag = soup.find("title")
    if title_tag and title_tag.get_text(strip=True):
        content.title = title_tag.get_text(" ", strip=True)
    else:
        h1 = soup.find("h1")
        if h1:
            content.title = h1.get_text(" ", strip=True)

    description = soup.find("meta", attrs={"name": "description"}) or soup.find("meta", attrs={"property": "og:description"})
    if description and description.get("content"):
        content.meta_description = description["content"].strip()

    keywords = soup.find("meta", attrs={"name": "keywords"})
    if keywords and keywords.get("content"):
        content.keywords = [k.strip() for k in keywords["content"].split(",") if k.strip()]

    for level in ("h1", "h2", "h3"):
        content.headings[level] = [h.get_text(" ", strip=True) for h in soup.find_all(level) if h.get_text(strip=True)]

    for img in soup.find_all("img", src=True):
        try:
            src = urljoin(base_url, img["src"])
        except ValueError:
            continue
        content.images.append({"src": src, "alt": (img.get("alt") or "").strip()})

    content.links = _extract_links(soup, base_url, base_domain)

    for tag in soup.find_all(NON_CONTENT_TAGS):
        tag.decompose()
    body = soup.body or soup
    content.body_text = " ".join(body.get_text(" ", strip=True).split())
    content.text_length = len(content.body_text)
    return content
