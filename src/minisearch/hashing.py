"""
Content fingerprints: exact change detection on the raw body and a SimHash
fingerprint of the visible text stored alongside each page.
"""

import hashlib
import re

from bs4 import BeautifulSoup, Comment
from simhash import Simhash


def content_hash(body: bytes) -> str:
    """SHA256 hex digest of the raw response body."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hashlib.sha256(body or b"").hexdigest()


def clean_content_for_hashing(html: str) -> str:
    """
    Reduce HTML to its visible text so markup-only changes (scripts, comments,
    attribute churn) do not move the SimHash.
    """
    if not html:
        return ""

    soup = BeautifulSoup(html, 'html.parser')
    for tag in soup.find_all(['script', 'style', 'noscript', 'iframe']):
        tag.decompose()
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    text_content = soup.get_text(separator=' ', strip=True)
    return re.sub(r'\s+', ' ', text_content).strip()


def content_simhash(html: str) -> str:
    """SimHash of the cleaned text as a decimal string, or '' for empty pages."""
    cleaned = clean_content_for_hashing(html)
    if not cleaned:
        return ""
    return str(Simhash(cleaned).value)

