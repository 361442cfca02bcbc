"""
Text normalization into index tokens.
"""
import re
from typing import Dict, List, Tuple

STOP_WORDS = frozenset("""
a an and are as at be by for from has he in is it its of on that the to was will with
this but they have had what said each which their time if up out many then them these
so some her would make like into him two more very after words long than first been
call who oil sit now find down day did get come made may part
""".split())

_TAG_RE = re.compile(r"<[^>]+>")
_URL_RE = re.compile(r"https?://\S+")
_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")
_NUMERIC_RE = re.compile(r"^\d+$")


def _clean(text: str) -> str:
    text = text.lower()
    text = _TAG_RE.sub(" ", text)
    text = _URL_RE.sub(" ", text)
    text = _PUNCT_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", text).strip()


def tokenize(text: str) -> List[str]:
    """Lowercase, strip markup/urls/punctuation and drop stop words, short and numeric tokens."""
    if not text:
        return []
    return [
        token for token in _clean(text).split(" ")
        if len(token) >= 2 and token not in STOP_WORDS and not _NUMERIC_RE.match(token)
    ]


def calculate_term_frequency(tokens: List[str]) -> Dict[str, Dict]:
    """Map each token to its count and zero-based positions in ``tokens``."""
    frequencies: Dict[str, Dict] = {}
    for position, token in enumerate(tokens):
        entry = frequencies.setdefault(token, {"count": 0, "positions": []})
        entry["count"] += 1
        entry["positions"].append(position)
    return frequencies


def normalize_query(text: str) -> str:
    if not text:
        return ""
    return _SPACE_RE.sub(" ", text.lower()).strip()


def extract_bigrams(tokens: List[str]) -> List[Tuple[str, str, int]]:
    """Consecutive token pairs with the position of the first token."""
    return [(tokens[i], tokens[i + 1], i) for i in range(len(tokens) - 1)]
