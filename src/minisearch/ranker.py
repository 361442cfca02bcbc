"""
Relevance scoring: field-boosted TF-IDF, link authority and query coverage.
"""
from __future__ import annotations
import math
from collections import defaultdict
from typing import Dict, Iterable, List, Tuple

from . import db_operations as ops
from .config import RankingConfig
from .database import Database


def weighted_term_frequencies(term_rows: Iterable[Tuple[int, str, str, int]],
                              field_boosts: Dict[str, float]) -> Dict[int, Dict[str, float]]:
    """page_id -> word -> sum of field term frequencies times the field boost."""
    weighted: Dict[int, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
    for page_id, word, field_type, tf in term_rows:
        weighted[page_id][word] += tf * field_boosts.get(field_type, 1.0)
    return weighted


def score_documents(documents: List[dict], query_tokens: List[str],
                    weighted_tf: Dict[int, Dict[str, float]], document_frequency: Dict[str, int],
                    total_documents: int, config: RankingConfig) -> List[dict]:
    """Attach tfidf/match/final scores and return the documents best first (ties keep input order)."""
    scored = []
    for doc in documents:
        terms = weighted_tf.get(doc["id"], {})
        tfidf = 0.0
        matched = 0
        for token in query_tokens:
            tf = terms.get(token, 0.0)
            if tf <= 0:
                continue
            matched += 1
            if total_documents > 0:
                idf = math.log(total_documents / max(document_frequency.get(token, 1), 1))
                tfidf += math.log(1 + tf) * idf
        match_score = matched / len(query_tokens) if query_tokens else 0.0
        authority = float(doc.get("authority_score") or 0.0)
        final = (tfidf * config.tfidf_weight
                 + authority * config.authority_weight
                 + match_score * config.match_weight)
        scored.append({**doc, "tfidf_score": tfidf, "match_score": match_score, "final_score": final})
    # sorted() is stable
    return sorted(scored, key=lambda d: -d["final_score"])


class Ranker:
    def __init__(self, db: Database, config: RankingConfig):
        self.db = db
        self.config = config

    async def rank(self, documents: List[dict], query_tokens: List[str]) -> List[dict]:
        if not documents:
            return []
        term_rows = await ops.get_term_frequencies(self.db, [d["id"] for d in documents], query_tokens)
        document_frequency = await ops.get_document_frequencies(self.db, query_tokens)
        total_documents = await ops.count_indexed_pages(self.db)
        return score_documents(
            documents,
            query_tokens,
            weighted_term_frequencies(term_rows, self.config.field_boosts),
            document_frequency,
            total_documents,
            self.config,
        )
