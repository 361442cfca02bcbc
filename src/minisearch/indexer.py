"""
Inverted index maintenance.

Each page is indexed per field (title, body, meta, keywords); a row holds the
term frequency and the ordered token positions of one word in one field.
Re-indexing overwrites rows rather than adding to them.
"""
from __future__ import annotations
import logging
from collections import defaultdict
from typing import Dict, List, Set, Tuple

from . import db_operations as ops
from .config import IndexerConfig
from .database import Database
from .errors import PersistenceError
from .parse import PageContent
from .tokenizer import calculate_term_frequency, extract_bigrams, tokenize

logger = logging.getLogger(__name__)


def field_texts(content: PageContent) -> Dict[str, str]:
    return {
        "title": content.title or "",
        "body": content.body_text or "",
        "meta": content.meta_description or "",
        "keywords": " ".join(content.keywords or []),
    }


def bigram_rows(page_id: int, tokens: List[str]) -> List[Tuple[str, str, int, int, List[int]]]:
    positions: Dict[Tuple[str, str], List[int]] = defaultdict(list)
    for word1, word2, position in extract_bigrams(tokens):
        positions[(word1, word2)].append(position)
    return [(w1, w2, page_id, len(pos), pos) for (w1, w2), pos in positions.items()]


class Indexer:
    def __init__(self, db: Database, config: IndexerConfig):
        self.db = db
        self.config = config

    async def index_page(self, page_id: int, content: PageContent) -> dict:
        existing = await ops.get_indexed_words(self.db, page_id)
        touched: Set[str] = {word for word, _ in existing}
        fields_indexed: List[str] = []
        errors = 0
        body_tokens: List[str] = []

        for field_type, text in field_texts(content).items():
            tokens = tokenize(text)
            if field_type == "body":
                body_tokens = tokens
            frequencies = calculate_term_frequency(tokens)
            rows = [
                (word, page_id, field_type, entry["count"], entry["positions"])
                for word, entry in frequencies.items()
            ]
            stale = [word for word, f in existing if f == field_type and word not in frequencies]
            try:
                await ops.upsert_index_rows(self.db, rows, self.config.batch_size)
                await ops.delete_index_words(self.db, page_id, field_type, stale)
            except PersistenceError as e:
                errors += 1
                logger.error("Failed to index field %s of page %s: %s", field_type, page_id, e)
                continue
            touched.update(frequencies)
            if rows:
                fields_indexed.append(field_type)

        if self.config.enable_bigrams:
            try:
                await ops.delete_bigrams(self.db, page_id)
                await ops.upsert_bigrams(self.db, bigram_rows(page_id, body_tokens), self.config.batch_size)
            except PersistenceError as e:
                logger.error("Failed to index bigrams of page %s: %s", page_id, e)

        await ops.refresh_document_frequency(self.db, touched)
        if errors:
            # left unindexed so the next crawl of the same content retries it
            logger.warning("Page %s indexed with %d failed fields", page_id, errors)
        else:
            await ops.set_page_indexed(self.db, page_id, True)
            logger.debug("Indexed page %s (%s)", page_id, ", ".join(fields_indexed) or "no terms")
        return {
            "success": errors == 0,
            "page_id": page_id,
            "fields_indexed": fields_indexed,
        }

    async def reindex_page(self, page_id: int) -> dict:
        """Drop a page's index rows so it is picked up again by the next crawl."""
        page = await ops.get_page(self.db, page_id)
        if not page:
            return {"success": False, "error": "Page not found"}
        words = await ops.delete_page_index(self.db, page_id)
        await ops.refresh_document_frequency(self.db, words)
        await ops.set_page_indexed(self.db, page_id, False)
        logger.info("Cleared index for page %s (%d words)", page_id, len(words))
        return {"success": True, "page_id": page_id, "url": page["url"], "words_removed": len(words)}
