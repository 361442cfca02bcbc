"""
Link authority (PageRank) over the stored link graph.
"""
from __future__ import annotations
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Tuple

from . import db_operations as ops
from .config import RankingConfig
from .database import Database

logger = logging.getLogger(__name__)


def compute_pagerank(page_ids: List[int], edges: Iterable[Tuple[int, int]],
                     iterations: int = 10, damping: float = 0.85) -> Dict[int, float]:
    """
    Fixed-iteration PageRank without normalisation:
    ``rank(p) = (1 - d) + d * sum(rank(s) / outdeg(s))`` over indexed sources
    linking to p. Out-degree counts every resolved outgoing edge of a source.
    Every iteration reads only the previous iteration's ranks.
    """
    if not page_ids:
        return {}

    nodes = set(page_ids)
    out_degree: Dict[int, int] = defaultdict(int)
    incoming: Dict[int, List[int]] = defaultdict(list)
    for source, target in edges:
        out_degree[source] += 1
        if source in nodes and target in nodes:
            incoming[target].append(source)

    ranks = {page_id: 1.0 / len(page_ids) for page_id in page_ids}
    for _ in range(iterations):
        ranks = {
            page_id: (1 - damping) + damping * sum(ranks[s] / out_degree[s] for s in incoming[page_id])
            for page_id in page_ids
        }
    return ranks


class AuthorityEngine:
    def __init__(self, db: Database, config: RankingConfig):
        self.db = db
        self.config = config

    async def calculate_page_rank(self, iterations: int = 10, damping: float = None) -> Dict[int, float]:
        damping = self.config.damping_factor if damping is None else damping
        page_ids, edges = await ops.load_link_graph(self.db)
        if not page_ids:
            logger.info("[pagerank] No indexed pages, nothing to rank")
            return {}
        logger.info("[pagerank] %d pages, %d edges, %d iterations", len(page_ids), len(edges), iterations)
        ranks = compute_pagerank(page_ids, edges, iterations, damping)
        await ops.save_authority_scores(self.db, ranks)
        logger.info("[pagerank] Stored authority scores")
        return ranks
