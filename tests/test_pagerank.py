import pytest

from src.minisearch import db_operations as ops
from src.minisearch.config import RankingConfig
from src.minisearch.pagerank import AuthorityEngine, compute_pagerank


class TestComputePagerank:
    def test_no_links_gives_one_minus_damping(self):
        for iterations in (1, 5, 10):
            ranks = compute_pagerank([1, 2, 3], [], iterations=iterations, damping=0.85)
            assert all(rank == pytest.approx(0.15) for rank in ranks.values())

    def test_symmetric_pair_stays_equal(self):
        for iterations in range(1, 8):
            ranks = compute_pagerank([1, 2], [(1, 2), (2, 1)], iterations=iterations)
            assert ranks[1] == pytest.approx(ranks[2])

    def test_linked_page_outranks_unlinked(self):
        ranks = compute_pagerank([1, 2, 3], [(1, 3), (2, 3)], iterations=10)
        assert ranks[3] > ranks[1]
        assert ranks[1] == pytest.approx(ranks[2])
        assert all(rank >= 0 for rank in ranks.values())

    def test_out_degree_counts_edges_to_unranked_pages(self):
        # page 1 links to 2 and to 99 (not indexed); only half its rank reaches 2
        ranks = compute_pagerank([1, 2], [(1, 2), (1, 99)], iterations=1)
        assert ranks[2] == pytest.approx(0.15 + 0.85 * 0.5 / 2)

    def test_first_iteration_reads_initial_snapshot(self):
        # chain 1 -> 2 -> 3: with double buffering page 3 sees page 2's initial rank
        ranks = compute_pagerank([1, 2, 3], [(1, 2), (2, 3)], iterations=1)
        assert ranks[3] == pytest.approx(0.15 + 0.85 / 3)
        assert ranks[2] == pytest.approx(0.15 + 0.85 / 3)

    def test_empty_graph(self):
        assert compute_pagerank([], []) == {}


async def _page(db, url, indexed=True):
    page_id = await ops.upsert_page(db, {"url": url, "domain": "example.com", "content_hash": url})
    if indexed:
        await ops.set_page_indexed(db, page_id, True)
    return page_id


@pytest.mark.asyncio
async def test_authority_engine_persists_scores(db):
    a = await _page(db, "https://example.com/a")
    b = await _page(db, "https://example.com/b")
    c = await _page(db, "https://example.com/c", indexed=False)
    await ops.save_links(db, a, [("https://example.com/b", "b", "internal")])
    await ops.save_links(db, b, [("https://example.com/a", "a", "internal")])

    engine = AuthorityEngine(db, RankingConfig())
    ranks = await engine.calculate_page_rank(iterations=10)

    assert set(ranks) == {a, b}
    scores = await ops.get_authority_scores(db, [a, b, c])
    assert scores[a] == pytest.approx(scores[b])
    assert scores[a] > 0
    assert scores[c] == 0


@pytest.mark.asyncio
async def test_authority_engine_without_pages(db):
    assert await AuthorityEngine(db, RankingConfig()).calculate_page_rank() == {}
