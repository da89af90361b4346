"""Integration tests for ManticoreAdapter against a real Manticore instance."""

from __future__ import annotations

import pytest

from bibliosearch.adapters.base.exceptions import QueryExecutionError
from bibliosearch.adapters.manticore.adapter import ConnectionState, ManticoreAdapter
from bibliosearch.models.query import Pagination, SearchFilters, SearchQuery
from bibliosearch.models.work import WorkRecord

TEST_INDEX = "it_works_rt"

pytestmark = [pytest.mark.integration, pytest.mark.asyncio, pytest.mark.manticore]


@pytest.fixture
async def adapter(manticore_ready):
    a = ManticoreAdapter(base_url=manticore_ready, search_indexes=[TEST_INDEX], rt_index=TEST_INDEX)
    await a.initialize()
    yield a
    await a.shutdown()


class TestManticoreHealth:
    async def test_health_check_returns_healthy(self, adapter):
        health = await adapter.health_check()
        assert health.status == "healthy"
        assert health.latency_ms >= 0

    async def test_connected(self, adapter):
        assert adapter.state is ConnectionState.CONNECTED

    async def test_status(self, adapter):
        status = await adapter.get_status()
        assert status.connected is True
        assert status.uptime_seconds > 0
        assert TEST_INDEX in status.indexes


class TestManticoreSearch:
    async def test_search_returns_results(self, adapter):
        page = await adapter.search_works(SearchQuery(text="solar nowcasting"))
        assert page.total > 0
        assert page.hits[0].id == 101

    async def test_ranking_is_descending(self, adapter):
        page = await adapter.search_works(SearchQuery(text="learning"))
        scores = [h.relevance_score for h in page.hits]
        assert scores == sorted(scores, reverse=True)

    async def test_filters(self, adapter):
        query = SearchQuery(text="learning", filters=SearchFilters(language="pt"))
        page = await adapter.search_works(query)
        assert [h.id for h in page.hits] == [103]

    async def test_pagination(self, adapter):
        page = await adapter.search_works(SearchQuery(text="learning", pagination=Pagination(limit=1)))
        assert len(page.hits) == 1
        assert page.total >= 3

    async def test_no_results_for_gibberish(self, adapter):
        page = await adapter.search_works(SearchQuery(text="xyzzyspoon999"))
        assert page.total == 0

    async def test_hostile_text_is_safe(self, adapter):
        page = await adapter.search_works(SearchQuery(text="x') OR 1=1; DROP TABLE works --"))
        assert page.total == 0


class TestManticoreFacets:
    async def test_facets(self, adapter):
        facets = await adapter.get_facets("learning", {"years": 5, "authors": 5})
        assert sum(b.count for b in facets["years"]) >= 3
        assert facets["authors"]

    async def test_unknown_index_is_an_engine_error(self, manticore_ready):
        a = ManticoreAdapter(base_url=manticore_ready, search_indexes=["no_such_index"])
        try:
            with pytest.raises(QueryExecutionError):
                await a.search_works(SearchQuery(text="learning"))
        finally:
            await a.shutdown()


class TestManticoreRealTime:
    async def test_index_then_update(self, adapter):
        record = WorkRecord(id=9001, title="Quasicrystal Lattices", year=2020, work_type="ARTICLE", language="en")
        await adapter.index_work(record)

        page = await adapter.search_works(SearchQuery(text="quasicrystal"))
        assert [h.id for h in page.hits] == [9001]

        await adapter.update_work(9001, {"year": 2021})
        page = await adapter.search_works(SearchQuery(text="quasicrystal", filters=SearchFilters(year=2021)))
        assert [h.id for h in page.hits] == [9001]
