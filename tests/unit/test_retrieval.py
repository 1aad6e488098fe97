"""Unit tests for token-budgeted context assembly."""

import math
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from synapse_memory.config import SynapseSettings
from synapse_memory.embedding.ollama import EmbeddingError, OllamaClient
from synapse_memory.errors import NotFoundError
from synapse_memory.memory.retrieval import (
    build_context,
    format_context,
    ledger_matches,
    query_terms,
)
from synapse_memory.memory.types import (
    ContextBundle,
    LedgerCategory,
    LedgerEntry,
    MemoryNode,
    RankedNode,
)
from synapse_memory.storage.sqlite import GraphStore

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def angled(degrees: float) -> list[float]:
    rad = math.radians(degrees)
    return [math.cos(rad), math.sin(rad)]


@pytest.fixture
def store():
    """Create ephemeral store for testing."""
    s = GraphStore(ephemeral=True)
    yield s
    s.close()


@pytest.fixture
def graph_id(store: GraphStore) -> str:
    return store.create_graph("subject-1").id


@pytest.fixture
def embedder():
    mock = MagicMock(spec=OllamaClient)
    mock.embed = AsyncMock(return_value=[1.0, 0.0])
    return mock


@pytest.fixture
def settings() -> SynapseSettings:
    return SynapseSettings()


class TestQueryTerms:
    """Tests for keyword extraction and ledger triggering."""

    def test_drops_stopwords_and_short_words(self):
        assert query_terms("Do you remember the chess club?") == {"remember", "chess", "club"}

    def test_keyword_trigger(self):
        entry = LedgerEntry(id="l1", graph_id="g1", content="Be gentle", trigger_keywords=["Chess"])
        assert ledger_matches(entry, "who won at chess", query_terms("who won at chess"))

    def test_content_word_trigger(self):
        entry = LedgerEntry(id="l1", graph_id="g1", content="Allergic to peanuts")
        assert ledger_matches(entry, "any peanuts today", query_terms("any peanuts today"))
        assert not ledger_matches(entry, "play piano", query_terms("play piano"))

    def test_keyword_matches_whole_words_only(self):
        entry = LedgerEntry(id="l1", graph_id="g1", content="Be gentle", trigger_keywords=["art"])
        assert not ledger_matches(entry, "which part was hard", query_terms("which part was hard"))
        assert not ledger_matches(entry, "started today", query_terms("started today"))
        assert ledger_matches(entry, "after art class", query_terms("after art class"))

    def test_multi_word_keyword(self):
        entry = LedgerEntry(id="l1", graph_id="g1", content="Be gentle", trigger_keywords=["Big Sister"])
        assert ledger_matches(entry, "my big sister called", query_terms("my big sister called"))
        assert not ledger_matches(entry, "my big sisterhood essay", query_terms("my big sisterhood essay"))


class TestBuildContext:
    """Tests for build_context()."""

    @pytest.mark.asyncio
    async def test_budget_respected_and_ordered(self, store, graph_id, embedder, settings):
        """Fifty 50-token candidates under a 500-token budget."""
        for i in range(50):
            store.create_node(
                graph_id,
                f"{i:03d}" + "x" * 197,
                salience=0.9,
                embedding=angled(i * 1.5),
                created_at=T0,
            )

        bundle = await build_context(store, embedder, graph_id, "chess", token_budget=500, settings=settings, now=T0)

        assert bundle.estimated_tokens <= 500
        assert sum(r.estimated_tokens for r in bundle.nodes) == bundle.estimated_tokens
        assert len(bundle.nodes) == 10
        relevances = [r.relevance for r in bundle.nodes]
        assert relevances == sorted(relevances, reverse=True)
        assert bundle.candidates_considered == 50
        assert bundle.dropped_for_budget == 40
        assert bundle.degraded is False
        assert bundle.nodes[0].node.content.startswith("000")
        embedder.embed.assert_awaited_once_with("chess", is_query=True)

    @pytest.mark.asyncio
    async def test_relevance_is_similarity_times_gravity(self, store, graph_id, embedder, settings):
        strong = store.create_node(graph_id, "strong", salience=0.5, embedding=[1.0, 0.0], created_at=T0)
        store.create_node(graph_id, "aligned but faint", salience=0.4, embedding=[1.0, 0.0], created_at=T0)

        bundle = await build_context(store, embedder, graph_id, "q", settings=settings, now=T0)

        assert bundle.nodes[0].node.id == strong.id
        assert bundle.nodes[0].relevance == pytest.approx(0.5)
        assert bundle.nodes[0].similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_zero_relevance_nodes_are_not_candidates(self, store, graph_id, embedder, settings):
        store.create_node(graph_id, "orthogonal", embedding=[0.0, 1.0], created_at=T0)
        store.create_node(graph_id, "opposite", embedding=[-1.0, 0.0], created_at=T0)
        store.create_node(graph_id, "unembedded", created_at=T0)

        bundle = await build_context(store, embedder, graph_id, "q", settings=settings, now=T0)

        assert bundle.nodes == []
        assert bundle.candidates_considered == 0

    @pytest.mark.asyncio
    async def test_returned_nodes_are_accessed(self, store, graph_id, embedder, settings):
        node = store.create_node(graph_id, "likes chess", embedding=[1.0, 0.0], created_at=T0)
        later = datetime(2026, 1, 5, tzinfo=timezone.utc)

        await build_context(store, embedder, graph_id, "chess", settings=settings, now=later)

        loaded = store.get_node(node.id)
        assert loaded.access_count == 1
        assert loaded.last_accessed_at == later

    @pytest.mark.asyncio
    async def test_degrades_to_gravity_when_provider_fails(self, store, graph_id, embedder, settings):
        embedder.embed = AsyncMock(side_effect=EmbeddingError("provider down"))
        weak = store.create_node(graph_id, "weak", salience=0.3, embedding=[1.0, 0.0], created_at=T0)
        strong = store.create_node(graph_id, "strong", salience=0.9, created_at=T0)

        bundle = await build_context(store, embedder, graph_id, "q", settings=settings, now=T0)

        assert bundle.degraded is True
        assert [r.node.id for r in bundle.nodes] == [strong.id, weak.id]
        assert bundle.nodes[0].relevance == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_no_embedder_degrades(self, store, graph_id, settings):
        store.create_node(graph_id, "a", created_at=T0)
        bundle = await build_context(store, None, graph_id, "q", settings=settings, now=T0)
        assert bundle.degraded is True
        assert len(bundle.nodes) == 1

    @pytest.mark.asyncio
    async def test_max_nodes_counts_dropped(self, store, graph_id, embedder, settings):
        for i in range(5):
            store.create_node(graph_id, f"node {i}", embedding=[1.0, 0.0], created_at=T0)

        bundle = await build_context(store, embedder, graph_id, "q", settings=settings, now=T0, max_nodes=2)

        assert len(bundle.nodes) == 2
        assert bundle.dropped_for_limit == 3
        assert bundle.total_dropped == 3

    @pytest.mark.asyncio
    async def test_ledger_charged_first(self, store, graph_id, embedder, settings):
        entry = store.create_ledger_entry(
            graph_id,
            "Never bring up the chess final loss",
            category=LedgerCategory.INSTRUCTION,
            importance=0.9,
            trigger_keywords=["chess"],
        )
        store.create_ledger_entry(graph_id, "chess is fun", importance=0.3, trigger_keywords=["chess"])
        store.create_node(graph_id, "y" * 40, embedding=[1.0, 0.0], created_at=T0)

        bundle = await build_context(
            store, embedder, graph_id, "shall we play chess", token_budget=15, settings=settings, now=T0
        )

        assert [e.id for e in bundle.ledger_entries] == [entry.id]
        assert bundle.nodes == []
        assert bundle.dropped_for_budget == 1
        assert bundle.estimated_tokens == 9
        assert store.list_ledger_entries(graph_id)[0].access_count == 1

    @pytest.mark.asyncio
    async def test_explicit_keywords_trigger_ledger(self, store, graph_id, embedder, settings):
        store.create_ledger_entry(graph_id, "Uses a wheelchair", importance=0.8, trigger_keywords=["trip"])

        bundle = await build_context(
            store, embedder, graph_id, "what should we do", keywords=["trip"], settings=settings, now=T0
        )

        assert len(bundle.ledger_entries) == 1

    @pytest.mark.asyncio
    async def test_include_connected_boosts_neighbours(self, store, graph_id, embedder, settings):
        seed = store.create_node(graph_id, "likes chess", salience=0.8, embedding=[1.0, 0.0], created_at=T0)
        linked = store.create_node(graph_id, "chess club on fridays", salience=0.8, embedding=[0.0, 1.0], created_at=T0)
        store.create_edge(graph_id, seed.id, linked.id, weight=0.5)

        plain = await build_context(store, embedder, graph_id, "q", settings=settings, now=T0)
        expanded = await build_context(
            store, embedder, graph_id, "q", settings=settings, now=T0, include_connected=True
        )

        assert [r.node.id for r in plain.nodes] == [seed.id]
        assert [r.node.id for r in expanded.nodes] == [seed.id, linked.id]
        assert expanded.nodes[1].via == seed.id
        assert expanded.nodes[1].relevance == pytest.approx(0.8 * 0.5 * 0.5)

    @pytest.mark.asyncio
    async def test_invalid_budget(self, store, graph_id, embedder, settings):
        with pytest.raises(ValueError):
            await build_context(store, embedder, graph_id, "q", token_budget=0, settings=settings)

    @pytest.mark.asyncio
    async def test_unknown_graph(self, store, embedder, settings):
        with pytest.raises(NotFoundError):
            await build_context(store, embedder, "graph_missing", "q", settings=settings)


class TestFormatContext:
    """Tests for rendering bundles."""

    @pytest.fixture
    def bundle(self) -> ContextBundle:
        node = MemoryNode(id="n1", graph_id="g1", content="likes chess", created_at=T0, last_accessed_at=T0)
        return ContextBundle(
            graph_id="g1",
            query="name",
            token_budget=100,
            nodes=[RankedNode(node=node, gravity=0.5, similarity=1.0, relevance=0.5, estimated_tokens=3)],
            ledger_entries=[LedgerEntry(id="l1", graph_id="g1", content="Call me Sam")],
        )

    def test_structured(self, bundle):
        text = format_context(bundle, "structured")
        assert "## Ledger" in text
        assert "- [instruction] Call me Sam" in text
        assert "- (episodic) likes chess" in text

    def test_narrative(self, bundle):
        text = format_context(bundle, "narrative")
        assert text.startswith("Standing agreements: Call me Sam.")
        assert "From earlier conversations: likes chess." in text

    def test_minimal(self, bundle):
        assert format_context(bundle, "minimal") == "Call me Sam\nlikes chess"

    def test_empty_bundle(self):
        assert format_context(ContextBundle(graph_id="g1", query="q", token_budget=10)) == ""

    def test_unknown_style(self, bundle):
        with pytest.raises(ValueError):
            format_context(bundle, "poetic")
