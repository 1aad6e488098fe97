"""Unit tests for the two-layer compression pass."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from synapse_memory.config import SynapseSettings
from synapse_memory.embedding.ollama import EmbeddingError, OllamaClient
from synapse_memory.errors import CompressionFailed, ConcurrentModification
from synapse_memory.memory.compression import (
    build_merge,
    cluster_nodes,
    compress,
    protected_node_ids,
    should_compress,
    summarize,
)
from synapse_memory.memory.decay import GravityParams
from synapse_memory.memory.types import (
    ContradictionRecord,
    ContradictionState,
    EdgeType,
    LedgerCategory,
    LedgerEntry,
    MemoryNode,
    Modality,
    RemembrancePolicy,
)
from synapse_memory.storage.sqlite import GraphStore

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def one_hot(i: int, size: int = 10) -> list[float]:
    return [1.0 if j == i else 0.0 for j in range(size)]


def make_node(node_id: str, content: str, salience: float = 0.8, embedding=None, **kwargs) -> MemoryNode:
    return MemoryNode(
        id=node_id,
        graph_id="g1",
        content=content,
        salience=salience,
        created_at=T0,
        last_accessed_at=T0,
        embedding=embedding,
        **kwargs,
    )


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
    mock.embed_batch = AsyncMock(side_effect=lambda texts, **kwargs: [[1.0, 0.0] for _ in texts])
    return mock


@pytest.fixture
def settings() -> SynapseSettings:
    return SynapseSettings()


class TestHelpers:
    """Tests for protected set, summaries and clustering."""

    def test_protected_set(self):
        ledger = [
            LedgerEntry(id="l1", graph_id="g1", content="x", related_node_ids=["n1"]),
            LedgerEntry(id="l2", graph_id="g1", content="y", related_node_ids=["n9"], active=False),
        ]
        contradictions = [
            ContradictionRecord(edge_id="e1", graph_id="g1", source_id="n2", target_id="n3"),
            ContradictionRecord(
                edge_id="e2", graph_id="g1", source_id="n4", target_id="n5",
                state=ContradictionState.MERGED,
            ),
        ]
        assert protected_node_ids(ledger, contradictions) == {"n1", "n2", "n3"}

    def test_summarize_dedupes_and_truncates(self):
        members = [make_node("a", "Likes chess"), make_node("b", "likes chess"), make_node("c", "Plays piano")]
        assert summarize(members, 500) == "Likes chess | Plays piano"
        short = summarize(members, 10)
        assert len(short) <= 10
        assert short.endswith("...")

    def test_cluster_requires_complete_linkage(self):
        # a~b and b~c are similar, a and c are not: c must not join a's cluster
        a = make_node("a", "a", 0.9, [1.0, 0.0])
        b = make_node("b", "b", 0.8, [0.8, 0.6])
        c = make_node("c", "c", 0.7, [0.28, 0.96])
        gravities = {"a": 0.9, "b": 0.8, "c": 0.7}
        clusters = cluster_nodes([a, b, c], gravities, 0.618, 10)
        assert [[n.id for n in cluster] for cluster in clusters] == [["a", "b"]]

    def test_nodes_without_embedding_never_cluster(self):
        a = make_node("a", "a", 0.9, [1.0, 0.0])
        b = make_node("b", "b", 0.8, None)
        assert cluster_nodes([a, b], {"a": 0.9, "b": 0.8}, 0.618, 10) == []

    def test_max_clusters(self):
        nodes = [
            make_node("a1", "a1", 0.9, [1.0, 0.0]),
            make_node("a2", "a2", 0.9, [1.0, 0.0]),
            make_node("b1", "b1", 0.8, [0.0, 1.0]),
            make_node("b2", "b2", 0.8, [0.0, 1.0]),
        ]
        gravities = {n.id: n.salience for n in nodes}
        assert len(cluster_nodes(nodes, gravities, 0.618, 1)) == 1

    def test_build_merge(self):
        a = make_node("a", "alpha", 0.9, modality=Modality.SEMANTIC, topic="games", access_count=2)
        b = make_node(
            "b", "beta", 0.8, modality=Modality.SEMANTIC, topic="games", access_count=1,
            metadata={"merged_from": ["old"]},
        )
        c = make_node("c", "gamma", 0.5, modality=Modality.EMOTIONAL, topic="games")
        gravities = {"a": 0.9, "b": 0.8, "c": 0.5}
        merge = build_merge([c, b, a], gravities, GravityParams(), 500, T0)

        phi = 1.618
        expected = (0.9 + 0.8 / phi + 0.5 / phi ** 2) / (1 + 1 / phi + 1 / phi ** 2)
        assert merge.salience == pytest.approx(expected)
        assert merge.member_ids == ["a", "b", "c"]
        assert merge.content == "alpha | beta | gamma"
        assert merge.modality is Modality.SEMANTIC
        assert merge.topic == "games"
        assert merge.access_count == 3
        assert merge.metadata["merged_from"] == ["a", "b", "old", "c"]
        assert merge.embedding is None

    def test_build_merge_modality_tie_broken_by_gravity(self):
        a = make_node("a", "alpha", 0.4, modality=Modality.SEMANTIC)
        b = make_node("b", "beta", 0.9, modality=Modality.EMOTIONAL)
        merge = build_merge([a, b], {"a": 0.4, "b": 0.9}, GravityParams(), 500, T0)
        assert merge.modality is Modality.EMOTIONAL
        assert merge.topic is None


class TestCompress:
    """Tests for compress() against an ephemeral store."""

    @pytest.mark.asyncio
    async def test_prunes_low_gravity_nodes(self, store, graph_id, embedder, settings):
        """Ten unrelated nodes, six below the noise floor: four survive one pass."""
        for i in range(10):
            salience = 0.2 if i < 6 else 0.8
            store.create_node(graph_id, f"memory {i}", salience=salience, embedding=one_hot(i), created_at=T0)

        report = await compress(store, embedder, graph_id, settings=settings, now=T0)

        graph = store.get_graph(graph_id)
        assert graph.node_count == 4
        assert graph.compression_passes == 1
        assert report.pass_id == 1
        assert report.nodes_pruned == 6
        assert report.nodes_merged == 0
        assert report.nodes_before == 10
        assert report.nodes_after == 4
        assert report.entropy_loss == pytest.approx(6 * 0.2)
        assert graph.snr == pytest.approx(1.0 + 0.6 / 1.618)
        assert report.new_snr == graph.snr
        assert len(graph.loss_vector) == 1
        assert graph.loss_vector[0].nodes_pruned == 6
        assert graph.last_compressed_at == T0
        embedder.embed_batch.assert_not_called()
        assert store.verify_integrity(graph_id).ok

    @pytest.mark.asyncio
    async def test_floor_boundary(self, store, graph_id, embedder, settings):
        kept = store.create_node(graph_id, "on the floor", salience=0.382, embedding=one_hot(0), created_at=T0)
        store.create_node(graph_id, "just below", salience=0.381, embedding=one_hot(1), created_at=T0)
        protected = store.create_node(graph_id, "protected", salience=0.381, embedding=one_hot(2), created_at=T0)
        store.create_ledger_entry(graph_id, "keep this", related_node_ids=[protected.id])

        report = await compress(store, embedder, graph_id, settings=settings, now=T0)

        assert report.nodes_pruned == 1
        assert {n.id for n in store.list_nodes(graph_id)} == {kept.id, protected.id}

    @pytest.mark.asyncio
    async def test_contradiction_endpoints_protected(self, store, graph_id, embedder, settings):
        a = store.create_node(graph_id, "allergic", salience=0.1, embedding=one_hot(0), created_at=T0)
        b = store.create_node(graph_id, "not allergic", salience=0.1, embedding=one_hot(1), created_at=T0)
        store.create_edge(graph_id, a.id, b.id, edge_type=EdgeType.CONTRADICTS)

        report = await compress(store, embedder, graph_id, settings=settings, now=T0)

        assert report.nodes_pruned == 0
        assert store.get_graph(graph_id).node_count == 2

    @pytest.mark.asyncio
    async def test_merges_similar_nodes(self, store, graph_id, embedder, settings):
        a = store.create_node(graph_id, "alpha", salience=0.9, embedding=[1.0, 0.0], created_at=T0)
        b = store.create_node(graph_id, "beta", salience=0.8, embedding=[0.99, 0.14], created_at=T0)
        c = store.create_node(graph_id, "gamma", salience=0.8, embedding=[0.0, 1.0], created_at=T0)
        store.create_edge(graph_id, a.id, b.id)
        store.create_edge(graph_id, a.id, c.id, weight=0.3)
        store.create_edge(graph_id, b.id, c.id, weight=0.7)
        embedder.embed_batch = AsyncMock(return_value=[[0.7, 0.7]])

        report = await compress(store, embedder, graph_id, settings=settings, now=T0)

        assert report.nodes_merged == 2
        assert report.clusters_formed == 1
        [(merged_id, members)] = report.merged_into.items()
        assert members == [a.id, b.id]

        merged = store.get_node(merged_id)
        assert merged.content == "alpha | beta"
        assert merged.embedding == [0.7, 0.7]
        assert merged.merged_from == [a.id, b.id]

        [edge] = store.list_edges(graph_id)
        assert (edge.source_id, edge.target_id) == (merged_id, c.id)
        assert edge.weight == 0.7

        graph = store.get_graph(graph_id)
        assert graph.node_count == 2
        assert graph.edge_count == 1
        assert store.verify_integrity(graph_id).ok
        embedder.embed_batch.assert_awaited_once_with(["alpha | beta"])

    @pytest.mark.asyncio
    async def test_embeds_nodes_missing_vectors(self, store, graph_id, embedder, settings):
        a = store.create_node(graph_id, "alpha", salience=0.9, created_at=T0)
        b = store.create_node(graph_id, "beta", salience=0.8, created_at=T0)
        embedder.embed_batch = AsyncMock(return_value=[[1.0, 0.0], [0.0, 1.0]])

        report = await compress(store, embedder, graph_id, settings=settings, now=T0)

        assert report.nodes_merged == 0
        assert store.get_node(a.id).embedding == [1.0, 0.0]
        assert store.get_node(b.id).embedding == [0.0, 1.0]

    @pytest.mark.asyncio
    async def test_embedding_failure_persists_nothing(self, store, graph_id, embedder, settings):
        store.create_node(graph_id, "low", salience=0.1, created_at=T0)
        store.create_node(graph_id, "unembedded", salience=0.9, created_at=T0)
        embedder.embed_batch = AsyncMock(side_effect=EmbeddingError("provider down"))

        with pytest.raises(CompressionFailed):
            await compress(store, embedder, graph_id, settings=settings, now=T0)

        graph = store.get_graph(graph_id)
        assert graph.node_count == 2
        assert graph.compression_passes == 0
        assert graph.snr == 1.0
        assert graph.loss_vector == []

    @pytest.mark.asyncio
    async def test_dry_run_commits_nothing(self, store, graph_id, embedder, settings):
        for i in range(3):
            store.create_node(graph_id, f"low {i}", salience=0.1, embedding=one_hot(i), created_at=T0)

        report = await compress(store, embedder, graph_id, settings=settings, now=T0, dry_run=True)

        assert report.dry_run is True
        assert report.nodes_pruned == 3
        assert report.nodes_after == 0
        graph = store.get_graph(graph_id)
        assert graph.node_count == 3
        assert graph.compression_passes == 0

    @pytest.mark.asyncio
    async def test_snr_monotonic_and_bounded(self, store, graph_id, embedder, settings):
        snrs = [store.get_graph(graph_id).snr]
        for round_ in range(4):
            for i in range(5):
                store.create_node(
                    graph_id, f"round {round_} low {i}", salience=0.1,
                    embedding=one_hot(i), created_at=T0,
                )
            await compress(store, embedder, graph_id, settings=settings, now=T0)
            snrs.append(store.get_graph(graph_id).snr)

        assert snrs == sorted(snrs)
        assert snrs[-1] <= 2.0
        assert store.get_graph(graph_id).compression_passes == 4

    @pytest.mark.asyncio
    async def test_retries_once_on_concurrent_write(self, store, graph_id, embedder, settings):
        store.create_node(graph_id, "alpha", salience=0.9, created_at=T0)
        store.create_node(graph_id, "beta", salience=0.9, created_at=T0)
        calls = []

        def embed_and_interfere(texts, **kwargs):
            calls.append(list(texts))
            if len(calls) == 1:
                store.create_node(graph_id, "written mid-pass", embedding=[0.0, 0.0, 1.0])
            return [one_hot(i, 3) for i in range(len(texts))]

        embedder.embed_batch = AsyncMock(side_effect=embed_and_interfere)

        report = await compress(store, embedder, graph_id, settings=settings, now=T0)

        assert len(calls) == 2
        assert report.nodes_before == 3
        graph = store.get_graph(graph_id)
        assert graph.compression_passes == 1
        assert graph.node_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_second_conflict(self, store, graph_id, embedder, settings):
        store.create_node(graph_id, "alpha", salience=0.9, created_at=T0)

        def always_interfere(texts, **kwargs):
            store.create_node(graph_id, "interloper", embedding=[0.0, 1.0])
            return [[1.0, 0.0] for _ in texts]

        embedder.embed_batch = AsyncMock(side_effect=always_interfere)

        with pytest.raises(ConcurrentModification):
            await compress(store, embedder, graph_id, settings=settings, now=T0)
        assert store.get_graph(graph_id).compression_passes == 0

    @pytest.mark.asyncio
    async def test_session_only_nodes_are_never_merged(self, store, graph_id, embedder, settings):
        """Nodes held for one session keep their own row until the session ends."""
        store.create_ledger_entry(
            graph_id,
            "agreement on medication",
            category=LedgerCategory.NEGOTIATION,
            importance=1.0,
            trigger_keywords=["medication"],
            metadata={"policy": RemembrancePolicy.SESSION_ONLY.value},
        )
        session = store.start_session(graph_id)
        temp = store.create_node(
            graph_id,
            "takes sertraline daily",
            salience=0.9,
            embedding=[1.0, 0.0],
            topic="medication",
            session_id=session.id,
            created_at=T0,
        )
        kept = store.create_node(graph_id, "worried about side effects", salience=0.9, embedding=[1.0, 0.0], created_at=T0)

        report = await compress(store, embedder, graph_id, settings=settings, now=T0)

        assert report.nodes_merged == 0
        _, purged = store.end_session(session.id)
        assert purged == [temp.id]
        assert [n.content for n in store.list_nodes(graph_id)] == [kept.content]

    @pytest.mark.asyncio
    async def test_unknown_graph(self, store, embedder, settings):
        from synapse_memory.errors import NotFoundError

        with pytest.raises(NotFoundError):
            await compress(store, embedder, "graph_missing", settings=settings, now=T0)


class TestShouldCompress:
    """Tests for the compression triggers."""

    def test_empty_graph_not_due(self, store, graph_id):
        assert should_compress(store, graph_id, now=T0) is False

    def test_node_threshold(self, store, graph_id):
        settings = SynapseSettings(compression_node_threshold=2)
        for i in range(3):
            store.create_node(graph_id, f"n{i}", salience=0.9, created_at=T0)
        assert should_compress(store, graph_id, settings, now=T0) is True

    def test_low_gravity_ratio(self, store, graph_id):
        store.create_node(graph_id, "strong", salience=0.9, created_at=T0)
        store.create_node(graph_id, "weak", salience=0.9, created_at=T0)
        assert should_compress(store, graph_id, now=T0) is False
        # Both nodes fall under the floor after enough idle time
        assert should_compress(store, graph_id, now=T0 + timedelta(days=30)) is True

    @pytest.mark.asyncio
    async def test_interval_since_last_pass(self, store, graph_id, embedder):
        store.create_node(graph_id, "strong", salience=0.9, embedding=[1.0, 0.0], created_at=T0)
        await compress(store, embedder, graph_id, now=T0)
        assert should_compress(store, graph_id, now=T0) is False
        assert should_compress(store, graph_id, now=T0 + timedelta(days=31)) is True
