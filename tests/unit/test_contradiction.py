"""Unit tests for contradiction resolution."""

import pytest

from synapse_memory.errors import AlreadyResolvedError, NotFoundError
from synapse_memory.memory.contradiction import pending_contradictions, resolve_contradiction
from synapse_memory.memory.types import ContradictionState, EdgeType, ResolutionPolicy
from synapse_memory.storage.sqlite import GraphStore


@pytest.fixture
def store():
    """Create ephemeral store for testing."""
    s = GraphStore(ephemeral=True)
    yield s
    s.close()


@pytest.fixture
def peanuts(store: GraphStore):
    """Two nodes that disagree about a peanut allergy."""
    graph_id = store.create_graph("subject-1").id
    allergic = store.create_node(graph_id, "Has a severe peanut allergy", salience=0.9)
    not_allergic = store.create_node(graph_id, "Ate a peanut butter sandwich at lunch", salience=0.6)
    edge = store.create_edge(graph_id, allergic.id, not_allergic.id, edge_type=EdgeType.CONTRADICTS)
    return graph_id, allergic, not_allergic, edge


class TestResolveContradiction:
    """Tests for resolve_contradiction()."""

    def test_keep_source(self, store, peanuts):
        graph_id, allergic, not_allergic, edge = peanuts

        result = resolve_contradiction(store, edge.id, ResolutionPolicy.KEEP_SOURCE)

        assert result.state is ContradictionState.SOURCE_KEPT
        assert result.kept_node_ids == [allergic.id]
        assert result.deleted_node_ids == [not_allergic.id]
        assert [n.id for n in store.list_nodes(graph_id)] == [allergic.id]
        assert store.list_edges(graph_id) == []
        graph = store.get_graph(graph_id)
        assert (graph.node_count, graph.edge_count) == (1, 0)
        assert pending_contradictions(store, graph_id) == []

    def test_keep_target(self, store, peanuts):
        graph_id, allergic, not_allergic, edge = peanuts

        result = resolve_contradiction(store, edge.id, "keep_target")

        assert result.state is ContradictionState.TARGET_KEPT
        assert [n.id for n in store.list_nodes(graph_id)] == [not_allergic.id]

    def test_merge_keeps_both(self, store, peanuts):
        graph_id, allergic, not_allergic, edge = peanuts

        result = resolve_contradiction(store, edge.id, ResolutionPolicy.MERGE)

        assert result.state is ContradictionState.MERGED
        assert sorted(result.kept_node_ids) == sorted([allergic.id, not_allergic.id])
        assert result.deleted_node_ids == []
        assert store.get_edge(edge.id).edge_type is EdgeType.RELATES_TO
        assert store.get_node(allergic.id).content == "Has a severe peanut allergy"
        assert store.verify_integrity(graph_id).ok

    def test_resolving_twice_fails(self, store, peanuts):
        _, _, _, edge = peanuts
        resolve_contradiction(store, edge.id, ResolutionPolicy.KEEP_SOURCE)
        with pytest.raises(AlreadyResolvedError):
            resolve_contradiction(store, edge.id, ResolutionPolicy.MERGE)

    def test_unknown_edge(self, store, peanuts):
        with pytest.raises(NotFoundError):
            resolve_contradiction(store, "edge_missing", ResolutionPolicy.MERGE)

    def test_plain_edge_is_not_a_contradiction(self, store, peanuts):
        graph_id, allergic, not_allergic, _ = peanuts
        plain = store.create_edge(graph_id, not_allergic.id, allergic.id, edge_type=EdgeType.RELATES_TO)
        with pytest.raises(NotFoundError):
            resolve_contradiction(store, plain.id, ResolutionPolicy.MERGE)

    def test_unknown_policy(self, store, peanuts):
        _, _, _, edge = peanuts
        with pytest.raises(ValueError):
            resolve_contradiction(store, edge.id, "flip_a_coin")

    def test_pending(self, store, peanuts):
        graph_id, _, _, edge = peanuts
        [record] = pending_contradictions(store, graph_id)
        assert record.edge_id == edge.id
        assert record.state is ContradictionState.DETECTED
