"""Subject-level memory operations.

These are the entry points used by the conversation orchestrator, the
session-end hook and the rights/negotiation consumer. Each resolves the
subject's graph and delegates to the store, retrieval, compression and
contradiction modules.
"""

import logging
from datetime import datetime
from typing import Optional, Sequence, Union

from synapse_memory.config import SynapseSettings
from synapse_memory.embedding.ollama import Embedder, EmbeddingError
from synapse_memory.errors import NotFoundError, RemembranceRefused
from synapse_memory.memory import compression, retrieval
from synapse_memory.memory.types import (
    CompressionReport,
    ContextBundle,
    EdgeDraft,
    ErasureResult,
    LedgerCategory,
    LedgerRectification,
    MemoryGraph,
    MemoryNode,
    MemorySession,
    NegotiationResult,
    NodeDraft,
    RefusedWrite,
    RemembrancePolicy,
    SessionEndResult,
    SubjectExport,
    SupervisionSummary,
    TurnResult,
    utcnow,
)
from synapse_memory.storage.sqlite import GraphStore

logger = logging.getLogger(__name__)


def graph_for_subject(store: GraphStore, subject_id: str) -> MemoryGraph:
    """Return the subject's graph.

    Raises:
        NotFoundError: If the subject has no graph yet
    """
    graph = store.get_graph_for_subject(subject_id)
    if graph is None:
        raise NotFoundError("graph for subject", subject_id)
    return graph


async def build_context(
    store: GraphStore,
    embedder: Optional[Embedder],
    subject_id: str,
    query: str,
    token_budget: Optional[int] = None,
    keywords: Optional[Sequence[str]] = None,
    settings: Optional[SynapseSettings] = None,
    now: Optional[datetime] = None,
    include_connected: bool = False,
) -> ContextBundle:
    """Assemble the bounded context for a subject's next reply.

    A subject with no graph yet gets an empty bundle; no graph is created.

    Raises:
        ValueError: If the budget is not positive
    """
    graph = store.get_graph_for_subject(subject_id)
    if graph is None:
        settings = settings or SynapseSettings()
        budget = token_budget if token_budget is not None else settings.default_token_budget
        if budget <= 0:
            raise ValueError("Token budget must be positive")
        return ContextBundle(graph_id=None, query=query, token_budget=budget)
    return await retrieval.build_context(
        store,
        embedder,
        graph.id,
        query,
        token_budget=token_budget,
        keywords=keywords,
        settings=settings,
        now=now,
        include_connected=include_connected,
    )


def _resolve_endpoint(endpoint: Union[int, str], node_ids: list[Optional[str]]) -> Optional[str]:
    if isinstance(endpoint, int):
        return node_ids[endpoint]
    return endpoint


async def record_turn(
    store: GraphStore,
    subject_id: str,
    nodes: Sequence[NodeDraft],
    edges: Sequence[EdgeDraft] = (),
    session_id: Optional[str] = None,
    embedder: Optional[Embedder] = None,
) -> TurnResult:
    """Append the memories produced by one conversation turn.

    Each draft goes through the store's remembrance gate. Refused drafts are
    reported in `refused`, and edges touching them in `skipped_edges`.
    Drafts without a vector are embedded after they pass the gate, so
    refused content never reaches the embedding provider. If the provider
    is down the nodes are kept without vectors and compression embeds them
    later.

    Args:
        store: GraphStore instance
        subject_id: Subject the turn belongs to
        nodes: Node drafts in turn order
        edges: Edge drafts; int endpoints index into `nodes`
        session_id: Session the turn belongs to
        embedder: Optional provider for drafts without an embedding

    Raises:
        ValueError: If an edge draft references a draft index out of range
        NotFoundError: If an edge references an unknown node or the session is unknown
    """
    for position, edge in enumerate(edges):
        for endpoint in (edge.source, edge.target):
            if isinstance(endpoint, int) and not 0 <= endpoint < len(nodes):
                raise ValueError(f"Edge {position} references draft {endpoint}, turn has {len(nodes)}")

    graph = store.ensure_graph(subject_id)
    for edge in edges:
        for endpoint in (edge.source, edge.target):
            if isinstance(endpoint, str) and store.get_node(endpoint).graph_id != graph.id:
                raise NotFoundError("node", endpoint)

    result = TurnResult(graph_id=graph.id)
    for index, draft in enumerate(nodes):
        try:
            node = store.create_node(
                graph.id,
                draft.content,
                modality=draft.modality,
                salience=draft.salience,
                embedding=draft.embedding,
                topic=draft.topic,
                metadata=draft.metadata,
                session_id=session_id,
                consent=draft.consent,
            )
        except RemembranceRefused as e:
            result.refused.append(RefusedWrite(index=index, topic=e.topic, policy=e.policy, reason=str(e)))
            result.node_ids.append(None)
            continue
        result.node_ids.append(node.id)

    for position, edge in enumerate(edges):
        source = _resolve_endpoint(edge.source, result.node_ids)
        target = _resolve_endpoint(edge.target, result.node_ids)
        if source is None or target is None:
            result.skipped_edges.append(position)
            continue
        created = store.create_edge(
            graph.id,
            source,
            target,
            edge_type=edge.edge_type,
            weight=edge.weight,
            session_id=session_id,
        )
        result.edge_ids.append(created.id)

    if session_id is not None:
        store.increment_session(session_id)

    if embedder is not None:
        pending = [
            (node_id, draft.content)
            for node_id, draft in zip(result.node_ids, nodes)
            if node_id is not None and draft.embedding is None
        ]
        if pending:
            try:
                vectors = await embedder.embed_batch([content for _, content in pending])
                if len(vectors) != len(pending):
                    raise EmbeddingError(f"Expected {len(pending)} embeddings, got {len(vectors)}")
            except EmbeddingError as e:
                logger.warning(f"Stored {len(pending)} nodes without embeddings: {e}")
            else:
                for (node_id, _), vector in zip(pending, vectors):
                    store.update_node(node_id, embedding=vector)

    logger.info(
        f"Recorded turn in graph {graph.id}: {result.stored_count} nodes, "
        f"{len(result.edge_ids)} edges, {len(result.refused)} refused"
    )
    return result


def negotiate_remembrance(
    store: GraphStore,
    subject_id: str,
    topic: str,
    policy: Union[RemembrancePolicy, str],
) -> NegotiationResult:
    """Record how future writes on a topic must be handled.

    Writes a protected NEGOTIATION ledger entry keyed on the topic and
    retires any earlier agreement on the same topic.

    Raises:
        ValueError: If the topic is empty or the policy unknown
    """
    topic = topic.strip()
    if not topic:
        raise ValueError("Topic cannot be empty")
    policy = RemembrancePolicy(policy)
    graph = store.ensure_graph(subject_id)

    superseded = []
    wanted = topic.lower()
    for entry in store.list_ledger_entries(graph.id, category=LedgerCategory.NEGOTIATION):
        if wanted in (k.strip().lower() for k in entry.trigger_keywords):
            store.deactivate_ledger_entry(entry.id)
            superseded.append(entry.id)

    entry = store.create_ledger_entry(
        graph.id,
        content=f"Remembrance agreement for '{topic}': {policy.value}",
        category=LedgerCategory.NEGOTIATION,
        importance=1.0,
        trigger_keywords=[topic],
        metadata={"policy": policy.value},
    )
    logger.info(f"Recorded '{policy.value}' agreement {entry.id} in graph {graph.id}")
    return NegotiationResult(
        ledger_entry_id=entry.id,
        topic=topic,
        policy=policy,
        superseded_entry_ids=superseded,
    )


def start_session(store: GraphStore, subject_id: str, session_id: Optional[str] = None) -> MemorySession:
    graph = store.ensure_graph(subject_id)
    return store.start_session(graph.id, session_id=session_id)


async def end_session(
    store: GraphStore,
    session_id: str,
    embedder: Optional[Embedder] = None,
    settings: Optional[SynapseSettings] = None,
    now: Optional[datetime] = None,
) -> SessionEndResult:
    """Close a session, purge its session-only nodes and compress if due.

    Compression only runs when an embedder is given and the graph meets
    one of the compression triggers.
    """
    session, purged = store.end_session(session_id, now=now)
    result = SessionEndResult(session=session, purged_node_ids=purged)
    if embedder is not None and compression.should_compress(store, session.graph_id, settings, now):
        result.compression = await compress(store, embedder, session.graph_id, settings=settings, now=now)
    return result


async def compress(
    store: GraphStore,
    embedder: Embedder,
    graph_id: str,
    settings: Optional[SynapseSettings] = None,
    now: Optional[datetime] = None,
) -> CompressionReport:
    return await compression.compress(store, embedder, graph_id, settings=settings, now=now)


def get_supervision_summary(store: GraphStore, subject_id: str) -> SupervisionSummary:
    """Metadata-only summary of a subject's graph.

    Raises:
        NotFoundError: If the subject has no graph
    """
    return store.supervision_stats(graph_for_subject(store, subject_id).id)


# Subject rights: access, rectification and erasure


def export_subject(store: GraphStore, subject_id: str) -> SubjectExport:
    """Everything held about a subject, inactive ledger entries included.

    A subject with no graph gets an export with nothing in it.
    """
    graph = store.get_graph_for_subject(subject_id)
    if graph is None:
        return SubjectExport(subject_id=subject_id)
    return SubjectExport(
        subject_id=subject_id,
        graph=graph,
        nodes=store.list_nodes(graph.id),
        edges=store.list_edges(graph.id),
        ledger_entries=store.list_ledger_entries(graph.id, active_only=False),
        sessions=store.list_sessions(graph.id),
    )


def _owned_node(store: GraphStore, subject_id: str, node_id: str) -> MemoryNode:
    graph = graph_for_subject(store, subject_id)
    node = store.get_node(node_id)
    if node.graph_id != graph.id:
        raise NotFoundError("node", node_id)
    return node


async def rectify_node(
    store: GraphStore,
    subject_id: str,
    node_id: str,
    content: str,
    embedder: Optional[Embedder] = None,
    now: Optional[datetime] = None,
) -> MemoryNode:
    """Replace the content of one of the subject's memories.

    The node is re-embedded when a provider is available; otherwise its old
    vector is dropped so it no longer ranks by the content it replaced.

    Raises:
        NotFoundError: If the node is not in the subject's graph
        ValueError: If the new content is empty
    """
    content = content.strip()
    if not content:
        raise ValueError("Content cannot be empty")
    node = _owned_node(store, subject_id, node_id)

    vector = None
    if embedder is not None:
        try:
            vector = await embedder.embed(content)
        except EmbeddingError as e:
            logger.warning(f"Rectified node {node_id} without an embedding: {e}")

    metadata = {**node.metadata, "rectified_at": (now or utcnow()).isoformat()}
    updated = store.update_node(
        node_id,
        content=content,
        embedding=vector,
        metadata=metadata,
        clear_embedding=vector is None,
    )
    logger.info(f"Rectified node {node_id} in graph {node.graph_id}")
    return updated


def contest_ledger_entry(
    store: GraphStore,
    subject_id: str,
    entry_id: str,
    correction: Optional[str] = None,
) -> LedgerRectification:
    """Retire a ledger entry the subject disputes, optionally replacing it.

    The replacement keeps the category, importance, keywords and protected
    nodes of the retired entry and records which entry it rectifies.

    Raises:
        NotFoundError: If the entry is not in the subject's graph
        ValueError: If the correction is blank
    """
    if correction is not None:
        correction = correction.strip()
        if not correction:
            raise ValueError("Correction cannot be empty")
    graph = graph_for_subject(store, subject_id)
    entry = store.get_ledger_entry(entry_id)
    if entry.graph_id != graph.id:
        raise NotFoundError("ledger entry", entry_id)

    store.deactivate_ledger_entry(entry_id)
    result = LedgerRectification(retired_entry_id=entry_id)
    if correction is not None:
        replacement = store.create_ledger_entry(
            graph.id,
            content=correction,
            category=entry.category,
            importance=entry.importance,
            trigger_keywords=entry.trigger_keywords,
            related_node_ids=entry.related_node_ids,
            metadata={**entry.metadata, "rectifies": entry_id},
        )
        result.replacement_entry_id = replacement.id
    logger.info(f"Contested ledger entry {entry_id} in graph {graph.id}")
    return result


def forget_node(store: GraphStore, subject_id: str, node_id: str) -> int:
    """Delete one of the subject's memories and every edge touching it.

    An unresolved contradiction does not block the subject's own request.

    Returns:
        Number of edges removed with the node

    Raises:
        NotFoundError: If the node is not in the subject's graph
    """
    _owned_node(store, subject_id, node_id)
    return store.delete_node(node_id, force=True)


def erase_subject(store: GraphStore, subject_id: str) -> ErasureResult:
    graph = store.get_graph_for_subject(subject_id)
    if graph is None:
        return ErasureResult(graph_id=None)
    return store.delete_graph(graph.id)
