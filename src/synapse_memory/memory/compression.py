"""Two-layer compression pass that keeps a memory graph bounded.

A pass runs against a snapshot of one graph and commits everything at once:

1. Protected set: nodes referenced by an active ledger entry and both
   endpoints of every unresolved contradiction. Computed once, up front.
2. Layer 1 (prune): unprotected nodes whose gravity is strictly below the
   noise floor are deleted. Their salience mass counts as entropy loss.
3. Layer 2 (cluster & merge): unprotected survivors, other than nodes held
   under a session_only agreement, are grouped by greedy complete
   linkage (every pair in a cluster has cosine similarity at or
   above the density threshold). Each cluster becomes one consolidated node
   with an extractive summary, phi-weighted salience, majority modality and
   its members' ids as provenance. The summary is always re-embedded.
4. Commit: pruning, merges, the pass counter, the loss vector and the SNR
   update are applied in one transaction, guarded by the pass counter and
   the graph version observed in the snapshot.

A provider failure aborts before anything is written. A stale guard retries
the whole pass once from a fresh snapshot.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from synapse_memory.config import SynapseSettings
from synapse_memory.embedding.ollama import Embedder, EmbeddingError
from synapse_memory.errors import CompressionFailed, ConcurrentModification
from synapse_memory.memory.decay import (
    GravityParams,
    cosine_similarity,
    gravity,
    is_prunable,
    phi_weights,
    snr_growth,
)
from synapse_memory.memory.types import (
    ClusterMerge,
    CompressionPlan,
    CompressionReport,
    ContradictionRecord,
    ContradictionState,
    LedgerEntry,
    LossRecord,
    MemoryGraph,
    MemoryNode,
    utcnow,
)
from synapse_memory.storage.sqlite import GraphStore, GraphStoreError

logger = logging.getLogger(__name__)

SUMMARY_SEPARATOR = " | "
MAX_ATTEMPTS = 2


@dataclass
class _Snapshot:
    graph: MemoryGraph
    nodes: list[MemoryNode]
    ledger: list[LedgerEntry]
    contradictions: list[ContradictionRecord]


def _take_snapshot(store: GraphStore, graph_id: str) -> _Snapshot:
    # Graph row first: any write after this point bumps the version the
    # commit is checked against.
    graph = store.get_graph(graph_id)
    return _Snapshot(
        graph=graph,
        nodes=store.list_nodes(graph_id),
        ledger=store.list_ledger_entries(graph_id, active_only=True),
        contradictions=store.list_contradictions(graph_id, state=ContradictionState.DETECTED),
    )


def protected_node_ids(
    ledger_entries: Sequence[LedgerEntry],
    contradictions: Sequence[ContradictionRecord],
) -> set[str]:
    """Nodes a compression pass must neither prune nor merge."""
    protected: set[str] = set()
    for entry in ledger_entries:
        if entry.active:
            protected.update(entry.related_node_ids)
    for record in contradictions:
        if not record.state.is_resolved:
            protected.add(record.source_id)
            protected.add(record.target_id)
    return protected


def summarize(members: Sequence[MemoryNode], max_chars: int) -> str:
    """Extractive summary: distinct member contents, strongest first."""
    seen: set[str] = set()
    parts: list[str] = []
    for node in members:
        text = node.content.strip()
        key = text.lower()
        if text and key not in seen:
            seen.add(key)
            parts.append(text)
    summary = SUMMARY_SEPARATOR.join(parts)
    if len(summary) > max_chars:
        summary = summary[: max(0, max_chars - 3)].rstrip() + "..."
    return summary


def cluster_nodes(
    nodes: Sequence[MemoryNode],
    gravities: dict[str, float],
    threshold: float,
    max_clusters: int,
) -> list[list[MemoryNode]]:
    """Greedy complete-linkage clustering over node embeddings.

    Seeds are taken in descending gravity. A candidate joins a cluster only
    if it is at least `threshold` similar to every member already in it.
    Nodes without an embedding never cluster.
    """
    ordered = sorted(
        (n for n in nodes if n.embedding),
        key=lambda n: gravities[n.id],
        reverse=True,
    )
    similarity: dict[tuple[str, str], float] = {}

    def sim(a: MemoryNode, b: MemoryNode) -> float:
        key = (a.id, b.id) if a.id < b.id else (b.id, a.id)
        if key not in similarity:
            similarity[key] = cosine_similarity(a.embedding or [], b.embedding or [])
        return similarity[key]

    assigned: set[str] = set()
    clusters: list[list[MemoryNode]] = []
    for seed in ordered:
        if len(clusters) >= max_clusters:
            break
        if seed.id in assigned:
            continue
        assigned.add(seed.id)
        cluster = [seed]
        for candidate in ordered:
            if candidate.id in assigned:
                continue
            if all(sim(candidate, member) >= threshold for member in cluster):
                cluster.append(candidate)
                assigned.add(candidate.id)
        # A lone seed stays assigned: it matched nobody, so no later cluster can take it
        if len(cluster) > 1:
            clusters.append(cluster)
    return clusters


def build_merge(
    members: Sequence[MemoryNode],
    gravities: dict[str, float],
    params: GravityParams,
    max_chars: int,
    merged_at: datetime,
) -> ClusterMerge:
    """Consolidate one cluster into a single node (embedding filled in later)."""
    ranked = sorted(members, key=lambda n: gravities[n.id], reverse=True)
    weights = phi_weights(len(ranked), params)
    salience = sum(w * n.salience for w, n in zip(weights, ranked)) / sum(weights)

    counts = Counter(n.modality for n in ranked)
    gravity_by_modality: dict = {}
    for node in ranked:
        gravity_by_modality[node.modality] = gravity_by_modality.get(node.modality, 0.0) + gravities[node.id]
    modality = max(counts, key=lambda m: (counts[m], gravity_by_modality[m]))

    provenance: list[str] = []
    for node in ranked:
        for origin in [node.id, *node.merged_from]:
            if origin not in provenance:
                provenance.append(origin)

    topics = {n.topic for n in ranked}
    return ClusterMerge(
        member_ids=[n.id for n in ranked],
        content=summarize(ranked, max_chars),
        salience=min(1.0, max(0.0, salience)),
        modality=modality,
        embedding=None,
        created_at=min(n.created_at for n in ranked),
        last_accessed_at=max(n.last_accessed_at for n in ranked),
        access_count=sum(n.access_count for n in ranked),
        topic=topics.pop() if len(topics) == 1 else None,
        metadata={"merged_from": provenance, "merged_at": merged_at.isoformat()},
    )


async def _plan_pass(
    snapshot: _Snapshot,
    embedder: Embedder,
    settings: SynapseSettings,
    now: datetime,
) -> CompressionPlan:
    params = GravityParams.from_settings(settings)
    graph = snapshot.graph
    gravities = {node.id: gravity(node, now, params) for node in snapshot.nodes}
    protected = protected_node_ids(snapshot.ledger, snapshot.contradictions)

    # Layer 1
    prunable = sorted(
        (
            node for node in snapshot.nodes
            if node.id not in protected and is_prunable(gravities[node.id], params)
        ),
        key=lambda n: gravities[n.id],
    )[: settings.max_nodes_to_prune]
    pruned_ids = {node.id for node in prunable}
    pruned_salience = sum(node.salience for node in prunable)

    # Layer 2: session-only nodes are never merged
    survivors = [
        n for n in snapshot.nodes
        if n.id not in protected and n.id not in pruned_ids and not n.session_only
    ]
    missing = [n for n in survivors if not n.embedding]
    embedding_updates: dict[str, list[float]] = {}
    if missing:
        try:
            vectors = await embedder.embed_batch([n.content for n in missing])
        except EmbeddingError as e:
            raise CompressionFailed(f"Embedding provider failed while clustering graph {graph.id}: {e}") from e
        if len(vectors) != len(missing):
            raise CompressionFailed(f"Expected {len(missing)} embeddings, got {len(vectors)}")
        for node, vector in zip(missing, vectors):
            node.embedding = vector
            embedding_updates[node.id] = vector

    clusters = cluster_nodes(survivors, gravities, params.density_threshold, settings.max_merges_per_run)
    merges = [build_merge(c, gravities, params, settings.summary_max_chars, now) for c in clusters]

    if merges:
        try:
            summary_vectors = await embedder.embed_batch([m.content for m in merges])
        except EmbeddingError as e:
            raise CompressionFailed(f"Embedding provider failed while re-embedding summaries: {e}") from e
        if len(summary_vectors) != len(merges):
            raise CompressionFailed(f"Expected {len(merges)} embeddings, got {len(summary_vectors)}")
        for merge, vector in zip(merges, summary_vectors):
            merge.embedding = vector

    merged_ids = {member for m in merges for member in m.member_ids}
    embedding_updates = {k: v for k, v in embedding_updates.items() if k not in merged_ids}

    merge_loss = 0.0
    by_id = {n.id: n for n in snapshot.nodes}
    for merge in merges:
        original = sum(len(by_id[i].content) for i in merge.member_ids)
        if original:
            merge_loss += max(0.0, 1.0 - len(merge.content) / original)

    removed = len(pruned_ids) + len(merged_ids) - len(merges)
    removed_fraction = removed / len(snapshot.nodes) if snapshot.nodes else 0.0
    pass_id = graph.compression_passes + 1

    return CompressionPlan(
        graph_id=graph.id,
        prune_ids=[n.id for n in prunable],
        merges=merges,
        loss=LossRecord(
            pass_id=pass_id,
            nodes_pruned=len(pruned_ids),
            nodes_merged=len(merged_ids),
            pruned_salience=pruned_salience,
            merge_loss=merge_loss,
            entropy_loss=pruned_salience + merge_loss,
            recorded_at=now,
        ),
        new_snr=snr_growth(graph.snr, removed_fraction, params),
        compressed_at=now,
        embedding_updates=embedding_updates,
    )


async def compress(
    store: GraphStore,
    embedder: Embedder,
    graph_id: str,
    settings: Optional[SynapseSettings] = None,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> CompressionReport:
    """Run one compression pass over a graph.

    Args:
        store: GraphStore holding the graph
        embedder: Embedding provider (embed / embed_batch)
        graph_id: Graph to compress
        settings: Thresholds and limits (default: SynapseSettings())
        now: Time used for gravity (default: current UTC time)
        dry_run: Plan the pass and report it without committing

    Returns:
        CompressionReport for the committed (or planned) pass

    Raises:
        NotFoundError: If the graph does not exist
        CompressionFailed: If the embedding provider or the commit fails
        ConcurrentModification: If the graph changed during both attempts
    """
    settings = settings or SynapseSettings()
    now = now or utcnow()
    started = time.perf_counter()

    for attempt in range(1, MAX_ATTEMPTS + 1):
        snapshot = _take_snapshot(store, graph_id)
        plan = await _plan_pass(snapshot, embedder, settings, now)
        report = CompressionReport(
            pass_id=plan.loss.pass_id,
            graph_id=graph_id,
            nodes_pruned=plan.loss.nodes_pruned,
            nodes_merged=plan.loss.nodes_merged,
            clusters_formed=len(plan.merges),
            entropy_loss=plan.loss.entropy_loss,
            new_snr=plan.new_snr,
            previous_snr=snapshot.graph.snr,
            nodes_before=snapshot.graph.node_count,
            edges_before=snapshot.graph.edge_count,
            dry_run=dry_run,
            pruned_ids=list(plan.prune_ids),
        )

        if dry_run:
            report.nodes_after = report.nodes_before - report.nodes_pruned - report.nodes_merged + report.clusters_formed
            report.edges_after = report.edges_before
            report.duration_ms = (time.perf_counter() - started) * 1000
            return report

        try:
            graph = store.apply_compression(
                plan,
                expected_passes=snapshot.graph.compression_passes,
                expected_version=snapshot.graph.version,
            )
        except ConcurrentModification as e:
            if attempt >= MAX_ATTEMPTS:
                logger.error(f"Compression of graph {graph_id} abandoned: {e}")
                raise
            logger.warning(f"Graph {graph_id} changed during compression, retrying: {e}")
            continue
        except GraphStoreError as e:
            raise CompressionFailed(f"Compression commit failed for graph {graph_id}: {e}") from e

        report.merged_into = {m.node_id: list(m.member_ids) for m in plan.merges if m.node_id}
        report.nodes_after = graph.node_count
        report.edges_after = graph.edge_count
        report.new_snr = graph.snr
        report.duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"Compression pass {report.pass_id} on graph {graph_id}: "
            f"pruned {report.nodes_pruned}, merged {report.nodes_merged} into "
            f"{report.clusters_formed}, SNR {report.previous_snr:.3f} -> {report.new_snr:.3f}"
        )
        return report

    raise ConcurrentModification(f"Compression of graph {graph_id} did not commit")


def should_compress(
    store: GraphStore,
    graph_id: str,
    settings: Optional[SynapseSettings] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Whether a graph is due for compression.

    Due when the node count exceeds the threshold, when the share of
    prune-eligible nodes exceeds the low-gravity ratio, or when the last
    pass is older than the compression interval.
    """
    settings = settings or SynapseSettings()
    now = now or utcnow()
    params = GravityParams.from_settings(settings)
    graph = store.get_graph(graph_id)

    if graph.node_count > settings.compression_node_threshold:
        return True
    if graph.last_compressed_at is not None and (
        now - graph.last_compressed_at > timedelta(days=settings.compression_interval_days)
    ):
        return True
    nodes = store.list_nodes(graph_id)
    if not nodes:
        return False
    low = sum(1 for node in nodes if is_prunable(gravity(node, now, params), params))
    return low / len(nodes) > settings.compression_low_gravity_ratio
