"""Relevance-ranked, token-budgeted context assembly.

relevance = max(cosine(query, node), 0) * gravity(node, now)

When the embedding provider is unavailable, ranking degrades to gravity
alone and the bundle is flagged as degraded instead of failing.

Triggered ledger entries are charged to the budget before nodes. Every
candidate that does not fit is counted in the bundle, so nothing is dropped
without being reported.
"""

import logging
import re
from datetime import datetime
from typing import Optional, Sequence

from synapse_memory.config import SynapseSettings
from synapse_memory.embedding.ollama import Embedder, EmbeddingError
from synapse_memory.memory.decay import (
    GravityParams,
    cosine_similarity,
    estimate_tokens,
    gravity,
)
from synapse_memory.memory.types import ContextBundle, LedgerEntry, RankedNode, utcnow
from synapse_memory.storage.sqlite import GraphStore

logger = logging.getLogger(__name__)

# Direct hits whose neighbours are pulled in when include_connected is set
EXPANSION_SEEDS = 3
EXPANSION_DAMPING = 0.5

_WORD = re.compile(r"[a-z0-9][a-z0-9'_-]*")
_STOPWORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "your", "with", "this",
    "that", "have", "has", "was", "were", "what", "when", "where", "which",
    "who", "how", "why", "can", "could", "should", "would", "will", "about",
    "from", "into", "they", "them", "their", "there", "then", "than", "been",
    "does", "did", "its", "our", "out", "all", "any", "just", "also",
})

STYLES = ("structured", "narrative", "minimal")


def query_terms(text: str) -> set[str]:
    """Lowercase content words of three or more characters."""
    return {w for w in _WORD.findall(text.lower()) if len(w) >= 3 and w not in _STOPWORDS}


def _mentions(text: str, phrase: str) -> bool:
    """True if phrase occurs in text as whole words."""
    return re.search(rf"(?<![a-z0-9]){re.escape(phrase)}(?![a-z0-9])", text) is not None


def ledger_matches(entry: LedgerEntry, query_text: str, terms: set[str]) -> bool:
    """True if a trigger keyword or a content word of the entry matches the query.

    Keywords match whole words only, so "art" fires on "art class" but not
    on "which part".
    """
    lowered = query_text.lower()
    for keyword in entry.trigger_keywords:
        needle = keyword.strip().lower()
        if needle and (needle in terms or _mentions(lowered, needle)):
            return True
    return bool(query_terms(entry.content) & terms)


def _select_ledger(
    store: GraphStore,
    graph_id: str,
    query_text: str,
    terms: set[str],
    threshold: float,
) -> list[LedgerEntry]:
    entries = [
        entry for entry in store.list_ledger_entries(graph_id, active_only=True)
        if entry.importance > threshold and ledger_matches(entry, query_text, terms)
    ]
    entries.sort(key=lambda e: (e.importance, e.access_count), reverse=True)
    return entries


async def build_context(
    store: GraphStore,
    embedder: Optional[Embedder],
    graph_id: str,
    query: str,
    token_budget: Optional[int] = None,
    keywords: Optional[Sequence[str]] = None,
    settings: Optional[SynapseSettings] = None,
    now: Optional[datetime] = None,
    max_nodes: Optional[int] = None,
    include_connected: bool = False,
) -> ContextBundle:
    """Assemble a bounded context for a conversation turn.

    Args:
        store: GraphStore holding the graph
        embedder: Embedding provider; None forces gravity-only ranking
        graph_id: Graph to draw from
        query: Recent conversation text
        token_budget: Maximum estimated tokens (default: settings.default_token_budget)
        keywords: Extra explicit keywords for ledger triggering
        settings: Thresholds (default: SynapseSettings())
        now: Time used for gravity and access stamps (default: current UTC time)
        max_nodes: Optional cap on returned nodes
        include_connected: Boost one-hop neighbours of the strongest hits

    Returns:
        ContextBundle with ranked nodes, triggered ledger entries and drop counts

    Raises:
        NotFoundError: If the graph does not exist
        ValueError: If the budget is not positive
    """
    settings = settings or SynapseSettings()
    budget = token_budget if token_budget is not None else settings.default_token_budget
    if budget <= 0:
        raise ValueError("Token budget must be positive")
    now = now or utcnow()
    params = GravityParams.from_settings(settings)
    store.get_graph(graph_id)

    bundle = ContextBundle(graph_id=graph_id, query=query, token_budget=budget)

    query_vector: Optional[list[float]] = None
    if embedder is not None and query.strip():
        try:
            query_vector = await embedder.embed(query, is_query=True)
        except EmbeddingError as e:
            logger.warning(f"Embedding unavailable, ranking graph {graph_id} by gravity only: {e}")
    bundle.degraded = query_vector is None

    ranked: dict[str, RankedNode] = {}
    for node in store.list_nodes(graph_id):
        g = gravity(node, now, params)
        if query_vector is not None:
            similarity = max(cosine_similarity(query_vector, node.embedding or []), 0.0)
            relevance = similarity * g
        else:
            similarity = 0.0
            relevance = g
        ranked[node.id] = RankedNode(
            node=node,
            gravity=g,
            similarity=similarity,
            relevance=relevance,
            estimated_tokens=estimate_tokens(node.content),
        )

    if include_connected:
        _boost_neighbours(store, ranked)

    candidates = sorted(
        (r for r in ranked.values() if r.relevance > 0.0),
        key=lambda r: (r.relevance, r.gravity, r.node.id),
        reverse=True,
    )
    bundle.candidates_considered = len(candidates)

    remaining = budget
    terms = query_terms(query) | {k.strip().lower() for k in (keywords or []) if k.strip()}
    ledger_text = " ".join([query, *(keywords or [])])
    for entry in _select_ledger(store, graph_id, ledger_text, terms, settings.ledger_importance_threshold):
        cost = estimate_tokens(entry.content)
        if cost <= remaining:
            remaining -= cost
            store.record_ledger_access(entry.id, now)
            entry.access_count += 1
            bundle.ledger_entries.append(entry)
        else:
            bundle.dropped_for_budget += 1

    for candidate in candidates:
        if max_nodes is not None and len(bundle.nodes) >= max_nodes:
            bundle.dropped_for_limit += 1
            continue
        if candidate.estimated_tokens > remaining:
            bundle.dropped_for_budget += 1
            continue
        # A node deleted since ranking is skipped, never returned
        if not store.record_access(candidate.node.id, now):
            continue
        remaining -= candidate.estimated_tokens
        bundle.nodes.append(candidate)

    bundle.estimated_tokens = budget - remaining
    logger.debug(
        f"Context for graph {graph_id}: {len(bundle.nodes)} nodes, "
        f"{len(bundle.ledger_entries)} ledger entries, {bundle.estimated_tokens}/{budget} tokens, "
        f"{bundle.total_dropped} dropped{' (degraded)' if bundle.degraded else ''}"
    )
    return bundle


def _boost_neighbours(store: GraphStore, ranked: dict[str, RankedNode]) -> None:
    seeds = sorted(ranked.values(), key=lambda r: r.relevance, reverse=True)[:EXPANSION_SEEDS]
    for seed in seeds:
        if seed.relevance <= 0.0:
            continue
        for neighbour, edge in store.get_connected_nodes(seed.node.id):
            entry = ranked.get(neighbour.id)
            if entry is None:
                continue
            boosted = seed.relevance * edge.weight * EXPANSION_DAMPING
            if boosted > entry.relevance:
                entry.relevance = boosted
                entry.via = seed.node.id


def format_context(bundle: ContextBundle, style: str = "structured") -> str:
    """Render a bundle as text for prompt injection.

    Styles:
        structured: Markdown sections for ledger entries and memories
        narrative: Short prose sentences
        minimal: One line per item, no decoration
    """
    if style not in STYLES:
        raise ValueError(f"Unknown context style '{style}', expected one of {', '.join(STYLES)}")

    ledger = [entry.content for entry in bundle.ledger_entries]
    memories = [r.node.content for r in bundle.nodes]

    if style == "minimal":
        return "\n".join([*ledger, *memories])

    if style == "narrative":
        parts = []
        if ledger:
            parts.append("Standing agreements: " + "; ".join(ledger) + ".")
        if memories:
            parts.append("From earlier conversations: " + "; ".join(memories) + ".")
        return " ".join(parts)

    sections = []
    if bundle.ledger_entries:
        sections.append(
            "## Ledger\n" + "\n".join(
                f"- [{e.category.value}] {e.content}" for e in bundle.ledger_entries
            )
        )
    if bundle.nodes:
        sections.append(
            "## Memories\n" + "\n".join(
                f"- ({r.node.modality.value}) {r.node.content}" for r in bundle.nodes
            )
        )
    return "\n\n".join(sections)

