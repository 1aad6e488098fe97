"""Contradiction resolution for CONTRADICTS edges.

A CONTRADICTS edge is registered as DETECTED when it is written. It then
moves to exactly one final state:

    detected -> merged        (edge retyped to RELATES_TO, both nodes kept)
    detected -> source_kept   (target node and the edge deleted)
    detected -> target_kept   (source node and the edge deleted)

A merge keeps both nodes' content unchanged, so no re-embedding is needed.
"""

import logging
from typing import Union

from synapse_memory.memory.types import (
    ContradictionRecord,
    ContradictionState,
    ResolutionPolicy,
    ResolutionResult,
)
from synapse_memory.storage.sqlite import GraphStore

logger = logging.getLogger(__name__)

_FINAL_STATE = {
    ResolutionPolicy.MERGE: ContradictionState.MERGED,
    ResolutionPolicy.KEEP_SOURCE: ContradictionState.SOURCE_KEPT,
    ResolutionPolicy.KEEP_TARGET: ContradictionState.TARGET_KEPT,
}


def resolve_contradiction(
    store: GraphStore,
    edge_id: str,
    policy: Union[ResolutionPolicy, str],
) -> ResolutionResult:
    """Apply a resolution policy to a detected contradiction.

    Args:
        store: GraphStore holding the graph
        edge_id: Id of the CONTRADICTS edge
        policy: merge, keep_source or keep_target

    Returns:
        ResolutionResult with the final state and which nodes survived

    Raises:
        NotFoundError: If no contradiction is registered for the edge
        AlreadyResolvedError: If the contradiction was already resolved
        ValueError: If the policy is unknown
    """
    policy = ResolutionPolicy(policy)
    record = store.get_contradiction(edge_id)

    if policy is ResolutionPolicy.MERGE:
        loser, winner = None, None
    elif policy is ResolutionPolicy.KEEP_SOURCE:
        loser, winner = record.target_id, record.source_id
    else:
        loser, winner = record.source_id, record.target_id

    final = store.resolve_contradiction(edge_id, _FINAL_STATE[policy], loser_id=loser)
    logger.info(f"Resolved contradiction {edge_id} as {final.state.value}")

    if loser is None:
        kept = [record.source_id, record.target_id]
        deleted: list[str] = []
    else:
        kept = [winner] if winner is not None else []
        deleted = [loser]

    return ResolutionResult(
        edge_id=edge_id,
        policy=policy,
        state=final.state,
        kept_node_ids=kept,
        deleted_node_ids=deleted,
    )


def pending_contradictions(store: GraphStore, graph_id: str) -> list[ContradictionRecord]:
    """Contradictions still awaiting a resolution."""
    return store.list_contradictions(graph_id, state=ContradictionState.DETECTED)
