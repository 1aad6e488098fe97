"""Memory module for the synapse engine.

This module provides the core data types and the pure scoring model. The
compression, retrieval, contradiction and operations submodules depend on
the storage layer and are imported directly from their modules.
"""

from synapse_memory.memory.decay import GravityParams, decay, gravity, is_prunable
from synapse_memory.memory.types import (
    ContextBundle,
    ContradictionState,
    CompressionReport,
    EdgeDraft,
    EdgeType,
    LedgerCategory,
    LedgerEntry,
    MemoryEdge,
    MemoryGraph,
    MemoryNode,
    MemorySession,
    Modality,
    NodeDraft,
    RemembrancePolicy,
    ResolutionPolicy,
    SupervisionSummary,
    TurnResult,
)

__all__ = [
    "CompressionReport",
    "ContextBundle",
    "ContradictionState",
    "EdgeDraft",
    "EdgeType",
    "GravityParams",
    "LedgerCategory",
    "LedgerEntry",
    "MemoryEdge",
    "MemoryGraph",
    "MemoryNode",
    "MemorySession",
    "Modality",
    "NodeDraft",
    "RemembrancePolicy",
    "ResolutionPolicy",
    "SupervisionSummary",
    "TurnResult",
    "decay",
    "gravity",
    "is_prunable",
]
