"""Storage layer for synapse."""

from synapse_memory.storage.sqlite import GraphStore, GraphStoreError

__all__ = [
    "GraphStore",
    "GraphStoreError",
]
