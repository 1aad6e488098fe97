"""Synapse - per-subject memory graph engine.

This package maintains one long-lived knowledge graph per subject and keeps
it bounded, ranked and private.

Main components:
- storage.sqlite: Graph store (nodes, edges, ledger, sessions) with encryption at rest
- memory.decay: Gravity scoring and threshold helpers
- memory.compression: Two-layer prune/merge compression pass
- memory.retrieval: Relevance-ranked, token-budgeted context assembly
- memory.contradiction: CONTRADICTS edge resolution
- privacy: Domain access control and per-subject key derivation
- config: Pydantic Settings for configuration management

Usage:
    # Run as MCP server
    python -m synapse_memory

    # Or use the CLI
    synapse-memory --help
"""

__all__ = ["main"]
__version__ = "0.1.0"


def main() -> None:
    """Main entry point for the Synapse MCP server."""
    from synapse_memory.__main__ import main as _main
    _main()
