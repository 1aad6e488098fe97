"""MCP server entry point for the Synapse memory engine.

This module provides the main entry point for the MCP server with:
- CLI argument parsing for flexible configuration
- Pydantic Settings for environment variable support
- Component initialization in dependency order
- Tool registration for the subject-level memory operations
- Signal handling for graceful shutdown
- Logging to stderr (stdout carries the MCP stdio transport)

Every tool takes the requester's id, role and the subject id, and goes
through PrivacyBoundary before the store is touched.

Usage:
    python -m synapse_memory [options]

    Options:
        --sqlite-path PATH      SQLite database path
        --ollama-host HOST      Ollama server host (default: http://localhost:11434)
        --ollama-model MODEL    Embedding model name (default: mxbai-embed-large)
        --log-level LEVEL       Logging level (default: INFO)
        --call TOOL --args JSON Invoke one tool directly and print its result
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP

from synapse_memory.config import SynapseSettings
from synapse_memory.embedding.ollama import OllamaClient
from synapse_memory.errors import SynapseError
from synapse_memory.memory.retrieval import format_context
from synapse_memory.memory.types import ContextBundle, EdgeDraft, MemorySession, NodeDraft
from synapse_memory.privacy.boundary import AccessContext, PrivacyBoundary, Role
from synapse_memory.storage.sqlite import GraphStore

# Initialize FastMCP server
mcp = FastMCP("synapse")

# Global components (initialized in main)
boundary: Optional[PrivacyBoundary] = None

logger = logging.getLogger(__name__)


def setup_logging(log_level: str) -> None:
    """Configure logging to stderr (never stdout for MCP servers).

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    logger.info(f"Logging initialized at {log_level.upper()} level")


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments with configuration defaults.

    Configuration precedence:
        1. CLI arguments (highest priority)
        2. Environment variables (SYNAPSE_ prefix)
        3. Defaults (lowest priority)
    """
    settings = SynapseSettings()

    parser = argparse.ArgumentParser(
        description="Synapse MCP server for per-subject memory graphs",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Direct tool invocation mode
    parser.add_argument(
        "--call",
        type=str,
        metavar="TOOL_NAME",
        help="Directly invoke a tool by name (memory_context, memory_record_turn, memory_compress, ...)",
    )
    parser.add_argument(
        "--args",
        type=str,
        default="{}",
        help="JSON arguments for the tool (used with --call)",
    )

    parser.add_argument(
        "--sqlite-path",
        type=str,
        default=str(settings.sqlite_path) if settings.sqlite_path else None,
        help="SQLite database path (default: ~/.synapse/synapse.db)",
    )
    parser.add_argument(
        "--ollama-host",
        type=str,
        default=settings.ollama_host,
        help="Ollama server host URL",
    )
    parser.add_argument(
        "--ollama-model",
        type=str,
        default=settings.ollama_model,
        help="Ollama embedding model name",
    )
    parser.add_argument(
        "--ollama-timeout",
        type=int,
        default=settings.ollama_timeout,
        help="Ollama request timeout in seconds",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=settings.log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    return parser.parse_args(argv)


def initialize_components(args: argparse.Namespace) -> PrivacyBoundary:
    """Build the store, embedding client and boundary from CLI arguments.

    Raises:
        GraphStoreError: If the database cannot be opened
    """
    logger.info("Initializing components...")

    overrides: dict[str, Any] = {
        "ollama_host": args.ollama_host,
        "ollama_model": args.ollama_model,
        "ollama_timeout": args.ollama_timeout,
    }
    if args.sqlite_path:
        overrides["sqlite_path"] = Path(args.sqlite_path)
    settings = SynapseSettings().model_copy(update=overrides)

    logger.info(
        f"Configuration: "
        f"sqlite_path={settings.get_sqlite_path()}, "
        f"ollama_host={settings.ollama_host}, "
        f"ollama_model={settings.ollama_model}"
    )

    store = GraphStore.from_settings(settings)
    embedder = OllamaClient.from_settings(settings)
    logger.info(f"GraphStore initialized (encrypted={store.encrypted})")
    return PrivacyBoundary(store, embedder, settings)


async def shutdown_components(target: PrivacyBoundary) -> None:
    if isinstance(target.embedder, OllamaClient):
        await target.embedder.close()
    target.store.close()


def _context(requester_id: str, role: str, subject_id: str) -> AccessContext:
    return AccessContext(requester_id=requester_id, role=Role(role), subject_id=subject_id)


def _failure(tool: str, e: Exception) -> dict[str, Any]:
    if isinstance(e, (SynapseError, ValueError)):
        logger.warning(f"{tool} refused: {type(e).__name__}: {e}")
    else:
        logger.error(f"{tool} failed: {e}", exc_info=True)
    return {"success": False, "error": str(e), "error_type": type(e).__name__}


def _session_dict(session: MemorySession) -> dict[str, Any]:
    return {
        "id": session.id,
        "started_at": session.started_at.isoformat(),
        "ended_at": session.ended_at.isoformat() if session.ended_at else None,
        "message_count": session.message_count,
        "nodes_created": session.nodes_created,
        "edges_created": session.edges_created,
    }


def _bundle_dict(bundle: ContextBundle, style: str) -> dict[str, Any]:
    return {
        "context": format_context(bundle, style),
        "nodes": [
            {
                "id": r.node.id,
                "content": r.node.content,
                "modality": r.node.modality.value,
                "relevance": r.relevance,
                "gravity": r.gravity,
                "via": r.via,
            }
            for r in bundle.nodes
        ],
        "ledger": [
            {"id": e.id, "content": e.content, "category": e.category.value}
            for e in bundle.ledger_entries
        ],
        "estimated_tokens": bundle.estimated_tokens,
        "token_budget": bundle.token_budget,
        "dropped": bundle.total_dropped,
        "degraded": bundle.degraded,
    }


# =============================================================================
# MCP Tool Handlers - Relational domain
# =============================================================================


@mcp.tool()
async def memory_context_tool(
    requester_id: str,
    role: str,
    subject_id: str,
    query: str,
    token_budget: Optional[int] = None,
    keywords: Optional[list[str]] = None,
    style: str = "structured",
    include_connected: bool = False,
) -> dict[str, Any]:
    """Assemble the token-budgeted memory context for a subject's next reply.

    Args:
        requester_id: Who is asking
        role: Requester role (subject, system, parent, teacher, ...)
        subject_id: Subject whose graph is read
        query: Recent conversation text used for ranking
        token_budget: Maximum estimated tokens (default: configured budget)
        keywords: Extra keywords for triggering ledger entries
        style: Rendering of the context text (structured, narrative, minimal)
        include_connected: Pull in neighbours of the strongest hits

    Returns:
        Result dictionary with:
        - success: Boolean indicating operation success
        - context: Rendered context text
        - nodes / ledger: Selected items
        - dropped: Candidates left out for budget or limit
        - degraded: True when ranking fell back to gravity only
        - error: Error message (if failed)
    """
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        bundle = await boundary.build_context(
            _context(requester_id, role, subject_id),
            query,
            token_budget=token_budget,
            keywords=keywords,
            include_connected=include_connected,
        )
        return {"success": True, **_bundle_dict(bundle, style)}
    except Exception as e:
        return _failure("memory_context_tool", e)


@mcp.tool()
async def memory_record_turn_tool(
    requester_id: str,
    role: str,
    subject_id: str,
    nodes: list[dict[str, Any]],
    edges: Optional[list[dict[str, Any]]] = None,
    session_id: Optional[str] = None,
) -> dict[str, Any]:
    """Write the memories produced by one conversation turn.

    Args:
        nodes: Node drafts with content, modality, salience, topic, consent, metadata
        edges: Edge drafts with source, target (draft index or node id), edge_type, weight
        session_id: Session the turn belongs to

    Returns:
        Result dictionary with node_ids (null for refused drafts), edge_ids,
        refused writes and skipped edge positions
    """
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        result = await boundary.record_turn(
            _context(requester_id, role, subject_id),
            [NodeDraft(**node) for node in nodes],
            [EdgeDraft(**edge) for edge in edges or []],
            session_id=session_id,
        )
        return {
            "success": True,
            "graph_id": result.graph_id,
            "node_ids": result.node_ids,
            "edge_ids": result.edge_ids,
            "refused": [asdict(r) for r in result.refused],
            "skipped_edges": result.skipped_edges,
        }
    except Exception as e:
        return _failure("memory_record_turn_tool", e)


@mcp.tool()
async def memory_negotiate_tool(
    requester_id: str,
    role: str,
    subject_id: str,
    topic: str,
    policy: str,
) -> dict[str, Any]:
    """Record a remembrance agreement (never, session_only, ask_each_time, always) for a topic."""
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        result = boundary.negotiate_remembrance(_context(requester_id, role, subject_id), topic, policy)
        return {
            "success": True,
            "ledger_entry_id": result.ledger_entry_id,
            "topic": result.topic,
            "policy": result.policy.value,
            "superseded_entry_ids": result.superseded_entry_ids,
        }
    except Exception as e:
        return _failure("memory_negotiate_tool", e)


@mcp.tool()
async def memory_resolve_contradiction_tool(
    requester_id: str,
    role: str,
    subject_id: str,
    edge_id: str,
    policy: str,
) -> dict[str, Any]:
    """Resolve a CONTRADICTS edge with merge, keep_source or keep_target."""
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        result = boundary.resolve_contradiction(_context(requester_id, role, subject_id), edge_id, policy)
        return {
            "success": True,
            "edge_id": result.edge_id,
            "state": result.state.value,
            "kept_node_ids": result.kept_node_ids,
            "deleted_node_ids": result.deleted_node_ids,
        }
    except Exception as e:
        return _failure("memory_resolve_contradiction_tool", e)


@mcp.tool()
async def memory_compress_tool(
    requester_id: str,
    role: str,
    subject_id: str,
) -> dict[str, Any]:
    """Run one compression pass over the subject's graph."""
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        report = await boundary.compress(_context(requester_id, role, subject_id))
        return {"success": True, **report.to_dict()}
    except Exception as e:
        return _failure("memory_compress_tool", e)


@mcp.tool()
async def session_start_tool(
    requester_id: str,
    role: str,
    subject_id: str,
) -> dict[str, Any]:
    """Open a conversation session for the subject."""
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        session = boundary.start_session(_context(requester_id, role, subject_id))
        return {"success": True, "session": _session_dict(session)}
    except Exception as e:
        return _failure("session_start_tool", e)


@mcp.tool()
async def session_end_tool(
    requester_id: str,
    role: str,
    subject_id: str,
    session_id: str,
) -> dict[str, Any]:
    """Close a session, purge its session-only memories and compress if due."""
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        result = await boundary.end_session(_context(requester_id, role, subject_id), session_id)
        return {
            "success": True,
            "session": _session_dict(result.session),
            "purged_node_ids": result.purged_node_ids,
            "compression": result.compression.to_dict() if result.compression else None,
        }
    except Exception as e:
        return _failure("session_end_tool", e)


# =============================================================================
# MCP Tool Handlers - Subject rights
# =============================================================================


@mcp.tool()
async def memory_export_tool(
    requester_id: str,
    role: str,
    subject_id: str,
) -> dict[str, Any]:
    """Return everything held about the subject: graph, nodes, edges, ledger and sessions."""
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        export = boundary.export_subject(_context(requester_id, role, subject_id))
        return {"success": True, "export": export.to_dict()}
    except Exception as e:
        return _failure("memory_export_tool", e)


@mcp.tool()
async def memory_rectify_node_tool(
    requester_id: str,
    role: str,
    subject_id: str,
    node_id: str,
    content: str,
) -> dict[str, Any]:
    """Correct the content of one of the subject's memories.

    Args:
        node_id: Node in the subject's graph
        content: Corrected memory text

    Returns:
        Result dictionary with the node id, new content and whether it was re-embedded
    """
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        node = await boundary.rectify_node(_context(requester_id, role, subject_id), node_id, content)
        return {
            "success": True,
            "node_id": node.id,
            "content": node.content,
            "embedded": node.embedding is not None,
        }
    except Exception as e:
        return _failure("memory_rectify_node_tool", e)


@mcp.tool()
async def memory_contest_ledger_tool(
    requester_id: str,
    role: str,
    subject_id: str,
    entry_id: str,
    correction: Optional[str] = None,
) -> dict[str, Any]:
    """Retire a disputed ledger entry, optionally replacing it with a correction."""
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        result = boundary.contest_ledger_entry(_context(requester_id, role, subject_id), entry_id, correction)
        return {"success": True, **asdict(result)}
    except Exception as e:
        return _failure("memory_contest_ledger_tool", e)


@mcp.tool()
async def memory_forget_tool(
    requester_id: str,
    role: str,
    subject_id: str,
    node_id: str,
) -> dict[str, Any]:
    """Delete one of the subject's memories and the edges touching it."""
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        edges_removed = boundary.forget_node(_context(requester_id, role, subject_id), node_id)
        return {"success": True, "node_id": node_id, "edges_removed": edges_removed}
    except Exception as e:
        return _failure("memory_forget_tool", e)


@mcp.tool()
async def memory_erase_tool(
    requester_id: str,
    role: str,
    subject_id: str,
) -> dict[str, Any]:
    """Delete the subject's whole memory graph. This cannot be undone."""
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        result = boundary.erase_subject(_context(requester_id, role, subject_id))
        return {"success": True, **asdict(result)}
    except Exception as e:
        return _failure("memory_erase_tool", e)


# =============================================================================
# MCP Tool Handlers - Supervision and institutional domains
# =============================================================================


@mcp.tool()
async def memory_supervision_summary_tool(
    requester_id: str,
    role: str,
    subject_id: str,
) -> dict[str, Any]:
    """Metadata-only health summary of a subject's graph for auditing roles."""
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        summary = boundary.get_supervision_summary(_context(requester_id, role, subject_id))
        return {"success": True, "summary": summary.to_dict()}
    except Exception as e:
        return _failure("memory_supervision_summary_tool", e)


@mcp.tool()
async def memory_verify_integrity_tool(
    requester_id: str,
    role: str,
    subject_id: str,
) -> dict[str, Any]:
    """Compare the stored node/edge counters with the live rows."""
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        report = boundary.verify_integrity(_context(requester_id, role, subject_id))
        return {"success": True, "ok": report.ok, **asdict(report)}
    except Exception as e:
        return _failure("memory_verify_integrity_tool", e)


@mcp.tool()
async def memory_institutional_view_tool(
    requester_id: str,
    role: str,
    subject_id: str,
) -> dict[str, Any]:
    """Engagement counts (sessions, messages) for staff and guardians."""
    if boundary is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        summary = boundary.institutional_view(_context(requester_id, role, subject_id))
        return {"success": True, "summary": summary.to_dict()}
    except Exception as e:
        return _failure("memory_institutional_view_tool", e)


# =============================================================================
# Direct Tool Invocation
# =============================================================================


TOOL_HANDLERS = {
    "memory_context": memory_context_tool,
    "memory_record_turn": memory_record_turn_tool,
    "memory_negotiate": memory_negotiate_tool,
    "memory_resolve_contradiction": memory_resolve_contradiction_tool,
    "memory_compress": memory_compress_tool,
    "memory_supervision_summary": memory_supervision_summary_tool,
    "memory_verify_integrity": memory_verify_integrity_tool,
    "memory_institutional_view": memory_institutional_view_tool,
    "session_start": session_start_tool,
    "session_end": session_end_tool,
    "memory_export": memory_export_tool,
    "memory_rectify_node": memory_rectify_node_tool,
    "memory_contest_ledger": memory_contest_ledger_tool,
    "memory_forget": memory_forget_tool,
    "memory_erase": memory_erase_tool,
}


async def call_tool_directly(
    tool_name: str,
    args_json: str,
    target: PrivacyBoundary,
) -> dict[str, Any]:
    """Directly invoke a tool without MCP protocol overhead.

    Args:
        tool_name: Name of the tool to call (memory_context, memory_record_turn, etc.)
        args_json: JSON string of arguments for the tool
        target: Initialized PrivacyBoundary

    Returns:
        Tool result as dictionary
    """
    global boundary
    boundary = target

    try:
        tool_args = json.loads(args_json)
    except json.JSONDecodeError as e:
        return {"success": False, "error": f"Invalid JSON arguments: {e}"}

    handler = TOOL_HANDLERS.get(tool_name)
    if not handler:
        return {
            "success": False,
            "error": f"Unknown tool: {tool_name}. Available: {list(TOOL_HANDLERS.keys())}",
        }

    try:
        return await handler(**tool_args)
    except TypeError as e:
        return {"success": False, "error": f"Invalid arguments for {tool_name}: {e}"}


def run_direct_call(args: argparse.Namespace) -> None:
    """Run a direct tool call and print result to stdout."""
    setup_logging("WARNING")

    async def _run():
        target = initialize_components(args)
        try:
            result = await call_tool_directly(args.call, args.args, target)
            print(json.dumps(result, default=str))
        finally:
            await shutdown_components(target)

    asyncio.run(_run())


# =============================================================================
# Signal Handling
# =============================================================================


def handle_shutdown(signum: int, frame: Any) -> None:
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    logger.info(f"Received signal {signum}, shutting down gracefully...")
    sys.exit(0)


# =============================================================================
# Main Entry Point
# =============================================================================


def main() -> None:
    """Main entry point for MCP server.

    Workflow:
    1. Parse CLI arguments
    2. If --call provided, run direct tool invocation and exit
    3. Setup logging
    4. Initialize components
    5. Register signal handlers
    6. Run MCP server with stdio transport
    """
    global boundary

    args = parse_arguments()

    if args.call:
        run_direct_call(args)
        return

    setup_logging(args.log_level)
    logger.info("Starting Synapse MCP Server...")

    try:
        boundary = initialize_components(args)

        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)

        logger.info("MCP server ready, starting stdio transport...")

        # mcp.run() is synchronous and manages its own event loop
        mcp.run(transport="stdio")

    except Exception as e:
        logger.error(f"Server failed: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if boundary is not None:
            asyncio.run(shutdown_components(boundary))


if __name__ == "__main__":
    main()
