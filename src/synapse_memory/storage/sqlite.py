"""SQLite storage layer for subject memory graphs.

This module provides the GraphStore, the only component allowed to create or
delete nodes, edges and ledger entries. It supports:
- One graph per subject with live node/edge counts kept in step with every write
- Cascading node deletes, blocked by unresolved contradictions unless forced
- Contradiction state tracking for CONTRADICTS edges
- Remembrance agreements consulted on the node write path
- Per-subject encryption of node and ledger content at rest
- Metadata-only supervision statistics
- Schema versioning and migrations

Writes run inside explicit BEGIN IMMEDIATE transactions serialised by a
re-entrant lock, so counts, versions and the entity rows change together.
"""

import json
import logging
import secrets
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, Optional, Sequence

from synapse_memory.errors import (
    AlreadyResolvedError,
    CascadeError,
    ConcurrentModification,
    IntegrityMismatch,
    NotFoundError,
    PrivacyViolation,
    RemembranceRefused,
)
from synapse_memory.memory.types import (
    CompressionPlan,
    ContradictionRecord,
    ContradictionState,
    EdgeType,
    ErasureResult,
    InstitutionalSummary,
    IntegrityReport,
    LedgerCategory,
    LedgerEntry,
    LossRecord,
    MemoryEdge,
    MemoryGraph,
    MemoryNode,
    MemorySession,
    Modality,
    RemembrancePolicy,
    SupervisionSummary,
    utcnow,
)
from synapse_memory.privacy.crypto import SubjectKeyring

if TYPE_CHECKING:
    from synapse_memory.config import SynapseSettings

logger = logging.getLogger(__name__)

# Schema version migrations
# Each migration has a description and up SQL (can be a list of statements)
MIGRATIONS: dict[int, dict[str, Any]] = {
    1: {
        "description": "Add audit_events table for refusals, drift and compression passes",
        "up": [
            """CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                graph_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                details TEXT,
                created_at REAL NOT NULL,
                FOREIGN KEY (graph_id) REFERENCES graphs(id) ON DELETE CASCADE
            )""",
            "CREATE INDEX IF NOT EXISTS idx_audit_events_graph ON audit_events(graph_id, event_type)",
        ],
    },
    2: {
        "description": "Index active ledger entries by category",
        "up": [
            "CREATE INDEX IF NOT EXISTS idx_ledger_category ON ledger(graph_id, category, active)",
        ],
    },
    3: {
        "description": "Record whether each graph is encrypted at rest",
        "up": [
            "ALTER TABLE graphs ADD COLUMN encrypted INTEGER NOT NULL DEFAULT 0",
            "UPDATE graphs SET encrypted = 1 WHERE id IN (SELECT graph_id FROM nodes WHERE content LIKE 'v1:%')",
        ],
    },
}

# Audit event types
EVENT_WRITE_REFUSED = "write_refused"
EVENT_INTEGRITY_DRIFT = "integrity_drift"
EVENT_COMPRESSION = "compression_pass"
EVENT_RESOLUTION = "contradiction_resolved"
EVENT_SESSION_PURGE = "session_purge"


class GraphStoreError(Exception):
    """Custom exception for graph storage-related errors."""

    pass


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


def _dt(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class GraphStore:
    """SQLite storage for memory graphs, nodes, edges, ledger and sessions.

    Args:
        db_path: Path to SQLite database file.
                 Defaults to ~/.synapse/synapse.db
        ephemeral: If True, use in-memory storage for testing (default: False)
        keyring: Optional SubjectKeyring; when given, content is encrypted at rest

    Attributes:
        db_path: Path to database file (None if ephemeral)
        ephemeral: Whether using ephemeral storage
        encrypted: Whether content is encrypted at rest
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        ephemeral: bool = False,
        keyring: Optional[SubjectKeyring] = None,
    ):
        """Initialize GraphStore with persistent or ephemeral storage.

        Raises:
            GraphStoreError: If database initialization fails
        """
        self.ephemeral = ephemeral
        self._keyring = keyring
        self._lock = threading.RLock()
        self._graph_modes: dict[str, tuple[str, bool]] = {}

        if ephemeral:
            self.db_path = None
        else:
            self.db_path = db_path or Path.home() / ".synapse" / "synapse.db"

        try:
            if ephemeral:
                self._conn = sqlite3.connect(
                    ":memory:", check_same_thread=False, isolation_level=None
                )
            else:
                if self.db_path is not None:
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(
                    str(self.db_path), check_same_thread=False, isolation_level=None
                )

            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._init_schema()

        except sqlite3.Error as e:
            raise GraphStoreError(f"Failed to initialize SQLite storage: {e}") from e

    @classmethod
    def from_settings(cls, settings: "SynapseSettings") -> "GraphStore":
        """Build a store from settings, enabling encryption when a salt is configured."""
        keyring = None
        if settings.encryption_salt is not None:
            keyring = SubjectKeyring(
                settings.encryption_salt.get_secret_value(),
                iterations=settings.kdf_iterations,
            )
        else:
            logger.warning("No encryption salt configured; content is stored in plaintext")
        return cls(db_path=settings.get_sqlite_path(), keyring=keyring)

    @property
    def encrypted(self) -> bool:
        return self._keyring is not None

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        """Initialize database schema with all tables and indexes.

        Creates the following tables:
        - graphs: One row per subject with counts, SNR and loss vector
        - nodes: Memory nodes (content and topic encrypted at rest)
        - edges: Typed relationships, cascading on node delete
        - ledger / ledger_refs: Durable entries and the nodes they protect
        - contradictions: Resolution state of CONTRADICTS edges
        - sessions: Session bookkeeping

        Raises:
            GraphStoreError: If schema initialization fails
        """
        statements = [
            """
            CREATE TABLE IF NOT EXISTS graphs (
                id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL UNIQUE,
                node_count INTEGER NOT NULL DEFAULT 0,
                edge_count INTEGER NOT NULL DEFAULT 0,
                snr REAL NOT NULL DEFAULT 1.0,
                compression_passes INTEGER NOT NULL DEFAULT 0,
                loss_vector TEXT NOT NULL DEFAULT '[]',
                oldest_memory_at REAL,
                newest_memory_at REAL,
                last_compressed_at REAL,
                version INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS nodes (
                id TEXT PRIMARY KEY,
                graph_id TEXT NOT NULL,
                content TEXT NOT NULL,
                modality TEXT NOT NULL DEFAULT 'episodic',
                salience REAL NOT NULL DEFAULT 0.5,
                created_at REAL NOT NULL,
                last_accessed_at REAL NOT NULL,
                access_count INTEGER NOT NULL DEFAULT 0,
                embedding TEXT,
                topic TEXT,
                metadata TEXT,
                FOREIGN KEY (graph_id) REFERENCES graphs(id) ON DELETE CASCADE
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_nodes_graph ON nodes(graph_id)",
            """
            CREATE TABLE IF NOT EXISTS edges (
                id TEXT PRIMARY KEY,
                graph_id TEXT NOT NULL,
                source_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                edge_type TEXT NOT NULL DEFAULT 'relates_to',
                weight REAL NOT NULL DEFAULT 1.0,
                created_at REAL NOT NULL,
                FOREIGN KEY (graph_id) REFERENCES graphs(id) ON DELETE CASCADE,
                FOREIGN KEY (source_id) REFERENCES nodes(id) ON DELETE CASCADE,
                FOREIGN KEY (target_id) REFERENCES nodes(id) ON DELETE CASCADE,
                UNIQUE(source_id, target_id, edge_type)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_edges_graph ON edges(graph_id)",
            "CREATE INDEX IF NOT EXISTS idx_edges_source ON edges(source_id)",
            "CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target_id)",
            """
            CREATE TABLE IF NOT EXISTS ledger (
                id TEXT PRIMARY KEY,
                graph_id TEXT NOT NULL,
                content TEXT NOT NULL,
                category TEXT NOT NULL,
                importance REAL NOT NULL DEFAULT 0.5,
                trigger_keywords TEXT NOT NULL,
                access_count INTEGER NOT NULL DEFAULT 0,
                last_accessed_at REAL,
                active INTEGER NOT NULL DEFAULT 1,
                metadata TEXT,
                created_at REAL NOT NULL,
                FOREIGN KEY (graph_id) REFERENCES graphs(id) ON DELETE CASCADE
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS ledger_refs (
                ledger_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                PRIMARY KEY (ledger_id, node_id),
                FOREIGN KEY (ledger_id) REFERENCES ledger(id) ON DELETE CASCADE,
                FOREIGN KEY (node_id) REFERENCES nodes(id) ON DELETE CASCADE
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_ledger_refs_node ON ledger_refs(node_id)",
            """
            CREATE TABLE IF NOT EXISTS contradictions (
                edge_id TEXT PRIMARY KEY,
                graph_id TEXT NOT NULL,
                source_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'detected',
                detected_at REAL NOT NULL,
                resolved_at REAL,
                FOREIGN KEY (graph_id) REFERENCES graphs(id) ON DELETE CASCADE
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_contradictions_state ON contradictions(graph_id, state)",
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                graph_id TEXT NOT NULL,
                started_at REAL NOT NULL,
                ended_at REAL,
                message_count INTEGER NOT NULL DEFAULT 0,
                nodes_created INTEGER NOT NULL DEFAULT 0,
                edges_created INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (graph_id) REFERENCES graphs(id) ON DELETE CASCADE
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_sessions_graph ON sessions(graph_id)",
        ]
        with self._transaction("initialize schema") as cursor:
            for sql in statements:
                cursor.execute(sql)

        self._run_migrations()

    def _init_schema_version_table(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at REAL NOT NULL,
                description TEXT
            )
        """)

    def _get_schema_version(self) -> int:
        """Get the current schema version (0 if no migrations applied)."""
        self._init_schema_version_table()
        row = self._conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] if row and row[0] is not None else 0

    def _run_migrations(self) -> None:
        """Run any pending schema migrations.

        Each migration is applied in its own transaction.

        Raises:
            GraphStoreError: If a migration fails
        """
        current_version = self._get_schema_version()
        max_version = max(MIGRATIONS.keys()) if MIGRATIONS else 0

        if current_version >= max_version:
            return

        logger.info(f"Running migrations from v{current_version} to v{max_version}")

        for version in range(current_version + 1, max_version + 1):
            if version not in MIGRATIONS:
                continue

            migration = MIGRATIONS[version]
            description = migration.get("description", f"Migration {version}")
            up_sql = migration.get("up", [])
            if isinstance(up_sql, str):
                up_sql = [up_sql]

            with self._transaction(f"apply migration v{version} ({description})") as cursor:
                for sql in up_sql:
                    cursor.execute(sql)
                cursor.execute(
                    "INSERT INTO schema_version (version, applied_at, description) VALUES (?, ?, ?)",
                    (version, time.time(), description),
                )
            logger.info(f"Applied migration v{version}: {description}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Cursor]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT.

        sqlite3 errors are wrapped in GraphStoreError; any exception rolls
        back the whole block.
        """
        with self._lock:
            cursor = self._conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise GraphStoreError(f"Failed to {action}: {e}") from e
            except BaseException:
                self._conn.rollback()
                raise

    def _query(self, action: str, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                raise GraphStoreError(f"Failed to {action}: {e}") from e

    @staticmethod
    def _generate_id(prefix: str) -> str:
        """Generate unique, sortable ID using timestamp and random suffix."""
        timestamp = int(time.time() * 1000000)
        return f"{prefix}_{timestamp}_{secrets.token_hex(4)}"

    def _graph_mode(self, graph_id: str) -> tuple[str, bool]:
        """(subject id, encrypted) of a graph, cached after the first lookup."""
        mode = self._graph_modes.get(graph_id)
        if mode is None:
            rows = self._query(
                "look up graph", "SELECT subject_id, encrypted FROM graphs WHERE id = ?", (graph_id,)
            )
            if not rows:
                raise NotFoundError("graph", graph_id)
            mode = (rows[0]["subject_id"], bool(rows[0]["encrypted"]))
            self._graph_modes[graph_id] = mode
        return mode

    def _subject_id(self, graph_id: str) -> str:
        return self._graph_mode(graph_id)[0]

    def _require_keyring(self, graph_id: str) -> SubjectKeyring:
        if self._keyring is None:
            raise PrivacyViolation(f"Graph {graph_id} is encrypted but no keyring is configured")
        return self._keyring

    # A graph's encryption mode is fixed when it is created; stored values are
    # never inspected to decide whether they are ciphertext.
    def _seal(self, graph_id: str, value: Optional[str]) -> Optional[str]:
        subject_id, encrypted = self._graph_mode(graph_id)
        if value is None or not encrypted:
            return value
        return self._require_keyring(graph_id).encrypt(subject_id, value)

    def _open(self, graph_id: str, value: Optional[str]) -> Optional[str]:
        subject_id, encrypted = self._graph_mode(graph_id)
        if value is None or not encrypted:
            return value
        return self._require_keyring(graph_id).decrypt(subject_id, value)

    def _require_graph(self, cursor: sqlite3.Cursor, graph_id: str) -> None:
        cursor.execute("SELECT 1 FROM graphs WHERE id = ?", (graph_id,))
        if cursor.fetchone() is None:
            raise NotFoundError("graph", graph_id)

    def _require_node(self, cursor: sqlite3.Cursor, node_id: str, graph_id: Optional[str] = None) -> str:
        cursor.execute("SELECT graph_id FROM nodes WHERE id = ?", (node_id,))
        row = cursor.fetchone()
        if row is None or (graph_id is not None and row["graph_id"] != graph_id):
            raise NotFoundError("node", node_id)
        return str(row["graph_id"])

    @staticmethod
    def _bump(cursor: sqlite3.Cursor, graph_id: str, nodes: int = 0, edges: int = 0) -> None:
        cursor.execute(
            """
            UPDATE graphs
            SET node_count = node_count + ?, edge_count = edge_count + ?, version = version + 1
            WHERE id = ?
            """,
            (nodes, edges, graph_id),
        )

    @staticmethod
    def _log_event(
        cursor: sqlite3.Cursor,
        graph_id: str,
        event_type: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        # details hold counts and policy names only, never content
        cursor.execute(
            "INSERT INTO audit_events (graph_id, event_type, details, created_at) VALUES (?, ?, ?, ?)",
            (graph_id, event_type, json.dumps(details) if details else None, time.time()),
        )

    def _row_to_graph(self, row: sqlite3.Row) -> MemoryGraph:
        return MemoryGraph(
            id=row["id"],
            subject_id=row["subject_id"],
            node_count=row["node_count"],
            edge_count=row["edge_count"],
            snr=row["snr"],
            compression_passes=row["compression_passes"],
            loss_vector=[LossRecord.from_dict(item) for item in json.loads(row["loss_vector"])],
            oldest_memory_at=_dt(row["oldest_memory_at"]),
            newest_memory_at=_dt(row["newest_memory_at"]),
            last_compressed_at=_dt(row["last_compressed_at"]),
            version=row["version"],
            created_at=_dt(row["created_at"]) or utcnow(),
        )

    def _row_to_node(self, row: sqlite3.Row) -> MemoryNode:
        graph_id = row["graph_id"]
        return MemoryNode(
            id=row["id"],
            graph_id=graph_id,
            content=self._open(graph_id, row["content"]) or "",
            modality=Modality.parse(row["modality"]),
            salience=row["salience"],
            created_at=_dt(row["created_at"]) or utcnow(),
            last_accessed_at=_dt(row["last_accessed_at"]) or utcnow(),
            access_count=row["access_count"],
            embedding=json.loads(row["embedding"]) if row["embedding"] else None,
            topic=self._open(graph_id, row["topic"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    @staticmethod
    def _row_to_edge(row: sqlite3.Row) -> MemoryEdge:
        return MemoryEdge(
            id=row["id"],
            graph_id=row["graph_id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            edge_type=EdgeType.parse(row["edge_type"]),
            weight=row["weight"],
            created_at=_dt(row["created_at"]) or utcnow(),
        )

    def _row_to_ledger(self, row: sqlite3.Row, related: list[str]) -> LedgerEntry:
        graph_id = row["graph_id"]
        keywords = self._open(graph_id, row["trigger_keywords"]) or "[]"
        return LedgerEntry(
            id=row["id"],
            graph_id=graph_id,
            content=self._open(graph_id, row["content"]) or "",
            category=LedgerCategory.parse(row["category"]),
            importance=row["importance"],
            trigger_keywords=json.loads(keywords),
            access_count=row["access_count"],
            last_accessed_at=_dt(row["last_accessed_at"]),
            active=bool(row["active"]),
            related_node_ids=related,
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=_dt(row["created_at"]) or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> MemorySession:
        return MemorySession(
            id=row["id"],
            graph_id=row["graph_id"],
            started_at=_dt(row["started_at"]) or utcnow(),
            ended_at=_dt(row["ended_at"]),
            message_count=row["message_count"],
            nodes_created=row["nodes_created"],
            edges_created=row["edges_created"],
        )

    # ------------------------------------------------------------------
    # Graphs
    # ------------------------------------------------------------------

    def create_graph(self, subject_id: str, graph_id: Optional[str] = None) -> MemoryGraph:
        """Create the memory graph for a subject.

        Raises:
            ValueError: If the subject already has a graph
            GraphStoreError: If the insert fails
        """
        if not subject_id:
            raise ValueError("Subject id cannot be empty")
        gid = graph_id or self._generate_id("graph")
        try:
            with self._transaction("create graph") as cursor:
                cursor.execute(
                    "INSERT INTO graphs (id, subject_id, created_at, encrypted) VALUES (?, ?, ?, ?)",
                    (gid, subject_id, time.time(), int(self.encrypted)),
                )
        except GraphStoreError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise ValueError(f"Subject '{subject_id}' already has a memory graph") from e
            raise
        self._graph_modes[gid] = (subject_id, self.encrypted)
        logger.info(f"Created memory graph {gid}")
        return self.get_graph(gid)

    def get_graph(self, graph_id: str) -> MemoryGraph:
        rows = self._query("get graph", "SELECT * FROM graphs WHERE id = ?", (graph_id,))
        if not rows:
            raise NotFoundError("graph", graph_id)
        return self._row_to_graph(rows[0])

    def get_graph_for_subject(self, subject_id: str) -> Optional[MemoryGraph]:
        rows = self._query("get graph", "SELECT * FROM graphs WHERE subject_id = ?", (subject_id,))
        return self._row_to_graph(rows[0]) if rows else None

    def ensure_graph(self, subject_id: str) -> MemoryGraph:
        """Return the subject's graph, creating it on first use."""
        with self._lock:
            graph = self.get_graph_for_subject(subject_id)
            return graph if graph is not None else self.create_graph(subject_id)

    def delete_graph(self, graph_id: str) -> ErasureResult:
        """Delete a graph and everything in it, audit trail included.

        Raises:
            NotFoundError: If the graph does not exist
        """
        with self._transaction("delete graph") as cursor:
            cursor.execute("SELECT subject_id, node_count, edge_count FROM graphs WHERE id = ?", (graph_id,))
            row = cursor.fetchone()
            if row is None:
                raise NotFoundError("graph", graph_id)
            cursor.execute("SELECT COUNT(*) FROM ledger WHERE graph_id = ?", (graph_id,))
            ledger_count = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM sessions WHERE graph_id = ?", (graph_id,))
            session_count = cursor.fetchone()[0]
            cursor.execute("DELETE FROM graphs WHERE id = ?", (graph_id,))

        self._graph_modes.pop(graph_id, None)
        if self._keyring is not None:
            self._keyring.forget(row["subject_id"])
        logger.info(f"Deleted graph {graph_id}")
        return ErasureResult(
            graph_id=graph_id,
            nodes_deleted=row["node_count"],
            edges_deleted=row["edge_count"],
            ledger_entries_deleted=ledger_count,
            sessions_deleted=session_count,
        )

    # ------------------------------------------------------------------
    # Remembrance agreements
    # ------------------------------------------------------------------

    def remembrance_policy(self, graph_id: str, topic: Optional[str]) -> Optional[tuple[str, RemembrancePolicy]]:
        """Find the active negotiation entry governing a topic.

        Returns:
            (ledger entry id, policy) of the newest matching agreement, or None
        """
        if not topic:
            return None
        wanted = topic.strip().lower()
        rows = self._query(
            "look up remembrance agreements",
            """
            SELECT * FROM ledger
            WHERE graph_id = ? AND category = ? AND active = 1
            ORDER BY created_at DESC
            """,
            (graph_id, LedgerCategory.NEGOTIATION.value),
        )
        for row in rows:
            keywords = json.loads(self._open(graph_id, row["trigger_keywords"]) or "[]")
            if wanted in (k.strip().lower() for k in keywords):
                metadata = json.loads(row["metadata"]) if row["metadata"] else {}
                policy = RemembrancePolicy(metadata.get("policy", RemembrancePolicy.ALWAYS.value))
                return row["id"], policy
        return None

    def _refuse(self, graph_id: str, topic: str, policy: RemembrancePolicy, reason: str) -> RemembranceRefused:
        with self._transaction("record refused write") as cursor:
            self._log_event(cursor, graph_id, EVENT_WRITE_REFUSED, {"policy": policy.value})
        logger.info(f"Refused node write in graph {graph_id} under '{policy.value}' agreement")
        return RemembranceRefused(topic, policy.value, reason)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def create_node(
        self,
        graph_id: str,
        content: str,
        modality: Modality | str = Modality.EPISODIC,
        salience: float = 0.5,
        embedding: Optional[list[float]] = None,
        topic: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        session_id: Optional[str] = None,
        consent: bool = False,
        created_at: Optional[datetime] = None,
        node_id: Optional[str] = None,
    ) -> MemoryNode:
        """Add a node, honouring any remembrance agreement on its topic.

        Args:
            graph_id: Owning graph
            content: Memory text
            modality: Kind of memory
            salience: Importance at creation, 0.0 to 1.0
            embedding: Optional precomputed vector
            topic: Topic matched against negotiation ledger entries
            metadata: Extra metadata
            session_id: Session the node was written in
            consent: Explicit consent for ask_each_time topics
            created_at: Creation time (default: now)
            node_id: Optional custom ID

        Returns:
            The stored node

        Raises:
            NotFoundError: If the graph or session does not exist
            RemembranceRefused: If an agreement forbids persisting the node
            ValueError: If content or salience is invalid
        """
        now = created_at or utcnow()
        node_meta = dict(metadata or {})
        if session_id is not None:
            node_meta["session_id"] = session_id

        node = MemoryNode(
            id=node_id or self._generate_id("node"),
            graph_id=graph_id,
            content=content,
            modality=Modality.parse(modality),
            salience=salience,
            created_at=now,
            last_accessed_at=now,
            embedding=embedding,
            topic=topic,
            metadata=node_meta,
        )

        with self._lock:
            self._subject_id(graph_id)
            agreement = self.remembrance_policy(graph_id, topic)
            if agreement is not None and topic is not None:
                _, policy = agreement
                if policy is RemembrancePolicy.NEVER:
                    raise self._refuse(graph_id, topic, policy, "subject asked never to remember this")
                if policy is RemembrancePolicy.ASK_EACH_TIME and not consent:
                    raise self._refuse(graph_id, topic, policy, "explicit consent required")
                if policy is RemembrancePolicy.SESSION_ONLY:
                    if session_id is None:
                        raise self._refuse(graph_id, topic, policy, "no session to scope the memory to")
                    node.metadata["session_only"] = True

            ts = now.timestamp()
            with self._transaction("create node") as cursor:
                if session_id is not None:
                    cursor.execute(
                        "UPDATE sessions SET nodes_created = nodes_created + 1 WHERE id = ? AND graph_id = ?",
                        (session_id, graph_id),
                    )
                    if cursor.rowcount == 0:
                        raise NotFoundError("session", session_id)
                cursor.execute(
                    """
                    INSERT INTO nodes (
                        id, graph_id, content, modality, salience, created_at,
                        last_accessed_at, access_count, embedding, topic, metadata
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (
                        node.id,
                        graph_id,
                        self._seal(graph_id, node.content),
                        node.modality.value,
                        node.salience,
                        ts,
                        ts,
                        json.dumps(embedding) if embedding is not None else None,
                        self._seal(graph_id, topic),
                        json.dumps(node.metadata) if node.metadata else None,
                    ),
                )
                self._bump(cursor, graph_id, nodes=1)
                cursor.execute(
                    """
                    UPDATE graphs
                    SET oldest_memory_at = MIN(COALESCE(oldest_memory_at, ?), ?),
                        newest_memory_at = MAX(COALESCE(newest_memory_at, ?), ?)
                    WHERE id = ?
                    """,
                    (ts, ts, ts, ts, graph_id),
                )
        return node

    def get_node(self, node_id: str) -> MemoryNode:
        """Get a node by ID.

        Raises:
            NotFoundError: If the node does not exist
        """
        rows = self._query("get node", "SELECT * FROM nodes WHERE id = ?", (node_id,))
        if not rows:
            raise NotFoundError("node", node_id)
        return self._row_to_node(rows[0])

    def get_nodes(self, node_ids: Sequence[str]) -> list[MemoryNode]:
        """Get the nodes that still exist, in the order requested."""
        if not node_ids:
            return []
        rows = self._query(
            "get nodes",
            f"SELECT * FROM nodes WHERE id IN ({_placeholders(len(node_ids))})",
            list(node_ids),
        )
        by_id = {row["id"]: self._row_to_node(row) for row in rows}
        return [by_id[node_id] for node_id in node_ids if node_id in by_id]

    def list_nodes(self, graph_id: str) -> list[MemoryNode]:
        rows = self._query(
            "list nodes",
            "SELECT * FROM nodes WHERE graph_id = ? ORDER BY created_at, id",
            (graph_id,),
        )
        return [self._row_to_node(row) for row in rows]

    def update_node(
        self,
        node_id: str,
        content: Optional[str] = None,
        salience: Optional[float] = None,
        embedding: Optional[list[float]] = None,
        metadata: Optional[dict[str, Any]] = None,
        clear_embedding: bool = False,
    ) -> MemoryNode:
        """Update node content, salience, embedding or metadata.

        clear_embedding drops a stored vector that no longer matches the content.

        Raises:
            NotFoundError: If the node does not exist
            ValueError: If content is empty or salience out of range
        """
        if content is not None and not content:
            raise ValueError("Content cannot be empty")
        if salience is not None and not 0.0 <= salience <= 1.0:
            raise ValueError("Salience must be between 0.0 and 1.0")

        with self._transaction("update node") as cursor:
            graph_id = self._require_node(cursor, node_id)
            updates: list[str] = []
            params: list[Any] = []
            if content is not None:
                updates.append("content = ?")
                params.append(self._seal(graph_id, content))
            if salience is not None:
                updates.append("salience = ?")
                params.append(salience)
            if embedding is not None:
                updates.append("embedding = ?")
                params.append(json.dumps(embedding))
            elif clear_embedding:
                updates.append("embedding = NULL")
            if metadata is not None:
                updates.append("metadata = ?")
                params.append(json.dumps(metadata))
            if updates:
                params.append(node_id)
                cursor.execute(f"UPDATE nodes SET {', '.join(updates)} WHERE id = ?", params)
                self._bump(cursor, graph_id)
        return self.get_node(node_id)

    def record_access(self, node_id: str, now: Optional[datetime] = None) -> bool:
        """Bump a node's access count and last-access time.

        Returns:
            False if the node no longer exists
        """
        ts = (now or utcnow()).timestamp()
        with self._transaction("record access") as cursor:
            cursor.execute(
                "UPDATE nodes SET access_count = access_count + 1, last_accessed_at = ? WHERE id = ?",
                (ts, node_id),
            )
            return cursor.rowcount > 0

    def _unresolved_contradiction_edges(self, cursor: sqlite3.Cursor, node_ids: Sequence[str]) -> list[str]:
        marks = _placeholders(len(node_ids))
        cursor.execute(
            f"""
            SELECT edge_id FROM contradictions
            WHERE state = ? AND (source_id IN ({marks}) OR target_id IN ({marks}))
            """,
            [ContradictionState.DETECTED.value, *node_ids, *node_ids],
        )
        return [row["edge_id"] for row in cursor.fetchall()]

    def _delete_nodes(self, cursor: sqlite3.Cursor, graph_id: str, node_ids: Sequence[str]) -> int:
        """Delete nodes and their edges, keeping counts in step.

        Returns:
            Number of edges removed by the cascade
        """
        if not node_ids:
            return 0
        marks = _placeholders(len(node_ids))
        cursor.execute(
            f"SELECT id FROM edges WHERE source_id IN ({marks}) OR target_id IN ({marks})",
            [*node_ids, *node_ids],
        )
        edge_ids = [row["id"] for row in cursor.fetchall()]
        if edge_ids:
            cursor.execute(
                f"DELETE FROM contradictions WHERE state = ? AND edge_id IN ({_placeholders(len(edge_ids))})",
                [ContradictionState.DETECTED.value, *edge_ids],
            )
        cursor.execute(f"DELETE FROM nodes WHERE id IN ({marks}) AND graph_id = ?", [*node_ids, graph_id])
        deleted = cursor.rowcount
        self._bump(cursor, graph_id, nodes=-deleted, edges=-len(edge_ids))
        return len(edge_ids)

    def delete_node(self, node_id: str, force: bool = False) -> int:
        """Delete a node and every edge touching it.

        Args:
            node_id: The node to delete
            force: Delete even if the node is part of an unresolved contradiction

        Returns:
            Number of edges removed by the cascade

        Raises:
            NotFoundError: If the node does not exist
            CascadeError: If blocked by an unresolved contradiction and not forced
        """
        with self._transaction("delete node") as cursor:
            graph_id = self._require_node(cursor, node_id)
            blocking = self._unresolved_contradiction_edges(cursor, [node_id])
            if blocking and not force:
                raise CascadeError(node_id, blocking)
            return self._delete_nodes(cursor, graph_id, [node_id])

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def create_edge(
        self,
        graph_id: str,
        source_id: str,
        target_id: str,
        edge_type: EdgeType | str = EdgeType.RELATES_TO,
        weight: float = 1.0,
        session_id: Optional[str] = None,
        edge_id: Optional[str] = None,
    ) -> MemoryEdge:
        """Connect two nodes of the same graph.

        A CONTRADICTS edge is registered as a detected contradiction in the
        same transaction.

        Raises:
            NotFoundError: If the graph or either endpoint does not exist
            ValueError: If the edge already exists or the weight is invalid
        """
        edge = MemoryEdge(
            id=edge_id or self._generate_id("edge"),
            graph_id=graph_id,
            source_id=source_id,
            target_id=target_id,
            edge_type=EdgeType.parse(edge_type),
            weight=weight,
        )
        ts = edge.created_at.timestamp()
        try:
            with self._transaction("create edge") as cursor:
                self._require_graph(cursor, graph_id)
                self._require_node(cursor, source_id, graph_id)
                self._require_node(cursor, target_id, graph_id)
                cursor.execute(
                    """
                    INSERT INTO edges (id, graph_id, source_id, target_id, edge_type, weight, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (edge.id, graph_id, source_id, target_id, edge.edge_type.value, weight, ts),
                )
                if edge.edge_type is EdgeType.CONTRADICTS:
                    cursor.execute(
                        """
                        INSERT INTO contradictions (edge_id, graph_id, source_id, target_id, state, detected_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (edge.id, graph_id, source_id, target_id, ContradictionState.DETECTED.value, ts),
                    )
                if session_id is not None:
                    cursor.execute(
                        "UPDATE sessions SET edges_created = edges_created + 1 WHERE id = ? AND graph_id = ?",
                        (session_id, graph_id),
                    )
                self._bump(cursor, graph_id, edges=1)
        except GraphStoreError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise ValueError(
                    f"Edge {source_id} -[{edge.edge_type.value}]-> {target_id} already exists"
                ) from e
            raise
        return edge

    def get_edge(self, edge_id: str) -> MemoryEdge:
        rows = self._query("get edge", "SELECT * FROM edges WHERE id = ?", (edge_id,))
        if not rows:
            raise NotFoundError("edge", edge_id)
        return self._row_to_edge(rows[0])

    def list_edges(self, graph_id: str, edge_type: Optional[EdgeType] = None) -> list[MemoryEdge]:
        query = "SELECT * FROM edges WHERE graph_id = ?"
        params: list[Any] = [graph_id]
        if edge_type is not None:
            query += " AND edge_type = ?"
            params.append(edge_type.value)
        rows = self._query("list edges", query + " ORDER BY created_at, id", params)
        return [self._row_to_edge(row) for row in rows]

    def get_edges(
        self,
        node_id: str,
        direction: str = "both",
        edge_type: Optional[EdgeType] = None,
    ) -> list[MemoryEdge]:
        """Get edges touching a node.

        Args:
            node_id: The node to get edges for
            direction: 'outgoing', 'incoming', or 'both' (default: 'both')
            edge_type: Optional filter by edge type

        Raises:
            ValueError: If direction is invalid
        """
        if direction not in ("outgoing", "incoming", "both"):
            raise ValueError(f"Invalid direction: {direction}")

        clauses = []
        params: list[Any] = []
        if direction in ("outgoing", "both"):
            clauses.append("source_id = ?")
            params.append(node_id)
        if direction in ("incoming", "both"):
            clauses.append("target_id = ?")
            params.append(node_id)
        query = f"SELECT * FROM edges WHERE ({' OR '.join(clauses)})"
        if edge_type is not None:
            query += " AND edge_type = ?"
            params.append(edge_type.value)
        rows = self._query("get edges", query, params)
        return [self._row_to_edge(row) for row in rows]

    def get_connected_nodes(
        self,
        node_id: str,
        edge_types: Optional[Sequence[EdgeType]] = None,
    ) -> list[tuple[MemoryNode, MemoryEdge]]:
        """One-hop neighbours of a node with the edge that reaches each."""
        edges = self.get_edges(node_id)
        if edge_types is not None:
            wanted = set(edge_types)
            edges = [edge for edge in edges if edge.edge_type in wanted]
        neighbours = {node.id: node for node in self.get_nodes([e.other_end(node_id) for e in edges])}
        return [
            (neighbours[edge.other_end(node_id)], edge)
            for edge in edges
            if edge.other_end(node_id) in neighbours
        ]

    def delete_edge(self, edge_id: str) -> None:
        """Delete an edge (and any pending contradiction it carried).

        Raises:
            NotFoundError: If the edge does not exist
        """
        with self._transaction("delete edge") as cursor:
            cursor.execute("SELECT graph_id FROM edges WHERE id = ?", (edge_id,))
            row = cursor.fetchone()
            if row is None:
                raise NotFoundError("edge", edge_id)
            cursor.execute(
                "DELETE FROM contradictions WHERE edge_id = ? AND state = ?",
                (edge_id, ContradictionState.DETECTED.value),
            )
            cursor.execute("DELETE FROM edges WHERE id = ?", (edge_id,))
            self._bump(cursor, row["graph_id"], edges=-1)

    def retype_edge(self, edge_id: str, edge_type: EdgeType | str) -> MemoryEdge:
        """Change an edge's type in place.

        Retyping to CONTRADICTS registers a fresh detected contradiction;
        retyping away from it drops a pending one.

        Raises:
            NotFoundError: If the edge does not exist
            ValueError: If an edge of that type already joins the same nodes
        """
        new_type = EdgeType.parse(edge_type)
        try:
            with self._transaction("retype edge") as cursor:
                cursor.execute("SELECT * FROM edges WHERE id = ?", (edge_id,))
                row = cursor.fetchone()
                if row is None:
                    raise NotFoundError("edge", edge_id)
                cursor.execute("UPDATE edges SET edge_type = ? WHERE id = ?", (new_type.value, edge_id))
                if new_type is EdgeType.CONTRADICTS:
                    cursor.execute(
                        """
                        INSERT OR REPLACE INTO contradictions
                            (edge_id, graph_id, source_id, target_id, state, detected_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            edge_id,
                            row["graph_id"],
                            row["source_id"],
                            row["target_id"],
                            ContradictionState.DETECTED.value,
                            time.time(),
                        ),
                    )
                else:
                    cursor.execute(
                        "DELETE FROM contradictions WHERE edge_id = ? AND state = ?",
                        (edge_id, ContradictionState.DETECTED.value),
                    )
                self._bump(cursor, row["graph_id"])
        except GraphStoreError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise ValueError(f"Edge of type {new_type.value} already joins these nodes") from e
            raise
        return self.get_edge(edge_id)

    # ------------------------------------------------------------------
    # Contradictions
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_contradiction(row: sqlite3.Row) -> ContradictionRecord:
        return ContradictionRecord(
            edge_id=row["edge_id"],
            graph_id=row["graph_id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            state=ContradictionState(row["state"]),
            detected_at=_dt(row["detected_at"]) or utcnow(),
            resolved_at=_dt(row["resolved_at"]),
        )

    def get_contradiction(self, edge_id: str) -> ContradictionRecord:
        rows = self._query("get contradiction", "SELECT * FROM contradictions WHERE edge_id = ?", (edge_id,))
        if not rows:
            raise NotFoundError("contradiction", edge_id)
        return self._row_to_contradiction(rows[0])

    def list_contradictions(
        self,
        graph_id: str,
        state: Optional[ContradictionState] = None,
    ) -> list[ContradictionRecord]:
        query = "SELECT * FROM contradictions WHERE graph_id = ?"
        params: list[Any] = [graph_id]
        if state is not None:
            query += " AND state = ?"
            params.append(state.value)
        rows = self._query("list contradictions", query + " ORDER BY detected_at", params)
        return [self._row_to_contradiction(row) for row in rows]

    def resolve_contradiction(
        self,
        edge_id: str,
        state: ContradictionState,
        loser_id: Optional[str] = None,
    ) -> ContradictionRecord:
        """Move a detected contradiction to its final state in one transaction.

        With no loser the edge is retyped to RELATES_TO. With a loser, that
        node is deleted and the edge goes with it.

        Raises:
            NotFoundError: If the contradiction does not exist
            AlreadyResolvedError: If it was already resolved
            ValueError: If state is DETECTED or the loser is not an endpoint
        """
        if not state.is_resolved:
            raise ValueError("Cannot resolve a contradiction into the detected state")

        with self._transaction("resolve contradiction") as cursor:
            cursor.execute("SELECT * FROM contradictions WHERE edge_id = ?", (edge_id,))
            row = cursor.fetchone()
            if row is None:
                raise NotFoundError("contradiction", edge_id)
            record = self._row_to_contradiction(row)
            if record.state.is_resolved:
                raise AlreadyResolvedError(edge_id, record.state.value)

            if loser_id is None:
                cursor.execute(
                    "SELECT id FROM edges WHERE source_id = ? AND target_id = ? AND edge_type = ?",
                    (record.source_id, record.target_id, EdgeType.RELATES_TO.value),
                )
                if cursor.fetchone() is not None:
                    # An equivalent RELATES_TO edge already exists; keep that one
                    cursor.execute("DELETE FROM edges WHERE id = ?", (edge_id,))
                    self._bump(cursor, record.graph_id, edges=-cursor.rowcount)
                else:
                    cursor.execute(
                        "UPDATE edges SET edge_type = ? WHERE id = ?",
                        (EdgeType.RELATES_TO.value, edge_id),
                    )
                    if cursor.rowcount == 0:
                        raise NotFoundError("edge", edge_id)
                    self._bump(cursor, record.graph_id)
            else:
                if loser_id not in (record.source_id, record.target_id):
                    raise ValueError(f"Node {loser_id} is not an endpoint of {edge_id}")
                # Settle the state first so the cascade does not discard the row
                cursor.execute("UPDATE contradictions SET state = ? WHERE edge_id = ?", (state.value, edge_id))
                self._delete_nodes(cursor, record.graph_id, [loser_id])

            resolved_at = time.time()
            cursor.execute(
                "UPDATE contradictions SET state = ?, resolved_at = ? WHERE edge_id = ?",
                (state.value, resolved_at, edge_id),
            )
            self._log_event(cursor, record.graph_id, EVENT_RESOLUTION, {"state": state.value})

        record.state = state
        record.resolved_at = _dt(resolved_at)
        return record

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def create_ledger_entry(
        self,
        graph_id: str,
        content: str,
        category: LedgerCategory | str = LedgerCategory.INSTRUCTION,
        importance: float = 0.5,
        trigger_keywords: Optional[list[str]] = None,
        related_node_ids: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LedgerEntry:
        """Add a durable ledger entry.

        Nodes in related_node_ids are protected from compression while the
        entry stays active.

        Raises:
            NotFoundError: If the graph or a related node does not exist
            ValueError: If content or importance is invalid
        """
        entry = LedgerEntry(
            id=self._generate_id("ledger"),
            graph_id=graph_id,
            content=content,
            category=LedgerCategory.parse(category),
            importance=importance,
            trigger_keywords=list(trigger_keywords or []),
            related_node_ids=list(dict.fromkeys(related_node_ids or [])),
            metadata=dict(metadata or {}),
        )
        with self._transaction("create ledger entry") as cursor:
            self._require_graph(cursor, graph_id)
            for node_id in entry.related_node_ids:
                self._require_node(cursor, node_id, graph_id)
            cursor.execute(
                """
                INSERT INTO ledger (
                    id, graph_id, content, category, importance, trigger_keywords,
                    access_count, active, metadata, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, 1, ?, ?)
                """,
                (
                    entry.id,
                    graph_id,
                    self._seal(graph_id, content),
                    entry.category.value,
                    importance,
                    self._seal(graph_id, json.dumps(entry.trigger_keywords)),
                    json.dumps(entry.metadata) if entry.metadata else None,
                    entry.created_at.timestamp(),
                ),
            )
            cursor.executemany(
                "INSERT INTO ledger_refs (ledger_id, node_id) VALUES (?, ?)",
                [(entry.id, node_id) for node_id in entry.related_node_ids],
            )
            # Protection changes what compression may delete
            self._bump(cursor, graph_id)
        return entry

    def get_ledger_entry(self, entry_id: str) -> LedgerEntry:
        rows = self._query("get ledger entry", "SELECT * FROM ledger WHERE id = ?", (entry_id,))
        if not rows:
            raise NotFoundError("ledger entry", entry_id)
        refs = self._query("get ledger references", "SELECT node_id FROM ledger_refs WHERE ledger_id = ?", (entry_id,))
        return self._row_to_ledger(rows[0], [ref["node_id"] for ref in refs])

    def list_ledger_entries(
        self,
        graph_id: str,
        active_only: bool = True,
        category: Optional[LedgerCategory] = None,
    ) -> list[LedgerEntry]:
        query = "SELECT * FROM ledger WHERE graph_id = ?"
        params: list[Any] = [graph_id]
        if active_only:
            query += " AND active = 1"
        if category is not None:
            query += " AND category = ?"
            params.append(category.value)
        rows = self._query("list ledger entries", query + " ORDER BY importance DESC, created_at", params)
        if not rows:
            return []
        ids = [row["id"] for row in rows]
        refs = self._query(
            "list ledger references",
            f"SELECT ledger_id, node_id FROM ledger_refs WHERE ledger_id IN ({_placeholders(len(ids))})",
            ids,
        )
        related: dict[str, list[str]] = {}
        for ref in refs:
            related.setdefault(ref["ledger_id"], []).append(ref["node_id"])
        return [self._row_to_ledger(row, related.get(row["id"], [])) for row in rows]

    def record_ledger_access(self, entry_id: str, now: Optional[datetime] = None) -> None:
        with self._transaction("record ledger access") as cursor:
            cursor.execute(
                "UPDATE ledger SET access_count = access_count + 1, last_accessed_at = ? WHERE id = ?",
                ((now or utcnow()).timestamp(), entry_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("ledger entry", entry_id)

    def deactivate_ledger_entry(self, entry_id: str) -> None:
        """Retire a ledger entry; its nodes lose compression protection."""
        with self._transaction("deactivate ledger entry") as cursor:
            cursor.execute("SELECT graph_id FROM ledger WHERE id = ?", (entry_id,))
            row = cursor.fetchone()
            if row is None:
                raise NotFoundError("ledger entry", entry_id)
            cursor.execute("UPDATE ledger SET active = 0 WHERE id = ?", (entry_id,))
            self._bump(cursor, row["graph_id"])

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(self, graph_id: str, session_id: Optional[str] = None, now: Optional[datetime] = None) -> MemorySession:
        session = MemorySession(
            id=session_id or self._generate_id("sess"),
            graph_id=graph_id,
            started_at=now or utcnow(),
        )
        with self._transaction("start session") as cursor:
            self._require_graph(cursor, graph_id)
            cursor.execute(
                "INSERT INTO sessions (id, graph_id, started_at) VALUES (?, ?, ?)",
                (session.id, graph_id, session.started_at.timestamp()),
            )
        return session

    def get_session(self, session_id: str) -> MemorySession:
        rows = self._query("get session", "SELECT * FROM sessions WHERE id = ?", (session_id,))
        if not rows:
            raise NotFoundError("session", session_id)
        return self._row_to_session(rows[0])

    def list_sessions(self, graph_id: str) -> list[MemorySession]:
        rows = self._query(
            "list sessions",
            "SELECT * FROM sessions WHERE graph_id = ? ORDER BY started_at",
            (graph_id,),
        )
        return [self._row_to_session(row) for row in rows]

    def increment_session(self, session_id: str, messages: int = 1) -> None:
        with self._transaction("update session") as cursor:
            cursor.execute(
                "UPDATE sessions SET message_count = message_count + ? WHERE id = ?",
                (messages, session_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("session", session_id)

    def end_session(self, session_id: str, now: Optional[datetime] = None) -> tuple[MemorySession, list[str]]:
        """Close a session and purge the session-only nodes written in it.

        Returns:
            (closed session, ids of purged nodes)
        """
        with self._transaction("end session") as cursor:
            cursor.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
            row = cursor.fetchone()
            if row is None:
                raise NotFoundError("session", session_id)
            graph_id = row["graph_id"]
            cursor.execute(
                "UPDATE sessions SET ended_at = COALESCE(ended_at, ?) WHERE id = ?",
                ((now or utcnow()).timestamp(), session_id),
            )
            purge = self._purge_session_nodes(cursor, graph_id, session_id)
        return self.get_session(session_id), purge

    def _purge_session_nodes(self, cursor: sqlite3.Cursor, graph_id: str, session_id: str) -> list[str]:
        cursor.execute("SELECT id, metadata FROM nodes WHERE graph_id = ? AND metadata IS NOT NULL", (graph_id,))
        purge = []
        for node_row in cursor.fetchall():
            meta = json.loads(node_row["metadata"])
            if meta.get("session_only") and meta.get("session_id") == session_id:
                purge.append(node_row["id"])
        if purge:
            self._delete_nodes(cursor, graph_id, purge)
            self._log_event(cursor, graph_id, EVENT_SESSION_PURGE, {"nodes": len(purge)})
        return purge

    def purge_session_nodes(self, session_id: str) -> list[str]:
        """Delete the session-only nodes written in a session without closing it.

        Returns:
            Ids of the purged nodes
        """
        with self._transaction("purge session nodes") as cursor:
            cursor.execute("SELECT graph_id FROM sessions WHERE id = ?", (session_id,))
            row = cursor.fetchone()
            if row is None:
                raise NotFoundError("session", session_id)
            return self._purge_session_nodes(cursor, row["graph_id"], session_id)

    # ------------------------------------------------------------------
    # Compression commit
    # ------------------------------------------------------------------

    def apply_compression(
        self,
        plan: CompressionPlan,
        expected_passes: int,
        expected_version: int,
    ) -> MemoryGraph:
        """Apply a whole compression pass atomically.

        Deletes pruned nodes, inserts consolidated nodes, reattaches member
        edges to them, deletes members and updates counts, SNR, pass counter
        and loss vector, all in one transaction.

        Raises:
            ConcurrentModification: If the graph changed since the snapshot
            NotFoundError: If the graph does not exist
        """
        graph_id = plan.graph_id
        with self._transaction("apply compression") as cursor:
            cursor.execute(
                "SELECT compression_passes, version, loss_vector FROM graphs WHERE id = ?",
                (graph_id,),
            )
            row = cursor.fetchone()
            if row is None:
                raise NotFoundError("graph", graph_id)
            if row["compression_passes"] != expected_passes or row["version"] != expected_version:
                raise ConcurrentModification(
                    f"Graph {graph_id} changed during compression "
                    f"(passes {expected_passes}->{row['compression_passes']}, "
                    f"version {expected_version}->{row['version']})"
                )

            self._delete_nodes(cursor, graph_id, plan.prune_ids)

            cursor.executemany(
                "UPDATE nodes SET embedding = ? WHERE id = ? AND graph_id = ?",
                [
                    (json.dumps(vector), node_id, graph_id)
                    for node_id, vector in plan.embedding_updates.items()
                ],
            )

            remap: dict[str, str] = {}
            for merge in plan.merges:
                merge.node_id = merge.node_id or self._generate_id("node")
                cursor.execute(
                    """
                    INSERT INTO nodes (
                        id, graph_id, content, modality, salience, created_at,
                        last_accessed_at, access_count, embedding, topic, metadata
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        merge.node_id,
                        graph_id,
                        self._seal(graph_id, merge.content),
                        merge.modality.value,
                        merge.salience,
                        merge.created_at.timestamp(),
                        merge.last_accessed_at.timestamp(),
                        merge.access_count,
                        json.dumps(merge.embedding) if merge.embedding is not None else None,
                        self._seal(graph_id, merge.topic),
                        json.dumps(merge.metadata),
                    ),
                )
                for member_id in merge.member_ids:
                    remap[member_id] = merge.node_id

            if remap:
                members = list(remap)
                marks = _placeholders(len(members))
                cursor.execute(
                    f"SELECT * FROM edges WHERE source_id IN ({marks}) OR target_id IN ({marks})",
                    [*members, *members],
                )
                reattached: dict[tuple[str, str, str], float] = {}
                for edge_row in cursor.fetchall():
                    source = remap.get(edge_row["source_id"], edge_row["source_id"])
                    target = remap.get(edge_row["target_id"], edge_row["target_id"])
                    if source == target:
                        continue
                    key = (source, target, edge_row["edge_type"])
                    reattached[key] = max(reattached.get(key, 0.0), edge_row["weight"])

                cursor.execute(f"DELETE FROM nodes WHERE id IN ({marks})", members)
                compressed_ts = plan.compressed_at.timestamp()
                for (source, target, edge_type), weight in reattached.items():
                    cursor.execute(
                        """
                        INSERT INTO edges (id, graph_id, source_id, target_id, edge_type, weight, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(source_id, target_id, edge_type)
                        DO UPDATE SET weight = MAX(edges.weight, excluded.weight)
                        """,
                        (self._generate_id("edge"), graph_id, source, target, edge_type, weight, compressed_ts),
                    )

            loss_vector = json.loads(row["loss_vector"])
            loss_vector.append(plan.loss.to_dict())
            cursor.execute(
                """
                UPDATE graphs SET
                    node_count = (SELECT COUNT(*) FROM nodes WHERE graph_id = :gid),
                    edge_count = (SELECT COUNT(*) FROM edges WHERE graph_id = :gid),
                    oldest_memory_at = (SELECT MIN(created_at) FROM nodes WHERE graph_id = :gid),
                    newest_memory_at = (SELECT MAX(created_at) FROM nodes WHERE graph_id = :gid),
                    snr = :snr,
                    compression_passes = compression_passes + 1,
                    loss_vector = :loss,
                    last_compressed_at = :ts,
                    version = version + 1
                WHERE id = :gid
                """,
                {
                    "gid": graph_id,
                    "snr": plan.new_snr,
                    "loss": json.dumps(loss_vector),
                    "ts": plan.compressed_at.timestamp(),
                },
            )
            self._log_event(
                cursor,
                graph_id,
                EVENT_COMPRESSION,
                {
                    "pass_id": plan.loss.pass_id,
                    "pruned": len(plan.prune_ids),
                    "merged": plan.loss.nodes_merged,
                },
            )
        return self.get_graph(graph_id)

    # ------------------------------------------------------------------
    # Integrity and read models
    # ------------------------------------------------------------------

    def verify_integrity(self, graph_id: str, raise_on_mismatch: bool = False) -> IntegrityReport:
        """Recompute live counts and compare them with the stored counters.

        Raises:
            NotFoundError: If the graph does not exist
            IntegrityMismatch: On drift when raise_on_mismatch is set
        """
        with self._transaction("verify integrity") as cursor:
            cursor.execute(
                """
                SELECT node_count, edge_count,
                       (SELECT COUNT(*) FROM nodes WHERE graph_id = :gid) AS live_nodes,
                       (SELECT COUNT(*) FROM edges WHERE graph_id = :gid) AS live_edges
                FROM graphs WHERE id = :gid
                """,
                {"gid": graph_id},
            )
            row = cursor.fetchone()
            if row is None:
                raise NotFoundError("graph", graph_id)
            report = IntegrityReport(
                graph_id=graph_id,
                stored_node_count=row["node_count"],
                stored_edge_count=row["edge_count"],
                actual_node_count=row["live_nodes"],
                actual_edge_count=row["live_edges"],
            )
            if not report.ok:
                self._log_event(cursor, graph_id, EVENT_INTEGRITY_DRIFT, {
                    "node_drift": report.stored_node_count - report.actual_node_count,
                    "edge_drift": report.stored_edge_count - report.actual_edge_count,
                })

        if not report.ok:
            logger.warning(
                f"Integrity drift in graph {graph_id}: stored "
                f"{report.stored_node_count}/{report.stored_edge_count}, live "
                f"{report.actual_node_count}/{report.actual_edge_count}"
            )
            if raise_on_mismatch:
                raise IntegrityMismatch(
                    graph_id,
                    (report.stored_node_count, report.stored_edge_count),
                    (report.actual_node_count, report.actual_edge_count),
                )
        return report

    def supervision_stats(self, graph_id: str) -> SupervisionSummary:
        """Metadata-only statistics for auditing roles.

        Every query here selects counts, scores, labels or timestamps. None
        touches a content, topic or keyword column.
        """
        graph_rows = self._query(
            "read supervision stats",
            """
            SELECT node_count, edge_count, snr, compression_passes,
                   oldest_memory_at, newest_memory_at, last_compressed_at
            FROM graphs WHERE id = ?
            """,
            (graph_id,),
        )
        if not graph_rows:
            raise NotFoundError("graph", graph_id)
        graph = graph_rows[0]

        modality_rows = self._query(
            "read supervision stats",
            "SELECT modality, COUNT(*) AS n FROM nodes WHERE graph_id = ? GROUP BY modality",
            (graph_id,),
        )
        category_rows = self._query(
            "read supervision stats",
            "SELECT category, COUNT(*) AS n FROM ledger WHERE graph_id = ? AND active = 1 GROUP BY category",
            (graph_id,),
        )
        session_row = self._query(
            "read supervision stats",
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN ended_at IS NULL THEN 1 ELSE 0 END) AS active,
                   MAX(started_at) AS last_started
            FROM sessions WHERE graph_id = ?
            """,
            (graph_id,),
        )[0]
        unresolved = self._query(
            "read supervision stats",
            "SELECT COUNT(*) AS n FROM contradictions WHERE graph_id = ? AND state = ?",
            (graph_id, ContradictionState.DETECTED.value),
        )[0]["n"]
        event_rows = self._query(
            "read supervision stats",
            "SELECT event_type, COUNT(*) AS n FROM audit_events WHERE graph_id = ? GROUP BY event_type",
            (graph_id,),
        )
        events = {row["event_type"]: int(row["n"]) for row in event_rows}

        total_sessions = int(session_row["total"] or 0)
        active_sessions = int(session_row["active"] or 0)
        return SupervisionSummary(
            graph_id=graph_id,
            node_count=int(graph["node_count"]),
            edge_count=int(graph["edge_count"]),
            snr=float(graph["snr"]),
            compression_passes=int(graph["compression_passes"]),
            session_counts={
                "total": total_sessions,
                "active": active_sessions,
                "ended": total_sessions - active_sessions,
            },
            alert_counts={
                "unresolved_contradictions": int(unresolved),
                "blocked_writes": events.get(EVENT_WRITE_REFUSED, 0),
                "integrity_drift": events.get(EVENT_INTEGRITY_DRIFT, 0),
            },
            modality_counts={Modality.parse(row["modality"]).value: int(row["n"]) for row in modality_rows},
            ledger_category_counts={
                LedgerCategory.parse(row["category"]).value: int(row["n"]) for row in category_rows
            },
            oldest_memory_at=_dt(graph["oldest_memory_at"]),
            newest_memory_at=_dt(graph["newest_memory_at"]),
            last_compressed_at=_dt(graph["last_compressed_at"]),
            last_session_at=_dt(session_row["last_started"]),
        )

    def institutional_stats(self, graph_id: str) -> InstitutionalSummary:
        """Engagement counts only: sessions and messages."""
        self._subject_id(graph_id)
        row = self._query(
            "read engagement stats",
            """
            SELECT COUNT(*) AS sessions, COALESCE(SUM(message_count), 0) AS messages,
                   MIN(started_at) AS first_started, MAX(started_at) AS last_started
            FROM sessions WHERE graph_id = ?
            """,
            (graph_id,),
        )[0]
        return InstitutionalSummary(
            session_count=int(row["sessions"]),
            message_count=int(row["messages"]),
            first_session_at=_dt(row["first_started"]),
            last_session_at=_dt(row["last_started"]),
        )

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()

    def __enter__(self) -> "GraphStore":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()
