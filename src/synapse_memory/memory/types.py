"""Core data types for the memory graph engine.

This module defines the data structures used throughout synapse:
- Modality / EdgeType / LedgerCategory: closed enumerations with an OTHER variant
- MemoryGraph, MemoryNode, MemoryEdge, LedgerEntry, MemorySession: stored entities
- NodeDraft / EdgeDraft / TurnResult: the conversation write path
- ContextBundle / RankedNode: the retrieval result
- CompressionPlan / CompressionReport / LossRecord: compression bookkeeping
- SupervisionSummary / InstitutionalSummary: domain-restricted read models
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, TypeVar, Union

E = TypeVar("E", bound=Enum)


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_enum(enum_cls: type[E], value: Union[str, E], fallback: E) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return fallback


class Modality(Enum):
    """Kind of memory a node holds.

    - EPISODIC: Something that happened in a conversation
    - SEMANTIC: A fact about the subject or the world
    - EMOTIONAL: A feeling or affective state
    - PROCEDURAL: How the subject does or learns something
    - OTHER: Anything a producer tags with an unknown modality
    """
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    EMOTIONAL = "emotional"
    PROCEDURAL = "procedural"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Union[str, "Modality"]) -> "Modality":
        return _parse_enum(cls, value, cls.OTHER)


class EdgeType(Enum):
    """Types of relationships between nodes."""
    RELATES_TO = "relates_to"
    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    CAUSES = "causes"
    PART_OF = "part_of"
    TEMPORAL = "temporal"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Union[str, "EdgeType"]) -> "EdgeType":
        return _parse_enum(cls, value, cls.OTHER)


class LedgerCategory(Enum):
    """Categories of durable ledger entries.

    - INSTRUCTION: Standing instruction from the subject
    - COMMITMENT: Something promised to the subject
    - MILESTONE: An achievement worth never forgetting
    - NEGOTIATION: A remembrance agreement governing future writes
    """
    INSTRUCTION = "instruction"
    COMMITMENT = "commitment"
    MILESTONE = "milestone"
    NEGOTIATION = "negotiation"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Union[str, "LedgerCategory"]) -> "LedgerCategory":
        return _parse_enum(cls, value, cls.OTHER)


class RemembrancePolicy(Enum):
    """How future writes on a negotiated topic are handled."""
    NEVER = "never"
    SESSION_ONLY = "session_only"
    ASK_EACH_TIME = "ask_each_time"
    ALWAYS = "always"


class ResolutionPolicy(Enum):
    """How a CONTRADICTS edge is resolved."""
    MERGE = "merge"
    KEEP_SOURCE = "keep_source"
    KEEP_TARGET = "keep_target"


class ContradictionState(Enum):
    """Lifecycle of a CONTRADICTS edge: DETECTED, then one final state."""
    DETECTED = "detected"
    MERGED = "merged"
    SOURCE_KEPT = "source_kept"
    TARGET_KEPT = "target_kept"

    @property
    def is_resolved(self) -> bool:
        return self is not ContradictionState.DETECTED


@dataclass
class LossRecord:
    """Information discarded by one compression pass.

    Attributes:
        pass_id: Sequence number of the pass (1-based)
        nodes_pruned: Nodes deleted by Layer 1
        nodes_merged: Nodes absorbed into consolidated nodes by Layer 2
        pruned_salience: Salience mass removed by pruning
        merge_loss: Summed fraction of member text dropped by summarisation
        entropy_loss: pruned_salience + merge_loss
        recorded_at: When the pass committed
    """
    pass_id: int
    nodes_pruned: int
    nodes_merged: int
    pruned_salience: float
    merge_loss: float
    entropy_loss: float
    recorded_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["recorded_at"] = self.recorded_at.timestamp()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LossRecord":
        values = dict(data)
        values["recorded_at"] = datetime.fromtimestamp(values["recorded_at"], tz=timezone.utc)
        return cls(**values)


@dataclass
class MemoryGraph:
    """One subject's memory graph and its bookkeeping.

    Attributes:
        id: Unique graph identifier
        subject_id: Identifier of the owning subject
        node_count: Live node count, kept in step with every write
        edge_count: Live edge count, kept in step with every write
        snr: Signal-to-noise ratio, starts at 1.0, never above the ceiling
        compression_passes: Successful compression passes so far
        loss_vector: One LossRecord per successful pass
        version: Bumped by every node/edge write; guards compression commits
    """
    id: str
    subject_id: str
    node_count: int = 0
    edge_count: int = 0
    snr: float = 1.0
    compression_passes: int = 0
    loss_vector: list[LossRecord] = field(default_factory=list)
    oldest_memory_at: Optional[datetime] = None
    newest_memory_at: Optional[datetime] = None
    last_compressed_at: Optional[datetime] = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MemoryNode:
    """A single memory in a subject's graph.

    Attributes:
        id: Unique node identifier
        graph_id: Owning graph
        content: Memory text (encrypted at rest)
        modality: Kind of memory
        salience: Author-assigned importance at creation, 0.0 to 1.0
        created_at: When the node was written
        last_accessed_at: Last time retrieval returned the node
        access_count: How many times retrieval returned the node
        embedding: Optional vector from the embedding provider
        topic: Optional topic used to match remembrance agreements
        metadata: Provenance (merged_from) and session tagging

    Raises:
        ValueError: If salience is out of range or content is empty
    """
    id: str
    graph_id: str
    content: str
    modality: Modality = Modality.EPISODIC
    salience: float = 0.5
    created_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)
    access_count: int = 0
    embedding: Optional[list[float]] = None
    topic: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.content:
            raise ValueError("Node content cannot be empty")
        if not 0.0 <= self.salience <= 1.0:
            raise ValueError(
                f"Salience must be between 0.0 and 1.0, got {self.salience}"
            )

    @property
    def merged_from(self) -> list[str]:
        return list(self.metadata.get("merged_from", []))

    @property
    def session_only(self) -> bool:
        return bool(self.metadata.get("session_only", False))


@dataclass
class MemoryEdge:
    """A directed, typed relationship between two nodes of the same graph."""
    id: str
    graph_id: str
    source_id: str
    target_id: str
    edge_type: EdgeType = EdgeType.RELATES_TO
    weight: float = 1.0
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not 0.0 <= self.weight <= 1.0:
            raise ValueError(f"Weight must be between 0.0 and 1.0, got {self.weight}")
        if self.source_id == self.target_id:
            raise ValueError("Edge cannot connect a node to itself")

    def other_end(self, node_id: str) -> str:
        return self.target_id if node_id == self.source_id else self.source_id


@dataclass
class LedgerEntry:
    """A durable, prune-exempt fact.

    Ledger entries are only retired by explicit deactivation. Nodes listed in
    related_node_ids are protected from compression while the entry is active.
    """
    id: str
    graph_id: str
    content: str
    category: LedgerCategory = LedgerCategory.INSTRUCTION
    importance: float = 0.5
    trigger_keywords: list[str] = field(default_factory=list)
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    active: bool = True
    related_node_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.content:
            raise ValueError("Ledger content cannot be empty")
        if not 0.0 <= self.importance <= 1.0:
            raise ValueError(
                f"Importance must be between 0.0 and 1.0, got {self.importance}"
            )


@dataclass
class MemorySession:
    """Session-end bookkeeping for one conversation."""
    id: str
    graph_id: str
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    message_count: int = 0
    nodes_created: int = 0
    edges_created: int = 0

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


@dataclass
class NodeDraft:
    """A node the conversation orchestrator wants to remember.

    Attributes:
        content: Memory text
        modality: Kind of memory (string values are parsed leniently)
        salience: Importance at creation, 0.0 to 1.0
        topic: Topic matched against remembrance agreements
        embedding: Optional precomputed vector
        consent: Explicit consent for topics under an ask_each_time agreement
        metadata: Extra metadata stored with the node
    """
    content: str
    modality: Union[Modality, str] = Modality.EPISODIC
    salience: float = 0.5
    topic: Optional[str] = None
    embedding: Optional[list[float]] = None
    consent: bool = False
    metadata: Optional[dict[str, Any]] = None


@dataclass
class EdgeDraft:
    """An edge written in the same turn as its drafts.

    Endpoints are either an int index into the turn's node drafts or the id
    of an existing node.
    """
    source: Union[int, str]
    target: Union[int, str]
    edge_type: Union[EdgeType, str] = EdgeType.RELATES_TO
    weight: float = 1.0


@dataclass
class RefusedWrite:
    """A draft that a remembrance agreement kept out of the graph."""
    index: int
    topic: str
    policy: str
    reason: str


@dataclass
class TurnResult:
    """Result of writing one conversation turn."""
    graph_id: str
    node_ids: list[Optional[str]] = field(default_factory=list)
    edge_ids: list[str] = field(default_factory=list)
    refused: list[RefusedWrite] = field(default_factory=list)
    skipped_edges: list[int] = field(default_factory=list)

    @property
    def stored_count(self) -> int:
        return sum(1 for node_id in self.node_ids if node_id is not None)


@dataclass
class RankedNode:
    """A node selected for context along with how it scored.

    Attributes:
        node: The node itself
        gravity: Salience times decay at ranking time
        similarity: Cosine similarity to the query (0.0 when degraded)
        relevance: Score used for ordering
        estimated_tokens: Token estimate charged to the budget
        via: Id of the node this one was reached from (None for direct hits)
    """
    node: MemoryNode
    gravity: float
    similarity: float
    relevance: float
    estimated_tokens: int
    via: Optional[str] = None


@dataclass
class ContextBundle:
    """Bounded context assembled for one conversation turn.

    Attributes:
        graph_id: Graph the context was drawn from (None if the subject has no graph yet)
        query: Query text used for ranking
        token_budget: Budget the caller asked for
        nodes: Selected nodes in descending relevance
        ledger_entries: Triggered ledger entries in descending importance
        estimated_tokens: Tokens charged by nodes and ledger entries
        candidates_considered: Nodes scored before budgeting
        dropped_for_budget: Candidates (and ledger entries) left out for budget
        dropped_for_limit: Candidates left out because of max_nodes
        degraded: True when ranking fell back to gravity only
    """
    graph_id: Optional[str]
    query: str
    token_budget: int
    nodes: list[RankedNode] = field(default_factory=list)
    ledger_entries: list[LedgerEntry] = field(default_factory=list)
    estimated_tokens: int = 0
    candidates_considered: int = 0
    dropped_for_budget: int = 0
    dropped_for_limit: int = 0
    degraded: bool = False

    @property
    def total_dropped(self) -> int:
        return self.dropped_for_budget + self.dropped_for_limit


@dataclass
class ClusterMerge:
    """One consolidated node produced by Layer 2 of a compression pass."""
    member_ids: list[str]
    content: str
    salience: float
    modality: Modality
    embedding: Optional[list[float]]
    created_at: datetime
    last_accessed_at: datetime
    access_count: int = 0
    topic: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    node_id: Optional[str] = None


@dataclass
class CompressionPlan:
    """Everything a compression pass will change, applied in one transaction."""
    graph_id: str
    prune_ids: list[str]
    merges: list[ClusterMerge]
    loss: LossRecord
    new_snr: float
    compressed_at: datetime
    embedding_updates: dict[str, list[float]] = field(default_factory=dict)


@dataclass
class CompressionReport:
    """Outcome of a compression pass.

    Attributes:
        pass_id: Sequence number of the pass
        nodes_pruned: Nodes deleted by Layer 1
        nodes_merged: Nodes absorbed by Layer 2
        entropy_loss: Information discarded by the pass
        new_snr: Graph SNR after the pass
    """
    pass_id: int
    graph_id: str
    nodes_pruned: int = 0
    nodes_merged: int = 0
    clusters_formed: int = 0
    entropy_loss: float = 0.0
    new_snr: float = 1.0
    previous_snr: float = 1.0
    nodes_before: int = 0
    nodes_after: int = 0
    edges_before: int = 0
    edges_after: int = 0
    duration_ms: float = 0.0
    dry_run: bool = False
    pruned_ids: list[str] = field(default_factory=list)
    merged_into: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class IntegrityReport:
    """Stored versus live counts for one graph."""
    graph_id: str
    stored_node_count: int
    stored_edge_count: int
    actual_node_count: int
    actual_edge_count: int

    @property
    def ok(self) -> bool:
        return (
            self.stored_node_count == self.actual_node_count
            and self.stored_edge_count == self.actual_edge_count
        )


@dataclass
class ContradictionRecord:
    """Resolution state of one CONTRADICTS edge."""
    edge_id: str
    graph_id: str
    source_id: str
    target_id: str
    state: ContradictionState = ContradictionState.DETECTED
    detected_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None


@dataclass
class ResolutionResult:
    """Outcome of resolving a CONTRADICTS edge."""
    edge_id: str
    policy: ResolutionPolicy
    state: ContradictionState
    kept_node_ids: list[str] = field(default_factory=list)
    deleted_node_ids: list[str] = field(default_factory=list)


@dataclass
class SessionEndResult:
    """Outcome of closing a session."""
    session: MemorySession
    purged_node_ids: list[str] = field(default_factory=list)
    compression: Optional[CompressionReport] = None


@dataclass
class NegotiationResult:
    """Outcome of a remembrance negotiation."""
    ledger_entry_id: str
    topic: str
    policy: RemembrancePolicy
    superseded_entry_ids: list[str] = field(default_factory=list)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class SupervisionSummary:
    """Metadata-only view of a graph for auditing roles.

    Every field is a number, a timestamp or a map from a fixed label
    (modality, category, alert kind) to a count. No field can carry node
    or ledger content.
    """
    graph_id: str
    node_count: int
    edge_count: int
    snr: float
    compression_passes: int
    session_counts: dict[str, int]
    alert_counts: dict[str, int]
    modality_counts: dict[str, int]
    ledger_category_counts: dict[str, int]
    oldest_memory_at: Optional[datetime] = None
    newest_memory_at: Optional[datetime] = None
    last_compressed_at: Optional[datetime] = None
    last_session_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "graph_id": self.graph_id,
            "node_count": self.node_count,
            "edge_count": self.edge_count,
            "snr": self.snr,
            "compression_passes": self.compression_passes,
            "session_counts": dict(self.session_counts),
            "alert_counts": dict(self.alert_counts),
            "modality_counts": dict(self.modality_counts),
            "ledger_category_counts": dict(self.ledger_category_counts),
            "oldest_memory_at": _iso(self.oldest_memory_at),
            "newest_memory_at": _iso(self.newest_memory_at),
            "last_compressed_at": _iso(self.last_compressed_at),
            "last_session_at": _iso(self.last_session_at),
        }


@dataclass(frozen=True)
class InstitutionalSummary:
    """Engagement-only view of a subject for staff and guardians."""
    session_count: int
    message_count: int
    first_session_at: Optional[datetime] = None
    last_session_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_count": self.session_count,
            "message_count": self.message_count,
            "first_session_at": _iso(self.first_session_at),
            "last_session_at": _iso(self.last_session_at),
        }


@dataclass
class LedgerRectification:
    """Outcome of a subject contesting a ledger entry."""
    retired_entry_id: str
    replacement_entry_id: Optional[str] = None


@dataclass
class ErasureResult:
    """What an erasure request removed; graph_id is None if there was nothing to erase."""
    graph_id: Optional[str]
    nodes_deleted: int = 0
    edges_deleted: int = 0
    ledger_entries_deleted: int = 0
    sessions_deleted: int = 0


@dataclass
class SubjectExport:
    """Everything held about one subject, in a portable form.

    Embeddings are left out of to_dict(); they are derived from content and
    tied to the embedding model in use.
    """
    subject_id: str
    graph: Optional[MemoryGraph] = None
    nodes: list[MemoryNode] = field(default_factory=list)
    edges: list[MemoryEdge] = field(default_factory=list)
    ledger_entries: list[LedgerEntry] = field(default_factory=list)
    sessions: list[MemorySession] = field(default_factory=list)
    exported_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        graph = None
        if self.graph is not None:
            graph = {
                "id": self.graph.id,
                "created_at": _iso(self.graph.created_at),
                "node_count": self.graph.node_count,
                "edge_count": self.graph.edge_count,
                "snr": self.graph.snr,
                "compression_passes": self.graph.compression_passes,
                "loss_vector": [record.to_dict() for record in self.graph.loss_vector],
            }
        return {
            "subject_id": self.subject_id,
            "exported_at": _iso(self.exported_at),
            "graph": graph,
            "nodes": [
                {
                    "id": n.id,
                    "content": n.content,
                    "modality": n.modality.value,
                    "salience": n.salience,
                    "topic": n.topic,
                    "created_at": _iso(n.created_at),
                    "last_accessed_at": _iso(n.last_accessed_at),
                    "access_count": n.access_count,
                    "metadata": dict(n.metadata),
                }
                for n in self.nodes
            ],
            "edges": [
                {
                    "id": e.id,
                    "source_id": e.source_id,
                    "target_id": e.target_id,
                    "edge_type": e.edge_type.value,
                    "weight": e.weight,
                    "created_at": _iso(e.created_at),
                }
                for e in self.edges
            ],
            "ledger_entries": [
                {
                    "id": entry.id,
                    "content": entry.content,
                    "category": entry.category.value,
                    "importance": entry.importance,
                    "trigger_keywords": list(entry.trigger_keywords),
                    "active": entry.active,
                    "related_node_ids": list(entry.related_node_ids),
                    "metadata": dict(entry.metadata),
                    "created_at": _iso(entry.created_at),
                }
                for entry in self.ledger_entries
            ],
            "sessions": [
                {
                    "id": s.id,
                    "started_at": _iso(s.started_at),
                    "ended_at": _iso(s.ended_at),
                    "message_count": s.message_count,
                    "nodes_created": s.nodes_created,
                    "edges_created": s.edges_created,
                }
                for s in self.sessions
            ],
        }
