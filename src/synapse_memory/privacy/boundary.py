"""Domain access control between the memory graph and its readers.

Three domains are kept apart:

    INSTITUTIONAL  engagement facts (sessions, message counts)
    RELATIONAL     the memory graph itself: nodes, ledger, agreements
    SUPERVISION    metadata-only health and alert counts

Every PrivacyBoundary method checks the requester's role against the domain
before touching the store. A denied request raises PrivacyViolation and is
logged without any subject content.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence, Union

from synapse_memory.config import SynapseSettings
from synapse_memory.embedding.ollama import Embedder
from synapse_memory.errors import NotFoundError, PrivacyViolation
from synapse_memory.memory import contradiction, operations
from synapse_memory.memory.types import (
    CompressionReport,
    ContextBundle,
    EdgeDraft,
    ErasureResult,
    InstitutionalSummary,
    IntegrityReport,
    LedgerRectification,
    MemoryNode,
    MemorySession,
    NegotiationResult,
    NodeDraft,
    RemembrancePolicy,
    ResolutionPolicy,
    ResolutionResult,
    SessionEndResult,
    SubjectExport,
    SupervisionSummary,
    TurnResult,
)
from synapse_memory.storage.sqlite import GraphStore

logger = logging.getLogger(__name__)


class Domain(Enum):
    INSTITUTIONAL = "institutional"
    RELATIONAL = "relational"
    SUPERVISION = "supervision"


class Role(Enum):
    SUBJECT = "subject"
    PARENT = "parent"
    TEACHER = "teacher"
    COORDINATOR = "coordinator"
    COUNSELOR = "counselor"
    AUDITOR = "auditor"
    ADMIN = "admin"
    SYSTEM = "system"


_INSTITUTIONAL_ROLES = frozenset({
    Role.TEACHER, Role.PARENT, Role.COORDINATOR, Role.ADMIN, Role.SUBJECT,
})
_SUPERVISION_ROLES = frozenset({
    Role.AUDITOR, Role.COORDINATOR, Role.COUNSELOR, Role.ADMIN,
})


@dataclass(frozen=True)
class AccessContext:
    """Who is asking, in which role, about which subject."""

    requester_id: str
    role: Role
    subject_id: str

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))
        if not self.requester_id or not self.subject_id:
            raise ValueError("requester_id and subject_id are required")


def can_access_domain(ctx: AccessContext, domain: Domain) -> bool:
    """Whether the requester may read or write the subject's data in a domain.

    The relational domain is open only to the subject themself, or to the
    conversation orchestrator acting for that subject.
    """
    if domain is Domain.INSTITUTIONAL:
        return ctx.role in _INSTITUTIONAL_ROLES
    if domain is Domain.SUPERVISION:
        return ctx.role in _SUPERVISION_ROLES
    if ctx.role is Role.SYSTEM:
        return True
    return ctx.role is Role.SUBJECT and ctx.requester_id == ctx.subject_id


class PrivacyBoundary:
    """Role-checked facade over the subject-level operations.

    Args:
        store: GraphStore holding every subject's graph
        embedder: Embedding provider, or None to run without vectors
        settings: Thresholds and limits (default: SynapseSettings())
    """

    def __init__(
        self,
        store: GraphStore,
        embedder: Optional[Embedder] = None,
        settings: Optional[SynapseSettings] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.settings = settings or SynapseSettings()

    def check(self, ctx: AccessContext, domain: Domain) -> None:
        """Raise PrivacyViolation unless ctx may access the domain."""
        if not can_access_domain(ctx, domain):
            logger.warning(
                f"Denied {ctx.role.value} '{ctx.requester_id}' access to the "
                f"{domain.value} domain of subject '{ctx.subject_id}'"
            )
            raise PrivacyViolation(
                f"Role '{ctx.role.value}' may not access the {domain.value} domain"
            )

    # Relational domain

    async def build_context(
        self,
        ctx: AccessContext,
        query: str,
        token_budget: Optional[int] = None,
        keywords: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
        include_connected: bool = False,
    ) -> ContextBundle:
        self.check(ctx, Domain.RELATIONAL)
        return await operations.build_context(
            self.store,
            self.embedder,
            ctx.subject_id,
            query,
            token_budget=token_budget,
            keywords=keywords,
            settings=self.settings,
            now=now,
            include_connected=include_connected,
        )

    async def record_turn(
        self,
        ctx: AccessContext,
        nodes: Sequence[NodeDraft],
        edges: Sequence[EdgeDraft] = (),
        session_id: Optional[str] = None,
    ) -> TurnResult:
        self.check(ctx, Domain.RELATIONAL)
        if session_id is not None:
            self._require_own_session(ctx, session_id)
        return await operations.record_turn(
            self.store,
            ctx.subject_id,
            nodes,
            edges,
            session_id=session_id,
            embedder=self.embedder,
        )

    def negotiate_remembrance(
        self,
        ctx: AccessContext,
        topic: str,
        policy: Union[RemembrancePolicy, str],
    ) -> NegotiationResult:
        self.check(ctx, Domain.RELATIONAL)
        return operations.negotiate_remembrance(self.store, ctx.subject_id, topic, policy)

    def resolve_contradiction(
        self,
        ctx: AccessContext,
        edge_id: str,
        policy: Union[ResolutionPolicy, str],
    ) -> ResolutionResult:
        """Resolve a contradiction in the subject's own graph.

        Raises:
            PrivacyViolation: If the requester may not touch the graph
            NotFoundError: If the edge is not a contradiction in this subject's graph
        """
        self.check(ctx, Domain.RELATIONAL)
        graph = operations.graph_for_subject(self.store, ctx.subject_id)
        record = self.store.get_contradiction(edge_id)
        if record.graph_id != graph.id:
            raise NotFoundError("contradiction", edge_id)
        return contradiction.resolve_contradiction(self.store, edge_id, policy)

    async def compress(self, ctx: AccessContext, now: Optional[datetime] = None) -> CompressionReport:
        self.check(ctx, Domain.RELATIONAL)
        if self.embedder is None:
            raise ValueError("Compression needs an embedding provider")
        graph = operations.graph_for_subject(self.store, ctx.subject_id)
        return await operations.compress(self.store, self.embedder, graph.id, settings=self.settings, now=now)

    def start_session(self, ctx: AccessContext) -> MemorySession:
        self.check(ctx, Domain.RELATIONAL)
        return operations.start_session(self.store, ctx.subject_id)

    async def end_session(self, ctx: AccessContext, session_id: str, now: Optional[datetime] = None) -> SessionEndResult:
        self.check(ctx, Domain.RELATIONAL)
        self._require_own_session(ctx, session_id)
        return await operations.end_session(
            self.store, session_id, embedder=self.embedder, settings=self.settings, now=now
        )

    def _require_own_session(self, ctx: AccessContext, session_id: str) -> None:
        graph = operations.graph_for_subject(self.store, ctx.subject_id)
        if self.store.get_session(session_id).graph_id != graph.id:
            raise NotFoundError("session", session_id)

    # Subject rights, exercised through the relational domain

    def export_subject(self, ctx: AccessContext) -> SubjectExport:
        self.check(ctx, Domain.RELATIONAL)
        return operations.export_subject(self.store, ctx.subject_id)

    async def rectify_node(self, ctx: AccessContext, node_id: str, content: str) -> MemoryNode:
        self.check(ctx, Domain.RELATIONAL)
        return await operations.rectify_node(self.store, ctx.subject_id, node_id, content, embedder=self.embedder)

    def contest_ledger_entry(
        self,
        ctx: AccessContext,
        entry_id: str,
        correction: Optional[str] = None,
    ) -> LedgerRectification:
        self.check(ctx, Domain.RELATIONAL)
        return operations.contest_ledger_entry(self.store, ctx.subject_id, entry_id, correction)

    def forget_node(self, ctx: AccessContext, node_id: str) -> int:
        self.check(ctx, Domain.RELATIONAL)
        return operations.forget_node(self.store, ctx.subject_id, node_id)

    def erase_subject(self, ctx: AccessContext) -> ErasureResult:
        """Delete the subject's whole graph.

        Supervision and institutional views of the subject are gone afterwards
        too; nothing of the graph is kept.
        """
        self.check(ctx, Domain.RELATIONAL)
        return operations.erase_subject(self.store, ctx.subject_id)

    # Supervision domain

    def get_supervision_summary(self, ctx: AccessContext) -> SupervisionSummary:
        self.check(ctx, Domain.SUPERVISION)
        return operations.get_supervision_summary(self.store, ctx.subject_id)

    def verify_integrity(self, ctx: AccessContext) -> IntegrityReport:
        self.check(ctx, Domain.SUPERVISION)
        graph = operations.graph_for_subject(self.store, ctx.subject_id)
        return self.store.verify_integrity(graph.id)

    # Institutional domain

    def institutional_view(self, ctx: AccessContext) -> InstitutionalSummary:
        self.check(ctx, Domain.INSTITUTIONAL)
        graph = operations.graph_for_subject(self.store, ctx.subject_id)
        return self.store.institutional_stats(graph.id)
