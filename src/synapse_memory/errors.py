"""Typed failures surfaced by the memory graph engine.

Every operation that cannot complete raises one of these. Nothing is
swallowed: callers either handle the specific failure or let it propagate.
"""


class SynapseError(Exception):
    """Base class for all engine errors."""

    pass


class NotFoundError(SynapseError):
    """A graph, node, edge, ledger entry or session does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class CascadeError(SynapseError):
    """Delete blocked because the node is part of an unresolved contradiction."""

    def __init__(self, node_id: str, edge_ids: list[str]):
        self.node_id = node_id
        self.edge_ids = edge_ids
        super().__init__(
            f"Node {node_id} is an endpoint of unresolved contradiction(s) "
            f"{', '.join(edge_ids)}; pass force=True to delete anyway"
        )


class CompressionFailed(SynapseError):
    """A compression pass aborted; nothing from the pass was persisted."""

    pass


class ConcurrentModification(SynapseError):
    """The graph changed between snapshot and commit."""

    pass


class AlreadyResolvedError(SynapseError):
    """The contradiction edge has already been resolved."""

    def __init__(self, edge_id: str, state: str):
        self.edge_id = edge_id
        self.state = state
        super().__init__(f"Contradiction {edge_id} already resolved ({state})")


class IntegrityMismatch(SynapseError):
    """Stored node/edge counts diverge from the live rows."""

    def __init__(self, graph_id: str, stored: tuple[int, int], actual: tuple[int, int]):
        self.graph_id = graph_id
        self.stored = stored
        self.actual = actual
        super().__init__(
            f"Graph {graph_id} count drift: stored nodes/edges={stored}, "
            f"live nodes/edges={actual}"
        )


class PrivacyViolation(SynapseError):
    """A read would cross a domain boundary the requester may not see."""

    pass


class RemembranceRefused(SynapseError):
    """A node write was blocked by a remembrance agreement on its topic."""

    def __init__(self, topic: str, policy: str, reason: str = ""):
        self.topic = topic
        self.policy = policy
        message = f"Write on topic '{topic}' refused by '{policy}' agreement"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
