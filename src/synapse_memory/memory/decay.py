"""Decay and gravity scoring.

Gravity is a node's current importance: its author-assigned salience scaled
by an exponential time decay whose half-life stretches logarithmically with
how often the node has been accessed. It is always recomputed from stored
fields and the current time, never persisted.

    decay(age, n) = 0.5 ** (age / (half_life * (1 + boost * ln(1 + n))))
    gravity(node, now) = salience * decay(age since last access, access_count)
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Optional, Sequence

from synapse_memory.memory.types import MemoryNode, utcnow

if TYPE_CHECKING:
    from synapse_memory.config import SynapseSettings

SECONDS_PER_DAY = 86400.0
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class GravityParams:
    """Tunable constants for scoring, pruning, clustering and SNR growth.

    Attributes:
        noise_floor: Gravity strictly below this is prune-eligible
        density_threshold: Minimum cosine similarity for clustering
        phi_ratio: Scales SNR growth and merged-salience weighting
        snr_ceiling: Upper bound for graph SNR
        half_life_days: Half-life of a never-accessed node
        access_boost: How strongly access count stretches the half-life
    """
    noise_floor: float = 0.382
    density_threshold: float = 0.618
    phi_ratio: float = 1.618
    snr_ceiling: float = 2.0
    half_life_days: float = 7.0
    access_boost: float = 1.0

    @classmethod
    def from_settings(cls, settings: "SynapseSettings") -> "GravityParams":
        return cls(
            noise_floor=settings.noise_floor,
            density_threshold=settings.density_threshold,
            phi_ratio=settings.phi_ratio,
            snr_ceiling=settings.snr_ceiling,
            half_life_days=settings.decay_half_life_days,
            access_boost=settings.access_boost,
        )


DEFAULT_PARAMS = GravityParams()


def decay(
    age_days: float,
    access_count: int = 0,
    half_life_days: float = DEFAULT_PARAMS.half_life_days,
    access_boost: float = DEFAULT_PARAMS.access_boost,
) -> float:
    """Time decay factor in (0, 1].

    Args:
        age_days: Days since the node was last accessed (negative clamps to 0)
        access_count: Number of past accesses
        half_life_days: Half-life for a node with no accesses
        access_boost: Multiplier on the logarithmic access stretch

    Returns:
        1.0 for a brand-new node, 0.5 after one effective half-life
    """
    age = max(0.0, age_days)
    effective_half_life = half_life_days * (1.0 + access_boost * math.log1p(max(0, access_count)))
    return 0.5 ** (age / effective_half_life)


def node_age_days(node: MemoryNode, now: Optional[datetime] = None) -> float:
    now = now or utcnow()
    return max(0.0, (now - node.last_accessed_at).total_seconds() / SECONDS_PER_DAY)


def gravity(
    node: MemoryNode,
    now: Optional[datetime] = None,
    params: GravityParams = DEFAULT_PARAMS,
) -> float:
    """Current importance of a node: salience times decay."""
    return node.salience * decay(
        node_age_days(node, now),
        node.access_count,
        params.half_life_days,
        params.access_boost,
    )


def is_prunable(node_gravity: float, params: GravityParams = DEFAULT_PARAMS) -> bool:
    # Strict: a node sitting exactly on the floor survives.
    return node_gravity < params.noise_floor


def snr_growth(
    snr: float,
    removed_fraction: float,
    params: GravityParams = DEFAULT_PARAMS,
) -> float:
    """SNR after a pass that removed `removed_fraction` of the graph's nodes.

    Never decreases and never exceeds the ceiling.
    """
    factor = 1.0 + max(0.0, removed_fraction) / params.phi_ratio
    return min(max(snr, snr * factor), params.snr_ceiling)


def phi_weights(count: int, params: GravityParams = DEFAULT_PARAMS) -> list[float]:
    """Weights phi^-rank for members ranked by descending gravity."""
    return [params.phi_ratio ** -rank for rank in range(count)]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty, mismatched or zero vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def estimate_tokens(text: str) -> int:
    """Rough token count (chars/4, rounded up)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
