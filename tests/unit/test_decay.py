"""Unit tests for decay, gravity and SNR scoring."""

import math
from datetime import datetime, timedelta, timezone

import pytest

from synapse_memory.memory.decay import (
    GravityParams,
    cosine_similarity,
    decay,
    estimate_tokens,
    gravity,
    is_prunable,
    phi_weights,
    snr_growth,
)
from synapse_memory.memory.types import MemoryNode

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_node(salience: float = 0.5, accessed: datetime = T0, access_count: int = 0) -> MemoryNode:
    return MemoryNode(
        id="node_1",
        graph_id="graph_1",
        content="likes chess",
        salience=salience,
        created_at=T0,
        last_accessed_at=accessed,
        access_count=access_count,
    )


class TestDecay:
    """Tests for the time decay factor."""

    def test_new_node_has_no_decay(self):
        assert decay(0.0) == 1.0

    def test_one_half_life_halves(self):
        assert decay(7.0, 0, half_life_days=7.0) == pytest.approx(0.5)

    def test_negative_age_clamps_to_zero(self):
        """Clock skew must never make a node heavier than its salience."""
        assert decay(-3.0) == 1.0

    def test_access_stretches_half_life(self):
        """An accessed node decays slower than an untouched one of the same age."""
        assert decay(7.0, access_count=5) > decay(7.0, access_count=0)

    def test_access_stretch_is_logarithmic(self):
        expected = 0.5 ** (7.0 / (7.0 * (1 + math.log1p(3))))
        assert decay(7.0, access_count=3) == pytest.approx(expected)


class TestGravity:
    """Tests for gravity and the prune predicate."""

    def test_gravity_equals_salience_at_creation(self):
        assert gravity(make_node(0.8), now=T0) == pytest.approx(0.8)

    def test_gravity_uses_last_access(self):
        node = make_node(0.8, accessed=T0 + timedelta(days=7))
        assert gravity(node, now=T0 + timedelta(days=7)) == pytest.approx(0.8)
        assert gravity(node, now=T0 + timedelta(days=14)) == pytest.approx(0.4)

    def test_gravity_exactly_on_floor_is_kept(self):
        g = gravity(make_node(0.382), now=T0)
        assert g == 0.382
        assert is_prunable(g) is False

    def test_gravity_below_floor_is_prunable(self):
        assert is_prunable(gravity(make_node(0.381), now=T0)) is True

    def test_custom_floor(self):
        params = GravityParams(noise_floor=0.2)
        assert is_prunable(0.3, params) is False
        assert is_prunable(0.1, params) is True


class TestSnrGrowth:
    """Tests for SNR growth."""

    def test_growth_scales_with_removed_fraction(self):
        assert snr_growth(1.0, 0.5) == pytest.approx(1.0 * (1 + 0.5 / 1.618))

    def test_no_removal_keeps_snr(self):
        assert snr_growth(1.3, 0.0) == 1.3

    def test_capped_at_ceiling(self):
        assert snr_growth(1.9, 1.0) == 2.0

    def test_never_decreases(self):
        assert snr_growth(1.5, -0.4) == 1.5


class TestHelpers:
    """Tests for weighting, similarity and token estimation."""

    def test_phi_weights_descend(self):
        weights = phi_weights(3)
        assert weights[0] == 1.0
        assert weights[1] == pytest.approx(1 / 1.618)
        assert weights[2] == pytest.approx(1 / 1.618 ** 2)

    def test_cosine_identical(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_cosine_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    @pytest.mark.parametrize("a,b", [([], [1.0]), ([1.0], [1.0, 0.0]), ([0.0, 0.0], [1.0, 0.0])])
    def test_cosine_degenerate_vectors(self, a, b):
        assert cosine_similarity(a, b) == 0.0

    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
