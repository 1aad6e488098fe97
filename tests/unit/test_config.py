"""Unit tests for SynapseSettings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from synapse_memory.config import SynapseSettings


class TestDefaults:
    """Tests for default configuration values."""

    def test_scoring_constants(self):
        settings = SynapseSettings()
        assert settings.noise_floor == 0.382
        assert settings.density_threshold == 0.618
        assert settings.phi_ratio == 1.618
        assert settings.snr_ceiling == 2.0
        assert settings.decay_half_life_days == 7.0
        assert settings.access_boost == 1.0
        assert settings.default_token_budget == 1500

    def test_encryption_off_by_default(self):
        settings = SynapseSettings()
        assert settings.encryption_salt is None
        assert settings.kdf_iterations == 250_000

    def test_sqlite_path_unset(self):
        assert SynapseSettings().get_sqlite_path() is None


class TestEnvironment:
    """Tests for SYNAPSE_ environment overrides."""

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("SYNAPSE_NOISE_FLOOR", "0.4")
        monkeypatch.setenv("SYNAPSE_OLLAMA_MODEL", "nomic-embed-text")
        settings = SynapseSettings()
        assert settings.noise_floor == 0.4
        assert settings.ollama_model == "nomic-embed-text"

    def test_salt_is_secret(self, monkeypatch):
        monkeypatch.setenv("SYNAPSE_ENCRYPTION_SALT", "deployment-secret")
        settings = SynapseSettings()
        assert settings.encryption_salt.get_secret_value() == "deployment-secret"
        assert "deployment-secret" not in repr(settings)

    def test_sqlite_path_expanded(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SYNAPSE_SQLITE_PATH", str(tmp_path / "graphs.db"))
        assert SynapseSettings().get_sqlite_path() == (tmp_path / "graphs.db").resolve()
        assert isinstance(SynapseSettings().get_sqlite_path(), Path)


class TestValidation:
    """Tests for threshold validation."""

    def test_noise_floor_must_be_below_density_threshold(self):
        with pytest.raises(ValidationError, match="noise_floor"):
            SynapseSettings(noise_floor=0.7, density_threshold=0.6)

    @pytest.mark.parametrize(
        "field,value",
        [("noise_floor", 1.5), ("phi_ratio", 1.0), ("default_token_budget", 0), ("kdf_iterations", 10)],
    )
    def test_out_of_range(self, field, value):
        with pytest.raises(ValidationError):
            SynapseSettings(**{field: value})
