"""Configuration settings for the Synapse memory engine.

This module provides Pydantic Settings for configuration management with:
- Environment variable support (SYNAPSE_ prefix)
- CLI argument override support
- Tunable scoring thresholds kept out of the algorithm code
"""

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SynapseSettings(BaseSettings):
    """Configuration settings for the Synapse memory engine.

    Settings are loaded from environment variables with the SYNAPSE_ prefix.
    CLI arguments can override these settings when provided.

    Attributes:
        sqlite_path: Path to SQLite database (default: ~/.synapse/synapse.db)
        ollama_host: Ollama server host URL (default: http://localhost:11434)
        ollama_model: Embedding model name (default: mxbai-embed-large)
        noise_floor: Gravity below which a node may be pruned (default: 0.382)
        density_threshold: Minimum similarity for clustering (default: 0.618)
        phi_ratio: SNR growth scale per compression pass (default: 1.618)
        encryption_salt: Secret salt for per-subject key derivation

    Example:
        >>> settings = SynapseSettings()
        >>> print(settings.noise_floor)
        0.382

        >>> # Override via environment
        >>> # SYNAPSE_NOISE_FLOOR=0.4
        >>> settings = SynapseSettings()
        >>> print(settings.noise_floor)
        0.4
    """

    model_config = SettingsConfigDict(
        env_prefix="SYNAPSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Storage
    sqlite_path: Optional[Path] = Field(
        default=None,
        description="Path to SQLite database (default: ~/.synapse/synapse.db)",
    )

    # Ollama configuration
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama server host URL",
    )
    ollama_model: str = Field(
        default="mxbai-embed-large",
        description="Embedding model name",
    )
    ollama_timeout: int = Field(
        default=30,
        description="Ollama request timeout in seconds",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # Scoring thresholds
    noise_floor: float = Field(
        default=0.382,
        ge=0.0,
        le=1.0,
        description="Gravity below which an unprotected node is prune-eligible",
    )
    density_threshold: float = Field(
        default=0.618,
        ge=0.0,
        le=1.0,
        description="Minimum pairwise cosine similarity for two nodes to cluster",
    )
    phi_ratio: float = Field(
        default=1.618,
        gt=1.0,
        description="Scales SNR growth per pass and weights merged salience",
    )
    snr_ceiling: float = Field(
        default=2.0,
        ge=1.0,
        description="Upper bound for a graph's signal-to-noise ratio",
    )

    # Decay
    decay_half_life_days: float = Field(
        default=7.0,
        gt=0.0,
        description="Half-life in days for a node that has never been accessed",
    )
    access_boost: float = Field(
        default=1.0,
        ge=0.0,
        description="How strongly access frequency stretches the half-life",
    )

    # Retrieval
    default_token_budget: int = Field(
        default=1500,
        gt=0,
        description="Default token budget for context assembly",
    )
    ledger_importance_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Ledger entries must exceed this importance to surface",
    )

    # Compression
    summary_max_chars: int = Field(
        default=500,
        gt=0,
        description="Maximum length of a consolidated node's summary",
    )
    max_nodes_to_prune: int = Field(
        default=100,
        gt=0,
        description="Maximum nodes pruned in a single pass",
    )
    max_merges_per_run: int = Field(
        default=10,
        gt=0,
        description="Maximum clusters merged in a single pass",
    )
    compression_node_threshold: int = Field(
        default=500,
        gt=0,
        description="Node count above which compression is due",
    )
    compression_low_gravity_ratio: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Share of prune-eligible nodes above which compression is due",
    )
    compression_interval_days: float = Field(
        default=30.0,
        gt=0.0,
        description="Days since the last pass after which compression is due",
    )

    # Encryption at rest
    encryption_salt: Optional[SecretStr] = Field(
        default=None,
        description="Secret salt for per-subject key derivation (disables encryption when unset)",
    )
    kdf_iterations: int = Field(
        default=250_000,
        ge=1000,
        description="PBKDF2 iterations for per-subject key derivation",
    )

    @model_validator(mode="after")
    def _check_threshold_order(self) -> "SynapseSettings":
        if self.noise_floor >= self.density_threshold:
            raise ValueError(
                f"noise_floor ({self.noise_floor}) must be below "
                f"density_threshold ({self.density_threshold})"
            )
        return self

    def get_sqlite_path(self) -> Optional[Path]:
        """Get the SQLite path, resolving to default if not set."""
        if self.sqlite_path:
            return self.sqlite_path.expanduser().resolve()
        return None
