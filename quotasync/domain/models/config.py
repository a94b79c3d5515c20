"""Configuration value object for the sync engine.

`SyncConfig` is injected into the engine's constructor; it is built from the
layered settings by `quotasync.infrastructure.config.settings.load_sync_config`.
"""

from dataclasses import dataclass, fields
from typing import Any, Dict

from quotasync.domain.models.errors import ConfigurationError

@dataclass(frozen=True)
class RetryPolicy:
    """Value Object representing retry backoff configuration."""
    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    jitter_ratio: float = 0.2

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ConfigurationError("Retry delays must be non-negative")
        if self.max_delay_ms < self.base_delay_ms:
            raise ConfigurationError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= base_delay_ms ({self.base_delay_ms})"
            )
        if not 0.0 <= self.jitter_ratio < 1.0:
            raise ConfigurationError(f"jitter_ratio must be in [0, 1), got {self.jitter_ratio}")


@dataclass(frozen=True)
class SyncConfig:
    """Recognized engine options. Durations are in milliseconds."""
    batch_size: int = 20
    flush_interval_ms: int = 5000
    sync_interval_ms: int = 30000          # Critical features sync every 30 seconds
    max_retries: int = 3                   # Requeues of an action before it is dropped
    max_attempts: int = 5                  # Attempts per flush / pull
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    jitter_ratio: float = 0.2
    window_ms: int = 24 * 60 * 60 * 1000   # Daily quotas
    tier_limits_ttl_ms: int = 24 * 60 * 60 * 1000
    acked_id_memory: int = 1000            # Recently acked ids remembered for dedupe
    circuit_failure_threshold: int = 5
    circuit_reset_ms: int = 60000
    write_rate_limit: int = 30             # Remote calls allowed...
    write_rate_window_ms: int = 60000      # ...per window

    def __post_init__(self):
        positive = (
            "batch_size", "flush_interval_ms", "sync_interval_ms", "window_ms",
            "tier_limits_ttl_ms", "circuit_failure_threshold", "write_rate_limit",
            "write_rate_window_ms",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0, got {getattr(self, name)}")
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.acked_id_memory < 0 or self.circuit_reset_ms < 0:
            raise ConfigurationError("acked_id_memory and circuit_reset_ms must be >= 0")
        # Validates the retry-related fields
        self.retry_policy()

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            jitter_ratio=self.jitter_ratio,
        )

    @classmethod
    def from_mapping(cls, values: Dict[str, Any]) -> "SyncConfig":
        """Builds a config from a mapping, ignoring unknown keys and None values."""
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for name, value in values.items():
            if name not in known or value is None:
                continue
            try:
                kwargs[name] = float(value) if name == "jitter_ratio" else int(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid value for {name}: {value!r}") from e
        return cls(**kwargs)
