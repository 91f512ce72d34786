"""Runtime settings for the ratchet engine and envelope orchestration."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

ENV_PREFIX = "RELAY_RATCHET_"


@dataclass(frozen=True)
class RatchetConfig:
    max_skip: int = 1000
    max_cached_keys: int = 2000
    protocol_version: str = "1.0"
    state_dir: str = "ratchet_states"
    undecryptable_placeholder: str = "[Unable to decrypt ratchet]"
    plaintext_cache_size: int = 1000
    default_content_type: str = "text/plain"

    def __post_init__(self):
        if self.max_skip < 0:
            raise ValueError("max_skip must be non-negative")
        if self.max_cached_keys < self.max_skip:
            raise ValueError("max_cached_keys must be at least max_skip")
        if self.plaintext_cache_size < 1:
            raise ValueError("plaintext_cache_size must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RatchetConfig":
        """Build a config from RELAY_RATCHET_* variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        defaults = cls()

        def _int(name: str, default: int) -> int:
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}")

        return cls(
            max_skip=_int("MAX_SKIP", defaults.max_skip),
            max_cached_keys=_int("MAX_CACHED_KEYS", defaults.max_cached_keys),
            state_dir=env.get(ENV_PREFIX + "STATE_DIR") or defaults.state_dir,
            plaintext_cache_size=_int("PLAINTEXT_CACHE_SIZE", defaults.plaintext_cache_size),
        )


def configure_logging(level: int = logging.INFO) -> None:
    """Install the default console format. Meant for entry points, not library code."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
