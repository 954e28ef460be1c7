"""
Engine configuration.

Plain constructor arguments, optionally read from TODODB_* environment
variables by the CLI.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_DATA_DIR = "data"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class EngineConfig:
    data_dir: str = DEFAULT_DATA_DIR
    buffer_pool_size: int = 64        # pages per connection
    lock_timeout: float = 30.0        # seconds
    fsync: bool = True
    verify_on_open: bool = False      # run check_integrity() during open()

    def __post_init__(self):
        if self.buffer_pool_size < 4:
            raise ValueError("buffer_pool_size must be at least 4 pages")
        if self.lock_timeout <= 0:
            raise ValueError("lock_timeout must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None,
                 **overrides) -> "EngineConfig":
        """Build a config from TODODB_* variables; keyword overrides win."""
        env = os.environ if environ is None else environ
        values = {}
        if "TODODB_DATA_DIR" in env:
            values["data_dir"] = env["TODODB_DATA_DIR"]
        if "TODODB_BUFFER_POOL_SIZE" in env:
            values["buffer_pool_size"] = int(env["TODODB_BUFFER_POOL_SIZE"])
        if "TODODB_LOCK_TIMEOUT" in env:
            values["lock_timeout"] = float(env["TODODB_LOCK_TIMEOUT"])
        if "TODODB_FSYNC" in env:
            values["fsync"] = _parse_bool("TODODB_FSYNC", env["TODODB_FSYNC"])
        if "TODODB_VERIFY_ON_OPEN" in env:
            values["verify_on_open"] = _parse_bool(
                "TODODB_VERIFY_ON_OPEN", env["TODODB_VERIFY_ON_OPEN"])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name}: expected a boolean, got {raw!r}")
