"""Shared MarketFlow configuration utilities.

Centralises reading of ~/.marketflow/configuration.json so the engine, the
CLI and embedding services share one implementation. Every setting can be
overridden with a ``MARKETFLOW_<NAME>`` environment variable.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

MARKETFLOW_HOME = Path.home() / ".marketflow"
MARKETFLOW_CONFIG_FILE = MARKETFLOW_HOME / "configuration.json"
ENV_PREFIX = "MARKETFLOW_"


def get_marketflow_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from ~/.marketflow/configuration.json (or ``path``)."""
    config_file = path or MARKETFLOW_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {config_file}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine-wide defaults; a workflow's runPolicy overrides them per run."""

    max_concurrency: int = 5
    default_retry_count: int = 0
    default_retry_backoff_seconds: float = 1.0
    node_timeout_seconds: float | None = 60.0
    run_timeout_seconds: float | None = None
    log_level: str = "INFO"
    log_format: str = "auto"
    state_dir: Path = field(default_factory=lambda: MARKETFLOW_HOME / "runs")

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.default_retry_count < 0:
            raise ValueError("default_retry_count must not be negative")
        self.state_dir = Path(self.state_dir).expanduser()

    @classmethod
    def load(
        cls,
        path: Path | None = None,
        environ: dict[str, str] | None = None,
        **overrides: Any,
    ) -> "EngineConfig":
        """
        Build a config from, in increasing precedence: defaults, the
        ``engine`` section of the config file, ``MARKETFLOW_*`` environment
        variables, then keyword ``overrides``.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        file_config = get_marketflow_config(path).get("engine", {})
        known = {f.name: f for f in fields(cls)}

        for name in known:
            if name in file_config:
                values[name] = file_config[name]
            env_value = env.get(f"{ENV_PREFIX}{name.upper()}")
            if env_value is not None:
                values[name] = _coerce(env_value, known[name].default)
        values.update({k: v for k, v in overrides.items() if k in known})
        return cls(**values)


def _coerce(raw: str, default: Any) -> Any:
    """Convert an environment string to the type of a field's default."""
    if raw.strip().lower() in ("", "none", "null"):
        return None
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float) or default is None:
        return float(raw)
    return raw
