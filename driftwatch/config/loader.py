"""YAML config loading for the driftwatch CLI.

Resolution order for the file: ``--config`` > ``$DRIFTWATCH_CONFIG`` >
``./driftwatch.yaml`` > ``~/.driftwatch/config.yaml`` > built-in defaults.
``${VAR}`` and ``${VAR:-default}`` are expanded in string values, and a few
``DRIFTWATCH_*`` variables override single settings on top of the file so CI
jobs can tweak a run without editing YAML.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from driftwatch_core.config import DriftwatchConfig

logger = logging.getLogger(__name__)

CONFIG_ENV = "DRIFTWATCH_CONFIG"

# Env var -> (section, field); section None means a top-level field.
ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "DRIFTWATCH_LOG_LEVEL": (None, "log_level"),
    "DRIFTWATCH_LOG_FORMAT": (None, "log_format"),
    "DRIFTWATCH_RULESET": (None, "ruleset"),
    "DRIFTWATCH_PEER_URL": ("peer", "base_url"),
    "DRIFTWATCH_FETCH_TIMEOUT": ("diff", "fetch_timeout"),
    "DRIFTWATCH_MAX_ENTRIES": ("report", "max_entries"),
}

_VAR_RE = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _candidates(cli_path: str | None) -> list[Path]:
    for explicit, origin in ((cli_path, "Config file"), (os.environ.get(CONFIG_ENV), CONFIG_ENV)):
        if explicit:
            path = Path(explicit)
            if not path.exists():
                raise ValueError(f"{origin} not found: {explicit}")
            return [path]
    return [Path("./driftwatch.yaml"), Path.home() / ".driftwatch" / "config.yaml"]


def _read(path: Path) -> dict[str, Any] | None:
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValueError(f"Invalid config in {path}: expected a mapping, got {type(raw).__name__}")
    return _expand_env_vars(raw)


def load_config(cli_path: str | None = None) -> DriftwatchConfig:
    """Load config from the first file found, then apply DRIFTWATCH_* overrides."""
    raw: dict[str, Any] = {}
    source = "defaults"
    for path in _candidates(cli_path):
        if path.exists():
            loaded = _read(path)
            if loaded is None:
                continue
            raw, source = loaded, str(path)
            break

    overridden = _apply_env_overrides(raw)
    if overridden:
        source = f"{source} + {', '.join(overridden)}"
    try:
        config = DriftwatchConfig(**raw)
    except ValidationError as e:
        raise ValueError(f"Invalid config in {source}: {e}") from e
    logger.debug("Config loaded from %s", source)
    return config


def _apply_env_overrides(raw: dict[str, Any]) -> list[str]:
    """Write set DRIFTWATCH_* variables into *raw*. Returns the names applied."""
    applied = []
    for env_name, (section, field) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None or value == "":
            continue
        target = raw if section is None else raw.setdefault(section, {})
        if not isinstance(target, dict):
            raise ValueError(f"Cannot apply {env_name}: '{section}' is not a mapping")
        target[field] = value
        applied.append(env_name)
    return applied


def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} references in strings.

    An unset variable without a default expands to the empty string.
    """
    if isinstance(obj, str):
        return _VAR_RE.sub(lambda m: os.environ.get(m.group(1)) or (m.group(2) or ""), obj)
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


# Default YAML template for `driftwatch config init`
DEFAULT_CONFIG_TEMPLATE = """\
# driftwatch.yaml

# Tree shape (both peers must agree for subtree pruning)
tree:
  key_width: 8                 # bytes per key
  fanout_bits: 5               # mean fanout 2^5 = 32

# Canonicalization ruleset tag expected on both sides
# ruleset: "customer@3"

# Diff
diff:
  fetch_timeout: 10.0          # seconds per node fetch
  # diff_timeout: 300          # seconds for the whole walk

# Report
report:
  max_entries: 1000
  # max_divergences: 100000
  # time_budget: 60

# Remote peer serving the Node Fetch Protocol
peer:
  # base_url: "https://billing.internal/driftwatch"
  token_env: "DRIFTWATCH_PEER_TOKEN"
  timeout: 10.0
  verify_tls: true

# Logging
log_level: "info"              # debug | info | warn | error
log_format: "text"             # text | json
"""
