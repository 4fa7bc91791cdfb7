"""YAML config loading with env var expansion."""

import os
import re
from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import TreeSyncConfig

# ${NAME} or ${NAME:-fallback}
_ENV_REF = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def config_search_path(cli_path: str | None = None) -> list[Path]:
    """Files tried in order: CLI > project-local > user-global."""
    paths = [Path("./treesync.yaml"), Path.home() / ".treesync" / "config.yaml"]
    if cli_path:
        paths.insert(0, Path(cli_path))
    return paths


def load_config(cli_path: str | None = None) -> TreeSyncConfig:
    """Load the first non-empty config file on the search path, else defaults."""
    for path in config_search_path(cli_path):
        if not path.exists():
            continue
        raw = _read(path)
        if raw is None:
            continue
        try:
            return TreeSyncConfig(**raw)
        except ValidationError as e:
            raise ValueError(f"Invalid config in {path}: {e}") from e
        except TypeError as e:
            raise ValueError(f"Invalid config in {path}: expected a mapping at the top level") from e

    return TreeSyncConfig()


def _read(path: Path) -> dict | None:
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    if raw is None:
        return None
    try:
        return _expand_env_vars(raw)
    except KeyError as e:
        raise ValueError(f"Undefined environment variable ${{{e.args[0]}}} in {path}") from e


def _expand_env_vars(obj: object) -> object:
    """Recursively expand ${VAR} and ${VAR:-fallback} references in strings.

    Raises KeyError naming the first unset variable without a fallback.
    """
    if isinstance(obj, str):
        return _ENV_REF.sub(_lookup, obj)
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def _lookup(match: re.Match) -> str:
    name, fallback = match.group(1), match.group(2)
    value = os.environ.get(name)
    if value is not None:
        return value
    if fallback is not None:
        return fallback
    raise KeyError(name)


# Default YAML template for `treesync config init`
DEFAULT_CONFIG_TEMPLATE = """\
# treesync.yaml

# Unique per device; defaults to the host name
# device_id: "laptop"

# Local folder kept in sync
workspace:
  root: "."
  ignore_patterns: [".git", "node_modules", "__pycache__", ".venv", ".treesync", "*.tmp", "*~", "*.log"]

# Authoritative tree and object store (shared directory)
remote:
  root: "~/.treesync/remote"
  tree_id: "authoritative"
  key_prefix: "objects"
  presign_secret_env: "TREESYNC_PRESIGN_SECRET"
  access_ttl: 3600             # seconds an access descriptor stays valid

# Reconciliation
sync:
  interval: 30                 # seconds between polls
  max_concurrency: 4           # parallel transfers per cycle
  max_version_retries: 3       # re-diffs after a stale push
  debounce_seconds: 1.0
  retry:
    max_attempts: 5
    base_delay: 0.5
    max_delay: 30

# Local state (tree snapshots)
state:
  directory: ".treesync"
  database: "state.db"

# Logging
log_level: "info"              # debug | info | warn | error
log_format: "text"             # text | json
"""
