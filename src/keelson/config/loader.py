import logging
import os
import re
import yaml
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)

ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]+))?\}")

ALLOWED_SECTIONS = {"keelson", "store", "reconciler", "watch", "state"}


def interpolate_env_vars(content: str) -> str:
    """Replace ${VAR} or ${VAR:default} with environment variables."""
    def replace_match(match: re.Match) -> str:
        var_name = match.group(1)
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.environ.get(var_name, default_value)

    return ENV_VAR_PATTERN.sub(replace_match, content)


def load_config(path: Path) -> Dict[str, Any]:
    """
    Load keelson.yaml with environment variable interpolation.

    Keeps only the known sections: keelson, store, reconciler, watch, state.
    A missing file yields an empty config; a malformed one raises ValueError.
    """
    if not path.exists():
        return {}

    try:
        content = path.read_text(encoding="utf-8")
        full_config = yaml.safe_load(interpolate_env_vars(content)) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValueError(f"Failed to load config {path}: {e}") from e

    if not isinstance(full_config, dict):
        raise ValueError(f"Config {path} must be a YAML object.")

    ignored = sorted(str(key) for key in full_config if key not in ALLOWED_SECTIONS)
    if ignored:
        logger.warning("Ignoring unknown config sections in %s: %s", path, ", ".join(ignored))

    return {k: v for k, v in full_config.items() if k in ALLOWED_SECTIONS}
