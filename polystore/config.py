"""
Config loader for polystore.
Reads config.yaml once on first use. All other modules import from here.
${ENV_VAR} references inside the YAML are resolved against the environment
(after .env has been loaded), so the embedding endpoint and credentials
can stay out of the file.
"""

import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

_config: dict | None = None

DEFAULT_EMBEDDING_DIMENSION = 384


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file."""
    global _config
    if _config is not None and path is None:
        return _config

    config_path = path or _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(raw)
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config():
    """Drop the cached config so the next get_config() re-reads the file."""
    global _config
    _config = None


def _as_int(value, default: int) -> int:
    # Unset ${VARS} resolve to "", which means "use the default"
    if value in (None, ""):
        return default
    return int(value)


def _as_float(value, default: float) -> float:
    if value in (None, ""):
        return default
    return float(value)


def embedding_settings(cfg: dict | None = None) -> dict:
    """
    Normalised embedding section.

    The environment-style surface (EMBEDDING_SERVICE_ENDPOINT,
    EMBEDDING_SERVICE_API_KEY, EMBEDDING_DIMENSION) wins over the file
    when the YAML leaves a value blank.
    """
    section = (cfg or {}).get("embedding", {}) or {}
    endpoint = section.get("endpoint") or os.environ.get("EMBEDDING_SERVICE_ENDPOINT") or None
    api_key = section.get("api_key") or os.environ.get("EMBEDDING_SERVICE_API_KEY") or None
    dimension = _as_int(
        section.get("dimension") or os.environ.get("EMBEDDING_DIMENSION"),
        DEFAULT_EMBEDDING_DIMENSION,
    )
    max_entries = section.get("cache_max_entries")
    return {
        "endpoint": endpoint,
        "api_key": api_key,
        "dimension": dimension,
        "model": section.get("model") or "text-embedding",
        "timeout": _as_float(section.get("timeout"), 30.0),
        "cache_ttl": _as_float(section.get("cache_ttl"), 86400.0),
        "cache_prefix_length": _as_int(section.get("cache_prefix_length"), 100),
        "cache_max_entries": _as_int(max_entries, 0) or None,
        "batch_size": _as_int(section.get("batch_size"), 50),
    }


def setup_logging(cfg: dict | None = None):
    """Configure root logging from the `logging:` section."""
    log_cfg = (cfg or {}).get("logging", {}) or {}
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
