"""Configuration management for docsift."""

import os
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError


DEFAULT_CONFIG = {
    "database_url": "sqlite:///~/.docsift/docsift.db",
    "claude_model": "claude-sonnet-4-20250514",
    "log_level": "INFO",
    "chunking": {"target_words": 500, "overlap_words": 50, "min_words": 20},
    "embedding": {
        "backend": "http",
        "base_url": "https://api.voyageai.com/v1",
        "model": "voyage-3",
        "local_model": "intfloat/e5-large-v2",
        "max_input_chars": 32000,
        "batch_size": 64,
        "timeout": 30,
        "retries": 1,
        "retry_backoff": 0.5,
        "workers": 4,
        "dimensions": None,
    },
    "search": {
        "top_k": 5,
        "use_relevance_threshold": True,
        "relevance_threshold": 0.25,
        "min_results": 3,
        "tag_candidates": 15,
    },
    "tagging": {
        "enabled": True,
        "model": "claude-3-haiku-20240307",
        "max_tokens": 256,
        "timeout": 20,
        "auto_tag_documents": True,
        "document_max_tokens": 512,
    },
    "dedup": {"near_duplicate_threshold": 0.92},
    "questionnaire": {"match_threshold": 0.90},
}

# First match wins
_EMBEDDING_KEY_VARS = ("DOCSIFT_EMBEDDING_API_KEY", "VOYAGE_API_KEY", "OPENAI_API_KEY")


def _find_config_file() -> Path | None:
    """Look for config.yaml in standard locations."""
    candidates = [
        Path.cwd() / "config" / "config.yaml",
        Path.cwd() / "config.yaml",
        Path.home() / ".docsift" / "config.yaml",
    ]
    for p in candidates:
        if p.exists():
            return p
    return None


def load_config(config_path: str | Path | None = None) -> dict[str, Any]:
    """Load configuration, merging defaults with file and env vars."""
    cfg = _copy(DEFAULT_CONFIG)

    path = Path(config_path) if config_path else _find_config_file()
    if config_path and not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    if path and path.exists():
        with open(path) as f:
            try:
                file_cfg = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(file_cfg, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        _deep_merge(cfg, file_cfg)

    # Env overrides
    for var in _EMBEDDING_KEY_VARS:
        if api_key := os.environ.get(var):
            cfg["embedding"]["api_key"] = api_key
            break
    if api_key := os.environ.get("ANTHROPIC_API_KEY"):
        cfg["claude_api_key"] = api_key
    if url := os.environ.get("DOCSIFT_DATABASE_URL"):
        cfg["database_url"] = url

    cfg["database_url"] = _expand_sqlite_url(cfg["database_url"])
    return cfg


def require(cfg: dict[str, Any], *keys: str) -> Any:
    """Fetch a nested config value, raising ConfigError when it is missing."""
    node: Any = cfg
    for key in keys:
        if not isinstance(node, dict) or not node.get(key):
            raise ConfigError(f"Missing required config value: {'.'.join(keys)}")
        node = node[key]
    return node


def _expand_sqlite_url(url: str) -> str:
    """Expand ~ in sqlite file URLs and make sure the parent directory exists."""
    prefix = "sqlite:///"
    if not url.startswith(prefix) or url == "sqlite:///:memory:":
        return url
    db_path = Path(url[len(prefix):]).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"{prefix}{db_path}"


def _copy(cfg: dict) -> dict:
    return {k: _copy(v) if isinstance(v, dict) else v for k, v in cfg.items()}


def _deep_merge(base: dict, override: dict) -> None:
    """Merge override into base in-place."""
    for k, v in override.items():
        if k in base and isinstance(base[k], dict) and isinstance(v, dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v
