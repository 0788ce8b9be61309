"""
Crawler configuration
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigError

# GitHub API settings
GITHUB_API_BASE = "https://api.github.com"
GITHUB_RAW_BASE = "https://raw.githubusercontent.com"
USER_AGENT = "modcrawler/1.0"
REQUEST_TIMEOUT = 30

# Topics used when no explicit query is given
DEFAULT_TOPICS = [
    "mindustry-mod",
    "mindustry-mods",
]

# Mod list maintained alongside the game, used by the "index" query kind
MOD_INDEX_REPO = "Anuken/MindustryMods"
MOD_INDEX_PATH = "mods.json"

# Files tried for mod metadata, in order of preference
README_FILE = "README.md"
CANDIDATE_FILES = [
    "mod.hjson",
    "mod.json",
    "assets/mod.hjson",
    "assets/mod.json",
    "plugin.json",
    README_FILE,
]

# Pagination
PER_PAGE = 100
SEARCH_RESULT_CAP = 1000  # GitHub search never returns more than this

# Retry and rate limiting
MAX_ATTEMPTS = 4
BACKOFF_BASE = 1.0  # Seconds, doubled on every attempt
MAX_RATE_LIMIT_WAITS = 3
RATE_LIMIT_THRESHOLD = 5  # Requests kept in reserve before waiting for reset

# Worker pool
MAX_WORKERS = 8

# Cache
CACHE_DIR = ".modcache"
CACHE_FILE = "modcache.sqlite3"

# Version of the catalog JSON handed to the renderer
CATALOG_VERSION = "3.2"


@dataclass
class Settings:
    """Runtime settings resolved from the environment and an optional YAML file"""

    token: str = field(repr=False)
    cache_dir: Path = Path(CACHE_DIR)
    max_workers: int = MAX_WORKERS
    per_page: int = PER_PAGE
    topics: list = field(default_factory=lambda: list(DEFAULT_TOPICS))
    candidate_files: list = field(default_factory=lambda: list(CANDIDATE_FILES))
    rate_limit_threshold: int = RATE_LIMIT_THRESHOLD
    max_attempts: int = MAX_ATTEMPTS


def _load_overrides(config_path: Path) -> dict:
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid config file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return data


def _as_int(value, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e
    if number < 1:
        raise ConfigError(f"{name} must be positive, got {number}")
    return number


def load_settings(
    config_path: Optional[Path] = None,
    env: Optional[dict] = None,
    token: Optional[str] = None,
) -> Settings:
    """
    Resolve settings. Precedence: explicit token argument, environment,
    YAML file, module defaults. The token itself is only ever read from the
    environment or the caller, never from the YAML file.
    """
    env = os.environ if env is None else env
    overrides = _load_overrides(Path(config_path)) if config_path else {}

    token = token or env.get('GITHUB_TOKEN', '')
    if not token or not token.strip():
        raise ConfigError("GITHUB_TOKEN environment variable is required")

    cache_dir = env.get('MODCRAWLER_CACHE_DIR') or overrides.get('cache_dir') or CACHE_DIR
    workers = env.get('MODCRAWLER_WORKERS') or overrides.get('max_workers', MAX_WORKERS)

    topics = overrides.get('topics', DEFAULT_TOPICS)
    if isinstance(topics, str):
        topics = [t.strip() for t in topics.split(',') if t.strip()]

    candidates = overrides.get('candidate_files', CANDIDATE_FILES)
    if not isinstance(candidates, list) or not candidates:
        raise ConfigError("candidate_files must be a non-empty list")

    # 0 is allowed here: spend the whole quota before waiting
    threshold = overrides.get('rate_limit_threshold', RATE_LIMIT_THRESHOLD)
    if not isinstance(threshold, int) or threshold < 0:
        raise ConfigError(f"rate_limit_threshold must be a non-negative integer, got {threshold!r}")

    return Settings(
        token=token.strip(),
        cache_dir=Path(cache_dir),
        max_workers=_as_int(workers, 'max_workers'),
        per_page=min(_as_int(overrides.get('per_page', PER_PAGE), 'per_page'), PER_PAGE),
        topics=list(topics),
        candidate_files=[str(c) for c in candidates],
        rate_limit_threshold=threshold,
        max_attempts=_as_int(overrides.get('max_attempts', MAX_ATTEMPTS), 'max_attempts'),
    )
