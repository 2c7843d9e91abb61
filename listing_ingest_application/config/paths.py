from __future__ import annotations

import os
from pathlib import Path

CONFIG_ENVIRONMENTS = ("dev", "prod")
DEFAULT_ENVIRONMENT = "dev"

# Path(__file__) rather than Path.resolve(): resolve touches the filesystem, which the workflow sandbox forbids.
_PACKAGE_CONFIG_DIR = Path(__file__).parent


def get_config_env() -> str:
    """Environment name from LISTING_INGEST_ENV, then APP_ENV; unknown names fall back to dev."""

    for name in ("LISTING_INGEST_ENV", "APP_ENV"):
        value = (os.getenv(name) or "").strip().lower()
        if value:
            return value if value in CONFIG_ENVIRONMENTS else DEFAULT_ENVIRONMENT
    return DEFAULT_ENVIRONMENT


def config_search_dirs(env: str | None = None) -> list[Path]:
    """Directories searched for config files, most specific first.

    LISTING_INGEST_CONFIG_DIR, when set, is searched before the packaged
    ``<env>/`` directory so deployments can ship their own runtime.yaml.
    """

    env = env or get_config_env()
    dirs: list[Path] = []
    override = os.getenv("LISTING_INGEST_CONFIG_DIR")
    if override:
        dirs.append(Path(override) / env)
        dirs.append(Path(override))
    dirs.append(_PACKAGE_CONFIG_DIR / env)
    dirs.append(_PACKAGE_CONFIG_DIR)
    return dirs


def resolve_config_path(filename: str, env: str | None = None) -> Path:
    """First existing ``filename`` in the search dirs; the packaged env path if none exists."""

    for directory in config_search_dirs(env):
        candidate = directory / filename
        if candidate.exists():
            return candidate
    return _PACKAGE_CONFIG_DIR / (env or get_config_env()) / filename
