from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

LOCAL_ENV = "local"
DOCKER_ENV = "docker"


def get_run_env(env: Mapping[str, str] | None = None) -> str:
    env = os.environ if env is None else env
    value = (env.get("MERCHWATCH_RUN_ENV") or "").strip().lower()
    if value in {LOCAL_ENV, DOCKER_ENV}:
        return value
    # Inside a container the marker file is always present.
    if Path("/.dockerenv").exists() or env.get("DOCKER_CONTAINER"):
        return DOCKER_ENV
    return LOCAL_ENV


def resolve_path(
    env_name: str,
    *,
    local_default: str,
    docker_default: str,
    env: Mapping[str, str] | None = None,
) -> Path:
    """Returns the path from ``env_name`` or the default for the run environment."""
    env = os.environ if env is None else env
    value = (env.get(env_name) or "").strip()
    if value:
        return Path(value).expanduser()
    return Path(docker_default if get_run_env(env) == DOCKER_ENV else local_default)
