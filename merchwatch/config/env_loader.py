from __future__ import annotations

import os
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from merchwatch.config.errors import ConfigLoaderError
from merchwatch.config.models import (
    CRAWLER_SETTINGS_FIELDS,
    AppConfig,
    CrawlerSettings,
    DelayConfig,
    EffectiveSettings,
    NetworkConfig,
    RetryPolicy,
    RuntimeConfig,
    SchedulerConfig,
    StateConfig,
)
from merchwatch.config.runtime_paths import resolve_path

_BOOL_KEYS = ("use_best_sellers", "use_new_releases", "use_movers", "use_search")
_INT_KEYS = (
    "zgbs_pages",
    "new_pages",
    "movers_pages",
    "search_pages",
    "max_items_per_run",
    "per_page_delay_ms_min",
    "per_page_delay_ms_max",
    "per_product_delay_ms_min",
    "per_product_delay_ms_max",
)
_FLOAT_KEYS = ("recrawl_hours_p0", "recrawl_hours_p1", "recrawl_hours_p2", "recrawl_hours_p3")
_LIST_KEYS = (
    "zgbs_paths",
    "new_paths",
    "movers_paths",
    "search_keywords",
    "hidden_include",
    "hidden_exclude",
)
_STRING_KEYS = ("search_category", "search_sort", "search_rh", "marketplace_id")
_NULLABLE_KEYS = ("search_category", "search_sort", "search_rh")


def load_app_config_from_env(env: Mapping[str, str] | None = None) -> AppConfig:
    """Builds the process configuration from environment variables."""
    env = os.environ if env is None else env
    network = NetworkConfig(
        base_url=env.get("AMAZON_BASE_URL") or "https://www.amazon.com",
        user_agents=_list(env, "AMAZON_USER_AGENTS") or NetworkConfig().user_agents,
        proxy=env.get("NETWORK_PROXY") or None,
        request_timeout_sec=_float(env, "NETWORK_REQUEST_TIMEOUT_SEC", default=30.0),
        accept_language=env.get("NETWORK_ACCEPT_LANGUAGE", "en-US,en;q=0.9") or None,
        retry=RetryPolicy(
            max_attempts=_int(env, "NETWORK_RETRY_MAX_ATTEMPTS", default=3),
            backoff_sec=_float_list(env, "NETWORK_RETRY_BACKOFF_SEC", default=[2.0, 5.0, 10.0]),
        ),
        min_host_interval_sec=_float(env, "NETWORK_MIN_HOST_INTERVAL_SEC", default=1.0),
    )

    state = StateConfig(
        database=resolve_path(
            "MERCHWATCH_DATABASE_PATH",
            local_default="state/merchwatch.db",
            docker_default="/var/app/state/merchwatch.db",
            env=env,
        ),
    )

    runtime = RuntimeConfig(
        run_deadline_minutes=_float(env, "RUN_DEADLINE_MINUTES"),
        serp_batch_size=_int(env, "SERP_BATCH_SIZE", default=5),
        serp_delay=_delay_from_env(env, prefix="SERP_DELAY", default_min=0.4, default_max=0.8),
        follow_variants=_bool(env, "FOLLOW_VARIANTS", default=True),
    )

    scheduler = SchedulerConfig(
        new_item_tier=_int(env, "SCHEDULER_NEW_ITEM_TIER", default=1),
        max_failures=_int(env, "SCHEDULER_MAX_FAILURES", default=3),
        backoff_base_hours=_float(env, "SCHEDULER_BACKOFF_BASE_HOURS", default=1.0),
        backoff_max_hours=_float(env, "SCHEDULER_BACKOFF_MAX_HOURS", default=48.0),
        due_batch_size=_int(env, "SCHEDULER_DUE_BATCH_SIZE", default=200),
    )
    try:
        return AppConfig(network=network, state=state, runtime=runtime, scheduler=scheduler)
    except ValidationError as exc:
        raise ConfigLoaderError(f"Invalid environment configuration: {exc}") from exc


def apply_env_overrides(
    base: Mapping[str, Any], env: Mapping[str, str]
) -> tuple[dict[str, Any], dict[str, bool]]:
    """Overrides crawler settings field by field from upper-cased env names.

    Returns the merged raw values and a field -> overridden map.
    """
    updated = dict(base)
    overrides = {name: False for name in CRAWLER_SETTINGS_FIELDS}

    for key in _BOOL_KEYS:
        env_key = key.upper()
        if env.get(env_key) is not None:
            updated[key] = env[env_key].strip().lower() == "true"
            overrides[key] = True

    for key in _INT_KEYS:
        env_key = key.upper()
        if env.get(env_key) is not None:
            updated[key] = _int(env, env_key)
            overrides[key] = True

    for key in _FLOAT_KEYS:
        env_key = key.upper()
        if env.get(env_key) is not None:
            updated[key] = _float(env, env_key)
            overrides[key] = True

    for key in _LIST_KEYS:
        env_key = key.upper()
        if env.get(env_key) is not None:
            updated[key] = _list(env, env_key)
            overrides[key] = True

    for key in _STRING_KEYS:
        env_key = key.upper()
        if env.get(env_key) is not None:
            value = env[env_key].strip()
            updated[key] = value or None
            overrides[key] = True

    return updated, overrides


def build_effective_settings(
    stored: Mapping[str, Any] | None,
    env: Mapping[str, str] | None = None,
    *,
    bypass_limits: bool = False,
) -> EffectiveSettings:
    """Validates stored settings merged with env overrides into one value."""
    env = os.environ if env is None else env
    base = {
        key: value
        for key, value in (stored or {}).items()
        if key in CRAWLER_SETTINGS_FIELDS and value is not None
    }
    merged, overrides = apply_env_overrides(base, env)
    merged = {
        key: value
        for key, value in merged.items()
        if value is not None or key in _NULLABLE_KEYS
    }
    try:
        settings = CrawlerSettings.model_validate(
            merged, context={"bypass_limits": bypass_limits}
        )
    except ValidationError as exc:
        raise ConfigLoaderError(f"Invalid crawler settings: {exc}") from exc
    return EffectiveSettings(settings=settings, overrides=overrides)


def _delay_from_env(
    env: Mapping[str, str], *, prefix: str, default_min: float, default_max: float
) -> DelayConfig:
    min_value = _float(env, f"{prefix}_MIN_SEC", default=default_min)
    max_value = _float(env, f"{prefix}_MAX_SEC", default=default_max)
    if min_value is None:
        min_value = default_min
    if max_value is None:
        max_value = default_max
    try:
        return DelayConfig(min_sec=min_value, max_sec=max_value)
    except ValidationError as exc:
        raise ConfigLoaderError(f"Invalid delay bounds for {prefix}: {exc}") from exc


def _int(env: Mapping[str, str], name: str, default: int | None = None) -> int | None:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ConfigLoaderError(f"Expected an integer in {name}") from exc


def _float(env: Mapping[str, str], name: str, default: float | None = None) -> float | None:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value.strip())
    except ValueError as exc:
        raise ConfigLoaderError(f"Expected a number in {name}") from exc


def _list(env: Mapping[str, str], name: str, default: Iterable[str] | None = None) -> list[str]:
    value = env.get(name)
    if value is None:
        return list(default) if default is not None else []
    return [
        token.strip()
        for token in value.replace("\n", ",").split(",")
        if token.strip()
    ]


def _float_list(
    env: Mapping[str, str], name: str, default: Iterable[float] | None = None
) -> list[float]:
    tokens = _list(env, name)
    if not tokens:
        return list(default) if default is not None else []
    try:
        return [float(token) for token in tokens]
    except ValueError as exc:
        raise ConfigLoaderError(f"Items of {name} must be numbers") from exc


def _bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    value = env.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}
