from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveInt,
    ValidationInfo,
    field_validator,
    model_validator,
)

PRODUCT_TYPES = (
    "hoodie",
    "sweatshirt",
    "long-sleeve",
    "raglan",
    "v-neck",
    "tank-top",
    "tshirt",
)

DEFAULT_PRODUCT_TYPE = "tshirt"
DEFAULT_KEYWORD_ALIAS = "us"
DEFAULT_BASE_URL = "https://www.amazon.com"

MAX_LIST_ENTRIES = 200
MIN_PAGES, MAX_PAGES = 3, 20
MIN_ITEMS_PER_RUN, MAX_ITEMS_PER_RUN = 50, 5000
MAX_SERP_PAGES = 5

DEFAULT_ZGBS_PATHS = [
    "/Best-Sellers/zgbs",
    "/Best-Sellers-Clothing-Shoes-Jewelry/zgbs/fashion",
    "/Best-Sellers-Mens-Fashion/zgbs/fashion/7147441011",
    "/Best-Sellers-Womens-Fashion/zgbs/fashion/7147440011",
    "/Best-Sellers-Boys-Fashion/zgbs/fashion/7147443011",
    "/Best-Sellers-Girls-Fashion/zgbs/fashion/7147442011",
    "/Best-Sellers-Novelty-More/zgbs/fashion/12035955011",
    "/Best-Sellers-Mens-Fashion-T-Shirts/zgbs/fashion/1040658",
    "/Best-Sellers-Womens-Fashion-T-Shirts/zgbs/fashion/1258644011",
]

DEFAULT_NEW_RELEASE_PATHS = [
    "/gp/new-releases/fashion",
    "/gp/new-releases/fashion/7147441011",
    "/gp/new-releases/fashion/7147440011",
    "/gp/new-releases/fashion/12035955011",
    "/gp/new-releases/fashion/1040658",
]

DEFAULT_MOVERS_PATHS = [
    "/gp/movers-and-shakers/fashion",
    "/gp/movers-and-shakers/fashion/7147441011",
    "/gp/movers-and-shakers/fashion/7147440011",
    "/gp/movers-and-shakers/fashion/12035955011",
]


def sanitize_string_list(values: Iterable[Any] | None) -> list[str]:
    """Trims entries, drops blanks and caps the list length."""
    if not values:
        return []
    if isinstance(values, str):
        values = values.replace("\n", ",").split(",")
    cleaned = [str(value).strip() for value in values if value is not None]
    return [value for value in cleaned if value][:MAX_LIST_ENTRIES]


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _default_retry_backoff() -> list[float]:
    return [2.0, 5.0, 10.0]


def _default_user_agents() -> list[str]:
    return [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    ]


class RetryPolicy(BaseModel):
    """HTTP retry settings."""

    max_attempts: PositiveInt = Field(default=3, le=10)
    backoff_sec: list[float] = Field(default_factory=_default_retry_backoff)


class DelayConfig(BaseModel):
    min_sec: float = Field(default=0.0, ge=0)
    max_sec: float = Field(default=0.0, ge=0)

    @model_validator(mode="after")
    def _ensure_bounds(self) -> "DelayConfig":
        if self.max_sec < self.min_sec:
            msg = "max_sec must not be lower than min_sec"
            raise ValueError(msg)
        return self


class NetworkConfig(BaseModel):
    """Network settings shared by every fetch against the upstream host."""

    base_url: str = DEFAULT_BASE_URL
    user_agents: list[str] = Field(default_factory=_default_user_agents)
    proxy: str | None = None
    request_timeout_sec: float = Field(default=30, gt=0)
    accept_language: str | None = "en-US,en;q=0.9"
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    min_host_interval_sec: float = Field(default=1.0, ge=0.0)

    @field_validator("user_agents")
    @classmethod
    def _ensure_user_agents(cls, value: list[str]) -> list[str]:
        if not value:
            msg = "At least one User-Agent is required"
            raise ValueError(msg)
        return value

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class CrawlerSettings(BaseModel):
    """Discovery and recrawl settings (stored row merged with env overrides).

    Page budgets are clamped to [3, 20] and ``max_items_per_run`` to
    [50, 5000]; pass ``context={"bypass_limits": True}`` to ``model_validate``
    to lift the item cap for admin runs.
    """

    model_config = ConfigDict(extra="ignore")

    use_best_sellers: bool = True
    zgbs_pages: int = 5
    zgbs_paths: list[str] = Field(default_factory=list)
    use_new_releases: bool = False
    new_pages: int = 3
    new_paths: list[str] = Field(default_factory=list)
    use_movers: bool = False
    movers_pages: int = 3
    movers_paths: list[str] = Field(default_factory=list)
    use_search: bool = False
    search_pages: int = 3
    search_category: str | None = None
    search_sort: str | None = None
    search_rh: str | None = None
    search_keywords: list[str] = Field(default_factory=list)
    hidden_include: list[str] = Field(default_factory=list)
    hidden_exclude: list[str] = Field(default_factory=list)
    max_items_per_run: int = 500
    recrawl_hours_p0: float = Field(default=6.0, gt=0)
    recrawl_hours_p1: float = Field(default=24.0, gt=0)
    recrawl_hours_p2: float = Field(default=72.0, gt=0)
    recrawl_hours_p3: float = Field(default=168.0, gt=0)
    per_page_delay_ms_min: int = Field(default=2500, ge=0)
    per_page_delay_ms_max: int = Field(default=4000, ge=0)
    per_product_delay_ms_min: int = Field(default=3000, ge=0)
    per_product_delay_ms_max: int = Field(default=5000, ge=0)
    marketplace_id: str = "ATVPDKIKX0DER"

    @field_validator(
        "zgbs_paths",
        "new_paths",
        "movers_paths",
        "search_keywords",
        "hidden_include",
        "hidden_exclude",
        mode="before",
    )
    @classmethod
    def _sanitize_lists(cls, value: Any) -> list[str]:
        return sanitize_string_list(value)

    @field_validator("search_category", "search_sort", "search_rh", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("zgbs_pages", "new_pages", "movers_pages", "search_pages")
    @classmethod
    def _clamp_pages(cls, value: int) -> int:
        return _clamp(value, MIN_PAGES, MAX_PAGES)

    @field_validator("max_items_per_run")
    @classmethod
    def _clamp_items(cls, value: int, info: ValidationInfo) -> int:
        bypass = bool(info.context and info.context.get("bypass_limits"))
        if bypass:
            return max(1, value)
        return _clamp(value, MIN_ITEMS_PER_RUN, MAX_ITEMS_PER_RUN)

    @model_validator(mode="after")
    def _fill_defaults(self) -> "CrawlerSettings":
        if self.per_page_delay_ms_max < self.per_page_delay_ms_min:
            raise ValueError("per_page_delay_ms_max must not be lower than per_page_delay_ms_min")
        if self.per_product_delay_ms_max < self.per_product_delay_ms_min:
            raise ValueError(
                "per_product_delay_ms_max must not be lower than per_product_delay_ms_min"
            )
        if not self.zgbs_paths:
            self.zgbs_paths = list(DEFAULT_ZGBS_PATHS)
        if not self.new_paths:
            self.new_paths = list(DEFAULT_NEW_RELEASE_PATHS)
        if not self.movers_paths:
            self.movers_paths = list(DEFAULT_MOVERS_PATHS)
        return self

    @property
    def recrawl_hours(self) -> tuple[float, ...]:
        """Recrawl interval per priority tier, fastest first."""
        return (
            self.recrawl_hours_p0,
            self.recrawl_hours_p1,
            self.recrawl_hours_p2,
            self.recrawl_hours_p3,
        )

    @property
    def page_delay(self) -> DelayConfig:
        return DelayConfig(
            min_sec=self.per_page_delay_ms_min / 1000,
            max_sec=self.per_page_delay_ms_max / 1000,
        )

    @property
    def product_delay(self) -> DelayConfig:
        return DelayConfig(
            min_sec=self.per_product_delay_ms_min / 1000,
            max_sec=self.per_product_delay_ms_max / 1000,
        )


CRAWLER_SETTINGS_FIELDS = tuple(CrawlerSettings.model_fields)


class KeywordSettings(BaseModel):
    """SERP budgets and competition weights (singleton settings row)."""

    model_config = ConfigDict(extra="ignore")

    aliases: list[str] = Field(default_factory=lambda: [DEFAULT_KEYWORD_ALIAS])
    serp_pages: int = 3
    topn: int = 50
    weight_reviews: float = Field(default=0.35, ge=0)
    weight_bsr: float = Field(default=0.25, ge=0)
    weight_merch: float = Field(default=0.20, ge=0)
    weight_rating: float = Field(default=0.10, ge=0)
    weight_diversity: float = Field(default=0.10, ge=0)

    @field_validator("aliases", mode="before")
    @classmethod
    def _sanitize_aliases(cls, value: Any) -> list[str]:
        aliases = [alias.lower() for alias in sanitize_string_list(value)]
        return aliases or [DEFAULT_KEYWORD_ALIAS]

    @field_validator("serp_pages", mode="before")
    @classmethod
    def _clamp_serp_pages(cls, value: Any) -> int:
        if value is None:
            return 3
        return _clamp(int(value), 1, MAX_SERP_PAGES)

    @field_validator("topn", mode="before")
    @classmethod
    def _clamp_topn(cls, value: Any) -> int:
        if value is None:
            return 50
        return max(1, int(value))


class SchedulerConfig(BaseModel):
    """Crawl-state transition thresholds."""

    new_item_tier: int = Field(default=1, ge=0, le=3)
    unchanged_thresholds: list[int] = Field(default_factory=lambda: [3, 3, 4, 6])
    max_failures: int = Field(default=3, ge=0)
    backoff_base_hours: float = Field(default=1.0, gt=0)
    backoff_max_hours: float = Field(default=48.0, gt=0)
    due_batch_size: int = Field(default=200, ge=0)

    @field_validator("unchanged_thresholds")
    @classmethod
    def _ensure_thresholds(cls, value: list[int]) -> list[int]:
        if not value or any(item < 1 for item in value):
            raise ValueError("unchanged_thresholds must contain positive integers")
        return value


class StateConfig(BaseModel):
    """Backing store location."""

    database: Path = Field(default=Path("state/merchwatch.db"))


def _default_serp_delay() -> DelayConfig:
    return DelayConfig(min_sec=0.4, max_sec=0.8)


class RuntimeConfig(BaseModel):
    """Run-level limits."""

    run_deadline_minutes: float | None = Field(default=None, gt=0)
    serp_batch_size: PositiveInt = Field(default=5, le=100)
    serp_delay: DelayConfig = Field(default_factory=_default_serp_delay)
    follow_variants: bool = True


class AppConfig(BaseModel):
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)


@dataclass(slots=True)
class EffectiveSettings:
    """Stored settings merged with environment overrides."""

    settings: CrawlerSettings
    overrides: dict[str, bool] = field(default_factory=dict)

    @property
    def overridden_fields(self) -> list[str]:
        return sorted(name for name, flag in self.overrides.items() if flag)

    def as_dict(self) -> dict[str, Any]:
        return {
            "settings": self.settings.model_dump(mode="json"),
            "overrides": self.overridden_fields,
        }
