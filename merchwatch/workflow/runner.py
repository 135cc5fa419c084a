from __future__ import annotations

import os
import signal
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping

from dotenv import load_dotenv
from rich.console import Console

from merchwatch.config import AppConfig, ConfigLoaderError, EffectiveSettings, KeywordSettings
from merchwatch.config.env_loader import build_effective_settings
from merchwatch.config.loader import load_app_config, load_settings_file, parse_keyword_settings
from merchwatch.crawler.engines import HttpEngine, PageFetcher
from merchwatch.crawler.models import CrawlSummary
from merchwatch.crawler.service import CrawlService
from merchwatch.logger import get_logger
from merchwatch.metrics.service import MetricsSummary, run_metrics
from merchwatch.runtime import RunContext
from merchwatch.serp.collector import SerpCollector, SerpSummary, enqueue_keyword_jobs
from merchwatch.state import MerchStore, SqliteStore

console = Console(stderr=True)
logger = get_logger(__name__)

JOB_NAMES = ("crawl", "serp", "metrics")
JOB_DESCRIPTIONS = {
    "crawl": "Discover candidates, scrape product pages and refresh merch_products",
    "serp": "Process pending keyword SERP jobs into snapshots",
    "metrics": "Compute product trend and keyword competition metrics",
}
JOB_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "crawl": ("MERCHWATCH_DATABASE_PATH",),
    "serp": ("MERCHWATCH_DATABASE_PATH",),
    "metrics": ("MERCHWATCH_DATABASE_PATH",),
}

CRAWL_MODES: dict[str, dict[str, str]] = {
    "default": {},
    "high-frequency": {"USE_SEARCH": "false"},
    "keyword-sweep": {
        "USE_BEST_SELLERS": "false",
        "USE_NEW_RELEASES": "false",
        "USE_MOVERS": "false",
        "USE_SEARCH": "true",
    },
    "backlog-touch": {"USE_SEARCH": "false"},
}

StoreFactory = Callable[[AppConfig], MerchStore]
FetcherFactory = Callable[[AppConfig, RunContext], PageFetcher]


def _default_store(config: AppConfig) -> MerchStore:
    try:
        return SqliteStore(config.state.database)
    except (sqlite3.Error, OSError) as exc:
        raise ConfigLoaderError(f"Cannot open database {config.state.database}: {exc}") from exc


def _default_fetcher(config: AppConfig, context: RunContext) -> PageFetcher:
    return HttpEngine(config.network, context)


@dataclass(slots=True)
class RunnerOptions:
    config_path: Path | None = None
    settings_path: Path | None = None
    only: list[str] | None = None
    mode: str = "default"
    dry_run: bool = False
    allow_missing_env: bool = False
    bypass_limits: bool = False
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class JobResult:
    name: str
    skipped: bool
    duration_ms: int
    summary: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "skipped": self.skipped,
            "durationMs": self.duration_ms,
        }
        if self.summary is not None:
            payload["summary"] = self.summary
        return payload


def select_jobs(only: list[str] | None) -> list[str]:
    if not only:
        return list(JOB_NAMES)
    unknown = [name for name in only if name not in JOB_NAMES]
    if unknown:
        raise ConfigLoaderError(f"Unknown job name: {', '.join(unknown)}")
    return list(only)


def missing_env(job: str, env: Mapping[str, str]) -> list[str]:
    return [key for key in JOB_REQUIREMENTS.get(job, ()) if not env.get(key)]


def mode_overrides(mode: str) -> dict[str, str]:
    try:
        return dict(CRAWL_MODES[mode])
    except KeyError as exc:
        raise ConfigLoaderError(
            f"Unknown crawl mode '{mode}', expected one of: {', '.join(CRAWL_MODES)}"
        ) from exc


class MerchRunner:
    """Wires configuration, store and fetcher together for each batch job."""

    def __init__(
        self,
        *,
        store_factory: StoreFactory | None = None,
        fetcher_factory: FetcherFactory | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store_factory = store_factory or _default_store
        self.fetcher_factory = fetcher_factory or _default_fetcher
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _environment(self, options: RunnerOptions) -> dict[str, str]:
        load_dotenv()
        env = dict(os.environ)
        env.update(mode_overrides(options.mode))
        env.update(options.env)
        return env

    @contextmanager
    def _context(self, config: AppConfig, options: RunnerOptions) -> Iterator[RunContext]:
        """Run context whose SIGTERM handler cancels in-flight work."""
        context = RunContext.create(
            deadline_minutes=config.runtime.run_deadline_minutes,
            dry_run=options.dry_run,
            clock=self.clock,
        )
        if threading.current_thread() is not threading.main_thread():
            yield context
            return
        previous = signal.signal(signal.SIGTERM, lambda *_: context.cancel())
        try:
            yield context
        finally:
            signal.signal(signal.SIGTERM, previous)

    def load_config(self, options: RunnerOptions) -> tuple[AppConfig, dict[str, str]]:
        env = self._environment(options)
        try:
            config = load_app_config(options.config_path, env)
        except ConfigLoaderError as exc:
            console.print(f"[bold red]Configuration error:[/bold red] {exc}")
            raise
        return config, env

    def effective_settings(
        self, store: MerchStore, options: RunnerOptions, env: Mapping[str, str]
    ) -> EffectiveSettings:
        stored = (
            load_settings_file(options.settings_path)
            if options.settings_path
            else store.load_crawler_settings()
        )
        effective = build_effective_settings(stored, env, bypass_limits=options.bypass_limits)
        logger.info(
            "Effective crawler settings",
            extra={
                "source": str(options.settings_path) if options.settings_path else "store",
                "overrides": effective.overridden_fields,
            },
        )
        return effective

    def keyword_settings(self, store: MerchStore) -> KeywordSettings:
        return parse_keyword_settings(store.load_keyword_settings())

    def show_settings(self, options: RunnerOptions) -> dict[str, Any]:
        config, env = self.load_config(options)
        store = self.store_factory(config)
        try:
            payload = self.effective_settings(store, options, env).as_dict()
            payload["keyword_settings"] = self.keyword_settings(store).model_dump()
            return payload
        finally:
            store.close()

    def run_crawl(self, options: RunnerOptions) -> CrawlSummary:
        config, env = self.load_config(options)
        store = self.store_factory(config)
        try:
            settings = self.effective_settings(store, options, env)
            with self._context(config, options) as context:
                fetcher = self.fetcher_factory(config, context)
                try:
                    service = CrawlService(
                        store=store,
                        fetcher=fetcher,
                        settings=settings,
                        context=context,
                        scheduler=config.scheduler,
                        base_url=config.network.base_url,
                        follow_variants=config.runtime.follow_variants,
                    )
                    return service.run()
                finally:
                    fetcher.shutdown()
        finally:
            store.close()

    def run_serp(self, options: RunnerOptions) -> SerpSummary:
        config, _ = self.load_config(options)
        store = self.store_factory(config)
        try:
            settings = self.keyword_settings(store)
            with self._context(config, options) as context:
                fetcher = self.fetcher_factory(config, context)
                try:
                    collector = SerpCollector(
                        store=store,
                        fetcher=fetcher,
                        settings=settings,
                        context=context,
                        batch_size=config.runtime.serp_batch_size,
                        delay=config.runtime.serp_delay,
                        base_url=config.network.base_url,
                    )
                    return collector.process_queue()
                finally:
                    fetcher.shutdown()
        finally:
            store.close()

    def run_metrics(self, options: RunnerOptions) -> MetricsSummary:
        config, _ = self.load_config(options)
        store = self.store_factory(config)
        try:
            return run_metrics(store, self.keyword_settings(store), now=self.clock())
        finally:
            store.close()

    def enqueue(
        self, options: RunnerOptions, term: str, *, alias: str | None, priority: int
    ) -> list[int]:
        """Queues SERP jobs; without an alias, one per configured keyword alias."""
        config, _ = self.load_config(options)
        store = self.store_factory(config)
        try:
            job_ids = enqueue_keyword_jobs(
                store,
                self.keyword_settings(store),
                term,
                alias=alias,
                priority=priority,
                now=self.clock(),
            )
        finally:
            store.close()
        logger.info("SERP jobs queued", extra={"job_ids": job_ids, "term": term, "alias": alias})
        return job_ids

    def run_jobs(self, options: RunnerOptions) -> list[JobResult]:
        """Runs the selected jobs in order; a missing requirement aborts unless allowed."""
        jobs = select_jobs(options.only)
        env = self._environment(options)
        if options.mode != "default":
            logger.info("Crawl mode overrides applied", extra={"mode": options.mode})
        handlers: dict[str, Callable[[RunnerOptions], Any]] = {
            "crawl": self.run_crawl,
            "serp": self.run_serp,
            "metrics": self.run_metrics,
        }
        results: list[JobResult] = []
        for job in jobs:
            if options.dry_run:
                console.print(f"[cyan]Dry run[/cyan]: {job} ({JOB_DESCRIPTIONS[job]})")
                results.append(JobResult(name=job, skipped=True, duration_ms=0))
                continue
            missing = missing_env(job, env)
            if missing:
                message = (
                    f"Skipping {job}: required environment variables are missing: "
                    f"{', '.join(missing)}"
                )
                if not options.allow_missing_env:
                    raise ConfigLoaderError(message)
                logger.warning(message)
                results.append(JobResult(name=job, skipped=True, duration_ms=0))
                continue
            started = time.monotonic()
            logger.info("Job started", extra={"job": job})
            summary = handlers[job](options)
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.info("Job completed", extra={"job": job, "duration_ms": duration_ms})
            results.append(
                JobResult(name=job, skipped=False, duration_ms=duration_ms, summary=summary.as_dict())
            )
        return results
