"""
Repricing scheduler.

Drives the engine on a recurring APScheduler interval. Every fire calls the
guarded ``run_once`` routine:

    IDLE -> RUNNING -> {COMPLETED, FAILED} -> IDLE

A fire that arrives while a tick is RUNNING is skipped and counted, never run
concurrently. APScheduler's own ``max_instances`` is set above 1 so the skip
decision (and its bookkeeping) stays here rather than in the library.

Per tick: load active connections, their listings and the organizations'
rules, resolve one adapter per connection, then push every listing through
the pipeline on a bounded worker pool.
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR, EVENT_JOB_MAX_INSTANCES, JobExecutionEvent

from buybox_repricer.buybox.monitor import BuyBoxMonitorFactory
from buybox_repricer.core.models import (
    MarketplaceConnection, TrackedListing, RepricingRule, RepricingAction, ActionOutcome
)
from buybox_repricer.monitoring.prometheus_metrics import RepricerMetrics
from buybox_repricer.monitoring.sentry_config import capture_exception, add_breadcrumb
from buybox_repricer.services.repository import RepricingStore
from buybox_repricer.services.repricing_pipeline import (
    ListingPipeline, ConnectionBreaker, ListingResult
)
from buybox_repricer.utils.exceptions import AuthenticationError, SchedulingError, RepricerError
from buybox_repricer.utils.logger import get_logger, tick_logger
from buybox_repricer.utils.retry import RetryableOperation

logger = get_logger(__name__)

JOB_ID = "repricing_tick"
MAX_RECORDED_ERRORS = 500


class TickState(Enum):
    """Repricing tick state."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TickMetrics:
    """Counters across the scheduler's lifetime."""
    ticks_run: int = 0
    ticks_skipped: int = 0
    listings_checked: int = 0
    reprices_applied: int = 0
    errors: deque = field(default_factory=lambda: deque(maxlen=MAX_RECORDED_ERRORS))

    def record_error(self, tick_id: str, error: str, **context) -> None:
        self.errors.append({"tick_id": tick_id, "error": error, **context})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticks_run": self.ticks_run,
            "ticks_skipped": self.ticks_skipped,
            "listings_checked": self.listings_checked,
            "reprices_applied": self.reprices_applied,
            "errors": list(self.errors),
        }


@dataclass
class TickResult:
    """Result of one tick."""
    tick_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    state: TickState = TickState.RUNNING
    trigger: str = "manual"
    listings_processed: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    cancelled: bool = False
    error_message: Optional[str] = None

    def count(self, outcome: ActionOutcome) -> None:
        self.listings_processed += 1
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tick_id": self.tick_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "state": self.state.value,
            "trigger": self.trigger,
            "listings_processed": self.listings_processed,
            "outcomes": dict(self.outcomes),
            "cancelled": self.cancelled,
            "error_message": self.error_message,
        }


class RepricingScheduler:
    """
    Recurring orchestrator for buy box monitoring and repricing.

    Owns the APScheduler instance, the overlap guard, the per-tick worker
    pool and the cooperative cancellation flag.
    """

    def __init__(self, store: RepricingStore, monitor_factory: BuyBoxMonitorFactory,
                 pipeline: ListingPipeline, tick_interval_seconds: int = 900,
                 worker_concurrency: int = 5, timezone_name: str = "UTC",
                 metrics: Optional[RepricerMetrics] = None):
        """
        Initialize scheduler.

        Args:
            store: Source of connections, listings and rules; sink for actions
            monitor_factory: Resolves monitors (and adapters) per connection
            pipeline: Per-listing pipeline
            tick_interval_seconds: Seconds between scheduled ticks
            worker_concurrency: Listings processed concurrently within a tick
            timezone_name: Scheduler timezone
            metrics: Prometheus metrics (optional)
        """
        if worker_concurrency < 1:
            raise SchedulingError("worker_concurrency must be at least 1")

        self.store = store
        self.monitor_factory = monitor_factory
        self.pipeline = pipeline
        self.tick_interval_seconds = tick_interval_seconds
        self.worker_concurrency = worker_concurrency
        self.timezone_name = timezone_name
        self.metrics = metrics

        self.state = TickState.IDLE
        self.tick_metrics = TickMetrics()
        self.tick_history: deque = deque(maxlen=50)
        self.current_tick: Optional[TickResult] = None

        self.last_state: Optional[TickState] = None
        self._cancel_event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self.scheduler = self._create_scheduler()

        logger.info("RepricingScheduler initialized")

    def _create_scheduler(self) -> AsyncIOScheduler:
        """Create and configure APScheduler instance."""
        jobstores = {
            'default': MemoryJobStore()
        }

        executors = {
            'default': AsyncIOExecutor()
        }

        job_defaults = {
            'coalesce': True,
            # Overlap is decided by run_once, not by APScheduler
            'max_instances': 3,
            'misfire_grace_time': 30
        }

        scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone=self.timezone_name
        )

        scheduler.add_listener(self._job_executed_listener, EVENT_JOB_EXECUTED)
        scheduler.add_listener(self._job_error_listener, EVENT_JOB_ERROR)
        scheduler.add_listener(self._job_max_instances_listener, EVENT_JOB_MAX_INSTANCES)

        return scheduler

    async def start(self) -> None:
        """Register the recurring tick job and start the scheduler."""
        try:
            logger.info(f"Starting repricing scheduler (every {self.tick_interval_seconds}s)")
            self._cancel_event.clear()

            self.scheduler.add_job(
                func=self._scheduled_fire,
                trigger=IntervalTrigger(seconds=self.tick_interval_seconds),
                id=JOB_ID,
                name="Buy box monitoring and repricing tick",
                replace_existing=True,
            )
            self.scheduler.start()

            logger.info("Repricing scheduler started")

        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
            raise SchedulingError(f"Scheduler start failed: {e}")

    async def stop(self, wait: bool = True) -> None:
        """
        Stop scheduling and cancel the running tick cooperatively.

        Listings that have not started are not processed; in-flight listings
        finish or time out on their own per-call timeouts.
        """
        logger.info("Stopping repricing scheduler")
        self._cancel_event.set()

        try:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
        except Exception as e:
            logger.error(f"Failed to stop scheduler: {e}")
            raise SchedulingError(f"Scheduler stop failed: {e}")

        if wait and not self._idle.is_set():
            logger.info("Waiting for the running tick to wind down")
            await self._idle.wait()

        logger.info("Repricing scheduler stopped")

    def cancel(self) -> None:
        """Ask the running tick to stop starting new listings."""
        self._cancel_event.set()

    @property
    def is_running(self) -> bool:
        return self.state == TickState.RUNNING

    async def _scheduled_fire(self) -> None:
        await self.run_once(trigger="scheduled")

    async def run_once(self, trigger: str = "manual") -> Optional[TickResult]:
        """
        Run one tick unless one is already running.

        Returns:
            TickResult, or None if the fire was skipped by the overlap guard
        """
        if self.state == TickState.RUNNING:
            self.tick_metrics.ticks_skipped += 1
            if self.metrics:
                self.metrics.track_skipped_tick()
            logger.warning(
                f"Tick fire skipped ({trigger}): tick {self.current_tick.tick_id if self.current_tick else '?'} "
                f"still running"
            )
            return None

        # No await between the check above and this assignment
        self.state = TickState.RUNNING
        self._idle.clear()
        if trigger == "manual":
            self._cancel_event.clear()

        tick = TickResult(
            tick_id=f"tick-{uuid.uuid4().hex[:12]}",
            started_at=datetime.now(timezone.utc),
            trigger=trigger,
        )
        self.current_tick = tick
        started = time.perf_counter()

        tick_logger(logger, tick.tick_id).info(f"Tick started ({trigger})")
        add_breadcrumb(f"tick {tick.tick_id} started", trigger=trigger)

        try:
            await self._run_tick(tick)
            tick.state = TickState.COMPLETED
            tick.cancelled = self._cancel_event.is_set()

        except Exception as e:
            tick.state = TickState.FAILED
            tick.error_message = str(e)
            self.tick_metrics.record_error(tick.tick_id, str(e))
            tick_logger(logger, tick.tick_id).exception(f"Tick failed: {e}")
            capture_exception(e, tick_id=tick.tick_id)

        finally:
            duration = time.perf_counter() - started
            tick.completed_at = datetime.now(timezone.utc)
            self.last_state = tick.state
            self.tick_metrics.ticks_run += 1
            self.tick_history.append(tick)
            if self.metrics:
                self.metrics.track_tick(tick.state.value, duration)
                self.metrics.set_adapter_cache_size(self.monitor_factory.adapter_factory.cache_size)

            tick_logger(logger, tick.tick_id).info(
                f"Tick {tick.state.value} in {duration:.2f}s: "
                f"{tick.listings_processed} listing(s) {tick.outcomes}"
                + (" (cancelled)" if tick.cancelled else "")
            )

            # A cancel applies to one tick while serving; after stop() it sticks
            if self.scheduler.running:
                self._cancel_event.clear()
            self.current_tick = None
            self.state = TickState.IDLE
            self._idle.set()

        return tick

    async def _run_tick(self, tick: TickResult) -> None:
        connections = await self.store.list_active_connections()
        semaphore = asyncio.Semaphore(self.worker_concurrency)
        tick_log = tick_logger(logger, tick.tick_id)
        rules_by_org: Dict[str, List[RepricingRule]] = {}
        rules_errors: Dict[str, str] = {}
        batches = []

        for connection in connections:
            if self._cancel_event.is_set():
                break

            try:
                listings = await self.store.list_listings(connection)
            except Exception as e:
                tick_log.error(f"Could not load listings for connection {connection.id}: {e}")
                self.tick_metrics.record_error(
                    tick.tick_id, f"listing load failed: {e}",
                    connection_id=connection.id, marketplace_id=connection.marketplace_id,
                )
                continue
            if not listings:
                continue

            org_id = connection.organization_id
            if org_id not in rules_by_org and org_id not in rules_errors:
                try:
                    rules_by_org[org_id] = await self.store.list_rules(org_id)
                except Exception as e:
                    tick_log.error(f"Could not load rules for organization {org_id}: {e}")
                    rules_errors[org_id] = f"rules unavailable: {e}"

            if org_id in rules_errors:
                for listing in listings:
                    await self._record(tick, self.pipeline.fail(listing, tick.tick_id, rules_errors[org_id]))
                continue

            batches.append((connection, listings, rules_by_org[org_id]))

        tick_log.info(f"{len(connections)} active connection(s), {len(batches)} with listings")
        await asyncio.gather(*[
            self._run_connection(tick, connection, listings, rules, semaphore)
            for connection, listings, rules in batches
        ])

    async def _resolve_monitor(self, connection: MarketplaceConnection):
        def on_retry(error, attempt, delay):
            if self.metrics:
                self.metrics.track_retry("initialize")

        return await RetryableOperation(self.pipeline.retry_config, on_retry=on_retry).execute(
            self.monitor_factory.get_monitor,
            connection.marketplace_id, connection.credentials, connection.credential_version
        )

    async def _run_connection(self, tick: TickResult, connection: MarketplaceConnection,
                              listings: List[TrackedListing], rules: List[RepricingRule],
                              semaphore: asyncio.Semaphore) -> None:
        breaker = ConnectionBreaker(connection, self.store, self.monitor_factory.adapter_factory)
        monitor = None
        resolution_error: Optional[str] = None

        try:
            monitor = await self._resolve_monitor(connection)
        except AuthenticationError as e:
            await breaker.trip(e)
        except (RepricerError, asyncio.TimeoutError, ConnectionError) as e:
            resolution_error = str(e) or type(e).__name__
            tick_logger(logger, tick.tick_id).error(f"Cannot resolve adapter for connection {connection.id}: {e}")

        await asyncio.gather(*[
            self._run_listing(tick, listing, monitor, rules, breaker, semaphore, resolution_error)
            for listing in listings
        ])

    async def _run_listing(self, tick: TickResult, listing: TrackedListing, monitor,
                           rules: List[RepricingRule], breaker: ConnectionBreaker,
                           semaphore: asyncio.Semaphore, resolution_error: Optional[str]) -> None:
        async with semaphore:
            if self._cancel_event.is_set():
                return

            try:
                if resolution_error is not None and not breaker.tripped:
                    result = self.pipeline.fail(listing, tick.tick_id, resolution_error)
                else:
                    result = await self.pipeline.process(listing, monitor, rules, tick.tick_id, breaker)
            except Exception as e:
                tick_logger(logger, tick.tick_id).exception(f"Pipeline crashed for listing {listing.id}: {e}")
                result = self.pipeline.fail(listing, tick.tick_id, f"unexpected: {e}")

            await self._record(tick, result)

    async def _record(self, tick: TickResult, result: ListingResult) -> None:
        action: RepricingAction = result.action
        tick.count(action.outcome)

        if result.checked:
            self.tick_metrics.listings_checked += 1
        if action.outcome == ActionOutcome.SUCCESS:
            self.tick_metrics.reprices_applied += 1
        if action.outcome in (ActionOutcome.FAILED, ActionOutcome.SKIPPED_AUTH_ERROR):
            self.tick_metrics.record_error(
                tick.tick_id, action.error or action.outcome.value,
                listing_id=action.listing_id, sku=action.sku,
                marketplace_id=action.marketplace_id, outcome=action.outcome.value,
            )

        try:
            await self.store.append_action(action)
        except Exception as e:
            tick_logger(logger, tick.tick_id).error(f"Could not append audit action for {action.listing_id}: {e}")
            self.tick_metrics.record_error(tick.tick_id, f"audit write failed: {e}", listing_id=action.listing_id)

    def _job_executed_listener(self, event: JobExecutionEvent):
        logger.debug(f"Job executed: {event.job_id}")

    def _job_error_listener(self, event: JobExecutionEvent):
        logger.error(f"Job error: {event.job_id} - {event.exception}")

    def _job_max_instances_listener(self, event):
        # Only reachable if ticks pile up beyond max_instances
        self.tick_metrics.ticks_skipped += 1
        if self.metrics:
            self.metrics.track_skipped_tick()
        logger.warning(f"Job {event.job_id} fire dropped by APScheduler: too many pending instances")

    def get_status(self) -> Dict[str, Any]:
        """
        Get current scheduler status.

        Returns:
            Dict with scheduler status information
        """
        job = self.scheduler.get_job(JOB_ID) if self.scheduler.running else None
        return {
            "running": self.scheduler.running,
            "state": self.state.value,
            "last_state": self.last_state.value if self.last_state else None,
            "current_tick": self.current_tick.tick_id if self.current_tick else None,
            "tick_interval_seconds": self.tick_interval_seconds,
            "worker_concurrency": self.worker_concurrency,
            "next_run": str(job.next_run_time) if job else None,
            "metrics": self.tick_metrics.to_dict(),
        }

    def get_tick_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent ticks first."""
        ticks = sorted(self.tick_history, key=lambda t: t.started_at, reverse=True)[:limit]
        return [t.to_dict() for t in ticks]
