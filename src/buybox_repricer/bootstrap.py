"""
Application wiring.

Builds the engine's object graph from a ``RepricerConfig``: logging, Sentry,
metrics, the adapter and monitor factories, the credit meter, the store, the
pipeline and the scheduler. Every collaborator can be injected, which is how
tests and the CLI swap in in-memory parts.
"""

from typing import Optional

import httpx

from buybox_repricer import __version__
from buybox_repricer.buybox.history import BuyBoxHistoryTracker
from buybox_repricer.buybox.monitor import BuyBoxMonitorFactory
from buybox_repricer.database.connection import Database
from buybox_repricer.database.store import SqlAlchemyRepricingStore
from buybox_repricer.marketplaces.factory import MarketplaceAdapterFactory, create_default_factory
from buybox_repricer.monitoring.prometheus_metrics import RepricerMetrics
from buybox_repricer.monitoring.sentry_config import setup_sentry
from buybox_repricer.security.encryption import CredentialEncryptor
from buybox_repricer.services.credits import CreditLedger, CreditMeter, HttpCreditLedger, InMemoryCreditLedger
from buybox_repricer.services.repository import RepricingStore
from buybox_repricer.services.repricing_pipeline import ListingPipeline
from buybox_repricer.services.scheduler import RepricingScheduler
from buybox_repricer.utils.config import RepricerConfig, get_config
from buybox_repricer.utils.logger import get_logger, setup_logging
from buybox_repricer.utils.retry import RetryConfig


logger = get_logger(__name__)


class RepricerApp:
    """The wired engine plus the resources it must release."""

    def __init__(self, config: RepricerConfig, scheduler: RepricingScheduler,
                 adapter_factory: MarketplaceAdapterFactory, monitor_factory: BuyBoxMonitorFactory,
                 credit_meter: CreditMeter, store: RepricingStore, metrics: RepricerMetrics,
                 history: BuyBoxHistoryTracker, http_client: httpx.AsyncClient,
                 owns_http_client: bool = True, database: Optional[Database] = None):
        self.config = config
        self.scheduler = scheduler
        self.adapter_factory = adapter_factory
        self.monitor_factory = monitor_factory
        self.credit_meter = credit_meter
        self.store = store
        self.metrics = metrics
        self.history = history
        self.http_client = http_client
        self._owns_http_client = owns_http_client
        self.database = database

    async def aclose(self) -> None:
        """Stop the scheduler and release HTTP clients and database connections."""
        if self.scheduler.scheduler.running or self.scheduler.is_running:
            await self.scheduler.stop()

        await self.adapter_factory.aclose()
        ledger = self.credit_meter.ledger
        if isinstance(ledger, HttpCreditLedger):
            await ledger.aclose()
        if self._owns_http_client:
            await self.http_client.aclose()
        if self.database is not None:
            self.database.dispose()

        logger.info("Repricer resources released")


def configure_logging(config: RepricerConfig) -> None:
    """Initialise logging from the validated settings."""
    app = config.app
    setup_logging(
        log_level=app.log_level,
        log_dir=app.log_dir,
        debug_mode=app.debug_mode,
        log_to_file=app.log_to_file,
    )


def build_ledger(config: RepricerConfig, http_client: httpx.AsyncClient) -> CreditLedger:
    credits = config.credits
    if credits.ledger_url:
        logger.info(f"Using remote credit ledger at {credits.ledger_url}")
        return HttpCreditLedger(credits.ledger_url, credits.ledger_api_key, http_client=http_client)

    logger.warning("No credit ledger configured; using an in-memory ledger with zero balances")
    return InMemoryCreditLedger()


def build_store(config: RepricerConfig) -> tuple:
    """SQLAlchemy store on the configured database. Returns ``(store, database)``."""
    database = Database(config.app.database_url)
    database.init_db()
    encryptor = CredentialEncryptor(config.encryption_master_key)
    return SqlAlchemyRepricingStore(database, encryptor), database


def build_app(config: Optional[RepricerConfig] = None,
              store: Optional[RepricingStore] = None,
              ledger: Optional[CreditLedger] = None,
              adapter_factory: Optional[MarketplaceAdapterFactory] = None,
              http_client: Optional[httpx.AsyncClient] = None,
              metrics: Optional[RepricerMetrics] = None,
              init_observability: bool = True) -> RepricerApp:
    """
    Wire the engine.

    Args:
        config: Settings; the process-level configuration if None
        store: Store to use; a SQLAlchemy store on ``database_url`` if None
        ledger: Credit ledger; remote if ``credit_ledger_url`` is set, else in-memory
        adapter_factory: Adapter factory; the shipped adapters if None
        http_client: Shared HTTP client for marketplaces and the ledger
        metrics: Metrics registry holder
        init_observability: Configure logging and Sentry

    Returns:
        RepricerApp ready to ``run_once`` or ``start``
    """
    config = config or get_config()
    scheduler_config = config.scheduler

    if init_observability:
        configure_logging(config)
        setup_sentry(
            dsn=config.app.sentry_dsn,
            environment=config.app.sentry_environment,
            release=f"buybox-repricer@{__version__}",
        )

    owns_http_client = http_client is None
    http_client = http_client or httpx.AsyncClient(timeout=scheduler_config.call_timeout_seconds)

    database = None
    if store is None:
        store, database = build_store(config)

    metrics = metrics or RepricerMetrics()
    adapter_factory = adapter_factory or create_default_factory(http_client=http_client)
    monitor_factory = BuyBoxMonitorFactory(adapter_factory)
    credit_meter = CreditMeter.from_config(ledger or build_ledger(config, http_client), config)
    history = BuyBoxHistoryTracker()

    pipeline = ListingPipeline(
        credit_meter,
        store,
        retry_config=RetryConfig.from_settings(config.retry, call_timeout=scheduler_config.call_timeout_seconds),
        metrics=metrics,
        history=history,
    )

    scheduler = RepricingScheduler(
        store,
        monitor_factory,
        pipeline,
        tick_interval_seconds=scheduler_config.tick_interval_seconds,
        worker_concurrency=scheduler_config.worker_concurrency,
        timezone_name=scheduler_config.timezone,
        metrics=metrics,
    )

    logger.info(
        f"Repricer wired: marketplaces={adapter_factory.list_supported()}, "
        f"tick every {scheduler_config.tick_interval_seconds}s, "
        f"{scheduler_config.worker_concurrency} worker(s)"
    )

    return RepricerApp(
        config=config,
        scheduler=scheduler,
        adapter_factory=adapter_factory,
        monitor_factory=monitor_factory,
        credit_meter=credit_meter,
        store=store,
        metrics=metrics,
        history=history,
        http_client=http_client,
        owns_http_client=owns_http_client,
        database=database,
    )
