import argparse
import asyncio
import json
import signal
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from rotation import config as cfg
from rotation.aggregator import MarketAggregator
from rotation.backtest import BacktestParams, BacktestSimulator
from rotation.datafeeds.base import MarketDataProvider
from rotation.datafeeds.binance_rest import BinanceRESTClient
from rotation.datafeeds.coincap import CoinCapClient
from rotation.datafeeds.coingecko import CoinGeckoClient
from rotation.datafeeds.coinmarketcap import CoinMarketCapClient
from rotation.datafeeds.cryptocompare import CryptoCompareClient
from rotation.errors import RotationError
from rotation.narrative import TemplateNarrator
from rotation.notif.alerts import AlertNotifier
from rotation.notif.templates import template_backtest_summary
from rotation.rules.allocation import AllocationPolicy
from rotation.rules.classifier import PhaseClassifier
from rotation.rules.dwell import DwellRule
from rotation.rules.engine import TransitionEngine
from rotation.scheduler import RotationScheduler
from rotation.service import RotationService
from rotation.storage.db import Database
from rotation.storage.repo import Repository
from rotation.telegram_bot import send_error_to_admin
from rotation.utils.healthcheck import HealthcheckServer
from rotation.utils.logging import setup_logging

PROVIDER_CLASSES = {
    "coingecko": CoinGeckoClient,
    "coinmarketcap": CoinMarketCapClient,
    "coincap": CoinCapClient,
    "cryptocompare": CryptoCompareClient,
    "binance": BinanceRESTClient,
}


@dataclass
class Application:
    """Everything the process owns; built once, closed once."""
    config: cfg.ConfigLoader
    database: Database
    repo: Repository
    aggregator: MarketAggregator
    notifier: AlertNotifier
    engine: TransitionEngine
    service: RotationService

    async def aclose(self) -> None:
        await self.notifier.drain()
        await self.aggregator.aclose()
        self.database.close()


def build_providers(names: List[str], config: cfg.ConfigLoader,
                    cache: Dict[str, MarketDataProvider]) -> List[MarketDataProvider]:
    providers = []
    for name in names:
        if name not in PROVIDER_CLASSES:
            logger.warning(f"Unknown provider '{name}' in config, skipping")
            continue
        if name not in cache:
            settings = cfg.get_provider_config(name, config)
            cache[name] = PROVIDER_CLASSES[name](**settings)
        providers.append(cache[name])
    return providers


def build_application(config: Optional[cfg.ConfigLoader] = None) -> Application:
    """Composition root: wire config -> providers -> aggregator -> rules -> service."""
    config = config or cfg.get_config()
    thresholds = cfg.get_thresholds(config)
    cache_cfg = cfg.get_cache_config(config)
    db_cfg = cfg.get_database_config(config)

    instances: Dict[str, MarketDataProvider] = {}
    providers = build_providers(cfg.get_provider_order(config), config, instances)
    history_providers = build_providers(cfg.get_history_provider_order(config), config, instances)

    database = Database(db_cfg["url"])
    database.init_db()
    repo = Repository(database)

    aggregator = MarketAggregator(
        providers,
        history_providers,
        thresholds,
        max_age=timedelta(minutes=cache_cfg["max_age_minutes"]),
        refresh_timeout=cache_cfg["refresh_timeout_seconds"],
    )
    classifier = PhaseClassifier(thresholds)
    allocation = AllocationPolicy(thresholds, cfg.get_allocation_table(config))
    dwell = DwellRule(thresholds.min_dwell_days)
    notifier = AlertNotifier(repo, app_name=cfg.get_app_name(config))
    engine = TransitionEngine(aggregator, repo, classifier, allocation, dwell, notifier)
    simulator = BacktestSimulator(
        classifier, allocation, dwell, BacktestParams.from_config(cfg.get_backtest_config(config))
    )
    service = RotationService(
        aggregator, repo, classifier, allocation, engine, simulator,
        narrator=TemplateNarrator(thresholds),
    )
    service.prime_from_storage()

    return Application(config, database, repo, aggregator, notifier, engine, service)


async def run_service(app: Application) -> None:
    """Run scheduler + healthcheck until SIGINT/SIGTERM."""
    config = app.config
    sched_cfg = cfg.get_scheduler_config(config)
    db_cfg = cfg.get_database_config(config)
    hc_cfg = cfg.get_healthcheck_config(config)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    healthcheck = None
    tasks = []
    if hc_cfg["enabled"]:
        healthcheck = HealthcheckServer(hc_cfg["host"], hc_cfg["port"], status_provider=app.service.status)
        tasks.append(asyncio.create_task(healthcheck.run(), name="Healthcheck"))

    scheduler = RotationScheduler(
        app.service,
        app.database,
        market_data_minutes=sched_cfg["market_data_minutes"],
        phase_check_minutes=sched_cfg["phase_check_minutes"],
        cleanup_hour=sched_cfg["cleanup_hour"],
        tz_name=sched_cfg["timezone"],
        retention_days=db_cfg["retention_days"],
        cleanup_enabled=db_cfg["cleanup_enabled"],
        healthcheck=healthcheck,
    )

    logger.info("=" * 60)
    logger.info(f"Starting {cfg.get_app_name(config)} v{cfg.get_app_version(config)}")
    logger.info("=" * 60)

    scheduler.start()
    try:
        await shutdown_event.wait()
        logger.info("Shutdown signal received, stopping tasks...")
    finally:
        await scheduler.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def _dump(title: str, data: Any) -> None:
    logger.info(f"{title}:\n{json.dumps(data, indent=2, default=str)}")


async def run_command(args: argparse.Namespace) -> None:
    app = build_application()
    try:
        service = app.service
        if args.metrics:
            _dump("Current metrics", await service.get_current_metrics())
        elif args.analysis:
            _dump("Phase analysis", await service.get_phase_analysis())
        elif args.allocation:
            _dump("Recommended allocation", await service.get_recommended_allocation())
        elif args.check:
            _dump("Phase check", await service.check_phase_transition())
        elif args.backtest:
            result = await service.run_backtest(args.backtest[0], args.backtest[1], args.capital)
            logger.info("\n" + template_backtest_summary(result["results"], cfg.get_app_name(app.config)))
        elif args.compare:
            result = await service.compare_with_buy_and_hold(args.compare[0], args.compare[1], args.capital)
            for key in ("strategy", "btc_hold", "eth_hold"):
                result[key].pop("curve", None)
            _dump("Strategy vs buy-and-hold", result)
        elif args.backtest_history:
            _dump("Backtest history", service.get_backtest_history())
        else:
            await run_service(app)
    finally:
        await app.aclose()


def main():
    parser = argparse.ArgumentParser(description="Crypto market-phase rotation service")
    parser.add_argument("--init-db", action="store_true", help="Initialize database tables")
    parser.add_argument("--metrics", action="store_true", help="Fetch and print current market metrics")
    parser.add_argument("--analysis", action="store_true", help="Print the phase analysis")
    parser.add_argument("--allocation", action="store_true", help="Print (and store) the recommended allocation")
    parser.add_argument("--check", action="store_true", help="Run one phase-transition check")
    parser.add_argument("--backtest", nargs=2, metavar=("START", "END"), help="Backtest between YYYY-MM-DD dates")
    parser.add_argument("--compare", nargs=2, metavar=("START", "END"), help="Backtest vs BTC/ETH buy-and-hold")
    parser.add_argument("--backtest-history", action="store_true", help="List the latest stored backtests")
    parser.add_argument("--capital", type=float, default=None, help="Initial capital for backtests")
    args = parser.parse_args()

    setup_logging(**cfg.get_logging_config())
    cfg.validate_environment()

    if args.init_db:
        Database(cfg.get_database_config()["url"]).init_db()
        logger.info("Database initialized")
        return

    try:
        asyncio.run(run_command(args))
    except KeyboardInterrupt:
        logger.info("Received KeyboardInterrupt, shutting down...")
    except RotationError as e:
        logger.error(f"{type(e).__name__}: {e}")
        asyncio.run(send_error_to_admin(type(e).__name__, str(e)))
    except Exception as e:
        logger.exception(f"Unhandled exception in main: {e}")
        asyncio.run(send_error_to_admin("Fatal", str(e), "Service crashed"))
    finally:
        logger.info("Service stopped")


if __name__ == "__main__":
    main()
