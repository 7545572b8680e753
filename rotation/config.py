import os
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Any, Optional, Tuple
from dotenv import load_dotenv
from loguru import logger

# Load environment variables from .env
load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))

# Environment variables (secrets)
BOT_TOKEN = os.getenv("BOT_TOKEN", "")
CHANNEL_CHAT_ID = os.getenv("CHANNEL_CHAT_ID", "")
ADMIN_CHANNEL_ID = os.getenv("ADMIN_CHANNEL_ID", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
DEFAULT_CONFIG_FILE = "./configs/default.yaml"

REQUIRED_SECTIONS = ['app', 'providers', 'thresholds']


class ConfigLoader:
    """Loads and validates YAML configuration with environment variable substitution."""

    def __init__(self, config_path: str):
        self.config_path = Path(config_path)
        self._config: Optional[Dict[str, Any]] = None
        self._load()

    def _load(self):
        """Load YAML config file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r', encoding='utf-8') as f:
            self._config = yaml.safe_load(f) or {}

        for section in REQUIRED_SECTIONS:
            if section not in self._config:
                raise ValueError(f"Missing required config section: {section}")

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get config value by dot-notation path.
        Example: config.get('cache.max_age_minutes') -> 15
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
                if value is None:
                    return default
            else:
                return default

        # ${VAR} strings are read from the environment
        if isinstance(value, str) and value.startswith('${') and value.endswith('}'):
            env_var = value[2:-1]
            return os.getenv(env_var, default)

        return value

    @property
    def raw(self) -> Dict[str, Any]:
        """Get raw config dict."""
        return self._config


# Global config instance (lazy-loaded, used by the CLI entry point)
_config_instance: Optional[ConfigLoader] = None


def get_config() -> ConfigLoader:
    """Get global config instance (singleton pattern)."""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigLoader(os.getenv("CONFIG_FILE", DEFAULT_CONFIG_FILE))
    return _config_instance


def _cfg(config: Optional[ConfigLoader]) -> ConfigLoader:
    return config if config is not None else get_config()


def _as_float(value: Any, default: float, low: Optional[float] = None, high: Optional[float] = None) -> float:
    """Coerce to float, falling back to default when invalid or out of range."""
    try:
        result = float(value)
    except (ValueError, TypeError):
        return default
    if result != result:  # NaN
        return default
    if low is not None and result < low:
        return default
    if high is not None and result > high:
        return default
    return result


def _as_int(value: Any, default: int, low: Optional[int] = None, high: Optional[int] = None) -> int:
    try:
        result = int(value)
    except (ValueError, TypeError):
        return default
    if low is not None and result < low:
        return default
    if high is not None and result > high:
        return default
    return result


# Helper functions for common config access
def get_app_name(config: Optional[ConfigLoader] = None) -> str:
    return _cfg(config).get('app.name', 'Crypto Rotation Monitor')


def get_app_version(config: Optional[ConfigLoader] = None) -> str:
    return _cfg(config).get('app.version', '1.0.0')


@dataclass(frozen=True)
class Thresholds:
    """Classifier, allocation-modifier and anti-flapping constants."""
    btc_dominance_high: float = 68.0
    btc_dominance_climbing: float = 52.0
    btc_dominance_low: float = 50.0
    eth_btc_bounce_zone: Tuple[float, float] = (0.050, 0.053)
    min_consecutive_candles: int = 2
    total3_eth_alt_entry: float = 0.8
    total3_eth_cash: float = 0.5
    total3_eth_alt_exit: float = 0.7
    total3_eth_momentum: float = 1.0
    extreme_move_pct: float = 10.0
    alt_exit_cash_alt_24h: float = -5.0
    alt_exit_cash_total_24h: float = -3.0
    cash_reentry_btc_24h: float = 2.0
    min_dwell_days: float = 7.0
    trend_epsilon: float = 0.0

    @property
    def bounce_low(self) -> float:
        return self.eth_btc_bounce_zone[0]

    @property
    def bounce_high(self) -> float:
        return self.eth_btc_bounce_zone[1]


def get_thresholds(config: Optional[ConfigLoader] = None) -> Thresholds:
    """Get classifier thresholds with validation and safe defaults."""
    raw = _cfg(config).get('thresholds', {})
    if not isinstance(raw, dict):
        raw = {}

    d = Thresholds()

    high = _as_float(raw.get('btc_dominance_high', d.btc_dominance_high), d.btc_dominance_high, 0, 100)
    climbing = _as_float(raw.get('btc_dominance_climbing', d.btc_dominance_climbing), d.btc_dominance_climbing, 0, 100)
    low = _as_float(raw.get('btc_dominance_low', d.btc_dominance_low), d.btc_dominance_low, 0, 100)
    if not low <= climbing <= high:
        logger.warning(f"Dominance thresholds out of order ({low}/{climbing}/{high}), using defaults")
        high, climbing, low = d.btc_dominance_high, d.btc_dominance_climbing, d.btc_dominance_low

    zone = raw.get('eth_btc_bounce_zone', list(d.eth_btc_bounce_zone))
    try:
        zone_low, zone_high = float(zone[0]), float(zone[1])
        if zone_low <= 0 or zone_high < zone_low:
            raise ValueError(zone)
        bounce_zone = (zone_low, zone_high)
    except (ValueError, TypeError, IndexError, KeyError):
        logger.warning(f"Invalid eth_btc_bounce_zone {zone!r}, using default")
        bounce_zone = d.eth_btc_bounce_zone

    return Thresholds(
        btc_dominance_high=high,
        btc_dominance_climbing=climbing,
        btc_dominance_low=low,
        eth_btc_bounce_zone=bounce_zone,
        min_consecutive_candles=_as_int(raw.get('min_consecutive_candles', d.min_consecutive_candles),
                                        d.min_consecutive_candles, 1, 52),
        total3_eth_alt_entry=_as_float(raw.get('total3_eth_alt_entry', d.total3_eth_alt_entry), d.total3_eth_alt_entry, 0),
        total3_eth_cash=_as_float(raw.get('total3_eth_cash', d.total3_eth_cash), d.total3_eth_cash, 0),
        total3_eth_alt_exit=_as_float(raw.get('total3_eth_alt_exit', d.total3_eth_alt_exit), d.total3_eth_alt_exit, 0),
        total3_eth_momentum=_as_float(raw.get('total3_eth_momentum', d.total3_eth_momentum), d.total3_eth_momentum, 0),
        extreme_move_pct=_as_float(raw.get('extreme_move_pct', d.extreme_move_pct), d.extreme_move_pct, 0),
        alt_exit_cash_alt_24h=_as_float(raw.get('alt_exit_cash_alt_24h', d.alt_exit_cash_alt_24h), d.alt_exit_cash_alt_24h),
        alt_exit_cash_total_24h=_as_float(raw.get('alt_exit_cash_total_24h', d.alt_exit_cash_total_24h), d.alt_exit_cash_total_24h),
        cash_reentry_btc_24h=_as_float(raw.get('cash_reentry_btc_24h', d.cash_reentry_btc_24h), d.cash_reentry_btc_24h),
        min_dwell_days=_as_float(raw.get('min_dwell_days', d.min_dwell_days), d.min_dwell_days, 0),
        trend_epsilon=_as_float(raw.get('trend_epsilon', d.trend_epsilon), d.trend_epsilon, 0),
    )


DEFAULT_ALLOCATIONS: Dict[str, Dict[str, float]] = {
    'BTC_HEAVY': {'btc': 80, 'eth': 10, 'alt': 5, 'cash': 5},
    'ETH_ROTATION': {'btc': 20, 'eth': 65, 'alt': 10, 'cash': 5},
    'ALT_SEASON': {'btc': 10, 'eth': 20, 'alt': 65, 'cash': 5},
    'CASH_HEAVY': {'btc': 25, 'eth': 25, 'alt': 0, 'cash': 50},
}


def get_allocation_table(config: Optional[ConfigLoader] = None) -> Dict[str, Dict[str, float]]:
    """Base allocation per phase; a phase entry that does not sum to 100 is replaced by its default."""
    raw = _cfg(config).get('allocations', {})
    if not isinstance(raw, dict):
        raw = {}

    table = {}
    for phase, default in DEFAULT_ALLOCATIONS.items():
        entry = raw.get(phase)
        try:
            candidate = {k: float(entry[k]) for k in ('btc', 'eth', 'alt', 'cash')}
            if any(v < 0 for v in candidate.values()) or abs(sum(candidate.values()) - 100) > 1e-6:
                raise ValueError(candidate)
            table[phase] = candidate
        except (ValueError, TypeError, KeyError):
            if entry is not None:
                logger.warning(f"Invalid allocation for {phase}: {entry!r}, using default")
            table[phase] = {k: float(v) for k, v in default.items()}
    return table


def get_cache_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    raw = _cfg(config).get('cache', {})
    if not isinstance(raw, dict):
        raw = {}
    return {
        'max_age_minutes': _as_float(raw.get('max_age_minutes', 15), 15, 0),
        'refresh_timeout_seconds': _as_float(raw.get('refresh_timeout_seconds', 120), 120, 1),
    }


PROVIDER_DEFAULTS: Dict[str, Dict[str, Any]] = {
    'coingecko': {'base_url': 'https://api.coingecko.com/api/v3', 'max_calls': 1, 'period_seconds': 6},
    'coinmarketcap': {'base_url': 'https://pro-api.coinmarketcap.com/v1', 'max_calls': 1, 'period_seconds': 3},
    'coincap': {'base_url': 'https://api.coincap.io/v2', 'max_calls': 5, 'period_seconds': 1},
    'cryptocompare': {'base_url': 'https://min-api.cryptocompare.com/data', 'max_calls': 5, 'period_seconds': 1},
    'binance': {'base_url': 'https://api.binance.com', 'max_calls': 10, 'period_seconds': 1},
}


def get_provider_config(name: str, config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    """Get per-provider settings (base URL, API key, timeout, retries, rate limit)."""
    raw = _cfg(config).get(f'providers.{name}', {})
    if not isinstance(raw, dict):
        raw = {}
    defaults = PROVIDER_DEFAULTS.get(name, {'base_url': '', 'max_calls': 1, 'period_seconds': 1})

    api_key = raw.get('api_key', '')
    if isinstance(api_key, str) and api_key.startswith('${') and api_key.endswith('}'):
        api_key = os.getenv(api_key[2:-1], '')

    return {
        'enabled': bool(raw.get('enabled', True)),
        'base_url': raw.get('base_url') or defaults['base_url'],
        'api_key': api_key or '',
        'timeout_seconds': _as_float(raw.get('timeout_seconds', 15), 15, 1, 120),
        'max_retries': _as_int(raw.get('max_retries', 3), 3, 1, 10),
        'max_calls': _as_int(raw.get('max_calls', defaults['max_calls']), defaults['max_calls'], 1),
        'period_seconds': _as_float(raw.get('period_seconds', defaults['period_seconds']), defaults['period_seconds'], 0),
        'top_coins_limit': _as_int(raw.get('top_coins_limit', 100), 100, 10, 250),
    }


def get_provider_order(config: Optional[ConfigLoader] = None) -> List[str]:
    """Market-data providers in priority order (primary first)."""
    order = _cfg(config).get('providers.order', ['coingecko', 'coinmarketcap', 'coincap'])
    return [name for name in order if get_provider_config(name, config)['enabled']]


def get_history_provider_order(config: Optional[ConfigLoader] = None) -> List[str]:
    """Historical-candle providers in priority order."""
    order = _cfg(config).get('providers.history_order', ['binance', 'cryptocompare', 'coingecko'])
    return [name for name in order if get_provider_config(name, config)['enabled']]


def get_scheduler_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    raw = _cfg(config).get('scheduler', {})
    if not isinstance(raw, dict):
        raw = {}
    return {
        'market_data_minutes': _as_float(raw.get('market_data_minutes', 5), 5, 0.1),
        'phase_check_minutes': _as_float(raw.get('phase_check_minutes', 15), 15, 0.1),
        'cleanup_hour': _as_int(raw.get('cleanup_hour', 3), 3, 0, 23),
        'timezone': raw.get('timezone', 'UTC'),
    }


def get_backtest_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    raw = _cfg(config).get('backtest', {})
    if not isinstance(raw, dict):
        raw = {}
    return {
        'initial_capital': _as_float(raw.get('initial_capital', 100000), 100000, 0),
        'cash_daily_yield': _as_float(raw.get('cash_daily_yield', 0.0001), 0.0001, 0, 0.01),
        'alt_beta': _as_float(raw.get('alt_beta', 1.5), 1.5, 0),
        'min_history_days': _as_int(raw.get('min_history_days', 14), 14, 2),
        'btc_supply': _as_float(raw.get('btc_supply', 21_000_000), 21_000_000, 1),
        'eth_supply': _as_float(raw.get('eth_supply', 120_000_000), 120_000_000, 1),
        'other_to_eth_mcap': _as_float(raw.get('other_to_eth_mcap', 3.0), 3.0, 0),
        'total3_to_eth_mcap': _as_float(raw.get('total3_to_eth_mcap', 2.0), 2.0, 0),
    }


def get_database_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    raw = _cfg(config).get('database', {})
    if not isinstance(raw, dict):
        raw = {}
    cleanup = raw.get('cleanup', {}) if isinstance(raw.get('cleanup', {}), dict) else {}
    return {
        'url': os.getenv("DB_URL") or raw.get('url', 'sqlite:///./data/rotation.db'),
        'cleanup_enabled': bool(cleanup.get('enabled', True)),
        'retention_days': _as_int(cleanup.get('retention_days', 90), 90, 1),
    }


def get_healthcheck_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    raw = _cfg(config).get('healthcheck', {})
    if not isinstance(raw, dict):
        raw = {}
    return {
        'enabled': bool(raw.get('enabled', True)),
        'host': raw.get('host', '0.0.0.0'),
        'port': _as_int(raw.get('port', 8080), 8080, 1, 65535),
    }


def get_logging_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    raw = _cfg(config).get('logging', {})
    if not isinstance(raw, dict):
        raw = {}
    return {
        'level': (os.getenv("LOG_LEVEL") or str(raw.get('level', 'INFO'))).upper(),
        'log_dir': raw.get('dir') or None,
        'file_enabled': bool(raw.get('file', True)),
        'rotation': str(raw.get('rotation', '10 MB')),
        'retention': _as_int(raw.get('retention', 7), 7, 1),
    }


def validate_environment() -> None:
    """Warn about missing optional secrets; nothing here is fatal."""
    if not BOT_TOKEN:
        logger.warning("BOT_TOKEN not set - notifications run in dry-run mode")
    if not CHANNEL_CHAT_ID:
        logger.warning("CHANNEL_CHAT_ID not set - alerts will be logged only")
    if not os.getenv("COINMARKETCAP_API_KEY", "").strip():
        logger.warning("COINMARKETCAP_API_KEY not set - CoinMarketCap backup will fail over")
