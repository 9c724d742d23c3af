"""Configuration loader and validator for the weather resilience layer."""

import copy
import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional


logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Configuration error exception."""
    pass


def _parse_bool(value: str) -> bool:
    return value.lower() in ('true', '1', 'yes', 'on')


def _parse_list(value: str) -> list:
    return [item.strip() for item in value.split(',') if item.strip()]


DEFAULT_USER_AGENT = 'Premium Weather App (https://weather.andernet.dev)'

DEFAULT_CONFIG: Dict[str, Any] = {
    'network': {
        'timeout_ms': 5000,
        'retries': 2,
        'retry_delay_ms': 500,
        'stale_timeout_ms': 1000,
        'user_agent': DEFAULT_USER_AGENT,
    },
    'schedulers': {
        # Nominatim usage policy: one request per second, we keep a courtesy margin
        'geocoding': {
            'max_concurrent': 1,
            'min_delay_ms': 1200,
            'batch_window_ms': 500,
            'max_queue_size': 20,
        },
        'forecast': {
            'max_concurrent': 5,
            'min_delay_ms': 100,
            'batch_window_ms': 200,
            'max_queue_size': 50,
        },
    },
    'sync': {
        'storage_file': 'state/pending_sync.json',
        'storage_key': 'weather-pending-sync',
        'max_retry_count': 3,
        'retry_delay_ms': 5000,
        'order_within_priority': 'oldest_first',
    },
    'cache': {
        'version': 'v2.0.0',
        'storage_dir': None,
        'intercept_api': True,
        'origin': 'http://localhost',
        'static_urls': ['/', '/index.html', '/manifest.json'],
        'preload_cities': ['New York, US', 'London, GB', 'Tokyo, JP'],
        'report_interval_seconds': 300,
    },
    'upstream': {
        'forecast_url': 'https://api.open-meteo.com/v1/forecast',
        'geocoding_search_url': 'https://nominatim.openstreetmap.org/search',
        'geocoding_reverse_url': 'https://nominatim.openstreetmap.org/reverse',
    },
    'connectivity': {
        'probe_url': 'https://api.open-meteo.com/v1/forecast?latitude=0&longitude=0',
        'check_interval_seconds': 30,
        'assume_online': True,
    },
    'logging': {
        'level': 'INFO',
        'log_dir': 'logs',
        'max_file_size_mb': 10,
        'backup_count': 5,
    },
    'health_server': {
        'enabled': True,
        'host': '0.0.0.0',
        'port': 4330,
    },
}

ORDER_WITHIN_PRIORITY_CHOICES = ('oldest_first', 'newest_first')

# Environment variable to config key mapping
# All environment variables must use the WEATHER_RESILIENCE_ prefix
ENV_VAR_MAPPING = {
    # Network settings
    'WEATHER_RESILIENCE_NETWORK_TIMEOUT_MS': ('network', 'timeout_ms', int),
    'WEATHER_RESILIENCE_NETWORK_RETRIES': ('network', 'retries', int),
    'WEATHER_RESILIENCE_NETWORK_RETRY_DELAY_MS': ('network', 'retry_delay_ms', int),
    'WEATHER_RESILIENCE_NETWORK_STALE_TIMEOUT_MS': ('network', 'stale_timeout_ms', int),
    'WEATHER_RESILIENCE_USER_AGENT': ('network', 'user_agent', str),

    # Geocoding scheduler
    'WEATHER_RESILIENCE_GEOCODING_MAX_CONCURRENT': ('schedulers', 'geocoding', 'max_concurrent', int),
    'WEATHER_RESILIENCE_GEOCODING_MIN_DELAY_MS': ('schedulers', 'geocoding', 'min_delay_ms', int),
    'WEATHER_RESILIENCE_GEOCODING_BATCH_WINDOW_MS': ('schedulers', 'geocoding', 'batch_window_ms', int),
    'WEATHER_RESILIENCE_GEOCODING_MAX_QUEUE_SIZE': ('schedulers', 'geocoding', 'max_queue_size', int),

    # Forecast scheduler
    'WEATHER_RESILIENCE_FORECAST_MAX_CONCURRENT': ('schedulers', 'forecast', 'max_concurrent', int),
    'WEATHER_RESILIENCE_FORECAST_MIN_DELAY_MS': ('schedulers', 'forecast', 'min_delay_ms', int),
    'WEATHER_RESILIENCE_FORECAST_BATCH_WINDOW_MS': ('schedulers', 'forecast', 'batch_window_ms', int),
    'WEATHER_RESILIENCE_FORECAST_MAX_QUEUE_SIZE': ('schedulers', 'forecast', 'max_queue_size', int),

    # Offline sync queue
    'WEATHER_RESILIENCE_SYNC_STORAGE_FILE': ('sync', 'storage_file', str),
    'WEATHER_RESILIENCE_SYNC_MAX_RETRY_COUNT': ('sync', 'max_retry_count', int),
    'WEATHER_RESILIENCE_SYNC_ORDER_WITHIN_PRIORITY': ('sync', 'order_within_priority', str),

    # Cache engine
    'WEATHER_RESILIENCE_CACHE_VERSION': ('cache', 'version', str),
    'WEATHER_RESILIENCE_CACHE_STORAGE_DIR': ('cache', 'storage_dir', str),
    'WEATHER_RESILIENCE_CACHE_INTERCEPT_API': ('cache', 'intercept_api', _parse_bool),
    'WEATHER_RESILIENCE_CACHE_ORIGIN': ('cache', 'origin', str),
    'WEATHER_RESILIENCE_CACHE_PRELOAD_CITIES': ('cache', 'preload_cities', _parse_list),

    # Upstream endpoints
    'WEATHER_RESILIENCE_FORECAST_URL': ('upstream', 'forecast_url', str),
    'WEATHER_RESILIENCE_GEOCODING_SEARCH_URL': ('upstream', 'geocoding_search_url', str),
    'WEATHER_RESILIENCE_GEOCODING_REVERSE_URL': ('upstream', 'geocoding_reverse_url', str),

    # Connectivity
    'WEATHER_RESILIENCE_CONNECTIVITY_PROBE_URL': ('connectivity', 'probe_url', str),
    'WEATHER_RESILIENCE_CONNECTIVITY_CHECK_INTERVAL_SECONDS': ('connectivity', 'check_interval_seconds', int),

    # Logging settings
    'WEATHER_RESILIENCE_LOG_LEVEL': ('logging', 'level', str),
    'WEATHER_RESILIENCE_LOG_DIR': ('logging', 'log_dir', str),

    # Health server settings
    'WEATHER_RESILIENCE_HEALTH_SERVER_ENABLED': ('health_server', 'enabled', _parse_bool),
    'WEATHER_RESILIENCE_HEALTH_SERVER_HOST': ('health_server', 'host', str),
    'WEATHER_RESILIENCE_HEALTH_SERVER_PORT': ('health_server', 'port', int),
}


def get_env_var(env_var: str, convert_type: type) -> Optional[Any]:
    """
    Get environment variable and convert to specified type.

    Args:
        env_var: Environment variable name
        convert_type: Type conversion function (int, float, str, or callable)

    Returns:
        Converted value or None if not set
    """
    value = os.environ.get(env_var)
    if value is None:
        return None

    try:
        if callable(convert_type):
            return convert_type(value)
        return value
    except (ValueError, TypeError) as e:
        logger.warning(f"Failed to convert environment variable {env_var}={value}: {e}")
        return None


def apply_env_overrides(config: Dict[str, Any]) -> tuple[Dict[str, Any], Dict[str, str]]:
    """
    Apply environment variable overrides to configuration and track which fields were overridden.

    Args:
        config: Configuration dictionary

    Returns:
        Tuple of (config with overrides applied, dict mapping config paths to env var names)
    """
    logger.debug("Checking for environment variable overrides...")

    env_overridden_paths = {}

    for env_var, mapping_tuple in ENV_VAR_MAPPING.items():
        value = get_env_var(env_var, mapping_tuple[-1])  # Last element is the convert function

        if value is not None:
            sections = mapping_tuple[:-1]

            current = config
            for section in sections[:-1]:
                if not isinstance(current.get(section), dict):
                    current[section] = {}
                current = current[section]

            final_key = sections[-1]
            current[final_key] = value

            path = '.'.join(sections)
            env_overridden_paths[path] = env_var
            logger.info(f"Environment variable override: {env_var} -> {path} = {value}")

    return config, env_overridden_paths


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge override into a copy of base.

    Args:
        base: Default values
        override: Values taking precedence

    Returns:
        New merged dictionary
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class Config:
    """Configuration manager for the application."""

    def __init__(self, config_path: str = None):
        """
        Initialize configuration from YAML file with environment variable overrides.

        Args:
            config_path: Path to the configuration file (defaults to
                WEATHER_RESILIENCE_CONFIG_PATH env var or "config.yaml")
        """
        if config_path is None:
            config_path = os.environ.get('WEATHER_RESILIENCE_CONFIG_PATH', 'config.yaml')

        logger.info(f"Loading configuration from: {config_path}")
        self.config_path = Path(config_path)
        self._config = deep_merge(DEFAULT_CONFIG, self._load_config())

        self._config, self._env_overridden_paths = apply_env_overrides(self._config)

        self._validate_config()
        logger.info("Configuration loaded and validated successfully")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """
        Build a configuration from an in-memory dictionary (no file, no env overrides).

        Args:
            data: Partial configuration merged over the defaults

        Returns:
            Validated Config instance
        """
        instance = cls.__new__(cls)
        instance.config_path = None
        instance._config = deep_merge(DEFAULT_CONFIG, data or {})
        instance._env_overridden_paths = {}
        instance._validate_config()
        return instance

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file, or return an empty override set if it doesn't exist."""
        if not self.config_path.exists():
            logger.warning(f"Configuration file not found: {self.config_path}")
            logger.info("Using built-in defaults and environment variables for configuration")
            return {}

        try:
            logger.debug(f"Reading configuration file: {self.config_path}")
            with open(self.config_path, 'r') as f:
                config = yaml.safe_load(f)

            if config is None:
                logger.warning("Configuration file is empty, using defaults")
                return {}

            if not isinstance(config, dict):
                logger.error(f"Configuration must be a dictionary, got: {type(config)}")
                raise ConfigError(f"Invalid configuration format: expected dictionary, got {type(config)}")

            logger.info(f"Successfully parsed configuration with {len(config)} top-level sections")
            logger.debug(f"Configuration sections: {list(config.keys())}")
            return config

        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML configuration file: {e}")
            raise ConfigError(f"Error parsing configuration file: {e}")
        except OSError as e:
            logger.error(f"Unexpected error loading configuration: {type(e).__name__}: {e}")
            raise ConfigError(f"Error loading configuration: {e}")

    def _require_positive_int(self, section: str, key: str, value: Any, allow_zero: bool = False) -> None:
        try:
            number = int(value)
        except (ValueError, TypeError):
            logger.error(f"Invalid value for {section}.{key}: {value}")
            raise ConfigError(f"{section}.{key} must be an integer, got: {value}")
        if number < 0 or (number == 0 and not allow_zero):
            qualifier = "non-negative" if allow_zero else "positive"
            logger.error(f"Invalid {section}.{key}: {number} (must be {qualifier})")
            raise ConfigError(f"{section}.{key} must be {qualifier}, got: {number}")

    def _validate_config(self):
        """Validate configuration values."""
        logger.debug("Validating configuration...")

        for section in DEFAULT_CONFIG:
            if not isinstance(self._config.get(section), dict):
                logger.error(f"Section '{section}' must be a dictionary, got: {type(self._config.get(section))}")
                raise ConfigError(f"Configuration section '{section}' must be a dictionary")

        network = self._config['network']
        self._require_positive_int('network', 'timeout_ms', network['timeout_ms'])
        self._require_positive_int('network', 'retries', network['retries'])
        self._require_positive_int('network', 'retry_delay_ms', network['retry_delay_ms'], allow_zero=True)
        self._require_positive_int('network', 'stale_timeout_ms', network['stale_timeout_ms'])

        for name, queue_config in self._config['schedulers'].items():
            if not isinstance(queue_config, dict):
                logger.error(f"Scheduler '{name}' must be a dictionary")
                raise ConfigError(f"Scheduler '{name}' configuration must be a dictionary")
            section = f"schedulers.{name}"
            self._require_positive_int(section, 'max_concurrent', queue_config.get('max_concurrent'))
            self._require_positive_int(section, 'min_delay_ms', queue_config.get('min_delay_ms'), allow_zero=True)
            self._require_positive_int(section, 'batch_window_ms', queue_config.get('batch_window_ms'), allow_zero=True)
            self._require_positive_int(section, 'max_queue_size', queue_config.get('max_queue_size'))

        sync = self._config['sync']
        self._require_positive_int('sync', 'max_retry_count', sync['max_retry_count'])
        if sync['order_within_priority'] not in ORDER_WITHIN_PRIORITY_CHOICES:
            logger.error(f"Invalid sync.order_within_priority: {sync['order_within_priority']}")
            raise ConfigError(
                f"sync.order_within_priority must be one of {ORDER_WITHIN_PRIORITY_CHOICES}, "
                f"got: {sync['order_within_priority']}"
            )

        level = str(self._config['logging'].get('level', 'INFO')).upper()
        if not isinstance(logging.getLevelName(level), int):
            logger.error(f"Unknown log level: {level}")
            raise ConfigError(f"logging.level must be a valid log level, got: {level}")

        port = self._config['health_server'].get('port')
        if not isinstance(port, int) or not (0 < port < 65536):
            logger.error(f"Invalid health server port: {port}")
            raise ConfigError(f"health_server.port must be between 1 and 65535, got: {port}")

        logger.debug("Configuration validation completed successfully")

    @property
    def network(self) -> Dict[str, Any]:
        """Get network configuration."""
        return self._config['network']

    @property
    def schedulers(self) -> Dict[str, Dict[str, Any]]:
        """Get per-API scheduler configuration."""
        return self._config['schedulers']

    @property
    def sync(self) -> Dict[str, Any]:
        """Get offline sync queue configuration."""
        return self._config['sync']

    @property
    def cache(self) -> Dict[str, Any]:
        """Get cache engine configuration."""
        return self._config['cache']

    @property
    def upstream(self) -> Dict[str, Any]:
        """Get upstream endpoint configuration."""
        return self._config['upstream']

    @property
    def connectivity(self) -> Dict[str, Any]:
        """Get connectivity monitor configuration."""
        return self._config['connectivity']

    @property
    def logging_config(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self._config['logging']

    @property
    def health_server(self) -> Dict[str, Any]:
        """Get health server configuration."""
        return self._config['health_server']

    @property
    def env_overridden_paths(self) -> Dict[str, str]:
        """
        Get mapping of config paths to environment variable names that override them.

        Returns:
            Dictionary mapping config paths (e.g., 'network.timeout_ms') to env var names
        """
        return self._env_overridden_paths
