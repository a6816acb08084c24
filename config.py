#!/usr/bin/env python3
"""
Settings and logging for the feed synchronizer.

Every tunable is read once at import into the global `config` object, from
the process environment, an optional `.env` file, an optional YAML secrets
file and `feeds.yaml`. Logging is configured here too, so importing this
module first gives every other module a ready `get_logger()`.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

# Bounds for a source's sync frequency, in minutes
MIN_SYNC_FREQUENCY = 5
MAX_SYNC_FREQUENCY = 1440

LOG_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}
# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("aiohttp", "apscheduler")


def _setup_global_logger():
    """Configure the root handler once for the whole process.

    LOG_LEVEL picks the level (DEBUG, INFO, WARNING, ERROR; default INFO) and
    LOG_TIMESTAMPS=false drops the timestamp column.
    """
    level = LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)
    fields = ['%(name)s', '%(levelname)s', '%(message)s']
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        fields.insert(0, '%(asctime)s')

    basicConfig(
        level=level,
        format=' - '.join(fields),
        handlers=[StreamHandler(sys.stdout)],
        force=True,
    )
    for name in QUIET_LOGGERS:
        getLogger(name).setLevel(WARNING)

    return getLogger("FeedSync")


def get_logger(name: str):
    """Return the "FeedSync.<name>" logger for a module (e.g. "fetcher", "scheduler")."""
    return getLogger(f"FeedSync.{name}")


logger = _setup_global_logger()


class Config:
    """Process-wide settings.

    Later sources override earlier ones: process environment, `.env` beside
    this file, the YAML file named by SECRETS_FILE, then feeds.yaml for seed
    sources and the retention threshold.
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        here = path.dirname(path.abspath(__file__))
        dotenv_file = path.join(here, '.env')
        if path.exists(dotenv_file):
            load_dotenv(dotenv_file)
            logger.info(f"Read .env overrides from {dotenv_file}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Integer setting with a lower bound; bad or too-small values fall back to `default`."""
        raw = environ.get(env_var)
        if raw is None:
            return default
        try:
            value = int(raw)
        except (TypeError, ValueError):
            logger.warning(f"{env_var}={raw!r} is not an integer; using {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var}={value} is below {min_val}; using {default}")
            return default
        return value

    def _validate_bool(self, env_var: str, default: bool) -> bool:
        raw = environ.get(env_var)
        if raw is None:
            return default
        return raw.strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", "FeedSync/1.0 (+https://github.com/feed-sync)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 15, 1)

        # Scheduling: a fixed interval, when given, replaces the cron expression
        self.SYNC_CRON = environ.get("SYNC_CRON", "*/30 * * * *").strip() or "*/30 * * * *"
        self.SYNC_INTERVAL_MINUTES = None
        if environ.get("SYNC_INTERVAL_MINUTES"):
            self.SYNC_INTERVAL_MINUTES = self._validate_positive_int("SYNC_INTERVAL_MINUTES", 30, 1)
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")
        self.SYNC_ON_STARTUP = self._validate_bool("SYNC_ON_STARTUP", True)
        self.SYNC_STARTUP_DELAY = self._validate_positive_int("SYNC_STARTUP_DELAY", 10, 0)

        self.SYNC_CONCURRENCY = self._validate_positive_int("SYNC_CONCURRENCY", 3, 1)

        self.RETENTION_DAYS = self._validate_positive_int("ARTICLES_RETENTION_DAYS", 15, 1)
        # Advisory only: reported, never enforced by the sync path
        self.MAX_ARTICLES_PER_SOURCE = self._validate_positive_int("MAX_ARTICLES_PER_SOURCE", 100, 1)
        self.REPAIR_BATCH_SIZE = self._validate_positive_int("REPAIR_BATCH_SIZE", 1000, 1)

        default_frequency = self._validate_positive_int("DEFAULT_SYNC_FREQUENCY", 30, 1)
        self.DEFAULT_SYNC_FREQUENCY = min(max(default_frequency, MIN_SYNC_FREQUENCY), MAX_SYNC_FREQUENCY)

        here = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(here, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = 1
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(here, "feeds.yaml"))

    def _load_secrets_file(self):
        """Copy variables from the YAML file named by SECRETS_FILE into the environment.

        The file holds a flat mapping of names to values, or the same mapping
        under an `environment` key.
        """
        secrets_path = environ.get("SECRETS_FILE")
        if not secrets_path:
            return

        data = self._safe_read_yaml(secrets_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(data, dict):
            return

        variables = data['environment'] if isinstance(data.get('environment'), dict) else data
        loaded = 0
        for key, value in variables.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Ignoring secrets entry {key!r}")
                continue
            environ[key] = str(value)
            loaded += 1
        logger.info(f"Applied {loaded} variables from {secrets_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Parse a YAML file after existence, permission and size checks.

        `kind` labels log messages ('secrets', 'feeds'). Returns None when the
        file is missing, unreadable, too large, empty or malformed.
        """
        label = kind.capitalize()
        if not path.isfile(file_path):
            logger.warning(f"{label} file not found at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"{label} file at {file_path} is not readable")
            return None
        try:
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{label} file {file_path} is {size} bytes, over the {max_size} byte limit")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Malformed YAML in {kind} file {file_path}: {e}")
            return None
        except OSError as e:
            logger.error(f"Could not read {kind} file {file_path}: {e}")
            return None
        if not data:
            logger.warning(f"{label} file {file_path} is empty")
            return None
        return data

    def _load_feed_sources(self) -> None:
        """Populate self.FEED_SOURCES from feeds.yaml.

        Each entry under `sources:` becomes a dict with name, url, feed_url,
        sync_frequency and active. Invalid entries are skipped with a warning.
        Any failure results in an empty mapping.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        self.FEED_SOURCES: Dict[str, Dict[str, Any]] = {}
        if not isinstance(config_data, dict):
            return

        sources_section = config_data.get('sources')
        if isinstance(sources_section, dict):
            for name, source_cfg in sources_section.items():
                if not isinstance(source_cfg, dict) or not source_cfg.get('url'):
                    logger.warning(f"Skipping invalid source configuration for '{name}': {source_cfg}")
                    continue
                frequency = source_cfg.get('sync_frequency', self.DEFAULT_SYNC_FREQUENCY)
                try:
                    frequency = int(frequency)
                except (TypeError, ValueError):
                    logger.warning(f"Invalid sync_frequency for '{name}', using {self.DEFAULT_SYNC_FREQUENCY}")
                    frequency = self.DEFAULT_SYNC_FREQUENCY
                self.FEED_SOURCES[str(name)] = {
                    'name': str(name),
                    'url': str(source_cfg['url']).strip(),
                    'feed_url': (str(source_cfg['feed_url']).strip() if source_cfg.get('feed_url') else None),
                    'sync_frequency': frequency,
                    'active': bool(source_cfg.get('active', True)),
                }
            logger.info(f"Loaded {len(self.FEED_SOURCES)} sources from {feeds_path}")
        elif sources_section is not None:
            logger.warning(f"'sources' in {feeds_path} must be a mapping; ignoring")

        thresholds = config_data.get('thresholds')
        if isinstance(thresholds, dict) and thresholds.get('retention_days') is not None:
            raw = thresholds.get('retention_days')
            try:
                value = int(str(raw).strip())
                if value >= 1:
                    self.RETENTION_DAYS = value
                else:
                    logger.warning(f"retention_days must be >=1; keeping {self.RETENTION_DAYS} (got {raw})")
            except ValueError:
                logger.warning(f"Invalid retention_days value '{raw}' in feeds.yaml; keeping {self.RETENTION_DAYS}")

    def reload_sources(self):
        """Reload seed sources from configuration file."""
        logger.info("Reloading source configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "sync_cron": self.SYNC_CRON,
            "sync_interval_minutes": self.SYNC_INTERVAL_MINUTES,
            "scheduler_timezone": self.SCHEDULER_TIMEZONE,
            "sync_on_startup": self.SYNC_ON_STARTUP,
            "sync_concurrency": self.SYNC_CONCURRENCY,
            "retention_days": self.RETENTION_DAYS,
            "max_articles_per_source": self.MAX_ARTICLES_PER_SOURCE,
            "seed_source_count": len(self.FEED_SOURCES),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
