import os
import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from merdeglace.models import DatabaseParams, RetentionPolicy


logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is missing or invalid. Fatal at startup."""
    pass


class Config:
    """Base configuration (values as read from the environment)"""

    # Content and database
    WORDPRESS_DIRECTORY = os.environ.get('WORDPRESS_DIRECTORY')
    CONTENT_EXCLUDE = os.environ.get('CONTENT_EXCLUDE', '')
    MYSQL_HOST = os.environ.get('MYSQL_HOST')
    MYSQL_PORT = os.environ.get('MYSQL_PORT', '3306')
    MYSQL_DATABASE = os.environ.get('MYSQL_DATABASE')
    MYSQL_USER = os.environ.get('MYSQL_USER')
    MYSQL_PASSWORD = os.environ.get('MYSQL_PASSWORD')
    MYSQLDUMP_BINARY = os.environ.get('MYSQLDUMP_BINARY', 'mysqldump')

    # Local retention
    BACKUPS_DIRECTORY = os.environ.get('BACKUPS_DIRECTORY', 'backups')
    BACKUP_INTERVAL = os.environ.get('BACKUP_INTERVAL', '1')  # days
    ARCHIVE_ROLLING_PERIOD = os.environ.get('ARCHIVE_ROLLING_PERIOD', '7')  # days

    # Cold storage
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-2')
    AWS_GLACIER_VAULT = os.environ.get('AWS_GLACIER_VAULT')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    AWS_GLACIER_CREATE_VAULT = os.environ.get('AWS_GLACIER_CREATE_VAULT', 'true')

    # Scheduler
    STAGE_TIMEOUT = os.environ.get('STAGE_TIMEOUT', '3600')  # seconds, 0 disables
    ALERT_AFTER_FAILURES = os.environ.get('ALERT_AFTER_FAILURES', '3')
    SCHEDULER_POLL_INTERVAL = os.environ.get('SCHEDULER_POLL_INTERVAL', '60')  # seconds
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_AUTOSTART = True

    # Logging
    VERBOSITY = os.environ.get('VERBOSITY', 'info')
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    BACKUPS_DIRECTORY = os.environ.get('BACKUPS_DIRECTORY') or os.path.join(DATA_DIR, 'backups')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    VERBOSITY = os.environ.get('VERBOSITY', 'debug')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration (tests override paths and credentials)"""
    DEBUG = False
    TESTING = True
    SCHEDULER_AUTOSTART = False
    LOG_DIR = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def config_mapping(config_name: Optional[str] = None) -> dict:
    """
    Uppercase attributes of a configuration class as a plain dict.

    Args:
        config_name: Key in `config` (default: FLASK_ENV or 'production')
    """
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')
    if config_name not in config:
        raise ConfigError(f"Unknown configuration: {config_name}. Valid options: {list(config.keys())}")

    config_class = config[config_name]
    return {key: getattr(config_class, key) for key in dir(config_class) if key.isupper()}


@dataclass(frozen=True)
class Settings:
    """Validated, typed configuration for the backup engine"""
    content_directory: str
    database: DatabaseParams
    backups_directory: str
    glacier_vault: str
    policy: RetentionPolicy
    aws_region: str = 'us-east-2'
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = field(default=None, repr=False)
    create_vault: bool = True
    content_exclude: List[str] = field(default_factory=list)
    mysqldump_binary: str = 'mysqldump'
    stage_timeout: Optional[float] = 3600.0
    alert_after_failures: int = 3
    poll_interval: float = 60.0
    verbosity: str = 'info'
    log_dir: Optional[str] = None

    def describe(self) -> dict:
        """Loggable view with secrets removed."""
        return {
            'content_directory': self.content_directory,
            'database': self.database.to_dict(),
            'backups_directory': self.backups_directory,
            'glacier_vault': self.glacier_vault,
            'aws_region': self.aws_region,
            'aws_credentials': 'explicit' if self.aws_access_key_id else 'default chain',
            'backup_interval': str(self.policy.backup_interval),
            'rolling_period': str(self.policy.rolling_period),
            'stage_timeout': self.stage_timeout,
            'alert_after_failures': self.alert_after_failures
        }


def _required(mapping: Mapping[str, Any], key: str) -> str:
    value = mapping.get(key)
    if value is None or str(value).strip() == '':
        raise ConfigError(f"Missing configuration: {key} not defined in environment")
    return str(value).strip()


def _number(mapping: Mapping[str, Any], key: str, cast, minimum=None, exclusive=False):
    raw = mapping.get(key)
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {key}: {raw!r}")

    if minimum is not None:
        if exclusive and value <= minimum:
            raise ConfigError(f"{key} must be greater than {minimum}, got {value}")
        if not exclusive and value < minimum:
            raise ConfigError(f"{key} must be at least {minimum}, got {value}")
    return value


def _flag(mapping: Mapping[str, Any], key: str, default: bool) -> bool:
    raw = mapping.get(key)
    if raw is None or raw == '':
        return default
    if isinstance(raw, bool):
        return raw
    value = str(raw).strip().lower()
    if value in ('1', 'true', 'yes', 'on'):
        return True
    if value in ('0', 'false', 'no', 'off'):
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


def load_settings(mapping: Mapping[str, Any]) -> Settings:
    """
    Validate raw configuration values into Settings.

    Args:
        mapping: Flask app.config, config_mapping() or any dict of the
            environment-style keys

    Returns:
        Settings

    Raises:
        ConfigError: If a required value is missing or malformed
    """
    database = DatabaseParams(
        host=_required(mapping, 'MYSQL_HOST'),
        port=_number(mapping, 'MYSQL_PORT', int, minimum=0, exclusive=True),
        database=_required(mapping, 'MYSQL_DATABASE'),
        user=_required(mapping, 'MYSQL_USER'),
        password=_required(mapping, 'MYSQL_PASSWORD')
    )

    backup_interval = _number(mapping, 'BACKUP_INTERVAL', float, minimum=0, exclusive=True)
    rolling_period = _number(mapping, 'ARCHIVE_ROLLING_PERIOD', float, minimum=0)
    if rolling_period < backup_interval:
        logger.warning(
            f"ARCHIVE_ROLLING_PERIOD ({rolling_period} days) is shorter than "
            f"BACKUP_INTERVAL ({backup_interval} days); at most one archive is kept locally"
        )

    stage_timeout = _number(mapping, 'STAGE_TIMEOUT', float, minimum=0)

    exclude = mapping.get('CONTENT_EXCLUDE') or ''
    if isinstance(exclude, str):
        exclude = [p.strip() for p in exclude.split(',') if p.strip()]

    return Settings(
        content_directory=_required(mapping, 'WORDPRESS_DIRECTORY'),
        database=database,
        backups_directory=_required(mapping, 'BACKUPS_DIRECTORY'),
        glacier_vault=_required(mapping, 'AWS_GLACIER_VAULT'),
        policy=RetentionPolicy.from_days(rolling_period, backup_interval),
        aws_region=_required(mapping, 'AWS_REGION'),
        aws_access_key_id=mapping.get('AWS_ACCESS_KEY_ID') or None,
        aws_secret_access_key=mapping.get('AWS_SECRET_ACCESS_KEY') or None,
        create_vault=_flag(mapping, 'AWS_GLACIER_CREATE_VAULT', True),
        content_exclude=list(exclude),
        mysqldump_binary=_required(mapping, 'MYSQLDUMP_BINARY'),
        stage_timeout=stage_timeout or None,
        alert_after_failures=_number(mapping, 'ALERT_AFTER_FAILURES', int, minimum=1),
        poll_interval=_number(mapping, 'SCHEDULER_POLL_INTERVAL', float, minimum=0, exclusive=True),
        verbosity=str(mapping.get('VERBOSITY') or 'info').lower(),
        log_dir=mapping.get('LOG_DIR') or None
    )
