import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify


LOG_LEVELS = {
    'trace': logging.DEBUG,
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
    'critical': logging.CRITICAL
}


def configure_logging(verbosity='info', log_dir=None, app=None):
    """
    Configure process logging.

    Args:
        verbosity: Level name (VERBOSITY setting)
        log_dir: Directory for the rotating log file (None: console only)
        app: Optional Flask app whose logger gets the same handlers

    Raises:
        ConfigError: If log_dir cannot be created or written
    """
    log_level = LOG_LEVELS.get(str(verbosity).lower(), logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(log_dir, 'merdeglace.log'),
                maxBytes=10485760,  # 10MB
                backupCount=10
            )
        except OSError as e:
            from merdeglace.config import ConfigError
            raise ConfigError(f"LOG_DIR is not writable: {log_dir}: {e}") from e
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # boto3 is chatty at DEBUG
    for noisy in ('botocore', 'boto3', 'urllib3'):
        logging.getLogger(noisy).setLevel(max(log_level, logging.INFO))

    if app is not None:
        app.logger.setLevel(log_level)

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, overrides=None):
    """
    Flask application factory.

    Serves the read-only status API and, in the designated scheduler worker,
    runs the backup loop in a background scheduler.

    Args:
        config_name: 'development', 'production' or 'testing'
        overrides: Optional dict applied on top of the configuration class

    Raises:
        ConfigError: If configuration is invalid or the backups directory is unusable
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from merdeglace.config import config, load_settings
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    settings = load_settings(app.config)

    # Configure logging
    configure_logging(settings.verbosity, settings.log_dir, app)
    app.logger.info(f"Running with {settings.describe()}")

    # Register blueprints
    from merdeglace.routes import status_routes
    app.register_blueprint(status_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        from merdeglace.scheduler import backup_scheduler
        alerts = backup_scheduler.state.alerts if backup_scheduler else {}
        return jsonify({'status': 'degraded' if alerts else 'healthy', 'alerts': len(alerts)}), 200

    # Initialize the backup loop (only in the designated worker)
    from merdeglace.scheduler import init_scheduler, start_scheduler, stop_scheduler, prepare_vault
    import atexit

    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    if is_scheduler_worker:
        app.logger.info("Initializing backup scheduler in this process...")
        init_scheduler(settings)

        if app.config.get('SCHEDULER_AUTOSTART', True):
            from merdeglace.scheduler import backup_scheduler
            prepare_vault(backup_scheduler, create=settings.create_vault)
            start_scheduler()

            # Register cleanup function to stop scheduler on app shutdown
            atexit.register(stop_scheduler)
            app.logger.info("Backup scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")

    return app
