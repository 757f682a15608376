#!/usr/bin/env python3
"""Headless backup daemon: runs the backup loop until SIGTERM/SIGINT"""
import signal
import sys
import logging

from merdeglace import configure_logging
from merdeglace.config import ConfigError, config_mapping, load_settings
from merdeglace.scheduler import build_backup_scheduler, prepare_vault


def main(config_name=None):
    try:
        settings = load_settings(config_mapping(config_name))
        configure_logging(settings.verbosity, settings.log_dir)
        logger = logging.getLogger('merdeglace')
        logger.info(f"Running with {settings.describe()}")
        engine = build_backup_scheduler(settings)
    except ConfigError as e:
        logging.basicConfig()
        logging.getLogger('merdeglace').critical(f"Startup failed: {e}")
        return 1

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}, stopping after the current stage")
        engine.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    prepare_vault(engine, create=settings.create_vault)
    engine.run_forever()
    return 0


if __name__ == '__main__':
    sys.exit(main())
