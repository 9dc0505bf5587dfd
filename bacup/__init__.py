import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from bacup.config import Config


__version__ = '0.1.0'


def configure_logging(verbosity: int = 0, quiet: bool = False, log_dir: Optional[str] = None):
    """
    Configure process logging.

    Args:
        verbosity: 0 for info, 1 or more for debug
        quiet: Only report errors (takes precedence over verbosity)
        log_dir: Directory for the rotating log file, defaults to LOG_DIR
    """
    if quiet:
        log_level = logging.ERROR
    elif verbosity > 0:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler, only when a log directory is configured
    log_dir = log_dir or Config.LOG_DIR
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'bacup.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Scheduler internals are chatty at info level
    logging.getLogger('apscheduler').setLevel(max(log_level, logging.WARNING))
    for noisy in ('botocore', 'boto3', 's3transfer', 'paramiko'):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    logging.getLogger(__name__).debug(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_daemon(config_path: Optional[str] = None):
    """
    Daemon factory: load the configuration and build the job scheduler.

    Args:
        config_path: Explicit configuration file, overrides CONF_FILE

    Returns:
        JobScheduler, not yet started

    Raises:
        ConfigError: If the configuration is missing or invalid
    """
    from bacup.backup.executor import execute_backup
    from bacup.loader import build_jobs, load_config
    from bacup.scheduler import JobScheduler

    loaded = load_config(config_path)
    jobs = build_jobs(loaded)

    def runner(definition, cancel_event):
        return execute_backup(
            definition,
            loaded.service_for(definition),
            loaded.remote_for(definition),
            cancel_event
        )

    return JobScheduler(jobs, runner)
