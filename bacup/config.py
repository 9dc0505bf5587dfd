import os
import sys
import tempfile
from pathlib import Path
from typing import Optional


class Config:
    """Process settings, read from the environment"""

    # Configuration document
    CONFIG_FILENAME = 'config.yaml'
    HOME_CONFIG_DIR = '.bacup'

    # Temp storage for dumps and archives
    TEMP_DIR = os.environ.get('BACUP_TEMP_DIR') or tempfile.gettempdir()

    # Logging
    LOG_DIR = os.environ.get('BACUP_LOG_DIR')

    # Scheduler
    TICK_SECONDS = int(os.environ.get('BACUP_TICK_SECONDS', 60))
    SHUTDOWN_GRACE_SECONDS = int(os.environ.get('BACUP_SHUTDOWN_GRACE', 30))

    # Remotes
    CONNECT_RETRIES = int(os.environ.get('BACUP_CONNECT_RETRIES', 3))
    RETRY_DELAY_SECONDS = float(os.environ.get('BACUP_RETRY_DELAY', 5))

    # Dump, rsync and git subprocesses
    COMMAND_TIMEOUT_SECONDS = int(os.environ.get('BACUP_COMMAND_TIMEOUT', 3600))


def default_config_locations():
    """Candidate config files, in lookup order, when CONF_FILE is unset."""
    executable_dir = Path(sys.argv[0]).resolve().parent if sys.argv and sys.argv[0] else Path.cwd()
    return [
        executable_dir / Config.CONFIG_FILENAME,
        Path.home() / Config.HOME_CONFIG_DIR / Config.CONFIG_FILENAME,
    ]


def resolve_config_path(explicit: Optional[str] = None) -> Path:
    """
    Find the configuration document to load.

    Args:
        explicit: Path given on the command line, overrides everything else

    Returns:
        Path to an existing configuration file

    Raises:
        FileNotFoundError: If no candidate exists
    """
    chosen = explicit or os.environ.get('CONF_FILE')
    if chosen:
        path = Path(chosen).expanduser()
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file does not exist: {path}")
        return path

    candidates = default_config_locations()
    for candidate in candidates:
        if candidate.is_file():
            return candidate

    raise FileNotFoundError(
        "No configuration file found. Set CONF_FILE or create one of: "
        + ', '.join(str(c) for c in candidates)
    )
