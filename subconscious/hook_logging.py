"""Logging setup for hook processes.

Hook stdout is read by the host as context, so log output goes to a file in
the temp state directory instead (one file per hook).
"""

import logging
from pathlib import Path

from subconscious.config import Settings

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def log_file_for(name: str, settings: Settings) -> Path:
    return settings.temp_dir / f"{name}.log"


def setup_logging(name: str, settings: Settings) -> logging.Logger:
    """Attach a file handler to the package logger.

    Args:
        name: Hook name, used for the log file name
        settings: Runtime settings (temp dir, debug flag)

    Returns:
        The package-level logger
    """
    root = logging.getLogger("subconscious")
    root.setLevel(logging.DEBUG if settings.debug else logging.INFO)

    path = log_file_for(name, settings)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and Path(
            handler.baseFilename
        ) == path.resolve():
            return root

    try:
        settings.temp_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
    except OSError:
        # Unwritable temp dir: keep running without a log file
        handler = logging.NullHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    return root
