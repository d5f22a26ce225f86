import logging
import sys
from typing import Optional

ROOT_LOGGER = "obmp_whois"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(debug: bool = False, logfile: Optional[str] = None) -> logging.Logger:
    """Attaches the process-wide handler to the package logger.

    Debug mode logs everything to stdout, otherwise INFO and above are appended
    to ``logfile``. Raises OSError if the log file cannot be opened.
    """
    root = logging.getLogger(ROOT_LOGGER)

    if debug or not logfile:
        handler: logging.Handler = logging.StreamHandler(sys.stdout)
    else:
        handler = logging.FileHandler(logfile, mode="a")

    level = logging.DEBUG if debug else logging.INFO
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()

    root.addHandler(handler)
    root.setLevel(level)
    return root


def setup_logging(name: str = "Whois") -> logging.Logger:
    """Returns a component logger under the package logger."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
