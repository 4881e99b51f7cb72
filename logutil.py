# logutil.py
import logging
import os
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def init_logging(level="INFO", logfile=None):
    """Initialize console + optional rotating file logging.

    - Console: `level` and above.
    - File: DEBUG and above, 5 MiB x 3 backups.
    Safe to call more than once; handlers are only added once.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console = next((h for h in root.handlers if getattr(h, "_provisioner", False)), None)
    if console is None:
        console = logging.StreamHandler()
        console._provisioner = True
        console.setFormatter(formatter)
        root.addHandler(console)
    console.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    if logfile:
        logfile = os.path.abspath(logfile)
        has_file = any(
            isinstance(h, RotatingFileHandler) and h.baseFilename == logfile for h in root.handlers
        )
        if not has_file:
            os.makedirs(os.path.dirname(logfile), exist_ok=True)
            fh = RotatingFileHandler(logfile, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(formatter)
            root.addHandler(fh)

    logging.debug("Logging initialized. level=%s file=%s", level, logfile or "-")
