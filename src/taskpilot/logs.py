import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def setup_logging(
    filename: str,
    level: str = "INFO",
    logs_dir: Path = Path("logs"),
    name: str = "taskpilot",
) -> logging.Logger:
    """Configure and return the ``name`` logger with console and rotating file output.

    Idempotent: a logger that already has handlers is returned unchanged.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logs_dir.mkdir(parents=True, exist_ok=True)
    logger.setLevel(level)
    fmt = logging.Formatter(_FORMAT)

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / filename, maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger
