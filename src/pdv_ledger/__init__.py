"""Point-of-sale money and stock ledger.

The package exposes a shared ``log`` object configured once on import. Every
module of the ledger logs through it, so settlements, drawer sessions and stock
counts end up in the same rotating file. The terminal only shows warnings and
errors by default because the CLI prints its own results on stdout.

Environment overrides:

``PDV_LEDGER_LOG_DIR``
    Directory of ``pdv_ledger.log`` (``.logs`` at the project root by default).
``PDV_LEDGER_LOG_LEVEL``
    Level written to the log file (``INFO`` by default).
``PDV_LEDGER_CONSOLE_LEVEL``
    Level echoed on stderr (``WARNING`` by default).
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping, Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("PDV_LEDGER_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "pdv_ledger.log"
LOG_LEVEL_ENV = "PDV_LEDGER_LOG_LEVEL"
CONSOLE_LEVEL_ENV = "PDV_LEDGER_CONSOLE_LEVEL"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_level(variable: str, default: int, environ: Optional[Mapping[str, str]] = None) -> int:
    """Read a level name such as ``DEBUG`` from ``variable``.

    Unknown names fall back to ``default``.
    """
    source = os.environ if environ is None else environ
    raw = source.get(variable, "").strip().upper()
    if not raw:
        return default
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else default


def _ledger_file_handler(formatter: logging.Formatter, level: int) -> Optional[logging.Handler]:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except (OSError, PermissionError) as exc:
        print(f"Warning: ledger log file '{LOG_FILE}' is unavailable: {exc}", file=sys.stderr)
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    """Attach the rotating ledger file and the stderr echo to the package logger."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    file_level = resolve_level(LOG_LEVEL_ENV, logging.INFO)
    console_level = resolve_level(CONSOLE_LEVEL_ENV, logging.WARNING)
    logger.setLevel(min(file_level, console_level))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    file_handler = _ledger_file_handler(formatter, file_level)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    return logger


log = _configure_logging()
log.debug("Ledger log at '%s'", LOG_FILE)
