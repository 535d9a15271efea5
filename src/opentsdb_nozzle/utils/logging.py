"""Log formatting for the nozzle: JSON lines for log shippers, text for consoles."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from ..config.settings import LoggingConfig


# Attributes every LogRecord has; anything else was passed via `extra=`
_STANDARD_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

# Client libraries that log every frame or request at DEBUG
_NOISY_LOGGERS = ("websockets", "aiohttp.access", "aiohttp.client", "asyncio")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with the nozzle identity and any `extra` fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": _utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}:{record.lineno}",
        }

        for key, value in vars(record).items():
            if key not in _STANDARD_RECORD_ATTRS and not key.startswith("_"):
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Console formatter: `time [LEVEL] job/index logger: message`."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        if self.use_colors and level in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[level]}{level}{self.RESET}"

        instance = getattr(record, "nozzle", "-")
        line = f"{_utc_now():%Y-%m-%d %H:%M:%S} [{level}] {instance} {record.name}: {record.getMessage()}"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class NozzleContextFilter(logging.Filter):
    """Stamps every record with the identity of this nozzle instance."""

    def __init__(self, nozzle: str, deployment: str = ""):
        super().__init__()
        self.nozzle = nozzle
        self.deployment = deployment

    def filter(self, record: logging.LogRecord) -> bool:
        record.nozzle = self.nozzle
        if self.deployment:
            record.deployment = self.deployment
        return True


def setup_logging(config: LoggingConfig, nozzle: str = "opentsdb-firehose-nozzle/0", deployment: str = "") -> None:
    """
    Route all logging through one handler configured from `config`.

    Args:
        config: Logging configuration
        nozzle: Instance name stamped on every record, usually "<job>/<index>"
        deployment: Deployment name stamped on every record when set
    """
    formatter = JSONFormatter() if config.format == "json" else TextFormatter()

    output = config.output.lower()
    if output == "stdout":
        handler = logging.StreamHandler(sys.stdout)
    elif output == "stderr":
        handler = logging.StreamHandler(sys.stderr)
    else:
        handler = logging.FileHandler(config.output)

    handler.setFormatter(formatter)
    handler.addFilter(NozzleContextFilter(nozzle, deployment))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(config.level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured: level={config.level}, format={config.format}, output={config.output}, nozzle={nozzle}"
    )
