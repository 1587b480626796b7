import logging
import logging.handlers
import re
import sys
import time
import traceback
from pathlib import Path
from types import TracebackType

from jpco_notify.config import Settings

LOG_LINE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"

# Loggers owned by the server stack that should share the service handlers.
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")

_BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+")

_log_file_path: Path | None = None
_logging_initialized = False


class TracebackTailFormatter(logging.Formatter):
  """Formatter that keeps only the exception header and the innermost frames."""

  def __init__(self, fmt: str, datefmt: str, *, tail: int = 5) -> None:
    super().__init__(fmt, datefmt=datefmt)
    self._tail = tail

  def formatException(self, ei: tuple[type[BaseException] | None, BaseException | None, TracebackType | None]) -> str:  # noqa: N802
    lines = traceback.format_exception(*ei)
    if len(lines) <= self._tail + 1:
      return "".join(lines)
    return "".join([lines[0], "    ...\n", *lines[-self._tail :]])


class BearerRedactionFilter(logging.Filter):
  """Mask bearer credentials that end up in formatted log messages."""

  def filter(self, record: logging.LogRecord) -> bool:
    message = record.getMessage()
    if "Bearer" in message:
      record.msg = _BEARER_PATTERN.sub(r"\1[redacted]", message)
      record.args = None
    return True


def _backup_namer(default_name: str) -> str:
  # jpco_notify.log.1 -> jpco_notify.log-1
  stem, _, suffix = default_name.rpartition(".")
  if stem and suffix.isdigit():
    return f"{stem}-{suffix}"
  return default_name


def _build_file_handler(settings: Settings) -> tuple[logging.Handler, Path]:
  """Create a rotating file handler inside the configured log directory."""
  log_dir = Path(settings.log_dir or "logs").resolve()
  try:
    log_dir.mkdir(parents=True, exist_ok=True)
  except OSError as exc:
    raise RuntimeError(f"Failed to create log directory at {log_dir}: {exc}") from exc

  log_path = log_dir / f"jpco_notify_{time.strftime('%Y%m%d_%H%M%S')}.log"
  handler = logging.handlers.RotatingFileHandler(log_path, encoding="utf-8", maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count)
  handler.namer = _backup_namer
  handler.setFormatter(logging.Formatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  return handler, log_path


def setup_logging(settings: Settings) -> Path | None:
  """Route the root and server loggers through one set of handlers."""
  stream_handler = logging.StreamHandler(sys.stdout)
  stream_handler.setFormatter(TracebackTailFormatter(LOG_LINE_FORMAT, LOG_DATE_FORMAT))
  handlers: list[logging.Handler] = [stream_handler]

  log_path: Path | None = None
  if settings.log_dir:
    file_handler, log_path = _build_file_handler(settings)
    handlers.append(file_handler)

  redaction = BearerRedactionFilter()
  for handler in handlers:
    handler.addFilter(redaction)

  for logger_name in SERVER_LOGGERS:
    server_logger = logging.getLogger(logger_name)
    server_logger.handlers = list(handlers)
    server_logger.propagate = False

  level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level, logging.INFO)
  logging.basicConfig(level=level, handlers=handlers, force=True)
  return log_path


def initialize_logging(settings: Settings) -> Path | None:
  """Configure logging once per process and return the log file path, if any."""
  global _log_file_path, _logging_initialized
  if _logging_initialized:
    return _log_file_path

  _log_file_path = setup_logging(settings)
  _logging_initialized = True
  logger = logging.getLogger("jpco_notify.core.logging")
  logger.info("Logging initialized level=%s file=%s", settings.log_level, _log_file_path or "stdout only")
  return _log_file_path
