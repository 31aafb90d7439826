import datetime
import logging
from contextlib import suppress
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import settings


APP_LOGGER_NAME = "dragonchat"

_LOGGING_CONFIGURED = False


class LocalTimezoneFormatter(logging.Formatter):
    """
    Logging formatter that forces timestamps into a configured timezone.
    Falls back to the system local timezone when LOG_TIMEZONE is unset
    or invalid.
    """

    def __init__(self, *args, timezone_name: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._tzinfo = self._resolve_tzinfo(timezone_name)

    @staticmethod
    def _resolve_tzinfo(timezone_name: str | None) -> datetime.tzinfo:
        if timezone_name:
            try:
                return ZoneInfo(timezone_name)
            except ZoneInfoNotFoundError:
                pass
        return datetime.datetime.now().astimezone().tzinfo or datetime.timezone.utc

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.datetime.fromtimestamp(record.created, tz=self._tzinfo)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec="milliseconds")


class DailyFileHandler(logging.FileHandler):
    """
    File handler that writes to ``<prefix>-YYYY-MM-DD.log`` and switches
    files when the date changes. Only the newest ``backup_count`` day files
    are kept.
    """

    def __init__(self, log_dir: Path, prefix: str = "app", backup_count: int = 7) -> None:
        self.log_dir = log_dir
        self.prefix = prefix
        self.backup_count = backup_count
        self.day = datetime.date.today()
        log_dir.mkdir(parents=True, exist_ok=True)
        super().__init__(self.path_for(self.day), encoding="utf-8", delay=True)
        self.prune()

    def path_for(self, day: datetime.date) -> Path:
        return self.log_dir / f"{self.prefix}-{day.isoformat()}.log"

    def prune(self) -> None:
        if self.backup_count <= 0:
            return
        day_files = sorted(self.log_dir.glob(f"{self.prefix}-*.log"))
        for stale in day_files[: -self.backup_count]:
            # Another worker may be pruning the same directory.
            with suppress(OSError):
                stale.unlink()

    def emit(self, record: logging.LogRecord) -> None:
        today = datetime.date.today()
        if today != self.day:
            self.acquire()
            try:
                self.day = today
                self.baseFilename = str(self.path_for(today).resolve())
                if self.stream is not None:
                    self.stream.close()
                    self.stream = None
            finally:
                self.release()
            self.prune()
        super().emit(record)


def _resolve_level(level_name: object) -> int:
    if not isinstance(level_name, str):
        return logging.INFO
    return getattr(logging, level_name.upper(), logging.INFO)


def setup_logging(log_dir: Path | None = None) -> None:
    """
    Configure application logging once per process.

    Records from the "dragonchat" logger go to logs/app-YYYY-MM-DD.log;
    everything (uvicorn included) is echoed to the console.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    log_dir = log_dir or Path("logs")
    level_value = _resolve_level(settings.log_level)

    formatter = LocalTimezoneFormatter(
        "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        timezone_name=settings.log_timezone,
    )

    file_handler = DailyFileHandler(log_dir)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(lambda record: record.name.startswith(APP_LOGGER_NAME))

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    app_logger.setLevel(level_value)
    app_logger.propagate = True
    app_logger.addHandler(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(level_value)
    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in root_logger.handlers
    )
    if not has_console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    _LOGGING_CONFIGURED = True


logger = logging.getLogger(APP_LOGGER_NAME)
