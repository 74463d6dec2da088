"""
Service logging: console, JSON and rotating file output plus request and preset counters
"""

import os
import json
import logging
import logging.handlers
import sys
import threading
from datetime import datetime
from typing import Dict, Any, Optional
from enum import Enum


class LogLevel(Enum):
    """Log level enumeration"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, extra_fields merged in at the top level"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }

        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Plain text for terminals"""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


class Logger:
    """Wrapper over the stdlib logger that also keeps service counters"""

    def __init__(self, name: str = "webform-sync"):
        self.name = name
        self.logger = logging.getLogger(name)
        self._metrics_lock = threading.Lock()
        self._metrics = {
            "requests": 0,
            "presets_saved": 0,
            "presets_deleted": 0,
            "presets_cleaned": 0,
            "filter_rejections": 0,
            "auth_failures": 0,
            "errors": 0,
            "warnings": 0
        }
        self._setup_logging(
            level=os.getenv('LOG_LEVEL', 'INFO'),
            json_logging=os.getenv('JSON_LOGGING', 'false').lower() == 'true'
        )

    def _setup_logging(self, level: str = "INFO", output: str = "console",
                       log_file: Optional[str] = None, max_size_mb: int = 10,
                       max_backups: int = 3, json_logging: bool = False):
        """Setup logging handlers"""
        # Clear existing handlers
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        self.logger.setLevel(getattr(logging, level.upper(), logging.INFO))

        if output in ("console", "both"):
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(ConsoleFormatter())
            self.logger.addHandler(console_handler)

        if output in ("file", "both") and log_file:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_size_mb * 1024 * 1024,
                backupCount=max_backups
            )
            file_handler.setFormatter(StructuredFormatter() if json_logging else ConsoleFormatter())
            self.logger.addHandler(file_handler)

        # Structured copy on stderr, console text stays on stdout
        if json_logging and output in ("console", "both"):
            json_handler = logging.StreamHandler(sys.stderr)
            json_handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(json_handler)

        # Prevent duplicate logs
        self.logger.propagate = False

    def configure(self, logging_config):
        """Re-apply handlers from a LoggingConfig section"""
        self._setup_logging(
            level=logging_config.level,
            output=logging_config.output,
            log_file=logging_config.log_file,
            max_size_mb=logging_config.max_size_mb,
            max_backups=logging_config.max_backups,
            json_logging=logging_config.json
        )

    def _count(self, key: str, amount: int = 1):
        with self._metrics_lock:
            self._metrics[key] += amount

    def _log_with_extra(self, level: int, message: str, extra_fields: Optional[Dict[str, Any]] = None,
                        exc_info: bool = False):
        if extra_fields:
            self.logger.log(level, message, extra={'extra_fields': extra_fields}, exc_info=exc_info)
        else:
            self.logger.log(level, message, exc_info=exc_info)

    def debug(self, message: str, **kwargs):
        self._log_with_extra(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        self._log_with_extra(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        self._count("warnings")
        self._log_with_extra(logging.WARNING, message, kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs):
        self._count("errors")
        self._log_with_extra(logging.ERROR, message, kwargs, exc_info=exc_info)

    def request(self, method: str, path: str, client: str, status: int, duration_ms: float):
        """Log a handled HTTP request"""
        self._count("requests")
        self.info(f"{method} {path} [{client}] {status} {duration_ms:.2f}ms",
                 operation="request",
                 method=method,
                 path=path,
                 client=client,
                 status=status,
                 duration_ms=round(duration_ms, 2))

    def preset_saved(self, preset_id: str, device_id: str):
        """Log preset creation or update"""
        self._count("presets_saved")
        self.info(f"Preset saved: {preset_id} (device: {device_id})",
                 operation="preset_saved",
                 preset_id=preset_id,
                 device_id=device_id)

    def preset_deleted(self, preset_id: str, device_id: str):
        """Log preset deletion"""
        self._count("presets_deleted")
        self.info(f"Preset deleted: {preset_id} (device: {device_id})",
                 operation="preset_deleted",
                 preset_id=preset_id,
                 device_id=device_id)

    def filter_rejected(self, kind: str, value: str):
        """Log a value rejected by the origin or pattern filter"""
        self._count("filter_rejections")
        self.warning(f"{kind} blocked by filter: {value}",
                    operation="filter_rejected",
                    filter=kind,
                    value=value)

    def auth_failed(self, client: str, reason: str):
        """Log an authentication failure"""
        self._count("auth_failures")
        self.warning(f"Authentication failed for {client}: {reason}",
                    operation="auth_failed",
                    client=client,
                    reason=reason)

    def cleanup_completed(self, removed: int, days: int):
        """Log a retention cleanup sweep"""
        self._count("presets_cleaned", removed)
        self.info(f"Cleanup completed: {removed} presets removed",
                 operation="cleanup",
                 removed_count=removed,
                 days=days)

    def backup_created(self, path: str, duration_ms: float = None):
        """Log database backup creation"""
        extra_fields = {"operation": "backup", "path": path}
        if duration_ms is not None:
            extra_fields["duration_ms"] = round(duration_ms, 2)
        self._log_with_extra(logging.INFO, f"Created database backup: {path}", extra_fields)

    def health_check(self, component: str, healthy: bool, details: str = None):
        """Log health check result"""
        level = logging.DEBUG if healthy else logging.WARNING
        message = f"Health check {component}: {'healthy' if healthy else 'unhealthy'}"

        extra_fields = {
            "operation": "health_check",
            "component": component,
            "healthy": healthy
        }

        if details:
            extra_fields["details"] = details

        self._log_with_extra(level, message, extra_fields)

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics"""
        with self._metrics_lock:
            metrics = dict(self._metrics)
        metrics["uptime_seconds"] = (
            (datetime.now() - self._start_time).total_seconds() if hasattr(self, '_start_time') else 0
        )
        return metrics

    def set_start_time(self):
        """Mark the start of uptime"""
        self._start_time = datetime.now()


# Global logger instance
logger = Logger()
