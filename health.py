"""
Health checking with cached storage pings
"""

import time
import os
import threading
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, Tuple

from logger import logger
from exceptions import StorageError

SERVICE_VERSION = "1.0.0"


class HealthChecker:
    """Storage health checker with caching and consecutive failure tracking"""

    def __init__(self, store, cache_duration: int = None, max_consecutive_failures: int = None):
        self.store = store

        # Health state with caching
        self._health_cache = {"healthy": False, "last_check": None, "error": None}

        # Configurable cache duration
        self.cache_duration = cache_duration if cache_duration is not None else int(
            os.getenv('HEALTH_CACHE_DURATION', '5'))
        self._lock = threading.Lock()

        # Consecutive failure tracking
        self._consecutive_failures = 0
        self.max_consecutive_failures = max_consecutive_failures or int(
            os.getenv('HEALTH_MAX_CONSECUTIVE_FAILURES', '3'))

        # Validate configuration
        self._validate_configuration()

    def _validate_configuration(self):
        """Validate health checker configuration"""
        if self.cache_duration < 0 or self.cache_duration > 300:
            raise ValueError(f"HEALTH_CACHE_DURATION must be between 0 and 300 seconds, got {self.cache_duration}")

        if self.max_consecutive_failures < 1 or self.max_consecutive_failures > 10:
            raise ValueError(
                f"HEALTH_MAX_CONSECUTIVE_FAILURES must be between 1 and 10, got {self.max_consecutive_failures}")

    def _is_cache_valid(self) -> bool:
        """Check if cached health data is still valid"""
        last_check = self._health_cache["last_check"]
        if not last_check:
            return False

        return datetime.now() - last_check < timedelta(seconds=self.cache_duration)

    def _check_storage_health(self) -> Optional[str]:
        """Ping the store; returns an error string when unhealthy"""
        try:
            start_time = time.time()
            self.store.ping()
            duration_ms = (time.time() - start_time) * 1000

            self._consecutive_failures = 0
            logger.health_check("storage", True, f"Ping successful ({duration_ms:.1f}ms)")
            return None

        except StorageError as e:
            self._consecutive_failures += 1
            error_msg = str(e)
            logger.health_check("storage", False, error_msg)
            return error_msg

    def _refresh_locked(self):
        """Refresh the cache if stale; caller holds self._lock"""
        if self._is_cache_valid():
            return

        error = self._check_storage_health()
        self._health_cache = {
            "healthy": error is None,
            "last_check": datetime.now(),
            "error": error
        }

    def _snapshot(self) -> Tuple[Dict[str, Any], int]:
        """Cached storage state and failure count, taken together under the lock"""
        with self._lock:
            self._refresh_locked()
            return dict(self._health_cache), self._consecutive_failures

    def check_storage(self) -> bool:
        """Check storage with caching"""
        cache, _ = self._snapshot()
        return cache["healthy"]

    def _overall(self, cache: Dict[str, Any], failures: int) -> bool:
        # Consider unhealthy if too many consecutive failures
        return cache["healthy"] and failures < self.max_consecutive_failures

    def is_healthy(self) -> bool:
        """Check if system is overall healthy"""
        cache, failures = self._snapshot()
        return self._overall(cache, failures)

    def get_health_status(self) -> Dict[str, Any]:
        """Get comprehensive health status with metrics"""
        cache, failures = self._snapshot()
        healthy = self._overall(cache, failures)
        metrics = logger.get_metrics()
        last_check = cache["last_check"]

        return {
            "status": "ok" if healthy else "unhealthy",
            "version": SERVICE_VERSION,
            "timestamp": datetime.now().isoformat(),
            "uptime_seconds": metrics["uptime_seconds"],
            "storage_healthy": cache["healthy"],
            "storage_last_check": last_check.isoformat() if last_check else None,
            "storage_error": cache["error"],
            "consecutive_failures": failures,
            "metrics": metrics
        }
