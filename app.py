#!/usr/bin/env python3
"""
Webform Sync Service

A local-network service that lets browser instances and devices share named,
scoped form presets without a cloud account.
"""

import argparse
import signal
import sys
import threading
from typing import List, Optional

from config import ServiceConfig, load_config
from database import PresetStore
from exceptions import ConfigurationError, StorageError
from filters import FilterEngine
from handlers import APIHandlers
from health import HealthChecker
from logger import logger
from server import RequestPipeline, SyncHTTPServer, bind_server

HOUR_SECONDS = 3600


class WebformSync:
    """Main application class: wires the components and owns the process lifecycle"""

    def __init__(self, config: ServiceConfig):
        self.config = config
        self.server: Optional[SyncHTTPServer] = None

        # Threading
        self.shutdown_event = threading.Event()
        self.threads: List[threading.Thread] = []

        # Initialize components
        self._setup_logging()
        self._setup_filters()
        self._setup_database()
        self._setup_health_checker()
        self._setup_pipeline()

        logger.set_start_time()
        logger.info("Webform sync service initialized")

    def _setup_logging(self):
        """Setup logging configuration"""
        logger.configure(self.config.logging)
        logger.info(f"Logging configured at {self.config.logging.level} level",
                   output=self.config.logging.output)

    def _setup_filters(self):
        """Compile access control and pattern rules"""
        self.filters = FilterEngine.from_config(self.config.access_control, self.config.url_filter)
        logger.info(f"Access control mode: {self.filters.mode}")

    def _setup_database(self):
        """Setup preset store"""
        storage = self.config.storage
        self.store = PresetStore(
            storage.db_path,
            lock_timeout=storage.lock_timeout,
            backup_dir=storage.backup_path,
            max_backups=storage.backup.max_backups
        )

    def _setup_health_checker(self):
        """Setup health checker"""
        self.health_checker = HealthChecker(self.store)

    def _setup_pipeline(self):
        """Setup request pipeline and route handlers"""
        handlers = APIHandlers(self.store, self.filters, self.health_checker)
        self.pipeline = RequestPipeline.from_config(self.config, handlers, self.filters)

    @property
    def address(self):
        return self.server.server_address if self.server else None

    def start_server(self):
        """Bind the listening port and serve requests on a background thread"""
        server_cfg = self.config.server
        self.server = bind_server(
            server_cfg.host,
            server_cfg.port,
            server_cfg.fallback_ports,
            self.pipeline,
            read_timeout=server_cfg.read_timeout,
            write_timeout=server_cfg.write_timeout
        )
        host, port = self.server.server_address[:2]
        logger.info(f"Starting server on {host}:{port}")

        server_thread = threading.Thread(target=self.server.serve_forever, daemon=True, name="http-server")
        self.threads.append(server_thread)
        server_thread.start()

    def run_cleanup(self) -> int:
        days = self.config.maintenance.delete_after_days
        try:
            return self.store.cleanup_older_than(days)
        except StorageError as e:
            logger.error(f"Scheduled cleanup failed: {e}")
            return 0

    def run_backup(self) -> Optional[str]:
        try:
            return self.store.backup()
        except (StorageError, OSError) as e:
            logger.error(f"Scheduled backup failed: {e}")
            return None

    def _start_periodic(self, name: str, interval_seconds: float, task):
        def periodic():
            while not self.shutdown_event.is_set():
                if self.shutdown_event.wait(interval_seconds):
                    break

                logger.info(f"Starting periodic {name} (interval: {interval_seconds}s)")
                task()

        thread = threading.Thread(target=periodic, daemon=True, name=f"periodic-{name}")
        self.threads.append(thread)
        thread.start()

    def start_maintenance(self):
        """Start the optional auto-cleanup and backup threads"""
        maintenance = self.config.maintenance
        if maintenance.auto_cleanup:
            self._start_periodic("cleanup", maintenance.cleanup_interval_hours * HOUR_SECONDS, self.run_cleanup)

        backup = self.config.storage.backup
        if backup.enabled:
            self._start_periodic("backup", backup.interval_hours * HOUR_SECONDS, self.run_backup)

    def _install_signal_handlers(self):
        def handle_signal(signum, frame):
            logger.info(f"Received signal {signal.Signals(signum).name}, shutting down...")
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

    def start(self):
        """Start serving without blocking"""
        self.start_server()
        self.start_maintenance()
        logger.info("Application started successfully")

    def run(self):
        """Main application loop"""
        logger.info("Starting webform sync service")

        if threading.current_thread() is threading.main_thread():
            self._install_signal_handlers()

        self.start()

        try:
            # Keep main thread alive
            while not self.shutdown_event.wait(1):
                pass
        finally:
            self.shutdown()

    def shutdown(self):
        """Graceful shutdown"""
        logger.info("Initiating graceful shutdown")
        self.shutdown_event.set()

        if self.server is not None:
            self.server.drain(self.config.server.shutdown_grace_period)

        # Wait for threads to finish
        for thread in self.threads:
            if thread.is_alive():
                logger.info(f"Waiting for thread {thread.name} to finish")
                thread.join(timeout=self.config.server.shutdown_grace_period)

        self.store.close()
        logger.info("Graceful shutdown completed")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Webform preset sync service")
    parser.add_argument("--config", "-c", help="Path to the YAML configuration file")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    try:
        config = load_config(args.config)
        app = WebformSync(config)
        app.run()

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except StorageError as e:
        logger.error(f"Storage error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
