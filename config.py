"""
Service configuration loaded once at startup from YAML with environment overrides
"""

import os
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, Dict, List, Optional

import yaml

from exceptions import ConfigurationError
from logger import LogLevel

DEFAULT_CONFIG_PATH = "config.yaml"

ACCESS_MODES = ("allow_all", "whitelist", "blacklist")
AUTH_TYPES = ("token", "basic")
LOG_OUTPUTS = ("console", "file", "both")


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    fallback_ports: List[int] = field(default_factory=lambda: [8766, 8767, 8768])
    read_timeout: int = 15
    write_timeout: int = 15
    shutdown_grace_period: int = 10


@dataclass
class AccessControlConfig:
    mode: str = "allow_all"
    whitelist: List[str] = field(default_factory=lambda: ["127.0.0.1", "::1"])
    blacklist: List[str] = field(default_factory=list)


@dataclass
class URLFilterConfig:
    enabled: bool = False
    whitelist_file: str = ""
    blacklist_file: str = ""
    use_regex: bool = False
    whitelist_overrides: bool = False


@dataclass
class BackupConfig:
    enabled: bool = False
    interval_hours: int = 24
    max_backups: int = 5
    backup_dir: str = ""


@dataclass
class StorageConfig:
    data_dir: str = "./data"
    db_file: str = "presets.db"
    lock_timeout: float = 30.0
    backup: BackupConfig = field(default_factory=BackupConfig)

    @property
    def db_path(self) -> str:
        if self.db_file == ":memory:":
            return self.db_file
        return os.path.join(self.data_dir, self.db_file)

    @property
    def backup_path(self) -> str:
        return self.backup.backup_dir or os.path.join(self.data_dir, "backups")


@dataclass
class LoggingConfig:
    level: str = "info"
    output: str = "console"
    log_file: str = "./logs/webform-sync.log"
    max_size_mb: int = 10
    max_backups: int = 3
    json: bool = False
    log_requests: bool = True


@dataclass
class CORSConfig:
    enabled: bool = True
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    allowed_methods: List[str] = field(default_factory=lambda: ["GET", "POST", "PUT", "DELETE", "OPTIONS"])
    allowed_headers: List[str] = field(default_factory=lambda: ["Content-Type", "Authorization", "X-API-Token"])
    max_age: int = 3600


@dataclass
class AuthenticationConfig:
    enabled: bool = False
    type: str = "token"
    api_token: str = ""
    username: str = ""
    password: str = ""


@dataclass
class PerformanceConfig:
    max_concurrent_requests: int = 64
    max_body_bytes: int = 1024 * 1024


@dataclass
class MaintenanceConfig:
    auto_cleanup: bool = False
    delete_after_days: int = 90
    cleanup_interval_hours: int = 24


@dataclass
class ServiceConfig:
    """Complete service configuration"""
    server: ServerConfig = field(default_factory=ServerConfig)
    access_control: AccessControlConfig = field(default_factory=AccessControlConfig)
    url_filter: URLFilterConfig = field(default_factory=URLFilterConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    cors: CORSConfig = field(default_factory=CORSConfig)
    authentication: AuthenticationConfig = field(default_factory=AuthenticationConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)

    def validate(self):
        """Validate configuration values, raising ConfigurationError on the first problem"""
        server = self.server
        for port in [server.port] + list(server.fallback_ports):
            if not isinstance(port, int) or port < 0 or port > 65535:
                raise ConfigurationError(f"server ports must be between 0 and 65535, got {port}")

        if server.read_timeout < 1 or server.read_timeout > 300:
            raise ConfigurationError(f"server.read_timeout must be between 1 and 300 seconds, got {server.read_timeout}")

        if server.write_timeout < 1 or server.write_timeout > 300:
            raise ConfigurationError(f"server.write_timeout must be between 1 and 300 seconds, got {server.write_timeout}")

        if server.shutdown_grace_period < 0 or server.shutdown_grace_period > 300:
            raise ConfigurationError(
                f"server.shutdown_grace_period must be between 0 and 300 seconds, got {server.shutdown_grace_period}")

        if self.access_control.mode not in ACCESS_MODES:
            raise ConfigurationError(
                f"access_control.mode must be one of {', '.join(ACCESS_MODES)}, got {self.access_control.mode!r}")

        if self.url_filter.enabled and not (self.url_filter.whitelist_file or self.url_filter.blacklist_file):
            raise ConfigurationError("url_filter is enabled but neither whitelist_file nor blacklist_file is set")

        if self.storage.lock_timeout < 1.0 or self.storage.lock_timeout > 300.0:
            raise ConfigurationError(
                f"storage.lock_timeout must be between 1.0 and 300.0 seconds, got {self.storage.lock_timeout}")

        backup = self.storage.backup
        if backup.max_backups < 1 or backup.max_backups > 50:
            raise ConfigurationError(f"storage.backup.max_backups must be between 1 and 50, got {backup.max_backups}")

        if backup.interval_hours < 1:
            raise ConfigurationError(f"storage.backup.interval_hours must be at least 1, got {backup.interval_hours}")

        level = self.logging.level.upper()
        if level == "WARN":
            level = "WARNING"
        if level not in LogLevel.__members__:
            raise ConfigurationError(f"logging.level is not a valid level: {self.logging.level!r}")
        self.logging.level = level

        if self.logging.output not in LOG_OUTPUTS:
            raise ConfigurationError(
                f"logging.output must be one of {', '.join(LOG_OUTPUTS)}, got {self.logging.output!r}")

        if self.logging.output in ("file", "both") and not self.logging.log_file:
            raise ConfigurationError("logging.log_file is required when logging to a file")

        auth = self.authentication
        if auth.enabled:
            if auth.type not in AUTH_TYPES:
                raise ConfigurationError(
                    f"authentication.type must be one of {', '.join(AUTH_TYPES)}, got {auth.type!r}")
            if auth.type == "token" and not auth.api_token:
                raise ConfigurationError("authentication.api_token is required for token authentication")
            if auth.type == "basic" and not (auth.username and auth.password):
                raise ConfigurationError("authentication.username and password are required for basic authentication")

        perf = self.performance
        if perf.max_concurrent_requests < 1 or perf.max_concurrent_requests > 1024:
            raise ConfigurationError(
                f"performance.max_concurrent_requests must be between 1 and 1024, got {perf.max_concurrent_requests}")

        if perf.max_body_bytes < 1024:
            raise ConfigurationError(f"performance.max_body_bytes must be at least 1024, got {perf.max_body_bytes}")

        maint = self.maintenance
        if maint.auto_cleanup:
            if maint.delete_after_days < 1:
                raise ConfigurationError(
                    f"maintenance.delete_after_days must be at least 1, got {maint.delete_after_days}")
            if maint.cleanup_interval_hours < 1:
                raise ConfigurationError(
                    f"maintenance.cleanup_interval_hours must be at least 1, got {maint.cleanup_interval_hours}")


def _build_section(cls, values: Optional[Dict[str, Any]], section: str):
    """Instantiate a config dataclass from a mapping, recursing into nested sections"""
    if values is None:
        return cls()
    if not isinstance(values, dict):
        raise ConfigurationError(f"Configuration section '{section}' must be a mapping")

    known = {f.name: f for f in fields(cls)}
    kwargs = {}
    for key, value in values.items():
        if key not in known:
            raise ConfigurationError(f"Unknown configuration key '{section}.{key}'")
        default = known[key].default_factory() if callable(known[key].default_factory) else known[key].default
        if is_dataclass(default):
            kwargs[key] = _build_section(type(default), value, f"{section}.{key}")
        else:
            kwargs[key] = value
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration section '{section}'", original_error=e)


def _apply_env_overrides(cfg: ServiceConfig):
    """Environment variables win over the YAML file"""
    try:
        if os.getenv('WEBFORM_SYNC_HOST'):
            cfg.server.host = os.getenv('WEBFORM_SYNC_HOST')
        if os.getenv('WEBFORM_SYNC_PORT'):
            cfg.server.port = int(os.getenv('WEBFORM_SYNC_PORT'))
    except ValueError as e:
        raise ConfigurationError("WEBFORM_SYNC_PORT must be an integer", original_error=e)

    if os.getenv('WEBFORM_SYNC_DATA_DIR'):
        cfg.storage.data_dir = os.getenv('WEBFORM_SYNC_DATA_DIR')
    if os.getenv('LOG_LEVEL'):
        cfg.logging.level = os.getenv('LOG_LEVEL')
    if os.getenv('JSON_LOGGING'):
        cfg.logging.json = os.getenv('JSON_LOGGING', 'false').lower() == 'true'
    if os.getenv('WEBFORM_SYNC_API_TOKEN'):
        cfg.authentication.api_token = os.getenv('WEBFORM_SYNC_API_TOKEN')


def config_from_dict(data: Optional[Dict[str, Any]]) -> ServiceConfig:
    """Build and validate a ServiceConfig from already-parsed YAML data"""
    cfg = _build_section(ServiceConfig, data or {}, "config")
    cfg.validate()
    return cfg


def load_config(path: Optional[str] = None) -> ServiceConfig:
    """Load configuration from a YAML file.

    The path falls back to WEBFORM_SYNC_CONFIG and then to config.yaml. A
    missing default file yields the built-in defaults; a missing explicit
    file is an error.
    """
    explicit = path or os.getenv('WEBFORM_SYNC_CONFIG')
    config_path = explicit or DEFAULT_CONFIG_PATH

    data: Dict[str, Any] = {}
    if os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError("Failed to parse config file",
                                     context={"config_path": config_path}, original_error=e)
        except OSError as e:
            raise ConfigurationError("Failed to read config file",
                                     context={"config_path": config_path}, original_error=e)
    elif explicit:
        raise ConfigurationError("Config file not found", context={"config_path": config_path})

    if not isinstance(data, dict):
        raise ConfigurationError("Config file must contain a mapping", context={"config_path": config_path})

    cfg = _build_section(ServiceConfig, data, "config")
    _apply_env_overrides(cfg)
    cfg.validate()
    return cfg
