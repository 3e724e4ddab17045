"""
Configuration management for HERA Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .schema.smart_code import SmartCodeRegistry

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Interface to bind
        port: Port to bind
        workers: Number of uvicorn worker processes
        session_header: Header carrying the caller's session organization
    """

    host: str = "0.0.0.0"
    port: int = 8080
    workers: int = 1
    session_header: str = "X-Organization-ID"

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            workers=int(os.getenv("HTTP_WORKERS", "1")),
            session_header=os.getenv("SESSION_ORG_HEADER", "X-Organization-ID"),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for the SQLite database
        database_name: Database file name inside data_dir
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "/var/lib/hera"
    database_name: str = "hera.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/hera"),
            database_name=os.getenv("DATABASE_NAME", "hera.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class SmartCodeConfig:
    """Smart code gate configuration.

    Attributes:
        strict: Require the HERA prefix
        enforce_registry: Reject codes whose domain is not registered
        extra_domains: Domains registered on top of the defaults
    """

    strict: bool = True
    enforce_registry: bool = False
    extra_domains: tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> SmartCodeConfig:
        """Load configuration from environment variables."""
        raw_domains = os.getenv("SMART_CODE_DOMAINS", "")
        return cls(
            strict=_env_bool("SMART_CODE_STRICT", "true"),
            enforce_registry=_env_bool("SMART_CODE_ENFORCE_REGISTRY", "false"),
            extra_domains=tuple(d.strip() for d in raw_domains.split(",") if d.strip()),
        )

    def build_registry(self) -> SmartCodeRegistry | None:
        """Registry used by the orchestrators, or None when not enforced."""
        if not self.enforce_registry:
            return None
        registry = SmartCodeRegistry()
        for domain in self.extra_domains:
            registry.register(domain)
        return registry


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        http: HTTP API configuration
        storage: Local storage configuration
        smart_codes: Smart code gate configuration
        observability: Observability configuration
    """

    http: HttpConfig = field(default_factory=HttpConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    smart_codes: SmartCodeConfig = field(default_factory=SmartCodeConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            http=HttpConfig.from_env(),
            storage=StorageConfig.from_env(),
            smart_codes=SmartCodeConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not 0 < self.http.port < 65536:
            raise ValueError(f"HTTP_PORT must be in 1..65535, got {self.http.port}")
        if self.http.workers < 1:
            raise ValueError("HTTP_WORKERS must be at least 1")
        if not self.storage.database_name:
            raise ValueError("DATABASE_NAME is required")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )
        # Fails fast on a malformed SMART_CODE_DOMAINS entry
        self.smart_codes.build_registry()

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "http_bind": f"{self.http.host}:{self.http.port}",
                "data_dir": self.storage.data_dir,
                "database_name": self.storage.database_name,
                "smart_code_strict": self.smart_codes.strict,
                "smart_code_registry": self.smart_codes.enforce_registry,
                "log_level": self.observability.log_level,
            },
        )
