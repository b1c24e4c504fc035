"""Centralized configuration management for opctl."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass
class ResolverConfig:
    """Configuration for the command resolver."""

    max_text_length: int = 2000
    high_confidence: float = 0.9
    partial_confidence: float = 0.7
    ambiguous_confidence: float = 0.5

    @classmethod
    def from_env(cls) -> ResolverConfig:
        """Load resolver configuration from environment variables."""
        return cls(
            max_text_length=int(os.getenv("MAX_TEXT_LENGTH", "2000")),
            high_confidence=float(os.getenv("HIGH_CONFIDENCE", "0.9")),
            partial_confidence=float(os.getenv("PARTIAL_CONFIDENCE", "0.7")),
            ambiguous_confidence=float(os.getenv("AMBIGUOUS_CONFIDENCE", "0.5")),
        )


@dataclass
class SecurityConfig:
    """Configuration for authentication and sessions."""

    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    session_ttl_hours: float = 24.0
    cleanup_interval_seconds: float = 3600.0
    admin_username: Optional[str] = None
    admin_password_hash: Optional[str] = None

    @classmethod
    def from_env(cls) -> SecurityConfig:
        """Load security configuration from environment variables."""
        return cls(
            jwt_secret=os.getenv("JWT_SECRET", "change-me"),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            session_ttl_hours=float(os.getenv("SESSION_TTL_HOURS", "24")),
            cleanup_interval_seconds=float(os.getenv("SESSION_CLEANUP_INTERVAL", "3600")),
            admin_username=os.getenv("OPCTL_ADMIN_USERNAME") or None,
            admin_password_hash=os.getenv("OPCTL_ADMIN_PASSWORD_HASH") or None,
        )


@dataclass
class ExecutorConfig:
    """Configuration for the operation executor and its backends."""

    max_attempts: int = 3
    retry_delay: float = 1.0
    navigation_timeout: float = 30.0
    command_timeout: float = 60.0
    response_time_threshold_ms: int = 2000
    file_root: Path = field(default_factory=Path.cwd)
    browser_headless: bool = True

    @classmethod
    def from_env(cls) -> ExecutorConfig:
        """Load executor configuration from environment variables."""
        return cls(
            max_attempts=int(os.getenv("EXECUTOR_MAX_ATTEMPTS", "3")),
            retry_delay=float(os.getenv("EXECUTOR_RETRY_DELAY", "1.0")),
            navigation_timeout=float(os.getenv("NAVIGATION_TIMEOUT", "30")),
            command_timeout=float(os.getenv("COMMAND_TIMEOUT", "60")),
            response_time_threshold_ms=int(os.getenv("RESPONSE_TIME_THRESHOLD_MS", "2000")),
            file_root=Path(os.getenv("FILE_ROOT", str(Path.cwd()))),
            browser_headless=os.getenv("BROWSER_HEADLESS", "true").lower() == "true",
        )


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    log_level: str = "INFO"
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    json_format: bool = True
    console_output: bool = True

    @classmethod
    def from_env(cls) -> LoggingConfig:
        """Load logging configuration from environment variables."""
        base_dir = Path(__file__).resolve().parent.parent
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_dir=Path(os.getenv("LOG_DIR", base_dir / "logs")),
            json_format=os.getenv("LOG_JSON_FORMAT", "true").lower() == "true",
            console_output=os.getenv("LOG_CONSOLE", "true").lower() == "true",
        )


@dataclass
class AppConfig:
    """Main application configuration."""

    policy_path: Path
    resolver: ResolverConfig
    security: SecurityConfig
    executor: ExecutorConfig
    logging: LoggingConfig
    environment: str = "production"

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load complete configuration from environment variables."""
        base_dir = Path(__file__).resolve().parent.parent

        return cls(
            policy_path=Path(os.getenv("POLICY_PATH", base_dir / "policy.json")),
            resolver=ResolverConfig.from_env(),
            security=SecurityConfig.from_env(),
            executor=ExecutorConfig.from_env(),
            logging=LoggingConfig.from_env(),
            environment=os.getenv("ENVIRONMENT", "production"),
        )

    def validate(self) -> None:
        """Validate configuration values."""
        if not self.policy_path.exists():
            raise FileNotFoundError(f"Policy file not found: {self.policy_path}")

        for name in ("high_confidence", "partial_confidence", "ambiguous_confidence"):
            value = getattr(self.resolver, name)
            if not 0 <= value <= 1:
                raise ValueError(f"Invalid {name}: {value}")

        if self.executor.max_attempts < 1:
            raise ValueError(f"Invalid max_attempts: {self.executor.max_attempts}")

        if self.executor.retry_delay < 0:
            raise ValueError(f"Invalid retry_delay: {self.executor.retry_delay}")

        if self.security.session_ttl_hours <= 0:
            raise ValueError(f"Invalid session_ttl_hours: {self.security.session_ttl_hours}")

        if self.environment == "production" and self.security.jwt_secret == "change-me":
            raise ValueError("JWT_SECRET must be set in production")


# Global configuration instance
config = AppConfig.from_env()
