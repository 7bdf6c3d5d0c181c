"""
Configuration management for docstore.

Uses pydantic-settings for environment variable binding.
All settings can be overridden via environment variables with DOCSTORE_ prefix.
"""

import logging
import sys
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


BackendKind = Literal["relational", "content", "analytical"]


class Settings(BaseSettings):
    """Application settings with environment variable binding."""

    model_config = SettingsConfigDict(
        env_prefix="DOCSTORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================
    # General
    # ==========================================
    backend: BackendKind = "relational"
    """Backend kind used by the factory when none is given explicitly."""

    namespace: str = "default"
    """Namespace documents are written to unless the caller overrides it."""

    data_dir: Path = Path.home() / ".docstore"
    """Root directory for local database files."""

    # ==========================================
    # Relational (SQLite)
    # ==========================================
    relational_path: Path | None = None
    sqlite_timeout: float = 10.0
    """Seconds to wait on a locked database before giving up."""

    # ==========================================
    # Content-addressed (GitHub repository)
    # ==========================================
    github_token: str = ""
    github_owner: str = ""
    github_repo: str = ""
    github_branch: str = "main"
    github_base_path: str = ""
    github_api_url: str = "https://api.github.com"
    github_committer_name: str = "docstore"
    github_committer_email: str = "docstore@users.noreply.github.com"

    extensions: list[str] = [".mdx", ".md"]
    """Recognized content-file extensions, in precedence order."""

    use_code_search: bool = True
    """Use the remote code search API to narrow search candidates."""

    http_timeout: float = 15.0
    """Timeout in seconds applied to every remote HTTP call."""

    # ==========================================
    # Analytical (ClickHouse or embedded)
    # ==========================================
    clickhouse_url: str = ""
    """ClickHouse HTTP endpoint. Empty means use the embedded executor."""

    clickhouse_database: str = "default"
    clickhouse_user: str = "default"
    clickhouse_password: str = ""
    analytical_path: Path | None = None

    # ==========================================
    # Action Processor
    # ==========================================
    processor_batch_limit: int = 10
    """Maximum number of pending Actions materialized per run."""

    processor_lease_seconds: int = 300
    """How long a claimed Action stays reserved for its processor."""

    # ==========================================
    # HTTP API
    # ==========================================
    api_host: str = "0.0.0.0"
    api_port: int = 8787

    # ==========================================
    # Logging
    # ==========================================
    log_level: str = "INFO"
    log_file: Path | None = None

    # ==========================================
    # Computed Properties
    # ==========================================
    @property
    def relational_db(self) -> Path:
        return self.relational_path or self.data_dir / "documents.sqlite"

    @property
    def analytical_db(self) -> Path:
        return self.analytical_path or self.data_dir / "analytical.sqlite"

    def ensure_directories(self) -> None:
        """Create all required directories if they don't exist."""
        for path in [self.relational_db, self.analytical_db]:
            path.parent.mkdir(parents=True, exist_ok=True)


# Global settings instance
settings = Settings()


def setup_logging(level: str | None = None) -> None:
    """Configure application logging."""
    log_level = level or settings.log_level

    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
    ]

    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        handlers=handlers,
    )

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(f"docstore.{name}")
