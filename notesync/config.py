"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_SECRET_KEY = "change-me-in-production"
_DEFAULT_ADMIN_PASSWORD = "admin"


class Settings(BaseSettings):
    """NoteSync settings; every field can be set through the environment or ``.env``."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    secret_key: str = _DEFAULT_SECRET_KEY
    debug: bool = False
    expose_docs: bool = False

    database_url: str = "sqlite+aiosqlite:///data/db/notesync.db"

    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=list)
    trusted_hosts: list[str] = Field(default_factory=list)

    # Signed login tokens are short-lived; stored access tokens are for sync clients.
    access_token_expire_minutes: int = Field(default=60, ge=1)
    access_token_default_days: int | None = Field(default=365, ge=1)

    admin_username: str = "admin"
    admin_password: str = _DEFAULT_ADMIN_PASSWORD

    storage_timeout_seconds: float = Field(default=10.0, gt=0)
    sync_max_retries: int = Field(default=3, ge=0)
    # Tombstones this many revisions behind the current one are purged; 0 keeps them forever.
    tombstone_retention_revisions: int = Field(default=0, ge=0)

    def validate_runtime_security(self) -> None:
        """Refuse to start a non-debug server with placeholder secrets.

        Raises ``ValueError`` listing every problem found.
        """
        if self.debug:
            return

        problems = [
            message
            for failed, message in (
                (
                    self.secret_key == _DEFAULT_SECRET_KEY or len(self.secret_key) < 32,
                    "SECRET_KEY must be set to a random value of at least 32 characters",
                ),
                (
                    self.admin_password == _DEFAULT_ADMIN_PASSWORD
                    or len(self.admin_password) < 12,
                    "ADMIN_PASSWORD must be set to at least 12 characters",
                ),
                (not self.trusted_hosts, "TRUSTED_HOSTS must list the served host names"),
            )
            if failed
        ]
        if problems:
            raise ValueError("Insecure production configuration: " + "; ".join(problems))
