"""Application settings and configuration."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: Optional[str] = None
    postgres_user: str = "inspectseal"
    postgres_password: str = "inspectseal_dev_password"
    postgres_db: str = "inspectseal"
    postgres_port: int = 5432

    # Redis (verify endpoint rate limiting)
    redis_url: str = "redis://localhost:6379/0"

    # MinIO / S3
    minio_endpoint: str = "localhost:9000"
    minio_access_key: Optional[str] = None  # Required in non-dev
    minio_secret_key: Optional[str] = None  # Required in non-dev
    minio_bucket: str = "inspectseal-exports"
    minio_use_ssl: bool = False

    # API
    api_port: int = 8000
    environment: str = "development"
    api_host: str = "0.0.0.0"

    # Manifest signing (HMAC-SHA256, hex-encoded key material)
    manifest_signing_key_id: Optional[str] = None
    manifest_signing_key: Optional[str] = None
    manifest_signing_keys_legacy: str = "{}"  # JSON object: {"key_id": "hex"}

    # Sealing
    verify_base_url: str = "https://app.inspectvoice.co.uk"
    storage_upload_max_attempts: int = 3
    storage_upload_backoff_seconds: float = 0.5
    seal_max_attempts: int = 3

    # Logging
    log_level: str = "INFO"

    # Rate Limiting (public verify endpoint, per client IP)
    rate_limit_enabled: bool = True
    verify_rate_limit_per_minute: int = 30

    # CORS
    cors_origins: list[str] = ["*"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["*"]
    cors_allow_headers: list[str] = ["*"]

    @property
    def database_url_computed(self) -> str:
        """Compute database URL if not explicitly set."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@localhost:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    def validate_production_settings(self):
        """Validate settings for production environment."""
        env = self.environment.lower()
        if env not in ("development", "test", "dev"):
            if not self.minio_access_key or not self.minio_secret_key:
                raise ValueError(
                    "MINIO_ACCESS_KEY and MINIO_SECRET_KEY are required in production. "
                    "Do not use default credentials."
                )
            if not self.manifest_signing_key_id or not self.manifest_signing_key:
                raise ValueError(
                    "MANIFEST_SIGNING_KEY_ID and MANIFEST_SIGNING_KEY are required in production."
                )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
