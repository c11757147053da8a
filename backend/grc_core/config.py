from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    APP_NAME: str = "GRC Core"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    # MySQL closes idle connections after wait_timeout (8h by default)
    DB_POOL_RECYCLE: int = 3600

    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Object storage (S3 / MinIO). Left empty the evidence store runs without
    # presigned URLs and skips object verification.
    S3_ENDPOINT_URL: str = ""
    S3_ACCESS_KEY: str = ""
    S3_SECRET_KEY: str = ""
    S3_BUCKET: str = "evidence"
    S3_REGION: str = "us-east-1"
    S3_UPLOAD_TTL_SECONDS: int = 900
    S3_DOWNLOAD_TTL_SECONDS: int = 3600

    REMINDER_INTERVAL_HOURS: int = 24
    FRESHNESS_WARNING_DAYS: int = 30
    REVIEW_DUE_SOON_DAYS: int = 30

    DEFAULT_PER_PAGE: int = 20
    MAX_PER_PAGE: int = 100

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    @property
    def engine_options(self) -> dict:
        """Keyword arguments for create_async_engine; SQLite gets no pool sizing."""
        options = {"echo": self.DEBUG, "pool_pre_ping": True}
        if not self.is_sqlite:
            options.update(
                pool_size=self.DB_POOL_SIZE,
                max_overflow=self.DB_MAX_OVERFLOW,
                pool_recycle=self.DB_POOL_RECYCLE,
            )
        return options

    @property
    def storage_configured(self) -> bool:
        return bool(self.S3_ENDPOINT_URL and self.S3_ACCESS_KEY and self.S3_SECRET_KEY)


settings = Settings()
