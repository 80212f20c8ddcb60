from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # Database: Supabase PostgreSQL, or SQLite for local dev
    database_url: str = ""  # Supabase connection string (postgresql://...)
    sqlite_path: str = ""  # Defaults to backend/data/mls_geo.db

    @property
    def effective_database_url(self) -> str:
        """Return the async database URL to use."""
        if self.database_url:
            url = self.database_url
            # Convert postgres:// to postgresql+asyncpg://
            if url.startswith("postgres://"):
                url = "postgresql+asyncpg://" + url[len("postgres://"):]
            elif url.startswith("postgresql://"):
                url = "postgresql+asyncpg://" + url[len("postgresql://"):]
            elif not url.startswith("postgresql+asyncpg://"):
                url = "postgresql+asyncpg://" + url
            return url
        db_path = Path(self.sqlite_path) if self.sqlite_path else Path(__file__).parent.parent / "data" / "mls_geo.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite+aiosqlite:///{db_path}"

    @property
    def is_sqlite(self) -> bool:
        return self.effective_database_url.startswith("sqlite")

    # API key for securing the processing endpoints
    processor_api_key: str = ""

    # CORS: allowed origins, comma-separated
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    @property
    def cors_origin_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    # Geocoding providers
    mapbox_access_token: str = ""
    geocodio_api_key: str = ""

    # AI enrichment (Gemini)
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    enrichment_enabled: bool = True
    enrichment_cache_ttl_hours: float = 720.0  # 30 days

    # Provider calls
    provider_timeout_seconds: float = 30.0
    retry_max_wait_seconds: float = 30.0

    # Pipeline
    inter_batch_pause_seconds: float = 0.1
    cache_cleanup_every_n_inserts: int = 100
    autosave_interval: int = 5  # Snapshot every N processed records
    snapshot_retention_hours: float = 24.0
    snapshot_backend: str = "file"  # "file" or "database"
    snapshot_dir: str = "data/snapshots"

    # Finished files
    output_dir: str = "data/output"
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_storage_bucket: str = "mls-processed-files"

    @property
    def storage_available(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    def validate_production(self) -> list[str]:
        """Check critical env vars for production. Returns list of warnings."""
        warnings = []
        if self.app_env == "production":
            if not self.database_url:
                warnings.append("DATABASE_URL is required in production")
            if not self.processor_api_key:
                warnings.append("PROCESSOR_API_KEY is required in production")
            if not self.mapbox_access_token and not self.geocodio_api_key:
                warnings.append("MAPBOX_ACCESS_TOKEN or GEOCODIO_API_KEY is required for geocoding")
            if not self.gemini_api_key:
                warnings.append("GEMINI_API_KEY recommended for neighborhood/community enrichment")
            if not self.storage_available:
                warnings.append("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY recommended for file storage")
        return warnings


settings = Settings()
