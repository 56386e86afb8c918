from pydantic import BaseModel, Field
import os

class Settings(BaseModel):
    app_name: str = "sitestats"
    env: str = Field(default=os.getenv("ENV", "dev"))
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default=os.getenv("LOG_FORMAT", "json"), pattern="^(json|console)$")
    # "postgres" or "memory" (single process only)
    backend: str = Field(default=os.getenv("SITESTATS_BACKEND", "postgres"), pattern="^(postgres|memory)$")

    # DB
    db_host: str = Field(default=os.getenv("POSTGRES_HOST", "postgres"))
    db_port: int = Field(default=int(os.getenv("POSTGRES_PORT", "5432")))
    db_user: str = Field(default=os.getenv("POSTGRES_USER", "app"))
    db_password: str = Field(default=os.getenv("POSTGRES_PASSWORD", "app"))
    db_name: str = Field(default=os.getenv("POSTGRES_DB", "analytics"))
    db_pool_min: int = Field(default=int(os.getenv("DB_POOL_MIN", "1")))
    db_pool_max: int = Field(default=int(os.getenv("DB_POOL_MAX", "10")))
    db_connect_attempts: int = Field(default=int(os.getenv("DB_CONNECT_ATTEMPTS", "30")))

    # Queue / worker
    queue_name: str = Field(default=os.getenv("QUEUE_NAME", "events_queue"), pattern="^[A-Za-z0-9_]+$")
    queue_poll_seconds: float = Field(default=float(os.getenv("QUEUE_POLL_SECONDS", "5")))
    worker_error_pause: float = Field(default=float(os.getenv("WORKER_ERROR_PAUSE", "0.5")))
    embedded_worker: bool = Field(default=os.getenv("EMBEDDED_WORKER", "0") == "1")

    # Reporting
    top_paths_limit: int = Field(default=int(os.getenv("TOP_PATHS_LIMIT", "10")))

    # Metrics
    enable_metrics: bool = Field(default=os.getenv("ENABLE_METRICS", "1") == "1")

    # Serving
    ingest_port: int = Field(default=int(os.getenv("INGEST_PORT", "3001")))
    reporting_port: int = Field(default=int(os.getenv("REPORTING_PORT", "3002")))

    # HTTP edge
    cors_origins: list[str] = Field(
        default=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )
    max_body_bytes: int = Field(default=int(os.getenv("MAX_BODY_BYTES", str(200 * 1024))))

    @property
    def conninfo(self) -> str:
        return (
            f"host={self.db_host} port={self.db_port} user={self.db_user} "
            f"password={self.db_password} dbname={self.db_name}"
        )

settings = Settings()
