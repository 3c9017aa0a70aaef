import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env", ".env.production"), extra="ignore")

    ENVIRONMENT: str = "LOCAL"

    # Database URLs (managed Postgres / Supabase)
    DATABASE_URL: str | None = os.getenv("DATABASE_URL")
    POSTGRES_URL: str | None = os.getenv("POSTGRES_URL")

    # Fallback/Manual Configuration
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "127.0.0.1")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "postgres")
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "h2_registry")
    ESDB_CONNECTION_STRING: str = os.getenv("ESDB_CONNECTION_STRING", "")

    JWT_SECRET_KEY: str = "secret_key"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Only present in trusted server deployments. When unset the privileged
    # ownership transfer path is unavailable and blocked purchases are recorded only.
    SERVICE_ROLE_KEY: str | None = os.getenv("SERVICE_ROLE_KEY")

    # Optional bootstrap administrator, created at startup when both are set
    ADMIN_EMAIL: str | None = None
    ADMIN_PASSWORD: str | None = None

    LOG_LEVEL: str = "INFO"
    CORS_ALLOWED_ORIGINS: str = ""

    @property
    def database_url(self) -> str:
        """Build database URL from components if DATABASE_URL is not set."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        elif self.POSTGRES_URL:
            return self.POSTGRES_URL
        else:
            return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins into a clean list."""
        if not self.CORS_ALLOWED_ORIGINS:
            return []
        return [
            o.strip().strip("'\"").rstrip("/")
            for o in self.CORS_ALLOWED_ORIGINS.split(",")
            if o.strip()
        ]

    CREDIT_BASE_PRICE: float = 25.0
    STORE_TIMEOUT_SECONDS: float = 15.0
    ROW_LEVEL_SECURITY_ENABLED: bool = True
    ALLOW_MARKETPLACE_CLAIMS: bool = False
    ALLOW_RECORDED_ONLY_PURCHASES: bool = True
    MARKETPLACE_PAGE_SIZE: int = 50
    FACILITY_DAILY_KG_PER_MW: float = 400.0
    PROFILING_ENABLED: bool = False


settings = Settings()
