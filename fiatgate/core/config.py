from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Fiat Settlement Gate"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"  # "development", "staging", "production"

    # Database (SQLite for local dev, PostgreSQL in production)
    DATABASE_URL: str = "sqlite:///./fiatgate.db"

    # Payment processor webhooks
    PROCESSOR_WEBHOOK_SECRET: str = ""  # Signature check skipped when empty
    WEBHOOK_TOLERANCE_SECONDS: int = 300
    DEFAULT_RISK_SCORE: int = 50  # Used when the processor omits a risk score

    # Auth for operational surfaces
    CRON_SECRET: str = ""
    ADMIN_TOKEN: str = ""

    # Settlement sweep
    RUN_SCHEDULER: bool = False
    SETTLEMENT_SWEEP_INTERVAL_MINUTES: int = 60
    SETTLEMENT_BATCH_SIZE: int = 50
    SETTLEMENT_MAX_RETRIES: int = 5
    SETTLEMENT_STALE_CLAIM_MINUTES: int = 30
    SETTLEMENT_LEASE_SECONDS: int = 900
    FAILED_SETTLEMENTS_WARN: int = 1
    FAILED_SETTLEMENTS_CRITICAL: int = 10

    # On-chain release service
    RELEASE_SERVICE_URL: str = "http://localhost:8787"
    RELEASE_SERVICE_TOKEN: str = ""
    RELEASE_TIMEOUT_SECONDS: float = 60.0

    # Circuit breakers (reset timeouts in seconds)
    CIRCUIT_PERSIST_STATE: bool = False
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RESET_TIMEOUT: float = 30.0
    CIRCUIT_SUCCESS_THRESHOLD: int = 2
    OBJECT_STORAGE_FAILURE_THRESHOLD: int = 3
    OBJECT_STORAGE_RESET_TIMEOUT: float = 60.0  # Gateway recovers slowly

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
