from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Tenant Admin Resilience"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Counter store (empty URL = in-process store, single worker only)
    REDIS_URL: str = ""
    REDIS_KEY_PREFIX: str = ""

    # Multi-dimension throttling defaults (fixed windows)
    THROTTLE_ENABLED: bool = True
    THROTTLE_IP_WINDOW_MS: int = 60000
    THROTTLE_IP_LIMIT: int = 100  # 100 req/min per IP
    THROTTLE_USER_WINDOW_MS: int = 60000
    THROTTLE_USER_LIMIT: int = 200
    THROTTLE_TENANT_WINDOW_MS: int = 60000
    THROTTLE_TENANT_LIMIT: int = 1000

    # Circuit breaker defaults
    BREAKER_DEFAULT_THRESHOLD: int = 5
    BREAKER_DEFAULT_COOLDOWN_MS: int = 30000

    # Sentry (optional)
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
