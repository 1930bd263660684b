"""Service configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    MARKETPLACE_API_URL: str = "http://marketplace:4000"
    MARKETPLACE_API_TOKEN: str = ""
    HTTP_TIMEOUT_SEC: float = 10.0

    REDIS_URL: str = "redis://redis:6379/0"
    DELIVERY_EVENTS_CHANNEL: str = "deliveries:events"
    EVENT_LISTENER_ENABLED: bool = True

    # A refresh still running after this long is retired and its result dropped
    REFRESH_TIMEOUT_SEC: float = 15.0

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "allow"


settings = Settings()
