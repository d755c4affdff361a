from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    # Database
    DATABASE_URL: Optional[str] = None
    POSTGRES_USER: str = "classmate"
    POSTGRES_PASSWORD: str = "password"
    POSTGRES_DB: str = "classmate"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432

    # Redis (signaling relay)
    REDIS_URL: str = "redis://localhost:6379"
    SIGNAL_CHANNEL_PREFIX: str = "session"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Logging
    LOG_LEVEL: str = "INFO"

    # Session lifecycle
    WAIT_TIMEOUT_SECONDS: int = 180
    MIN_VIABLE_MEMBERS: int = 2
    DEFAULT_CAPACITY: int = 5
    MAX_CAPACITY: int = 12
    ADMISSION_MAX_ATTEMPTS: int = 5

    # Room messages
    ROOM_MESSAGE_LIMIT: int = 200
    ROOM_MESSAGE_MAX_LENGTH: int = 2000

    class Config:
        env_file = ".env"
        extra = "allow"  # Allow extra environment variables

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"


settings = Settings()
