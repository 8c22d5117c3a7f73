"""
Configuration management using Pydantic Settings
"""
import logging
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings loaded from environment variables"""

    # Database
    DATABASE_URL: str = "sqlite:///./training_engine.db"
    DATABASE_ECHO: bool = False

    # Redis (snapshot cache is disabled when unset)
    REDIS_URL: Optional[str] = None
    SNAPSHOT_CACHE_TTL: int = 3600  # 1 hour

    # Application
    APP_NAME: str = "Training Progression Engine"
    APP_VERSION: str = "1.0.0"

    # Quiz defaults
    DEFAULT_PASSING_SCORE: int = 70
    DEFAULT_DURATION_MINUTES: int = 30
    AUTO_SUBMIT_GRACE_SECONDS: int = 0

    # Certificates
    CERTIFICATE_MAX_RETRIES: int = 5
    CERTIFICATE_CLAIM_TIMEOUT_SECONDS: int = 300
    CERTIFICATE_NUMBER_PREFIX: str = "RMP"
    CERTIFICATE_ISSUED_BY: str = "Resource Management Portal"
    CERTIFICATE_VALIDITY_YEARS: int = 2

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging the same way for every entry point"""
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
