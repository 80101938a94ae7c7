from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/analytics"

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # Queries slower than this are logged as warnings
    SLOW_QUERY_THRESHOLD_MS: int = 500

    # Segment evaluation
    SEGMENT_EVENT_SCAN_LIMIT: int = 10000  # max raw events read per condition
    SEGMENT_MEMBERSHIP_BATCH_SIZE: int = 1000  # rows per INSERT when materializing
    SEGMENT_USERS_DEFAULT_LIMIT: int = 100
    SEGMENT_EXPORT_LIMIT: int = 10000

    @field_validator(
        'SEGMENT_EVENT_SCAN_LIMIT',
        'SEGMENT_MEMBERSHIP_BATCH_SIZE',
        'SEGMENT_USERS_DEFAULT_LIMIT',
        'SEGMENT_EXPORT_LIMIT',
    )
    @classmethod
    def require_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @model_validator(mode='after')
    def disable_debug_in_production(self) -> "Settings":
        if self.is_production:
            self.DEBUG = False
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() in ("production", "staging")

    @property
    def sqlalchemy_echo(self) -> bool:
        """Statement echo leaks bound parameters, so it is never enabled in production."""
        return self.DEBUG and not self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
