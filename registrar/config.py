"""Application configuration using Pydantic."""
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RegistrarSettings(BaseSettings):
    database_path: str = 'registrar.db'

    # Section critical section
    lock_timeout_seconds: float = Field(5.0, gt=0)
    max_conflict_retries: int = Field(3, ge=0)
    retry_backoff_seconds: float = Field(0.05, ge=0)
    db_busy_timeout_seconds: float = Field(1.0, gt=0)

    log_level: str = 'INFO'
    api_host: str = '0.0.0.0'
    api_port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix='REGISTRAR_',
        env_file='.env',
        extra='ignore',
    )


@lru_cache
def get_settings() -> RegistrarSettings:
    return RegistrarSettings()
