from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    # Empty means: ask the EC2 instance metadata service.
    aws_region: str = ""

    node_identity_cache_enabled: bool = True
    node_identity_cache_ttl_seconds: int = 60 * 60

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
