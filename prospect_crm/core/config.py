from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Prospect CRM API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./prospect_crm.db"
    database_echo: bool = False
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    access_token_ttl_minutes: int = 60 * 24 * 30
    metrics_enabled: bool = False
    otel_enabled: bool = False
    otel_exporter_endpoint: str | None = None
    log_level: str = "INFO"
    seed_admin_username: str = "admin"
    seed_admin_password: str = "admin123"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
