"""Host server settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class HostServerSettings(BaseSettings):
    """Host server configuration from environment variables."""

    server_name: str = "otelboot-host"
    server_host: str = "0.0.0.0"
    server_port: int = 8000
    server_log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )
