from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    # container directory
    container_cli: str = "container"
    browser_image: str = "browser:latest"
    cdp_port: int = 9222                  # container-side CDP port
    rdp_port: int = 3389                  # container-side RDP port
    container_poll_interval: float = 4.0  # seconds

    # session controller
    cdp_fetch_timeout: float = 3.0
    discovery_retry_delay: float = 3.0
    reconnect_delay: float = 2.0

    model_config = SettingsConfigDict(env_prefix="SCREENCAST_", env_file=".env")


@lru_cache
def get_settings() -> Settings:
    return Settings()
