"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Deployment configuration, loaded from environment variables (or .env file).

    Tuning knobs (delays, intervals, retention) live in pipeline_config.yaml;
    this class only carries what differs between deployments.
    """

    # --- App ---
    app_name: str = "GlucoSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Storage ---
    database_url: str = "sqlite+aiosqlite:///./glucosync.db"
    vault_dir: str = "./.glucosync-vault"

    # --- Official feed (OAuth2) ---
    official_client_id: str = ""
    official_client_secret: str = ""
    official_redirect_uri: str = "http://localhost:8000/api/v1/official/callback"
    official_environment: str = "production"  # production | sandbox

    # --- Informal feed (session) ---
    informal_server: str = "international"  # us | international
    informal_application_id: str = "d8665ade-9673-4e27-9ff6-92db4ce13d13"

    # --- Pipeline ---
    pipeline_config_path: str | None = None  # defaults to the bundled YAML
    autostart_sync: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "GLUCOSYNC_"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
