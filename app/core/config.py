from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./maintenance_import.db"
    debug: bool = False
    date_default_dayfirst: bool = False
    log_level: str = "INFO"

    # Batch execution
    import_batch_size: int = 50  # Records committed per transaction
    import_batch_timeout_seconds: int = 30  # Time budget for one batch transaction

    # Relationship lookup preload
    lookup_preload_timeout_seconds: int = 15
    lookup_preload_max_workers: int = 4

    # Column mapping
    mapping_auto_accept_threshold: int = 100  # Only near-perfect matches are auto-assigned

    # Entity-specific defaults applied before insert
    default_user_password: str = "changeme123"
    default_location_name: str = "Default Location"

    # Upload handling
    import_preview_rows: int = 10
    upload_max_file_size_mb: int = 10

    model_config = ConfigDict(env_file=".env", extra="ignore")


settings = Settings()
