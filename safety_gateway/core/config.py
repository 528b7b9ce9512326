from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    app_name: str = "Content Safety Gateway"
    database_url: str = "sqlite:///./content_safety.db"
    database_echo: bool = False

    azure_content_safety_endpoint: str | None = None
    azure_content_safety_key: str | None = None
    azure_content_safety_api_version: str = "2024-09-01"
    azure_content_safety_timeout: float | None = None

    blob_storage_root: str = "./storage"
    blob_signing_key: str = "change-me"
    blob_url_ttl_minutes: int = 5

    default_requests_limit: int = 100
    rate_limit_requests: int = 30
    rate_limit_window: int = 60  # seconds
    max_image_bytes: int = 10 * 1024 * 1024
    max_text_length: int = 10000
    history_page_size: int = 20

    log_level: str = "INFO"
    log_file: str | None = None

    class Config:
        env_file = ".env"

settings = Settings()
