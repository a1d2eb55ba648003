from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    gemini_api_key: str = ""
    narrator_model: str = "gemini-2.5-flash"
    narrator_temperature: float = 0.9
    narrator_max_output_tokens: int = 400

    # Length of each voting window; the wake-up fires this long after narration lands
    voting_window_seconds: float = 20.0

    # "memory" keeps rooms in-process; "firestore" persists them to Cloud Firestore
    storage_backend: str = "memory"
    google_cloud_project: str = ""
    firestore_emulator_host: Optional[str] = None
    firestore_collection: str = "rooms"

    # CORS origins: set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ]
    log_level: str = "INFO"
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
