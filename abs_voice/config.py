from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Audiobookshelf
    ABS_BASE_URL: str = "http://localhost:13378"
    ABS_TOKEN: str = ""
    ABS_USER_AGENT: str = "AlexaSkill"
    REQUEST_TIMEOUT_SECONDS: Optional[float] = None  # None = no client-side timeout

    # Play session negotiation
    SUPPORTED_MIME_TYPES: List[str] = [
        "audio/flac",
        "audio/mpeg",
        "audio/mp4",
        "audio/aac",
        "audio/x-aiff",
    ]
    DEVICE_CLIENT_NAME: str = "Alexa Device"
    DEVICE_CLIENT_VERSION: str = "1.0"
    DEVICE_MANUFACTURER: str = "Amazon"
    DEVICE_MODEL: str = "Echo"

    # Display metadata
    BACKGROUND_IMAGE_URL: str = (
        "https://images.steelcase.com/image/upload/c_fill,q_auto,f_auto,h_900,w_1600/v1567243086/6130_1000.jpg"
    )
    COVER_SIZE_PIXELS: int = 512
    BACKGROUND_WIDTH_PIXELS: int = 1600
    BACKGROUND_HEIGHT_PIXELS: int = 900

    # Persistence
    STATE_PATH: str = "/data/devices.json"
    PERSIST_ENABLED: bool = True

    # Playback logic
    SEEK_END_MARGIN_SECONDS: float = 5.0
    PREVIOUS_CHAPTER_THRESHOLD_SECONDS: float = 5.0
    FUZZY_MATCH_CUTOFF: float = 0.6

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_HOST: str = "0.0.0.0"
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
