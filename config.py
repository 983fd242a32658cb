from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Shared key store (admin side talks to the database directly)
    STORE_DATABASE_URL: str = "sqlite:///./activation_keys.db"

    # Shared key store over HTTP (protected application side)
    STORE_API_URL: str = "http://localhost:8000/api/store"
    STORE_API_TIMEOUT: int = 30
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_BACKOFF_SECONDS: float = 0.5

    # Change notification polling, 0 disables the background job
    STORE_POLL_INTERVAL_SECONDS: int = 15

    # Device-local state (watermark, remembered code, attempt log)
    LOCAL_DATABASE_URL: str = "sqlite:///./activation_local.db"
    DEVICE_ID: str = ""  # Falls back to the hardware fingerprint

    # Issuance
    APP_NAME: str = "YSK Activation"
    CODE_PREFIX: str = "YSK"
    CODE_SUFFIX_LENGTH: int = 4
    DEFAULT_DURATION_DAYS: int = 30

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
