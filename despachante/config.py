from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration (SQLite or PostgreSQL)
    DATABASE_URL: str = "sqlite:///./despachante.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Z-API gateway
    ZAPI_INSTANCE_ID: str = ""
    ZAPI_TOKEN: str = ""
    ZAPI_CLIENT_TOKEN: str = ""
    ZAPI_API_URL: str = ""
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # Automatic replies
    RESPONSE_ENABLED: bool = False
    RESPONSE_COOLDOWN_SECONDS: float = 30.0

    # LLM providers
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.0-flash"
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_MODEL: str = "deepseek/deepseek-v3.2"
    LLM_TIMEOUT_SECONDS: float = 15.0
    TRAINING_EXAMPLES_IN_PROMPT: int = 3

    # Google Drive / documents
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_DRIVE_FOLDER_ID: str = ""
    DRIVE_TOKEN_PATH: str = "./drive-token.json"
    UPLOADS_DIR: str = "./uploads"
    MEDIA_DOWNLOAD_TIMEOUT_SECONDS: float = 30.0

    # Business rules
    DETRAN_DEFAULT_FEE_CODE: str = "014-0"
    BUSINESS_NAME: str = "WDespachante"
    PIX_KEY: str = ""
    INSTALLMENT_URL: str = "https://www.infinitepay.io/"

    @property
    def zapi_base_url(self) -> str:
        """Base URL of the gateway instance, empty when not configured."""
        if self.ZAPI_API_URL:
            return self.ZAPI_API_URL.rstrip("/")
        if self.ZAPI_INSTANCE_ID and self.ZAPI_TOKEN:
            return f"https://api.z-api.io/instances/{self.ZAPI_INSTANCE_ID}/token/{self.ZAPI_TOKEN}"
        return ""

    @property
    def llm_enabled(self) -> bool:
        return bool(self.GEMINI_API_KEY or self.OPENROUTER_API_KEY)

    @property
    def storage_backend(self) -> str:
        return "postgresql" if self.DATABASE_URL.startswith("postgres") else "sqlite"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
