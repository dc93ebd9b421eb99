"""Bridge configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    production = "production"


# Evaluated inside the shared worker; must return a JSON string with
# "token" and "expiresOn" (epoch seconds).
DEFAULT_TOKEN_EXTRACTION_EXPRESSION = (
    "(() => {"
    " const entry = Object.entries(self.localStorage || {})"
    ".find(([k]) => k.includes('accesstoken') && k.includes('api.spaces.skype.com'));"
    " if (!entry) { return null; }"
    " const value = JSON.parse(entry[1]);"
    " return JSON.stringify({token: value.secret, expiresOn: Number(value.expiresOn)});"
    "})()"
)


class Settings(BaseSettings):
    """Bridge settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Desktop client launch and devtools discovery
    CLIENT_EXECUTABLE: str = ""  # Absolute, or relative to the home directory
    DEBUG_PORT: int = 9222
    STARTUP_DELAY_SECONDS: float = 5.0
    DISCOVERY_TIMEOUT_SECONDS: float = 2.0
    TARGET_TYPE: str = "shared_worker"
    TARGET_URL_MARKER: str = "precompiled"

    # Captured frame prefix (empirical; the remote side does not document it)
    FRAME_MARKER: str = "3"
    FRAME_DELIMITER: str = ":"
    FRAME_PREFIX_FIELDS: int = 3

    # Meeting correlation
    MEETING_CORRELATION_WINDOW_SECONDS: float = 60.0
    RESOLVED_MEETING_TTL_SECONDS: float = 12 * 60 * 60
    BOT_IDENTITY_PREFIX: str = "28:"

    # Credentials
    CREDENTIAL_EXPIRY_MARGIN_SECONDS: float = 60.0
    TOKEN_EXTRACTION_TIMEOUT_SECONDS: float = 5.0
    TOKEN_EXTRACTION_EXPRESSION: str = DEFAULT_TOKEN_EXTRACTION_EXPRESSION
    AUTHZ_URL: str = "https://teams.microsoft.com/api/authsvc/v1.0/authz"

    # Outbound chat API
    CHAT_SERVICE_URL: str = "https://apac.ng.msg.teams.microsoft.com"
    HTTP_TIMEOUT_SECONDS: float = 4.0
    BOT_DISPLAY_NAME: str = ""

    # Devtools session
    WARM_UP_DELAY_SECONDS: float = 10.0
    RECONNECT_MAX_DELAY_SECONDS: float = 30.0


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
