from functools import lru_cache
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

DEFAULT_DIRECTLINE_BASE_URL = "https://directline.botframework.com/v3/directline"


class Settings(BaseSettings):
    # Application
    app_name: str = "Copilot Avatar Voice"
    debug: bool = False
    log_level: str = "INFO"
    logs_dir: Path = Path("logs")

    # Filler speech played while the agent is thinking; empty disables it.
    filler_text_template: str = ""

    # ElevenLabs text-to-speech
    elevenlabs_api_key: str | None = None
    elevenlabs_voice_id: str | None = None
    elevenlabs_model_id: str = "eleven_flash_v2_5"
    elevenlabs_output_format: str = "pcm_24000"

    # Copilot Studio over Direct Line
    directline_secret: str | None = None
    directline_base_url: str = DEFAULT_DIRECTLINE_BASE_URL
    directline_user_id: str = "user"
    directline_poll_timeout_seconds: float = 30.0
    directline_poll_interval_seconds: float = 1.5
    directline_consent_poll_timeout_seconds: float = 10.0
    copilot_prompt_instructions: str | None = None
    copilot_clean_reply: bool = False
    copilot_debug: bool = False

    # Entra ID
    entra_tenant_id: str | None = None
    entra_client_id: str | None = None
    entra_client_secret: str | None = None

    # HTTP client
    http_timeout_seconds: int = 30

    # Voice sessions
    voice_session_ttl_minutes: int = 30
    voice_trace_logging: bool = False
    voice_trace_max_chars: int = 400

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    @field_validator("filler_text_template", "copilot_prompt_instructions")
    @classmethod
    def strip_text_setting(cls, v):
        if v is None:
            return v
        return v.strip()

    @field_validator("directline_base_url")
    @classmethod
    def validate_directline_base_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("DIRECTLINE_BASE_URL must be an http(s) URL")
        return v.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
