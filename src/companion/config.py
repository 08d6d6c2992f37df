"""
Configuration management for the companion core.

Settings are loaded from environment variables (prefix ``COMPANION_``, nested
sections separated by ``__``) and an optional ``.env`` file, so that a host
application or a deployment can configure backends without code changes::

    COMPANION_LLM__PROVIDER=ollama
    COMPANION_LLM__MODEL=llama3.1:8b
    COMPANION_PROXY__ENABLED=true
    COMPANION_PROXY__FOR_TTS=true
"""

from __future__ import annotations

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseModel):
    """Chat backend binding."""

    provider: str = "openai"  # openai, ollama
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    api_key: str = ""
    temperature: float = 0.7
    max_tokens: int | None = None
    supports_images: bool = False
    timeout: float = 60.0
    calls_per_minute: int = 0  # 0 = no client-side limit


class ProxySettings(BaseModel):
    """Outbound proxy rules, keyed by request category."""

    enabled: bool = False
    follow_system_proxy: bool = False
    protocol: str = "http"  # http, socks
    address: str = "127.0.0.1:8080"
    for_all: bool = False
    for_chat: bool = False
    for_asr: bool = False
    for_tts: bool = False
    for_plugin: bool = False


class HistorySettings(BaseModel):
    """History window and persistence."""

    max_context_tokens: int = 0  # 0 = send the whole history
    autosave: bool = False

    # Summarise older turns through the chat backend once the history holds
    # compression_threshold messages.
    compression: bool = False
    compression_threshold: int = 20
    data_dir: str = "~/.local/share/companion"


class ActionSettings(BaseModel):
    """Action plugin resolution."""

    feed_action_results: bool = False
    max_action_rounds: int = 3


class TTSSettings(BaseModel):
    """Text-to-speech dialect selection and per-dialect fields."""

    mode: str = "openai"  # openai, gpt_sovits_v2, gpt_sovits_webui, url
    base_url: str = "https://api.openai.com"
    api_key: str = ""
    model: str = "tts-1"
    voice: str = "alloy"
    response_format: str = "mp3"
    speed: float = 1.0
    timeout: float = 30.0

    # url dialect
    method: str = "GET"

    # GPT-SoVITS (both dialects)
    top_k: int = 10
    top_p: float = 1.0
    temperature: float = 1.0

    # GPT-SoVITS API v2
    ref_audio_path: str = ""
    prompt_text: str = ""
    prompt_lang: str = "zh"
    text_lang: str = "zh"
    text_split_method: str = "cut5"
    batch_size: int = 1
    media_type: str = "wav"
    streaming_mode: bool = False
    repetition_penalty: float = 1.35
    sample_steps: int = 32
    super_sampling: bool = False

    # GPT-SoVITS WebUI bundle
    version: str = "v4"
    model_name: str = ""
    emotion: str = ""
    prompt_language: str = ""
    text_language: str = ""
    webui_split_method: str = ""


class ASRSettings(BaseModel):
    """Speech-to-text vendor selection."""

    mode: str = "openai"  # openai, soniox
    base_url: str = "https://api.openai.com"
    api_key: str = ""
    model: str = "whisper-1"
    language: str | None = None
    timeout: float = 60.0

    # soniox job polling
    poll_interval: float = 1.0
    max_poll_attempts: int = 60


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    llm: LLMSettings = LLMSettings()
    proxy: ProxySettings = ProxySettings()
    history: HistorySettings = HistorySettings()
    actions: ActionSettings = ActionSettings()
    tts: TTSSettings = TTSSettings()
    asr: ASRSettings = ASRSettings()

    system_prompt: str = (
        "You are a friendly desktop companion. Keep replies short. "
        "To use a plugin, write [PluginName:arguments] in your reply."
    )

    # REST surface
    host: str = "127.0.0.1"
    port: int = 8765

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="COMPANION_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
    )


def get_settings() -> Settings:
    """Get the application settings instance."""
    return Settings()
