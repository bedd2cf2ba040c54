from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Loads keys from process env, and also from a local .env file for convenience.
    model_config = SettingsConfigDict(env_prefix="", extra="ignore", env_file=".env", env_file_encoding="utf-8")

    # Remote store facade + object store (same worker)
    workers_api_url: str = "https://ecommerce-detail-api.workers.dev"
    workers_api_secret: str = ""
    remote_timeout_s: float = 30.0

    # Keys
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.vectorengine.ai/v1"
    gemini_api_key: str | None = None

    # Models
    text_model: str = "gemini-2.5-flash"
    image_model: str = "gemini-2.5-flash-image"
    fallback_image_model: str = "gpt-image-1"
    fallback_image_size: str = "1024x1024"
    gemini_image_model: str = "gemini-2.5-flash-image"

    # "openai" goes through the OpenAI-compatible gateway; "gemini" uses google-genai directly.
    image_provider: str = "openai"
    detail_aspect_ratio: str = "3:4"
    max_reference_images: int = 4
    panel_font_path: str | None = None

    # Copywriting
    script_temperature: float = 0.7
    rewrite_temperature: float = 0.8
    vision_max_tokens: int = 1000
    copy_language: str = "Simplified Chinese"

    # Auth
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_expires_days: int = 7
    bcrypt_rounds: int = 10

    # Uploads
    max_upload_bytes: int = 10 * 1024 * 1024
    max_upload_files: int = 20

    # Service
    log_level: str = "INFO"
    log_dir: str = "logs"
    cors_origins: list[str] = ["*"]
    host: str = "0.0.0.0"
    port: int = 3001


settings = Settings()
