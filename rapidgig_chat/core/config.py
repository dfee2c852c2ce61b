"""
Configuration module - loads env vars using pydantic-settings.
Every other module reads settings through get_settings().
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # MongoDB
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "rapidgig_chat"

    # JWT (tokens are issued elsewhere, we only verify them)
    jwt_secret_key: str = "change-this-secret"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 1440

    # Redis, used for last-seen timestamps when set
    redis_url: Optional[str] = None
    last_seen_ttl_seconds: int = 60 * 60 * 24 * 30

    # FCM push for offline recipients
    fcm_service_account_file: Optional[str] = None
    fcm_project_id: Optional[str] = None

    # Message attachments
    upload_dir: str = "uploads/messages"
    upload_url_prefix: str = "/uploads/messages"
    max_upload_bytes: int = 10 * 1024 * 1024
    allowed_upload_types: List[str] = [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/plain",
        "application/zip",
        "application/x-zip-compressed",
    ]

    # App
    frontend_url: str = "http://localhost:5173"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
