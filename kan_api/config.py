from __future__ import annotations

import os
from dataclasses import dataclass


def _csv_env(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    api_prefix: str = "/api/v1"
    db_url: str = os.getenv("KAN_DB_URL", "sqlite:///data/kan.db")
    base_url: str = os.getenv("KAN_BASE_URL", "http://localhost:3000")
    signing_secret: str = os.getenv("KAN_SIGNING_SECRET", "")
    storage_root: str = os.getenv("KAN_STORAGE_PATH", os.path.join(os.getcwd(), "storage"))
    s3_access_key_id: str = os.getenv("S3_ACCESS_KEY_ID", "")
    s3_secret_access_key: str = os.getenv("S3_SECRET_ACCESS_KEY", "")
    s3_region: str = os.getenv("S3_REGION", "")
    s3_endpoint: str = os.getenv("S3_ENDPOINT", "")
    s3_force_path_style: bool = os.getenv("S3_FORCE_PATH_STYLE", "") == "true"
    attachments_bucket: str = os.getenv("KAN_ATTACHMENTS_BUCKET_NAME", "")
    signed_url_ttl_s: int = int(os.getenv("KAN_SIGNED_URL_TTL_S", 60 * 60))
    cover_max_bytes: int = int(os.getenv("KAN_COVER_MAX_BYTES", 5 * 1024 * 1024))
    cors_allow_origins: tuple[str, ...] = _csv_env("KAN_CORS_ALLOW_ORIGINS", "*")


settings = Settings()
