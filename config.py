import logging
import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    # MongoDB
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "mongodb://localhost:27017"))
    database_name: str = field(default_factory=lambda: os.getenv("DATABASE_NAME", "projectflow"))

    # Auth
    jwt_secret: str = field(default_factory=lambda: os.getenv("JWT_SECRET", "change-me"))
    jwt_algorithm: str = field(default_factory=lambda: os.getenv("JWT_ALGORITHM", "HS256"))
    jwt_expires_minutes: int = field(default_factory=lambda: int(os.getenv("JWT_EXPIRES_MINUTES", str(7 * 24 * 60))))

    # CORS
    cors_origins: List[str] = field(
        default_factory=lambda: _csv(os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000"))
    )

    # Attachment storage
    storage_backend: str = field(default_factory=lambda: os.getenv("STORAGE_BACKEND", "local"))
    storage_local_root: str = field(default_factory=lambda: os.getenv("STORAGE_LOCAL_ROOT", "uploads"))
    storage_local_url_prefix: str = field(default_factory=lambda: os.getenv("STORAGE_LOCAL_URL_PREFIX", "/uploads"))
    attachment_max_size_bytes: int = field(
        default_factory=lambda: int(os.getenv("ATTACHMENT_MAX_SIZE_BYTES", str(25 * 1024 * 1024)))
    )
    attachment_allowed_types: List[str] = field(
        default_factory=lambda: _csv(os.getenv("ATTACHMENT_ALLOWED_TYPES", "image,video,document"))
    )
    avatar_max_size_bytes: int = field(
        default_factory=lambda: int(os.getenv("AVATAR_MAX_SIZE_BYTES", str(5 * 1024 * 1024)))
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # pymongo is chatty at DEBUG
    logging.getLogger("pymongo").setLevel(max(level, logging.INFO))
