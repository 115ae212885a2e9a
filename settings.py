import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


class ConfigurationError(RuntimeError):
    pass


@dataclass
class Settings:
    admin_token: str
    deals_backend: str = "file"
    deals_path: str = "data/deals.json"
    fallback_deals_path: Optional[str] = None
    backup_dir: str = "backup"
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "coursespeak"
    deals_collection: str = "deals"
    live_site_url: str = "https://coursespeak.com"
    environment: str = "development"
    log_level: str = "INFO"
    log_dir: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    port: int = 8000

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


def load_settings(require_admin_token: bool = True) -> Settings:
    """
    Build Settings from the process environment.

    .env.local wins over .env, and both lose to variables already exported
    in the shell. The admin secret has no built-in default: a server cannot
    start without one.
    """
    load_dotenv(".env.local")
    load_dotenv(".env")

    admin_token = (os.getenv("ADMIN_TOKEN") or "").strip()
    if require_admin_token and not admin_token:
        raise ConfigurationError("ADMIN_TOKEN is not set; refusing to start without an admin secret")

    backend = (os.getenv("DEALS_BACKEND") or "file").strip().lower()
    if backend not in ("file", "database"):
        raise ConfigurationError(f"DEALS_BACKEND must be 'file' or 'database', got {backend!r}")

    origins = [o.strip() for o in (os.getenv("CORS_ORIGINS") or "*").split(",") if o.strip()]

    try:
        port = int(os.getenv("PORT", 8000))
    except ValueError:
        raise ConfigurationError("PORT must be an integer")

    return Settings(
        admin_token=admin_token,
        deals_backend=backend,
        deals_path=os.getenv("DEALS_PATH") or "data/deals.json",
        fallback_deals_path=os.getenv("FALLBACK_DEALS_PATH") or None,
        backup_dir=os.getenv("BACKUP_DIR") or "backup",
        database_url=os.getenv("DATABASE_URL") or os.getenv("MONGODB_URI") or "mongodb://localhost:27017",
        database_name=os.getenv("DATABASE_NAME") or "coursespeak",
        deals_collection=os.getenv("DEALS_COLLECTION") or "deals",
        live_site_url=os.getenv("LIVE_SITE_URL") or "https://coursespeak.com",
        environment=os.getenv("ENVIRONMENT") or "development",
        log_level=os.getenv("LOG_LEVEL") or "INFO",
        log_dir=os.getenv("LOG_DIR") or None,
        cors_origins=origins or ["*"],
        port=port,
    )
