import os
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

SESSION_MAX_AGE_SECONDS = 24 * 60 * 60
SESSION_COOKIE_NAME = "storefront.sid"
DEFAULT_ADMIN_USERNAME = "admin"
DEFAULT_ADMIN_PASSWORD = "admin123"


class Settings(BaseModel):
    storage_backend: Literal["sql", "json"] = "json"
    database_url: Optional[str] = None
    data_dir: str = "./data"
    session_secret: str = "ecommerce-secret-key"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    production: bool = False

    @property
    def cookie_samesite(self) -> str:
        # cross-site cookies are only accepted by browsers when Secure
        return "none" if self.production else "lax"


def get_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL") or None
    backend = os.getenv("STORAGE_BACKEND") or ("sql" if database_url else "json")
    origins = os.getenv("CORS_ORIGIN", "*")
    return Settings(
        storage_backend=backend.lower(),
        database_url=database_url,
        data_dir=os.getenv("DATA_DIR", "./data"),
        session_secret=os.getenv("SESSION_SECRET", "ecommerce-secret-key"),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        production=os.getenv("APP_ENV", "").lower() == "production",
    )
