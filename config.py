import os
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

REQUIRED_ENV = [
    "DATABASE_URL",
    "DATABASE_NAME",
    "SECRET_KEY",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
]


class Settings(BaseModel):
    database_url: str
    database_name: str
    secret_key: str
    stripe_secret_key: str
    stripe_webhook_secret: str
    app_url: str = "http://localhost:3000"
    access_token_expire_minutes: int = 60 * 24
    admin_email: str | None = None
    admin_password: str | None = None
    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]


def load_settings() -> Settings:
    missing = [key for key in REQUIRED_ENV if not os.getenv(key)]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
    return Settings(
        database_url=os.environ["DATABASE_URL"],
        database_name=os.environ["DATABASE_NAME"],
        secret_key=os.environ["SECRET_KEY"],
        stripe_secret_key=os.environ["STRIPE_SECRET_KEY"],
        stripe_webhook_secret=os.environ["STRIPE_WEBHOOK_SECRET"],
        app_url=os.getenv("APP_URL", "http://localhost:3000").rstrip("/"),
        access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24)),
        admin_email=os.getenv("ADMIN_EMAIL") or None,
        admin_password=os.getenv("ADMIN_PASSWORD") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        cors_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
