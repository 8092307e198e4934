import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "marketplace"
    mongo_transactions: bool = False
    mongo_timeout_ms: int = 5000
    jwt_secret: str = "devsecret"
    access_token_expire_minutes: int = 60 * 24
    reset_token_expire_minutes: int = 60
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    frontend_url: str = "http://localhost:3000"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-3.5-turbo"
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            mongo_transactions=_env_bool("MONGO_TRANSACTIONS"),
            mongo_timeout_ms=int(os.getenv("MONGO_TIMEOUT_MS", cls.mongo_timeout_ms)),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", cls.access_token_expire_minutes)),
            smtp_host=os.getenv("SMTP_HOST") or None,
            smtp_port=int(os.getenv("SMTP_PORT", cls.smtp_port)),
            smtp_user=os.getenv("SMTP_USER") or None,
            smtp_pass=os.getenv("SMTP_PASS") or None,
            frontend_url=os.getenv("FRONTEND_URL", cls.frontend_url),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", cls.openai_model),
            admin_email=os.getenv("ADMIN_EMAIL") or None,
            admin_password=os.getenv("ADMIN_PASSWORD") or None,
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
        )
