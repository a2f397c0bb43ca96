"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    DATABASE_URL: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    SESSION_COOKIE_NAME: str
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    OPENAI_API_KEY: str | None
    OPENAI_MODEL: str
    OPENAI_TIMEOUT_SECONDS: float
    AI_MAX_ATTEMPTS: int
    AI_RETRY_BACKOFF_SECONDS: float
    FLW_PUBLIC_KEY: str
    FLW_SECRET_HASH: str | None
    PUBLIC_BASE_URL: str
    LOGIN_RATE_LIMIT_PER_MIN: int
    AI_RATE_LIMIT_PER_MIN: int
    TRUST_PROXY: bool
    LOG_LEVEL: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'app.db'}")
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "hs_session")
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or None
        self.OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.OPENAI_TIMEOUT_SECONDS = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "90"))
        self.AI_MAX_ATTEMPTS = int(os.getenv("AI_MAX_ATTEMPTS", "3"))
        self.AI_RETRY_BACKOFF_SECONDS = float(os.getenv("AI_RETRY_BACKOFF_SECONDS", "2"))
        self.FLW_PUBLIC_KEY = os.getenv("FLW_PUBLIC_KEY", "")
        self.FLW_SECRET_HASH = os.getenv("FLW_SECRET_HASH") or None
        self.PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
        self.LOGIN_RATE_LIMIT_PER_MIN = int(os.getenv("LOGIN_RATE_LIMIT_PER_MIN", "20"))
        self.AI_RATE_LIMIT_PER_MIN = int(os.getenv("AI_RATE_LIMIT_PER_MIN", "10"))
        self.TRUST_PROXY = os.getenv("TRUST_PROXY", "false").lower() == "true"
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.ENV != "dev" and self.FLW_PUBLIC_KEY and not self.FLW_SECRET_HASH:
            raise RuntimeError("FLW_SECRET_HASH must be set when payments are enabled outside dev")
        if self.JWT_EXPIRE_HOURS <= 0:
            raise RuntimeError("JWT_EXPIRE_HOURS must be positive")


settings = Settings()
