import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    # Secret key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")

    # SESSION / COOKIE CONFIG
    SESSION_COOKIE_NAME = "messmate_session"
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    CORS_ORIGINS = [
        origin.strip()
        for origin in os.environ.get("CORS_ORIGINS", "*").split(",")
        if origin.strip()
    ]

    # Database config (defaults allow local run without crashing)
    DB_HOST = os.environ.get("DB_HOST", "localhost")
    DB_PORT = int(os.environ.get("DB_PORT", 3306))
    DB_USER = os.environ.get("DB_USER", "root")
    DB_PASSWORD = os.environ.get("DB_PASSWORD", "")
    DB_NAME = os.environ.get("DB_NAME", "messmate")
    DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", 10))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    # Mess rules
    MIN_MEMBER_LIMIT = 6
    MAX_MEMBER_LIMIT = 20
    DEFAULT_MEMBER_LIMIT = int(os.environ.get("DEFAULT_MEMBER_LIMIT", 10))

    # Listing
    DEFAULT_PAGE_SIZE = int(os.environ.get("DEFAULT_PAGE_SIZE", 20))
    MAX_PAGE_SIZE = int(os.environ.get("MAX_PAGE_SIZE", 100))

config = Config()
