import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Application environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
DEBUG = ENVIRONMENT == "development"
TESTING = os.getenv("TESTING", "false").lower() == "true"

# Database settings
DATABASE_URL = os.getenv("DATABASE_URL")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
DB_POOL_TIMEOUT_SECONDS = int(os.getenv("DB_POOL_TIMEOUT_SECONDS", "30"))
DB_POOL_RECYCLE_SECONDS = int(os.getenv("DB_POOL_RECYCLE_SECONDS", "300"))
SLOW_DB_QUERY_THRESHOLD_MS = float(os.getenv("SLOW_DB_QUERY_THRESHOLD_MS", "200"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
APP_LOG_PATH = os.getenv("APP_LOG_PATH", "").strip()

# Application settings
APP_NAME = "Chatter API"
APP_VERSION = "1.0.0"

# Auth settings
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "7"))
AUTH_COOKIE_NAME = os.getenv("AUTH_COOKIE_NAME", "jwt")
AUTH_COOKIE_SECURE = os.getenv(
    "AUTH_COOKIE_SECURE", "false" if DEBUG else "true"
).lower() == "true"

# CORS
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

# Redis (rate limiting)
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Media storage (S3)
AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID")
AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY")
AWS_REGION = os.getenv("AWS_REGION", "us-east-2")
AWS_MEDIA_BUCKET = os.getenv("AWS_MEDIA_BUCKET", "")
AWS_MEDIA_PUBLIC_BASE_URL = os.getenv("AWS_MEDIA_PUBLIC_BASE_URL", "")

# Chat settings
MESSAGE_MAX_LENGTH = int(os.getenv("MESSAGE_MAX_LENGTH", "2000"))
MESSAGE_RATE_LIMIT_PER_MINUTE = int(os.getenv("MESSAGE_RATE_LIMIT_PER_MINUTE", "30"))  # 0 disables
LOGIN_RATE_LIMIT_PER_MINUTE = int(os.getenv("LOGIN_RATE_LIMIT_PER_MINUTE", "10"))  # 0 disables
MESSAGE_SANITIZE_ENABLED = os.getenv("MESSAGE_SANITIZE_ENABLED", "true").lower() == "true"
PRESENCE_ENABLED = os.getenv("PRESENCE_ENABLED", "true").lower() == "true"

# Group settings
GROUP_NAME_MAX_LENGTH = int(os.getenv("GROUP_NAME_MAX_LENGTH", "60"))
GROUP_DESCRIPTION_MAX_LENGTH = int(os.getenv("GROUP_DESCRIPTION_MAX_LENGTH", "150"))
GROUP_MIN_INITIAL_MEMBERS = int(os.getenv("GROUP_MIN_INITIAL_MEMBERS", "2"))  # excluding the creator

# Profile settings
USER_BIO_MAX_LENGTH = int(os.getenv("USER_BIO_MAX_LENGTH", "150"))

# Pagination
DEFAULT_PAGE_LIMIT = int(os.getenv("DEFAULT_PAGE_LIMIT", "15"))
MAX_PAGE_LIMIT = int(os.getenv("MAX_PAGE_LIMIT", "100"))
