from __future__ import annotations

import os

APP_VERSION = "1.4.0"

SERVER_HOST = "0.0.0.0"
SERVER_PORT = int(os.getenv("PORT", "8080"))

DATA_DIR = os.getenv("DATA_DIR", "data")
VISITOR_DATA_FILE = os.getenv("VISITOR_DATA_FILE", os.path.join(DATA_DIR, "visitor-data.json"))
USERS_DB_FILE = os.getenv("USERS_DB_FILE", os.path.join(DATA_DIR, "users.db"))
LEGACY_USERS_FILE = os.getenv("LEGACY_USERS_FILE", os.path.join(DATA_DIR, "users.json"))
PUBLIC_DIR = os.getenv("PUBLIC_DIR", "public")

# Sessions
JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ALGORITHM = "HS256"
SESSION_TIMEOUT_SECONDS = 30 * 60
AUTH_COOKIE = "auth_token"
COOKIE_SECURE = os.getenv("APP_ENV", "") == "production"

# Google OAuth
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
GOOGLE_CALLBACK_URL = os.getenv("GOOGLE_CALLBACK_URL", "http://localhost:8080/auth/google/callback")

HTTP_TIMEOUT_SECONDS = 10

# Verification mail; unset SMTP_HOST means codes are only logged
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", SMTP_USER)

ADMIN_USER = os.getenv("ADMIN_USER", "")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")

PROTECTED_PAGES = frozenset({
    "home", "factcheck", "social-media", "phone-intel", "emailintelligence",
    "domain-intel", "breach-data", "darkweb-tools", "blockchain-tools",
    "aitools", "learning", "github", "contact", "osint-books", "cyber",
})
