"""Configuration settings for the console."""

import os

from dotenv import load_dotenv

load_dotenv()

APP_NAME = os.getenv("APP_NAME", "Civic Console API")

# ---------- Auth ----------
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change")
JWT_ALG = "HS256"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", str(60 * 24 * 14)))  # 14 days

# ---------- Storage ----------
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "civic_console")

REPORTS_COLLECTION = "reports"
USERS_COLLECTION = "users"
ADMINS_COLLECTION = "admins"
SUPERVISORS_COLLECTION = "supervisors"

# ---------- Views ----------
REPORT_LIST_LIMIT = int(os.getenv("REPORT_LIST_LIMIT", "100"))
OVERDUE_HOURS = int(os.getenv("OVERDUE_HOURS", "48"))
TOP_LOCATIONS_LIMIT = int(os.getenv("TOP_LOCATIONS_LIMIT", "10"))
TREND_DAYS = int(os.getenv("TREND_DAYS", "30"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ---------- Email (optional) ----------
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
FROM_EMAIL = os.getenv("FROM_EMAIL", "console@localhost")
