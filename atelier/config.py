import os
from dotenv import load_dotenv
from typing import List, Optional

load_dotenv()


def get_required(key: str) -> str:
    value = os.getenv(key)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {key}")
    return value


def get_optional(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    return value if value else default


def get_list(key: str, default: str = "") -> List[str]:
    raw = get_optional(key, default) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


def build_database_url() -> str:
    explicit = get_optional("DATABASE_URL")
    if explicit:
        return explicit
    user = get_required("DB_USER")
    password = get_required("DB_PASSWORD")
    host = get_required("DB_HOST")
    port = int(get_required("DB_PORT"))
    name = get_required("DB_NAME")
    return f"mysql+pymysql://{user}:{password}@{host}:{port}/{name}?charset=utf8mb4"


class Settings:
    # ---------------------------------------------------------------------
    # DATABASE
    # ---------------------------------------------------------------------
    DATABASE_URL: str = build_database_url()

    # ---------------------------------------------------------------------
    # JWT / SECURITY
    # ---------------------------------------------------------------------
    SECRET_KEY: str = get_required("SECRET_KEY")
    ALGORITHM: str = get_optional("ALGORITHM", "HS256")
    # Signs the QR class keys; falls back to the session secret
    CLASS_KEY_SECRET: str = get_optional("CLASS_KEY_SECRET", SECRET_KEY)

    # ---------------------------------------------------------------------
    # CORS
    # ---------------------------------------------------------------------
    CORS_ALLOW_ORIGINS: List[str] = get_list("CORS_ALLOW_ORIGINS", "*")
    CORS_ALLOW_METHODS: List[str] = get_list("CORS_ALLOW_METHODS", "*")
    CORS_ALLOW_HEADERS: List[str] = get_list("CORS_ALLOW_HEADERS", "*")
    CORS_ALLOW_CREDENTIALS: bool = (
        get_optional("CORS_ALLOW_CREDENTIALS", "false").lower() == "true"
    )

    # ---------------------------------------------------------------------
    # CHECK-IN WINDOW
    # ---------------------------------------------------------------------
    # Stored start instants carry a +3h clock bias, so 165/360 minutes here
    # is the -15min/+3h window in local class time.
    CHECKIN_OPEN_OFFSET_MINUTES: int = int(
        get_optional("CHECKIN_OPEN_OFFSET_MINUTES", "165")
    )
    CHECKIN_CLOSE_OFFSET_MINUTES: int = int(
        get_optional("CHECKIN_CLOSE_OFFSET_MINUTES", "360")
    )

    # ---------------------------------------------------------------------
    # BUSINESS RULES
    # ---------------------------------------------------------------------
    RESCHEDULE_WINDOW_DAYS: int = int(get_optional("RESCHEDULE_WINDOW_DAYS", "7"))
    RESCHEDULE_STATUS_MAX_AGE_DAYS: int = int(
        get_optional("RESCHEDULE_STATUS_MAX_AGE_DAYS", "7")
    )
    DEFAULT_PROFESSOR_CAPACITY: int = int(
        get_optional("DEFAULT_PROFESSOR_CAPACITY", "10")
    )
    # students pick next month's slots themselves only this close to month end
    SELF_ENROLL_DAYS: int = int(get_optional("SELF_ENROLL_DAYS", "5"))

    # ---------------------------------------------------------------------
    # LOGGING
    # ---------------------------------------------------------------------
    LOG_LEVEL: str = get_optional("LOG_LEVEL", "INFO")


# Singleton instance
settings = Settings()
