from __future__ import annotations
import logging
import os

from dotenv import load_dotenv

load_dotenv()

DEFAULT_OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"


class Settings:
    ACCESS_PASSCODE = os.getenv("ACCESS_PASSCODE", "EMMA2025")

    # Server-side key; visitors may bring their own instead
    OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
    OPENROUTER_URL = os.getenv("OPENROUTER_URL") or DEFAULT_OPENROUTER_URL
    OPENROUTER_MODEL = os.getenv("OPENROUTER_MODEL", "google/gemini-2.5-flash")
    OPENROUTER_TIMEOUT = float(os.getenv("OPENROUTER_TIMEOUT", "90"))
    APP_REFERER = os.getenv("APP_REFERER")
    APP_TITLE = os.getenv("APP_TITLE", "Essay Coach")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    BASE_URL = os.getenv("ESSAY_COACH_BASE_URL", "http://127.0.0.1:8000")


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def mask_key(key: str | None) -> str:
    if not key:
        return "(none)"
    if len(key) > 10:
        return key[:6] + "..." + key[-4:]
    return "***"
