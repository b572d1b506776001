import math
import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

CONTENT_FORMATS = ("html", "list")

DEFAULT_KIOSK_TITLE = (
    "Is jouw vacature basic of briljant?\nStart hier je AI vacaturescan!"
)
DEFAULT_KIOSK_SUBTITLE = (
    "Heb je vacatures die maar niet ingevuld raken? Geen of weinig reacties? "
    "Niet de juiste profielen?\n\nVoeg hier de URL van je vacaturetekst in en "
    "onze AI scan analyseert jouw vacaturetekst en geeft advies over hoe het "
    "beter kan."
)
DEFAULT_CORS_ORIGINS = "http://localhost:5173,http://localhost:3000"


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}.") from None
    if value < minimum:
        raise RuntimeError(f"{name} must be at least {minimum}, got {value}.")
    return value


def float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}.") from None
    if not math.isfinite(value) or value <= 0:
        raise RuntimeError(f"{name} must be a positive number, got {raw!r}.")
    return value


@dataclass(frozen=True)
class Settings:
    webhook_auth_token: str
    store_capacity: int = 25
    poll_interval_seconds: int = 10
    display_seconds: int = 15
    port: int = 3000
    webhook_rate_limit: str = "30/minute"
    content_format: str = "html"
    content_layout: str = "v1"
    cors_origins: List[str] = field(default_factory=list)
    typeform_url: str = ""
    kiosk_title: str = DEFAULT_KIOSK_TITLE
    kiosk_subtitle: str = DEFAULT_KIOSK_SUBTITLE
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (and a local .env)."""
        load_dotenv()

        token = os.getenv("WEBHOOK_AUTH_TOKEN", "")
        if not token:
            raise RuntimeError("WEBHOOK_AUTH_TOKEN environment variable is required.")

        content_format = os.getenv("CONTENT_FORMAT", "html").strip().lower()
        if content_format not in CONTENT_FORMATS:
            raise RuntimeError(
                f"CONTENT_FORMAT must be one of {', '.join(CONTENT_FORMATS)}, "
                f"got {content_format!r}."
            )

        origins = os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS)

        return cls(
            webhook_auth_token=token,
            store_capacity=_int_env("STORE_CAPACITY", 25),
            poll_interval_seconds=_int_env("POLL_INTERVAL_SECONDS", 10),
            display_seconds=_int_env("DISPLAY_SECONDS", 15),
            port=_int_env("PORT", 3000),
            webhook_rate_limit=os.getenv("WEBHOOK_RATE_LIMIT", "30/minute"),
            content_format=content_format,
            content_layout=os.getenv("CONTENT_LAYOUT", "v1").strip().lower(),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            typeform_url=os.getenv("TYPEFORM_URL", ""),
            kiosk_title=os.getenv("KIOSK_TITLE", DEFAULT_KIOSK_TITLE),
            kiosk_subtitle=os.getenv("KIOSK_SUBTITLE", DEFAULT_KIOSK_SUBTITLE),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
