"""
Amora — core/config.py
─────────────────────────────────────────────────────────────────
Single source of truth for ALL environment variables.

Every other module imports from here, nothing else calls os.getenv().

Usage:
    from amora.core.config import cfg

    print(cfg.DB_PATH)
    print(cfg.FREE_MESSAGES_PER_DAY)
─────────────────────────────────────────────────────────────────
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    # ── App ───────────────────────────────────
    ENV:          str = os.getenv("ENV", "development")   # "production" in prod
    DB_PATH:      str = os.getenv("DB_PATH", "amora.db")
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # ── Security ──────────────────────────────
    JWT_SECRET:   str = os.getenv("JWT_SECRET", "dev-secret-change-in-prod!")
    ALGORITHM:    str = "HS256"
    SESSION_DAYS: int = int(os.getenv("SESSION_DAYS", "30"))

    # ── Messaging quota / coins ───────────────
    FREE_MESSAGES_PER_DAY: int  = int(os.getenv("FREE_MESSAGES_PER_DAY", "5"))
    COINS_PER_MESSAGE:     int  = int(os.getenv("COINS_PER_MESSAGE", "1"))
    COIN_OVERFLOW:         bool = _flag("COIN_OVERFLOW", "true")   # spend coins once the free quota is gone

    # ── Matching ──────────────────────────────
    CANDIDATE_LIMIT: int = int(os.getenv("CANDIDATE_LIMIT", "10"))

    # ── Retry (presence writes) ───────────────
    MAX_RETRY:   int   = int(os.getenv("MAX_RETRY", "3"))
    RETRY_DELAY: float = float(os.getenv("RETRY_DELAY", "1.0"))   # seconds, doubled per attempt

    # ── Admin alerts (CallMeBot WhatsApp) ─────
    CALLMEBOT_URL:     str = os.getenv("CALLMEBOT_URL", "https://api.callmebot.com/whatsapp.php")
    CALLMEBOT_PHONE:   str = os.getenv("CALLMEBOT_PHONE", "")
    CALLMEBOT_API_KEY: str = os.getenv("CALLMEBOT_API_KEY", "")

    # ── OTP (Twilio Verify) ───────────────────
    TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN:  str = os.getenv("TWILIO_AUTH_TOKEN", "")
    TWILIO_SERVICE_SID: str = os.getenv("TWILIO_SERVICE_SID", "")

    # ── Image store (S3) ──────────────────────
    AWS_ACCESS_KEY_ID:     str = os.getenv("AWS_ACCESS_KEY_ID", "")
    AWS_SECRET_ACCESS_KEY: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    AWS_S3_BUCKET:         str = os.getenv("AWS_S3_BUCKET", "amora-profiles")
    AWS_REGION:            str = os.getenv("AWS_REGION", "eu-west-1")
    AWS_CDN_URL:           str = os.getenv("AWS_CDN_URL", "").rstrip("/")

    # ── Shortcuts ─────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def alerts_ready(self) -> bool:
        return bool(self.CALLMEBOT_PHONE and self.CALLMEBOT_API_KEY)

    @property
    def otp_ready(self) -> bool:
        return bool(self.TWILIO_ACCOUNT_SID and self.TWILIO_AUTH_TOKEN and self.TWILIO_SERVICE_SID)

    @property
    def s3_ready(self) -> bool:
        return bool(self.AWS_ACCESS_KEY_ID and self.AWS_SECRET_ACCESS_KEY)

    def __repr__(self):
        return (
            f"<Config env={self.ENV} "
            f"alerts={'✓' if self.alerts_ready else '✗'} "
            f"otp={'✓' if self.otp_ready else '✗'} "
            f"s3={'✓' if self.s3_ready else '✗'}>"
        )


# Single global instance, import this everywhere
cfg = Config()
