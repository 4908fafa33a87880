"""
Amora — otp.py
─────────────────────────────────────────────────────────────────
SMS one-time codes via Twilio Verify (plain REST over httpx).

  send(phone)        → verification sid   (code goes out by SMS)
  check(phone, code) → True if approved

.env:
  TWILIO_ACCOUNT_SID=ACxxxx
  TWILIO_AUTH_TOKEN=xxxx
  TWILIO_SERVICE_SID=VAxxxx
─────────────────────────────────────────────────────────────────
"""

import logging
import re
from typing import Optional

import httpx

from amora.core.config import cfg
from amora.core.errors import ExternalServiceError, ValidationError

logger = logging.getLogger("amora.otp")

VERIFY_BASE_URL = "https://verify.twilio.com/v2"

_PHONE_RE = re.compile(r"^\+[1-9]\d{6,14}$")
_CODE_RE  = re.compile(r"^\d{4,10}$")


def normalize_phone(phone: Optional[str]) -> str:
    """E.164 only: '+4917612345678'. Spaces and dashes are stripped."""
    cleaned = re.sub(r"[\s\-()]", "", phone or "")
    if not _PHONE_RE.match(cleaned):
        raise ValidationError("Phone number must be in international format, e.g. +4917612345678")
    return cleaned


class OtpVerifier:

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout   = timeout
        self.transport = transport

    def _service_url(self, path: str) -> str:
        return f"{VERIFY_BASE_URL}/Services/{cfg.TWILIO_SERVICE_SID}/{path}"

    async def _post(self, path: str, data: dict) -> httpx.Response:
        if not cfg.otp_ready:
            raise ExternalServiceError("OTP provider is not configured")
        try:
            async with httpx.AsyncClient(
                timeout   = self.timeout,
                transport = self.transport,
                auth      = (cfg.TWILIO_ACCOUNT_SID, cfg.TWILIO_AUTH_TOKEN),
            ) as client:
                return await client.post(self._service_url(path), data=data)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Twilio request failed: {e}")

    async def send(self, phone: str) -> str:
        phone = normalize_phone(phone)
        resp = await self._post("Verifications", {"To": phone, "Channel": "sms"})
        if resp.status_code not in (200, 201):
            logger.error(f"Twilio send failed ({resp.status_code}): {resp.text}")
            raise ExternalServiceError("Could not send verification code")

        sid = resp.json().get("sid", "")
        logger.info(f"OTP sent to {phone[:4]}*** ({sid})")
        return sid

    async def check(self, phone: str, code: str) -> bool:
        phone = normalize_phone(phone)
        if not _CODE_RE.match(code or ""):
            raise ValidationError("Verification code must be digits")

        resp = await self._post("VerificationCheck", {"To": phone, "Code": code})
        # 404: no pending verification (expired, already used, never sent)
        if resp.status_code == 404:
            return False
        if resp.status_code not in (200, 201):
            logger.error(f"Twilio check failed ({resp.status_code}): {resp.text}")
            raise ExternalServiceError("Could not verify code")

        return resp.json().get("status") == "approved"
