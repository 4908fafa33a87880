"""
Amora — auth.py
─────────────────────────────────────────────────────────────────
Phone login.

  POST /api/auth/otp/send     {phone}         → code goes out by SMS
  POST /api/auth/otp/verify   {phone, code}   → {token, user}

The first successful verification for a phone number creates the
account. The token is a bearer JWT (core/security.py) used for both
REST calls and the /ws handshake.
─────────────────────────────────────────────────────────────────
"""

import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel

from amora.core.errors import AuthenticationError
from amora.core.security import issue_session_token
from amora.otp import normalize_phone
from amora.users import private_profile, profile_status

logger = logging.getLogger("amora.auth")

router = APIRouter(prefix="/api/auth", tags=["auth"])


class SendOtpRequest(BaseModel):
    phone: str

class VerifyOtpRequest(BaseModel):
    phone: str
    code:  str


@router.post("/otp/send")
async def send_otp(body: SendOtpRequest, request: Request):
    phone = normalize_phone(body.phone)
    sid = await request.app.state.otp.send(phone)
    return {"message": "Verification code sent", "verificationId": sid}


@router.post("/otp/verify")
async def verify_otp(body: VerifyOtpRequest, request: Request):
    phone = normalize_phone(body.phone)
    if not await request.app.state.otp.check(phone, body.code):
        raise AuthenticationError("Invalid or expired verification code")

    user = await request.app.state.users.get_or_create_by_phone(phone)
    logger.info(f"Phone login: {user.id}")
    return {
        "token": issue_session_token(user.id, user.role),
        "user":  {**private_profile(user), **profile_status(user)},
    }
