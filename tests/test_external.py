import httpx
import pytest

from amora.alerts import AdminAlerts
from amora.core.config import cfg
from amora.core.errors import ExternalServiceError, ValidationError
from amora.otp import OtpVerifier, normalize_phone
from amora.storage import s3


@pytest.fixture
def callmebot(monkeypatch):
    monkeypatch.setattr(cfg, "CALLMEBOT_PHONE", "+4912345678")
    monkeypatch.setattr(cfg, "CALLMEBOT_API_KEY", "secret")


@pytest.fixture
def twilio(monkeypatch):
    monkeypatch.setattr(cfg, "TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setattr(cfg, "TWILIO_AUTH_TOKEN", "token")
    monkeypatch.setattr(cfg, "TWILIO_SERVICE_SID", "VA123")


# ─── Admin alerts ─────────────────────────────

async def test_alert_is_skipped_when_not_configured():
    def handler(request):
        raise AssertionError("no request expected")

    await AdminAlerts(transport=httpx.MockTransport(handler)).notify("hello")


async def test_alert_request(callmebot):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    await AdminAlerts(transport=httpx.MockTransport(handler)).notify("hello")

    [request] = seen
    assert request.url.params["phone"] == "+4912345678"
    assert request.url.params["apikey"] == "secret"
    assert request.url.params["text"] == "NEW MESSAGE FOR ADMIN --hello"


async def test_alert_failure_raises_but_fire_swallows(callmebot):
    alerts = AdminAlerts(transport=httpx.MockTransport(lambda r: httpx.Response(500)))

    with pytest.raises(ExternalServiceError):
        await alerts.notify("hello")

    task = alerts.fire("hello")
    await alerts.drain()
    assert task.exception() is None


# ─── OTP ──────────────────────────────────────

def test_normalize_phone():
    assert normalize_phone("+49 176-123 45678") == "+4917612345678"
    with pytest.raises(ValidationError):
        normalize_phone("0176 1234")


async def test_otp_send_and_check(twilio):
    seen = []

    def handler(request):
        seen.append(request)
        if request.url.path.endswith("/Verifications"):
            return httpx.Response(201, json={"sid": "VE1", "status": "pending"})
        return httpx.Response(200, json={"status": "approved"})

    otp = OtpVerifier(transport=httpx.MockTransport(handler))
    assert await otp.send("+4917612345678") == "VE1"
    assert await otp.check("+4917612345678", "123456") is True

    assert seen[0].url.path == "/v2/Services/VA123/Verifications"
    assert b"Channel=sms" in seen[0].content
    assert seen[1].headers["authorization"].startswith("Basic ")


async def test_otp_check_rejections(twilio):
    responses = iter([
        httpx.Response(200, json={"status": "pending"}),
        httpx.Response(404, json={"message": "not found"}),
    ])
    otp = OtpVerifier(transport=httpx.MockTransport(lambda r: next(responses)))

    assert await otp.check("+4917612345678", "000000") is False
    assert await otp.check("+4917612345678", "000000") is False
    with pytest.raises(ValidationError):
        await otp.check("+4917612345678", "abc")


async def test_otp_not_configured(monkeypatch):
    monkeypatch.setattr(cfg, "TWILIO_ACCOUNT_SID", "")
    with pytest.raises(ExternalServiceError):
        await OtpVerifier().send("+4917612345678")


# ─── Image store ──────────────────────────────

class FakeS3:
    def __init__(self):
        self.puts = []

    def put_object(self, **kwargs):
        self.puts.append(kwargs)


async def test_upload_image(monkeypatch):
    fake = FakeS3()
    monkeypatch.setattr(s3, "_get_client", lambda: fake)
    monkeypatch.setattr(cfg, "AWS_CDN_URL", "https://cdn.amora.test")

    url = await s3.upload_image(b"\xff\xd8jpeg", "image/jpeg", "usr_1")

    [put] = fake.puts
    assert put["Key"].startswith("profiles/") and put["Key"].endswith(".jpg")
    assert "/usr_1-" in put["Key"]
    assert put["ContentType"] == "image/jpeg"
    assert url == f"https://cdn.amora.test/{put['Key']}"


async def test_upload_image_rejects_bad_input(monkeypatch):
    monkeypatch.setattr(s3, "_get_client", lambda: FakeS3())
    with pytest.raises(ValidationError):
        await s3.upload_image(b"%PDF", "application/pdf", "usr_1")
    with pytest.raises(ValidationError):
        await s3.upload_image(b"", "image/png", "usr_1")
    with pytest.raises(ValidationError):
        await s3.upload_image(b"x" * (s3.MAX_IMAGE_BYTES + 1), "image/png", "usr_1")


async def test_upload_image_not_configured(monkeypatch):
    monkeypatch.setattr(cfg, "AWS_ACCESS_KEY_ID", "")
    with pytest.raises(s3.S3NotConfiguredError) as exc:
        await s3.upload_image(b"png", "image/png", "usr_1")
    assert exc.value.status == 502
