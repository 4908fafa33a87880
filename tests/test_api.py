from functools import partial

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from amora.core.config import cfg
from amora.core.security import issue_session_token
from amora.main import create_app
from amora.models.user import Role
from amora.otp import OtpVerifier
from amora.storage import s3

PROFILE = {
    "last_name": "Doe", "date_of_birth": "1995-04-12", "gender": "man", "interest": "dating",
    "profile_image": "https://cdn.example.com/p.jpg", "bio": "hi", "about": "more",
}


@pytest.fixture
def client(tmp_path):
    app = create_app(str(tmp_path / "api.db"))
    with TestClient(app) as c:
        yield c


def _create(client, name, role=Role.USER, **kwargs):
    users = client.app.state.users
    return client.portal.call(partial(
        users.create_user, email=f"{name}@example.com", role=role, first_name=name, **PROFILE, **kwargs
    ))


def _auth(user):
    return {"Authorization": f"Bearer {issue_session_token(user.id, user.role)}"}


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_requires_bearer_token(client):
    resp = client.get("/api/users/me")
    assert resp.status_code == 401
    assert resp.json()["code"] == "unauthenticated"


def test_me_includes_completion(client):
    alice = _create(client, "alice")
    body = client.get("/api/users/me", headers=_auth(alice)).json()

    assert body["id"] == alice.id
    assert body["completed_profile"] is False
    assert body["missing_fields"] == ["phone"]


def test_profile_update_with_image(client, monkeypatch):
    async def fake_upload(data, content_type, user_id):
        return f"https://cdn.amora.test/{user_id}.jpg"

    monkeypatch.setattr(s3, "upload_image", fake_upload)
    alice = _create(client, "alice")

    resp = client.put(
        "/api/users/me",
        data    = {"bio": "new bio", "gender": "woman"},
        files   = {"profile_image": ("me.jpg", b"\xff\xd8", "image/jpeg")},
        headers = _auth(alice),
    )

    assert resp.status_code == 200
    assert resp.json()["bio"] == "new bio"
    assert resp.json()["profile_image"] == f"https://cdn.amora.test/{alice.id}.jpg"


def test_profile_update_rejects_bad_gender(client):
    alice = _create(client, "alice")
    resp = client.put("/api/users/me", data={"gender": "robot"}, headers=_auth(alice))
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"


def test_like_flow(client):
    alice, bob = _create(client, "alice"), _create(client, "bob")

    first = client.post(f"/api/matches/like/{bob.id}", headers=_auth(alice))
    assert first.status_code == 200
    assert first.json() == {"message": "Like recorded", "isMatch": False}

    second = client.post(f"/api/matches/like/{alice.id}", headers=_auth(bob))
    assert second.status_code == 201
    assert second.json()["isMatch"] is True

    again = client.post(f"/api/matches/like/{alice.id}", headers=_auth(bob))
    assert again.status_code == 409
    assert again.json()["code"] == "already_processed"

    matched = client.get("/api/matches", headers=_auth(alice)).json()
    assert [u["id"] for u in matched] == [bob.id]
    assert "email" not in matched[0]


def test_chat_flow_and_quota(client):
    alice, bob = _create(client, "alice"), _create(client, "bob")

    conversation = client.post(f"/api/chat/with/{bob.id}", headers=_auth(alice)).json()
    cid = conversation["id"]
    same = client.post("/api/chat", json={"participants": [bob.id]}, headers=_auth(alice)).json()
    assert same["id"] == cid

    for i in range(5):
        resp = client.post(f"/api/chat/{cid}/messages", json={"content": f"m{i}"}, headers=_auth(alice))
        assert resp.status_code == 201

    rejected = client.post(f"/api/chat/{cid}/messages", json={"content": "m5"}, headers=_auth(alice))
    assert rejected.status_code == 402
    assert rejected.json()["code"] == "quota_exceeded"

    cost = client.get("/api/chat/message-cost", headers=_auth(alice)).json()
    assert cost["used"] == 5 and cost["remaining"] == 0 and cost["can_send"] is False

    assert client.post(f"/api/chat/{cid}/read", headers=_auth(bob)).status_code == 204
    loaded = client.get(f"/api/chat/{cid}", headers=_auth(bob)).json()
    assert len(loaded["messages"]) == 5
    assert loaded["last_message"]["content"] == "m4"
    assert all(m["read"] for m in loaded["messages"])


def test_outsider_cannot_read_conversation(client):
    alice, bob, eve = _create(client, "alice"), _create(client, "bob"), _create(client, "eve")
    cid = client.post(f"/api/chat/with/{bob.id}", headers=_auth(alice)).json()["id"]

    resp = client.get(f"/api/chat/{cid}", headers=_auth(eve))
    assert resp.status_code == 403
    assert resp.json()["code"] == "forbidden"


def test_admin_chat_and_coins(client):
    alice = _create(client, "alice")
    admin = _create(client, "admin", role=Role.ADMIN)

    cid = client.post("/api/chat/admin", headers=_auth(alice)).json()["id"]
    for i in range(7):
        assert client.post(f"/api/chat/{cid}/messages", json={"content": f"help {i}"}, headers=_auth(alice)).status_code == 201

    forbidden = client.post(f"/api/admin/users/{alice.id}/coins", json={"amount": 5}, headers=_auth(alice))
    assert forbidden.status_code == 403

    credited = client.post(
        f"/api/admin/users/{alice.id}/coins", json={"amount": 5, "note": "sorry"}, headers=_auth(admin)
    )
    assert credited.status_code == 200
    assert credited.json()["coins"] == 5

    history = client.get(f"/api/admin/users/{alice.id}/coins", headers=_auth(admin)).json()
    assert history["coins"] == 5
    assert history["ledger"][0]["reason"] == "admin_credit:sorry"


def test_otp_login_creates_user_once(client, monkeypatch):
    monkeypatch.setattr(cfg, "TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setattr(cfg, "TWILIO_AUTH_TOKEN", "token")
    monkeypatch.setattr(cfg, "TWILIO_SERVICE_SID", "VA123")

    def handler(request):
        if request.url.path.endswith("/Verifications"):
            return httpx.Response(201, json={"sid": "VE1"})
        code = dict(httpx.QueryParams(request.content.decode()))["Code"]
        return httpx.Response(200, json={"status": "approved" if code == "123456" else "pending"})

    client.app.state.otp = OtpVerifier(transport=httpx.MockTransport(handler))

    sent = client.post("/api/auth/otp/send", json={"phone": "+4917612345678"})
    assert sent.json()["verificationId"] == "VE1"

    wrong = client.post("/api/auth/otp/verify", json={"phone": "+4917612345678", "code": "000000"})
    assert wrong.status_code == 401

    first  = client.post("/api/auth/otp/verify", json={"phone": "+4917612345678", "code": "123456"}).json()
    second = client.post("/api/auth/otp/verify", json={"phone": "+4917612345678", "code": "123456"}).json()
    assert first["user"]["id"] == second["user"]["id"]
    assert first["user"]["phone"] == "+4917612345678"

    me = client.get("/api/users/me", headers={"Authorization": f"Bearer {first['token']}"})
    assert me.json()["id"] == first["user"]["id"]


# ─── WebSocket ────────────────────────────────

def test_socket_without_token_is_closed(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws"):
            pass
    assert exc.value.code == 1008


def test_socket_with_bad_token_is_closed(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws?token=garbage"):
            pass
    assert exc.value.code == 1008


def test_socket_chat_round_trip(client):
    alice, bob = _create(client, "alice"), _create(client, "bob")
    cid = client.post(f"/api/chat/with/{bob.id}", headers=_auth(alice)).json()["id"]
    alice_token = issue_session_token(alice.id, alice.role)
    bob_token   = issue_session_token(bob.id, bob.role)

    with client.websocket_connect(f"/ws?token={alice_token}") as ws_a:
        assert ws_a.receive_json() == {"event": "user:online", "data": {"userId": alice.id}}

        with client.websocket_connect("/ws", headers={"Authorization": f"Bearer {bob_token}"}) as ws_b:
            assert ws_b.receive_json() == {"event": "user:online", "data": {"userId": bob.id}}
            assert ws_a.receive_json() == {"event": "user:online", "data": {"userId": bob.id}}

            ws_a.send_json({"event": "chat:message", "data": {"conversationId": cid, "content": "hello"}})
            frame = ws_b.receive_json()
            assert frame["event"] == "chat:message"
            assert frame["data"]["message"]["content"] == "hello"

            ws_b.send_json({"event": "chat:read", "data": cid})
            assert ws_a.receive_json() == {"event": "chat:read", "data": {"conversationId": cid, "userId": bob.id}}

            ws_b.send_json({"event": "chat:dance"})
            assert ws_b.receive_json()["data"]["code"] == "validation_error"

            ws_b.send_bytes(b"\x00\x01")
            assert ws_b.receive_json()["data"] == {
                "code": "validation_error", "message": "Frame must be text", "event": None,
            }

            ws_b.send_json({"event": "chat:dance"})
            assert ws_b.receive_json()["data"]["event"] == "chat:dance"

        offline = ws_a.receive_json()
        assert offline["event"] == "user:offline"
        assert offline["data"]["userId"] == bob.id
