import re

import pytest
from fastapi.testclient import TestClient

from dragonchat.routes import create_app
from dragonchat.settings import settings
from tests.utils import (
    FAKE_KEYS_ENV,
    FakeProvider,
    FakeStorage,
    install_inmemory_db,
    jwt_auth_headers,
    make_token,
    parse_sse,
)

SESSION_ID_RE = re.compile(r"^[0-9a-f]{24}$")


@pytest.fixture()
def fake_provider(monkeypatch):
    monkeypatch.setenv(FAKE_KEYS_ENV, "fake-key-1")
    return FakeProvider().install()


@pytest.fixture()
def storage():
    return FakeStorage({"img-1": (b"\x89PNG fake", "image/png")})


@pytest.fixture()
def app(fake_provider, storage):
    app = create_app()
    install_inmemory_db(app, storage=storage)
    return app


@pytest.fixture()
def client(app):
    with TestClient(app) as client:
        yield client


def _chat(client, payload, user_id="user-1"):
    return client.post("/api/chat", json=payload, headers=jwt_auth_headers(user_id))


def _wait_persisted(app, client):
    client.portal.call(app.state.persister.wait_idle)


def test_chat_streams_session_chunks_and_done(client):
    resp = _chat(client, {"messages": [{"role": "user", "content": "Say exactly: hello"}]})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    assert resp.headers["x-accel-buffering"] == "no"

    frames = parse_sse(resp.text)
    assert len(frames) >= 3
    assert SESSION_ID_RE.match(frames[0]["sessionId"])
    assert frames[-1] == "[DONE]"
    assert "".join(f["chunk"] for f in frames[1:-1]) == "Hello!"


def test_chat_creates_session_and_persists_turn(app, client):
    resp = _chat(client, {"messages": [{"role": "user", "content": "Say exactly: hello"}]})
    session_id = parse_sse(resp.text)[0]["sessionId"]
    _wait_persisted(app, client)

    detail = client.get(f"/api/sessions/{session_id}", headers=jwt_auth_headers("user-1"))
    assert detail.status_code == 200
    body = detail.json()
    assert body["title"] == "Say exactly: hello"
    assert body["model"] == "fake/fake-fast"
    assert [m["role"] for m in body["messages"]] == ["user", "assistant"]
    assert body["messages"][1]["content"] == "Hello!"
    assert body["messages"][1]["metadata"] == {"model": "fake/fake-fast", "status": "completed"}
    assert app.state.persister.failures == 0


def test_chat_continuation_appends_only_new_messages(app, client):
    first = [{"role": "user", "content": "Say exactly: hello"}]
    session_id = parse_sse(_chat(client, {"messages": first}).text)[0]["sessionId"]
    _wait_persisted(app, client)

    second = first + [
        {"role": "assistant", "content": "Hello!"},
        {"role": "user", "content": "And again"},
    ]
    resp = _chat(client, {"messages": second, "sessionId": session_id})
    assert resp.status_code == 200
    frames = parse_sse(resp.text)
    assert frames[0] == {"sessionId": session_id}
    assert frames[-1] == "[DONE]"
    _wait_persisted(app, client)

    body = client.get(f"/api/sessions/{session_id}", headers=jwt_auth_headers("user-1")).json()
    assert len(body["messages"]) == 4
    assert [m["content"] for m in body["messages"]] == [
        "Say exactly: hello",
        "Hello!",
        "And again",
        "Hello!",
    ]


def test_chat_rejects_system_role(client):
    resp = _chat(client, {"messages": [{"role": "system", "content": "x"}]})

    assert resp.status_code == 400
    assert "role" in resp.json()["error"]


@pytest.mark.parametrize("payload", [{}, {"messages": []}, {"messages": None}])
def test_chat_requires_messages(client, payload):
    resp = _chat(client, payload)

    assert resp.status_code == 400
    assert "messages" in resp.json()["error"]


def test_chat_rejects_empty_message_without_attachment(client):
    resp = _chat(client, {"messages": [{"role": "user", "content": "   "}]})

    assert resp.status_code == 400
    assert resp.headers["content-type"].startswith("application/json")


def test_chat_rejects_transcript_ending_with_assistant(client):
    resp = _chat(
        client,
        {
            "messages": [
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "hello"},
            ]
        },
    )

    assert resp.status_code == 400


def test_chat_rejects_unknown_model(client):
    resp = _chat(client, {"messages": [{"role": "user", "content": "hi"}], "model": "nope/none"})

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid model specified or no models configured"}


@pytest.mark.parametrize("session_id", ["000000000000000000000000", "not-an-id"])
def test_chat_unknown_session_is_404(client, session_id):
    resp = _chat(
        client,
        {"messages": [{"role": "user", "content": "hi"}], "sessionId": session_id},
    )

    assert resp.status_code == 404
    assert resp.json() == {"error": "Session not found"}


def test_chat_session_of_other_user_is_404(app, client):
    session_id = parse_sse(_chat(client, {"messages": [{"role": "user", "content": "hi"}]}).text)[0][
        "sessionId"
    ]
    _wait_persisted(app, client)

    resp = _chat(
        client,
        {"messages": [{"role": "user", "content": "hi"}], "sessionId": session_id},
        user_id="user-2",
    )

    assert resp.status_code == 404


def test_chat_provider_failure_sends_error_frame_and_keeps_history(app, client):
    FakeProvider(["partial"], fail_after=1).install()

    resp = _chat(client, {"messages": [{"role": "user", "content": "hi"}]})

    assert resp.status_code == 200
    frames = parse_sse(resp.text)
    assert SESSION_ID_RE.match(frames[0]["sessionId"])
    assert frames[1] == {"chunk": "partial"}
    assert frames[2] == {"error": "upstream exploded"}
    assert frames[3] == "[DONE]"
    _wait_persisted(app, client)

    body = client.get(
        f"/api/sessions/{frames[0]['sessionId']}", headers=jwt_auth_headers("user-1")
    ).json()
    assert body["messages"] == []


def test_chat_sends_system_prompt_and_model(client, fake_provider):
    _chat(
        client,
        {"messages": [{"role": "user", "content": "hi"}], "model": "fake-vision"},
    )

    call = fake_provider.calls[-1]
    assert call["model_id"] == "fake-vision"
    assert call["api_key"] == "fake-key-1"
    assert call["system_prompt"] == settings.chat_system_prompt
    assert [m.text for m in call["messages"]] == ["hi"]


def test_chat_attachment_only_message_is_sent_inline(client, fake_provider, storage):
    attachment = {
        "fileId": "img-1",
        "fileName": "photo.png",
        "fileType": "image/png",
        "fileSize": 10,
        "gcsUrl": "gs://bucket/img-1",
    }
    resp = _chat(
        client,
        {
            "messages": [{"role": "user", "content": "", "attachments": [attachment]}],
            "model": "fake/fake-vision",
        },
    )

    assert parse_sse(resp.text)[-1] == "[DONE]"
    sent = fake_provider.calls[-1]["messages"][0]
    assert sent.attachments[0].data == b"\x89PNG fake"
    assert sent.attachments[0].mime_type == "image/png"
    assert storage.fetched == ["img-1"]


def test_chat_missing_attachment_fails_in_stream(client):
    attachment = {"fileId": "gone", "fileName": "x.png", "fileType": "image/png", "fileSize": 3}
    resp = _chat(
        client,
        {
            "messages": [{"role": "user", "content": "look", "attachments": [attachment]}],
            "model": "fake/fake-vision",
        },
    )

    frames = parse_sse(resp.text)
    assert "error" in frames[-2]
    assert frames[-1] == "[DONE]"


def test_chat_requires_token(client):
    resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

    assert resp.status_code == 401
    assert resp.json() == {"error": "No token provided"}


def test_chat_rejects_bad_token(client):
    resp = client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}]},
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid or expired token"}


def test_chat_accepts_cookie_token(client):
    resp = client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}]},
        headers={"Cookie": f"access_token={make_token('cookie-user')}"},
    )

    assert resp.status_code == 200
    assert parse_sse(resp.text)[-1] == "[DONE]"


def test_list_models(client):
    resp = client.get("/api/chat/models", headers=jwt_auth_headers("user-1"))

    assert resp.status_code == 200
    providers = resp.json()["providers"]
    assert [p["id"] for p in providers] == ["fake"]
    models = {m["key"]: m for m in providers[0]["models"]}
    assert models["fake/fake-fast"]["default"] is True
    assert models["fake/fake-vision"]["vision"] is True
    assert models["fake/fake-vision"]["maxContext"] == 8192


def test_health_reports_database(client):
    resp = client.get("/api/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["database"] == "connected"
    assert body["timestamp"].endswith("Z")
