"""
tests/test_api.py — HTTP surface: routing, parameter validation, error mapping.

The lifespan is never started; get_auth / get_service are overridden with
mocks so no browser, disk or network is touched.

Test matrix:
  1. happy paths               → service called with parsed parameters
  2. AuthRequired / Expired    → 401 with audience + remediation
  3. LoginTimeout / AuthFailed → 408 / 502
  4. upstream HTTP error       → 502 with upstream_status
  5. ValueError / LookupError  → 400 / 404
  6. edit / delete / save     → path segments reach the service unchanged
"""
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from api.dependencies.teams import get_auth, get_service
from api.main import app
from teams_relay.errors import AuthExpired, AuthFailed, AuthRequired, LoginTimeout
from teams_relay.models import Audience, UserIdentity
from teams_relay.parsers import ChannelMatch, Pagination, SearchPage


@pytest.fixture
def service() -> MagicMock:
    service = MagicMock()
    for name in (
        "search", "search_people", "get_frequent_contacts", "send_message", "get_thread",
        "edit_message", "delete_message", "save_message", "unsave_message", "find_channel",
        "get_favourites", "add_favourite", "remove_favourite", "get_my_teams", "get_presence",
    ):
        setattr(service, name, AsyncMock())
    return service


@pytest.fixture
def auth() -> MagicMock:
    auth = MagicMock()
    auth.ensure_authenticated = AsyncMock()
    auth.force_new_login = AsyncMock()
    auth.status.return_value = {"state": "idle"}
    return auth


@pytest.fixture
def client(service: MagicMock, auth: MagicMock):
    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_auth] = lambda: auth
    yield TestClient(app)
    app.dependency_overrides.clear()


# ── Test 1: happy paths ───────────────────────────────────────────────────────

def test_health(client: TestClient):
    assert client.get("/health").json() == {"status": "ok"}


def test_search(client: TestClient, service: MagicMock):
    service.search.return_value = SearchPage(
        results=[], pagination=Pagination(from_=25, size=25, returned=0, total=25, has_more=False),
    )

    resp = client.get("/search/", params={"q": "deploy", "from": 25})

    assert resp.status_code == 200
    assert resp.json()["pagination"]["total"] == 25
    service.search.assert_awaited_once_with("deploy", from_=25, size=25, max_results=None)


def test_search_validates_size(client: TestClient, service: MagicMock):
    assert client.get("/search/", params={"q": "x", "size": 0}).status_code == 422
    assert client.get("/search/").status_code == 422
    service.search.assert_not_awaited()


def test_send_message_defaults_to_self_chat(client: TestClient, service: MagicMock):
    service.send_message.return_value = {"message_id": "1", "conversation_id": "48:notes", "timestamp": None}

    resp = client.post("/messages/", json={"content": "hello"})

    assert resp.status_code == 200
    service.send_message.assert_awaited_once_with("hello", conversation_id="48:notes", reply_to=None)


def test_login_force(client: TestClient, auth: MagicMock):
    assert client.post("/auth/login", params={"force": True}).json() == {"state": "idle"}
    auth.force_new_login.assert_awaited_once()
    auth.ensure_authenticated.assert_not_awaited()


def test_login_refresh_for_one_audience(client: TestClient, auth: MagicMock):
    resp = client.post("/auth/login", params={"refresh": True, "audience": "messaging"})

    assert resp.status_code == 200
    auth.ensure_authenticated.assert_awaited_once_with(refresh=True, audience=Audience.MESSAGING)
    auth.force_new_login.assert_not_awaited()


def test_login_defaults_to_every_audience(client: TestClient, auth: MagicMock):
    client.post("/auth/login")
    auth.ensure_authenticated.assert_awaited_once_with(refresh=False, audience=None)


def test_login_rejects_unknown_audience(client: TestClient, auth: MagicMock):
    assert client.post("/auth/login", params={"audience": "mail"}).status_code == 422
    auth.ensure_authenticated.assert_not_awaited()


def test_logout(client: TestClient, auth: MagicMock):
    assert client.post("/auth/logout").json() == {"logged_out": True}
    auth.logout.assert_called_once()


def test_me(client: TestClient, service: MagicMock):
    service.get_me.return_value = UserIdentity(
        object_id="oid", mri="8:orgid:oid", email="ada@x.org", display_name="Ada Lovelace",
    )
    assert client.get("/people/me").json()["display_name"] == "Ada Lovelace"


def test_presence_accepts_repeated_mri(client: TestClient, service: MagicMock):
    service.get_presence.return_value = []
    client.get("/people/presence", params=[("mri", "8:orgid:a"), ("mri", "8:orgid:b")])
    service.get_presence.assert_awaited_once_with(["8:orgid:a", "8:orgid:b"])


# ── Test 2–3: auth errors ─────────────────────────────────────────────────────

@pytest.mark.parametrize("error, status", [
    (AuthRequired("search"), 401),
    (AuthExpired("search"), 401),
    (LoginTimeout("Sign-in was not completed within 300 seconds."), 408),
    (AuthFailed("Browser login failed: boom"), 502),
])
def test_auth_errors_are_mapped(client: TestClient, service: MagicMock, error, status):
    service.search.side_effect = error

    resp = client.get("/search/", params={"q": "deploy"})

    assert resp.status_code == status
    body = resp.json()
    assert body["error"] == error.__class__.__name__
    assert body["remediation"]


def test_auth_required_names_audience(client: TestClient, service: MagicMock):
    service.get_thread.side_effect = AuthRequired("messaging")
    body = client.get("/messages/19:abc@thread.v2").json()
    assert body["audience"] == "messaging"


# ── Test 4: upstream errors ───────────────────────────────────────────────────

def test_upstream_error_is_502(client: TestClient, service: MagicMock):
    request = httpx.Request("GET", "https://teams.microsoft.com/api/csa/amer/api/v3/teams/users/me")
    service.get_my_teams.side_effect = httpx.HTTPStatusError(
        "Server error", request=request, response=httpx.Response(503, request=request),
    )

    resp = client.get("/teams/")

    assert resp.status_code == 502
    assert resp.json()["upstream_status"] == 503


# ── Test 5: validation errors from the service ────────────────────────────────

def test_empty_message_is_400(client: TestClient, service: MagicMock):
    service.send_message.side_effect = ValueError("Message content is empty.")
    assert client.post("/messages/", json={"content": " "}).status_code == 400


def test_missing_favourites_folder_is_404(client: TestClient, service: MagicMock):
    service.remove_favourite.side_effect = LookupError("Could not find the Favorites folder.")
    assert client.delete("/favourites/19:a@thread.v2").status_code == 404


def test_non_numeric_saved_message_id_is_400(client: TestClient, service: MagicMock):
    service.save_message.side_effect = ValueError("Message id must be numeric, got 'abc'.")
    assert client.post("/messages/19:a@thread.v2/abc/save").status_code == 400


def test_invalid_chat_user_is_400(client: TestClient, service: MagicMock):
    service.get_chat.side_effect = ValueError("Invalid user identifier 'nobody'.")
    assert client.get("/people/nobody/chat").status_code == 400


# ── Test 6: message edits, saves and lookups ──────────────────────────────────

def test_edit_message(client: TestClient, service: MagicMock):
    service.edit_message.return_value = {"message_id": "1700000000000", "conversation_id": "19:a@thread.v2"}

    resp = client.put("/messages/19:a@thread.v2/1700000000000", json={"content": "fixed typo"})

    assert resp.status_code == 200
    service.edit_message.assert_awaited_once_with("19:a@thread.v2", "1700000000000", "fixed typo")


def test_edit_message_requires_content(client: TestClient, service: MagicMock):
    assert client.put("/messages/19:a@thread.v2/1", json={"content": ""}).status_code == 422
    service.edit_message.assert_not_awaited()


def test_delete_message(client: TestClient, service: MagicMock):
    service.delete_message.return_value = {"message_id": "1", "conversation_id": "19:a@thread.v2"}
    assert client.delete("/messages/19:a@thread.v2/1").status_code == 200
    service.delete_message.assert_awaited_once_with("19:a@thread.v2", "1")


def test_save_and_unsave_message(client: TestClient, service: MagicMock):
    service.save_message.return_value = {"saved": True}
    service.unsave_message.return_value = {"saved": False}

    assert client.post("/messages/19:a@thread.v2/1700000000000/save").json() == {"saved": True}
    assert client.delete("/messages/19:a@thread.v2/1700000000000/save").json() == {"saved": False}
    service.save_message.assert_awaited_once_with("19:a@thread.v2", "1700000000000")
    service.unsave_message.assert_awaited_once_with("19:a@thread.v2", "1700000000000")


def test_get_chat(client: TestClient, service: MagicMock):
    service.get_chat.return_value = {"conversation_id": "19:a_b@unq.gbl.spaces", "other_user_id": "b", "current_user_id": "a"}

    resp = client.get("/people/8:orgid:b/chat")

    assert resp.status_code == 200
    assert resp.json()["other_user_id"] == "b"
    service.get_chat.assert_called_once_with("8:orgid:b")


def test_find_channel(client: TestClient, service: MagicMock):
    service.find_channel.return_value = [
        ChannelMatch(channel_id="19:c@thread.tacv2", channel_name="Deploys", team_id="t", team_name="Platform"),
    ]

    resp = client.get("/teams/channels", params={"q": "deploy", "limit": 5})

    assert resp.status_code == 200
    assert resp.json()[0]["channel_name"] == "Deploys"
    service.find_channel.assert_awaited_once_with("deploy", limit=5)


def test_find_channel_validates_limit(client: TestClient, service: MagicMock):
    assert client.get("/teams/channels", params={"q": "x", "limit": 0}).status_code == 422
    assert client.get("/teams/channels").status_code == 422
    service.find_channel.assert_not_awaited()
