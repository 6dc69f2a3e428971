# tests/test_rest_backend.py

from __future__ import annotations

import json
import os
import stat
import sys
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

from taskpilot.backend.rest import PollingSubscription, RestBackend, decode_row, encode_row
from taskpilot.core.ports import ChangeEvent
from taskpilot.core.session import AppSession
from taskpilot.sync.errors import AuthError, BackendError

from .fakes import RecordingNotifier

BASE = "https://project.example.co"
USER = {"id": "u1", "email": "ann@example.com"}


class FakeHostedApi:
    """
    Minimal stand-in for the hosted auth / rest / storage endpoints.

    Rows are kept in remote naming (due_date, is_read, ...) with ISO timestamps.
    Filters other than id are not evaluated; tests assert on the query instead.
    GET honours order= and limit.
    """

    def __init__(self, *, expires_in: int = 3600) -> None:
        self.requests: list[httpx.Request] = []
        self.rows: dict[str, list[dict]] = {}
        self.expires_in = expires_in
        self.fail_status: int | None = None
        self._next_id = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"message": "server says no"})

        path = request.url.path
        body = json.loads(request.content) if request.content and path.startswith(("/auth", "/rest")) else None

        if path == "/auth/v1/token":
            grant = request.url.params["grant_type"]
            if grant == "password" and body["password"] != "secret123":
                return httpx.Response(400, json={"error_description": "Invalid login credentials"})
            return httpx.Response(200, json=self._session(grant))
        if path == "/auth/v1/signup":
            return httpx.Response(200, json=USER)  # confirmation pending: bare user
        if path == "/auth/v1/logout":
            return httpx.Response(204)
        if path == "/auth/v1/recover":
            return httpx.Response(200, json={})

        if path.startswith("/rest/v1/"):
            return self._rest(request, path.rsplit("/", 1)[1], body)

        if path.startswith("/storage/v1/object/sign/"):
            key = path[len("/storage/v1/object/sign/"):]
            return httpx.Response(200, json={"signedURL": f"/object/sign/{key}?token=abc"})
        if path.startswith("/storage/v1/object/"):
            return httpx.Response(200, json={"Key": path})

        return httpx.Response(404, json={"message": "not found"})

    def _session(self, grant: str) -> dict:
        self._next_id += 1
        return {
            "access_token": f"access-{grant}-{self._next_id}",
            "refresh_token": f"refresh-{self._next_id}",
            "expires_in": self.expires_in,
            "user": USER,
        }

    def _rest(self, request: httpx.Request, table: str, body) -> httpx.Response:
        rows = self.rows.setdefault(table, [])
        id_filter = request.url.params.get("id")
        matched = [r for r in rows if id_filter is None or f"eq.{r['id']}" == id_filter]

        if request.method == "GET":
            order = request.url.params.get("order")
            if order:
                column, direction = order.rsplit(".", 1)
                matched = sorted(matched, key=lambda r: r.get(column) or "", reverse=direction == "desc")
            limit = request.url.params.get("limit")
            return httpx.Response(200, json=matched[: int(limit)] if limit else matched)
        if request.method == "POST":
            created = []
            for row in body:
                self._next_id += 1
                created.append({"id": f"r{self._next_id}", "created_at": "2024-05-13T10:00:00+00:00", **row})
            rows.extend(created)
            return httpx.Response(201, json=created)
        if request.method == "PATCH":
            for r in matched:
                r.update(body)
            return httpx.Response(200, json=matched)
        if request.method == "DELETE":
            self.rows[table] = [r for r in rows if r not in matched]
            return httpx.Response(200, json=matched)
        return httpx.Response(405)

    def last(self, path_prefix: str) -> httpx.Request:
        return [r for r in self.requests if r.url.path.startswith(path_prefix)][-1]


def _backend(api: FakeHostedApi, session_path: Path | None = None) -> RestBackend:
    return RestBackend(BASE, "anon-key", session_path=session_path, transport=httpx.MockTransport(api))


def test_row_codec_maps_names_and_timestamps() -> None:
    ts = datetime(2024, 5, 13, 10, 0, tzinfo=timezone.utc).timestamp()

    remote = encode_row("tasks", {"title": "x", "due_at": ts})
    assert remote == {"title": "x", "due_date": "2024-05-13T10:00:00+00:00"}

    local = decode_row("notifications", {"id": "n1", "is_read": True, "created_at": "2024-05-13T10:00:00Z"})
    assert local == {"id": "n1", "read": True, "created_at": ts}


@pytest.mark.asyncio
async def test_sign_in_persists_private_session_and_restores(tmp_path: Path) -> None:
    api = FakeHostedApi()
    session_path = tmp_path / "session.json"
    backend = _backend(api, session_path)

    session = await backend.auth.sign_in("ann@example.com", "secret123")
    assert session.user_id == "u1"
    assert api.last("/auth/v1/token").url.params["grant_type"] == "password"
    assert api.last("/auth/v1/token").headers["apikey"] == "anon-key"

    saved = json.loads(session_path.read_text("utf-8"))
    assert saved["access_token"] == session.access_token
    if sys.platform != "win32":
        assert stat.S_IMODE(os.stat(session_path).st_mode) == 0o600

    restored = _backend(api, session_path)
    assert restored.auth.current_session() == session

    await backend.auth.sign_out()
    assert backend.auth.current_session() is None
    assert not session_path.exists()
    assert api.last("/auth/v1/logout").headers["authorization"] == f"Bearer {session.access_token}"

    await backend.close()
    await restored.close()


@pytest.mark.asyncio
async def test_auth_failures() -> None:
    api = FakeHostedApi()
    backend = _backend(api)

    with pytest.raises(AuthError, match="Invalid login credentials"):
        await backend.auth.sign_in("ann@example.com", "wrong")

    # Email confirmation pending: a session object without tokens, nothing current.
    pending = await backend.auth.sign_up("ann@example.com", "secret123")
    assert pending.user_id == "u1" and pending.access_token is None
    assert backend.auth.current_session() is None

    with pytest.raises(AuthError):
        await backend.tables.select("tasks")

    await backend.auth.request_password_reset("ann@example.com")
    assert json.loads(api.last("/auth/v1/recover").content) == {"email": "ann@example.com"}

    await backend.close()


@pytest.mark.asyncio
async def test_non_json_auth_reply_is_a_backend_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    backend = RestBackend(BASE, "anon-key", transport=httpx.MockTransport(handler))

    with pytest.raises(BackendError, match="invalid JSON"):
        await backend.auth.sign_in("ann@example.com", "secret123")
    assert backend.auth.current_session() is None

    notifier = RecordingNotifier()
    app = AppSession(backend=backend, notifier=notifier)
    assert await app.sign_in("ann@example.com", "secret123") is None
    assert len(notifier.errors) == 1 and "invalid JSON" in notifier.errors[0]
    assert not app.active

    await app.close()


@pytest.mark.asyncio
async def test_select_builds_postgrest_query() -> None:
    api = FakeHostedApi()
    api.rows["tasks"] = [
        {"id": "t1", "user_id": "u1", "title": "x", "due_date": "2024-05-13T10:00:00+00:00", "order": 0}
    ]
    backend = _backend(api)
    session = await backend.auth.sign_in("ann@example.com", "secret123")

    rows = await backend.tables.select(
        "tasks", filters={"user_id": "u1", "category_id": None}, order_by="order", limit=10
    )

    params = api.last("/rest/v1/tasks").url.params
    assert params["user_id"] == "eq.u1"
    assert params["category_id"] == "is.null"
    assert params["order"] == "order.asc"
    assert params["limit"] == "10"
    assert api.last("/rest/v1/tasks").headers["authorization"] == f"Bearer {session.access_token}"

    assert rows[0]["due_at"] == datetime(2024, 5, 13, 10, 0, tzinfo=timezone.utc).timestamp()
    assert "due_date" not in rows[0]

    await backend.close()


@pytest.mark.asyncio
async def test_insert_update_delete_roundtrip() -> None:
    api = FakeHostedApi()
    backend = _backend(api)
    await backend.auth.sign_in("ann@example.com", "secret123")

    [row] = await backend.tables.insert("notifications", [{"title": "hi", "type": "info", "created_at": 5.0}])
    request = api.last("/rest/v1/notifications")
    assert request.headers["prefer"] == "return=representation"
    assert json.loads(request.content) == [{"title": "hi", "type": "info", "user_id": "u1"}]
    assert isinstance(row["created_at"], float)

    [updated] = await backend.tables.update("notifications", {"read": True}, filters={"id": row["id"]})
    assert json.loads(api.last("/rest/v1/notifications").content) == {"is_read": True}
    assert updated["read"] is True

    await backend.tables.update("notifications", {"read": True}, filters={"read": False})
    assert api.last("/rest/v1/notifications").url.params["is_read"] == "is.false"

    assert await backend.tables.delete("notifications", filters={"id": row["id"]}) == 1
    assert api.rows["notifications"] == []

    await backend.close()


@pytest.mark.asyncio
async def test_http_errors_map_to_backend_errors() -> None:
    api = FakeHostedApi()
    backend = _backend(api)
    await backend.auth.sign_in("ann@example.com", "secret123")

    api.fail_status = 500
    with pytest.raises(BackendError) as exc:
        await backend.tables.select("tasks")
    assert exc.value.status == 500
    assert str(exc.value) == "server says no"

    api.fail_status = 401
    with pytest.raises(AuthError):
        await backend.tables.select("tasks")

    await backend.close()


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_before_requests() -> None:
    api = FakeHostedApi(expires_in=30)
    backend = _backend(api)
    first = await backend.auth.sign_in("ann@example.com", "secret123")

    await backend.tables.select("tasks")

    assert api.last("/auth/v1/token").url.params["grant_type"] == "refresh_token"
    assert json.loads(api.last("/auth/v1/token").content) == {"refresh_token": first.refresh_token}
    current = backend.auth.current_session()
    assert current.access_token != first.access_token
    assert api.last("/rest/v1/tasks").headers["authorization"] == f"Bearer {current.access_token}"

    await backend.close()


@pytest.mark.asyncio
async def test_storage_endpoints() -> None:
    api = FakeHostedApi()
    backend = _backend(api)
    await backend.auth.sign_in("ann@example.com", "secret123")

    await backend.storage.upload("u1/t1/1.png", b"\x89PNG", content_type="image/png")
    upload = api.last("/storage/v1/object/task-attachments/")
    assert upload.method == "POST"
    assert upload.url.path == "/storage/v1/object/task-attachments/u1/t1/1.png"
    assert upload.headers["content-type"] == "image/png"
    assert upload.content == b"\x89PNG"

    url = await backend.storage.signed_url("u1/t1/1.png", 3600)
    assert url == f"{BASE}/storage/v1/object/sign/task-attachments/u1/t1/1.png?token=abc"
    assert json.loads(api.last("/storage/v1/object/sign/").content) == {"expiresIn": 3600}

    await backend.storage.remove(["u1/t1/1.png"])
    removal = api.last("/storage/v1/object/task-attachments")
    assert removal.method == "DELETE"
    assert json.loads(removal.content) == {"prefixes": ["u1/t1/1.png"]}

    await backend.close()


@pytest.mark.asyncio
async def test_polling_feed_reports_only_new_rows() -> None:
    api = FakeHostedApi()
    api.rows["notifications"] = [{"id": "old", "user_id": "u1", "title": "old", "created_at": "2024-05-13T09:00:00Z"}]
    backend = _backend(api)
    await backend.auth.sign_in("ann@example.com", "secret123")

    events: list[ChangeEvent] = []
    sub = backend.realtime.subscribe("notifications", filters={"user_id": "u1"}, callback=events.append)
    assert isinstance(sub, PollingSubscription)
    # Drive polls by hand instead of waiting for the background interval.
    sub.unsubscribe()

    assert await sub.poll_once() == 0
    api.rows["notifications"].append(
        {"id": "new", "user_id": "u1", "title": "new", "created_at": "2024-05-13T11:00:00Z"}
    )
    assert await sub.poll_once() == 1
    assert await sub.poll_once() == 0

    assert [(e.event, e.new["id"]) for e in events] == [("INSERT", "new")]
    params = api.last("/rest/v1/notifications").url.params
    assert params["order"] == "created_at.desc"

    await backend.close()


@pytest.mark.asyncio
async def test_polling_keeps_only_the_current_window_of_ids() -> None:
    api = FakeHostedApi()
    api.rows["notifications"] = []
    backend = _backend(api)
    await backend.auth.sign_in("ann@example.com", "secret123")

    events: list[ChangeEvent] = []
    sub = PollingSubscription(
        backend.tables,
        "notifications",
        filters={"user_id": "u1"},
        callback=events.append,
        interval_seconds=3600,
        window=2,
    )
    sub.unsubscribe()
    await sub.poll_once()

    for minute in range(10, 16):
        api.rows["notifications"].append(
            {"id": f"n{minute}", "user_id": "u1", "title": "t", "created_at": f"2024-05-13T10:{minute}:00Z"}
        )
        assert await sub.poll_once() == 1
        assert len(sub._seen) <= 2

    assert [e.new["id"] for e in events] == [f"n{m}" for m in range(10, 16)]
    # Older rows never come back once they have left the window.
    assert await sub.poll_once() == 0

    await backend.close()
