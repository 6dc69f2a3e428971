# src/taskpilot/backend/rest.py

from __future__ import annotations

"""
Hosted backend over HTTP (GoTrue auth, PostgREST tables, storage buckets).

One httpx.AsyncClient is shared by the auth, table and storage adapters.
Remote column names differ from the local row vocabulary in a few places
(due_date, is_read, is_triggered, file_url); the mapping lives here so the
rest of the package only sees local names and POSIX-second timestamps.
"""

import asyncio
import json
import logging
import os
import time
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from ..core.ports import AuthSession, ChangeCallback, ChangeEvent, Row
from ..sync.errors import AuthError, BackendError

logger = logging.getLogger(__name__)

# local column -> remote column, per table
COLUMN_ALIASES: dict[str, dict[str, str]] = {
    "tasks": {"due_at": "due_date"},
    "reminders": {"triggered": "is_triggered"},
    "notifications": {"read": "is_read"},
    "attachments": {"storage_path": "file_url"},
}

TIMESTAMP_COLUMNS = frozenset({"created_at", "updated_at", "due_at", "remind_at"})

# Refresh the access token this many seconds before it actually expires.
TOKEN_REFRESH_MARGIN = 60.0


def to_iso(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def from_iso(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()


def _remote_name(table: str, column: str) -> str:
    return COLUMN_ALIASES.get(table, {}).get(column, column)


def encode_row(table: str, values: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name, value in values.items():
        if name in TIMESTAMP_COLUMNS and value is not None:
            value = to_iso(value)
        out[_remote_name(table, name)] = value
    return out


def decode_row(table: str, row: Mapping[str, Any]) -> Row:
    reverse = {remote: local for local, remote in COLUMN_ALIASES.get(table, {}).items()}
    out: Row = {}
    for name, value in row.items():
        local = reverse.get(name, name)
        if local in TIMESTAMP_COLUMNS:
            value = from_iso(value)
        out[local] = value
    return out


def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return "is.true" if value else "is.false"
    return f"eq.{value}"


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            if body.get(key):
                return str(body[key])
    return resp.reason_phrase


def json_body(resp: httpx.Response, kind: type = dict) -> Any:
    """Decode a successful response, as BackendError when it is not the expected JSON shape."""
    try:
        body = resp.json()
    except ValueError as e:
        raise BackendError(f"invalid JSON from {resp.request.url.path}", status=resp.status_code) from e
    if not isinstance(body, kind):
        raise BackendError(f"unexpected JSON from {resp.request.url.path}", status=resp.status_code)
    return body


def raise_for_status(resp: httpx.Response) -> None:
    if resp.is_success:
        return
    message = _error_message(resp)
    if resp.status_code in (400, 401, 403, 422) and resp.request.url.path.startswith("/auth/"):
        raise AuthError(message, status=resp.status_code)
    if resp.status_code == 401:
        raise AuthError(message, status=401)
    raise BackendError(message, status=resp.status_code)


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False), "utf-8")
    os.replace(tmp, path)
    try:
        os.chmod(path, 0o600)
    except OSError:
        # Not critical on Windows or restricted FS.
        pass


class RestAuth:
    """
    Email/password auth against a GoTrue-compatible endpoint.

    The session (tokens included) is persisted to `session_path` so a restart
    can resume without signing in again. The file is private (0600).
    """

    def __init__(self, client: httpx.AsyncClient, api_key: str, *, session_path: Path | None = None) -> None:
        self._client = client
        self._api_key = api_key
        self._session_path = session_path
        self._session: AuthSession | None = None
        self._lock = asyncio.Lock()
        self._restore()

    # ---- persistence ----

    def _restore(self) -> None:
        path = self._session_path
        if path is None or not path.exists():
            return
        try:
            data = json.loads(path.read_text("utf-8"))
            self._session = AuthSession(
                user_id=str(data["user_id"]),
                email=str(data.get("email") or ""),
                access_token=data.get("access_token"),
                refresh_token=data.get("refresh_token"),
                expires_at=data.get("expires_at"),
            )
            logger.info("Restored session from %s user_id=%s", path, self._session.user_id)
        except (OSError, ValueError, KeyError) as e:
            logger.warning("Ignoring unreadable session file %s: %r", path, e)

    def _persist(self) -> None:
        path = self._session_path
        if path is None:
            return
        if self._session is None:
            path.unlink(missing_ok=True)
            return
        s = self._session
        _atomic_write_json(
            path,
            {
                "user_id": s.user_id,
                "email": s.email,
                "access_token": s.access_token,
                "refresh_token": s.refresh_token,
                "expires_at": s.expires_at,
            },
        )

    def _adopt(self, body: Mapping[str, Any]) -> AuthSession:
        user = body.get("user") or {}
        expires_in = body.get("expires_in")
        expires_at = body.get("expires_at")
        if expires_at is None and expires_in is not None:
            expires_at = time.time() + float(expires_in)
        self._session = AuthSession(
            user_id=str(user.get("id") or ""),
            email=str(user.get("email") or ""),
            access_token=body.get("access_token"),
            refresh_token=body.get("refresh_token"),
            expires_at=float(expires_at) if expires_at is not None else None,
        )
        self._persist()
        return self._session

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.post(url, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"auth request failed: {e!r}") from e

    # ---- headers ----

    def headers(self) -> dict[str, str]:
        token = self._session.access_token if self._session and self._session.access_token else self._api_key
        return {"apikey": self._api_key, "Authorization": f"Bearer {token}"}

    async def ensure_fresh(self) -> None:
        """Refresh the access token if it is about to expire."""
        async with self._lock:
            s = self._session
            if s is None or s.refresh_token is None or s.expires_at is None:
                return
            if s.expires_at - TOKEN_REFRESH_MARGIN > time.time():
                return
            logger.debug("Refreshing access token user_id=%s", s.user_id)
            resp = await self._post(
                "/auth/v1/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": s.refresh_token},
                headers={"apikey": self._api_key},
            )
            if resp.status_code in (400, 401):
                logger.warning("Refresh token rejected; session dropped user_id=%s", s.user_id)
                self._session = None
                self._persist()
            raise_for_status(resp)
            self._adopt(json_body(resp))

    # ---- AuthBackend ----

    def current_session(self) -> AuthSession | None:
        return self._session

    async def sign_up(self, email: str, password: str) -> AuthSession:
        resp = await self._post(
            "/auth/v1/signup",
            json={"email": email, "password": password},
            headers={"apikey": self._api_key},
        )
        raise_for_status(resp)
        body = json_body(resp)
        if body.get("access_token"):
            return self._adopt(body)

        # Email confirmation pending: the server returns the bare user.
        user = body.get("user") or body
        logger.info("Sign-up pending email confirmation email=%s", email)
        return AuthSession(user_id=str(user.get("id") or ""), email=str(user.get("email") or email))

    async def sign_in(self, email: str, password: str) -> AuthSession:
        resp = await self._post(
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            headers={"apikey": self._api_key},
        )
        raise_for_status(resp)
        session = self._adopt(json_body(resp))
        logger.info("Signed in user_id=%s", session.user_id)
        return session

    async def sign_out(self) -> None:
        if self._session is None:
            return
        try:
            resp = await self._post("/auth/v1/logout", headers=self.headers())
            if resp.status_code not in (401, 404):
                raise_for_status(resp)
        finally:
            # The local session is dropped even when the server call fails.
            self._session = None
            self._persist()

    async def request_password_reset(self, email: str) -> None:
        resp = await self._post(
            "/auth/v1/recover",
            json={"email": email},
            headers={"apikey": self._api_key},
        )
        raise_for_status(resp)


class RestTableStore:
    def __init__(self, client: httpx.AsyncClient, auth: RestAuth) -> None:
        self._client = client
        self._auth = auth

    def _user_id(self) -> str:
        session = self._auth.current_session()
        if session is None or not session.access_token:
            raise AuthError("Not signed in", status=401)
        return session.user_id

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: list[tuple[str, str]],
        body: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        self._user_id()
        await self._auth.ensure_fresh()
        headers = self._auth.headers()
        if prefer:
            headers["Prefer"] = prefer
        try:
            resp = await self._client.request(method, f"/rest/v1/{table}", params=params, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {table} failed: {e!r}") from e
        raise_for_status(resp)
        return resp

    @staticmethod
    def _filter_params(table: str, filters: Mapping[str, Any] | None) -> list[tuple[str, str]]:
        return [(_remote_name(table, k), _filter_value(v)) for k, v in (filters or {}).items()]

    def _decode_all(self, table: str, resp: httpx.Response) -> list[Row]:
        if not resp.content:
            return []
        return [decode_row(table, r) for r in json_body(resp, list)]

    async def select(
        self,
        table: str,
        *,
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        params = [("select", "*"), *self._filter_params(table, filters)]
        if order_by is not None:
            params.append(("order", f"{_remote_name(table, order_by)}.{'desc' if descending else 'asc'}"))
        if limit is not None:
            params.append(("limit", str(int(limit))))
        resp = await self._request("GET", table, params=params)
        return self._decode_all(table, resp)

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        user_id = self._user_id()
        body = []
        for row in rows:
            values = {k: v for k, v in row.items() if k not in ("id", "created_at", "updated_at")}
            values.setdefault("user_id", user_id)
            body.append(encode_row(table, values))
        resp = await self._request("POST", table, params=[], body=body, prefer="return=representation")
        return self._decode_all(table, resp)

    async def update(
        self,
        table: str,
        values: Mapping[str, Any],
        *,
        filters: Mapping[str, Any],
    ) -> list[Row]:
        changes = {k: v for k, v in values.items() if k not in ("id", "user_id")}
        resp = await self._request(
            "PATCH",
            table,
            params=self._filter_params(table, filters),
            body=encode_row(table, changes),
            prefer="return=representation",
        )
        return self._decode_all(table, resp)

    async def delete(self, table: str, *, filters: Mapping[str, Any]) -> int:
        resp = await self._request(
            "DELETE",
            table,
            params=self._filter_params(table, filters),
            prefer="return=representation",
        )
        return len(self._decode_all(table, resp))


class RestObjectStorage:
    def __init__(self, client: httpx.AsyncClient, auth: RestAuth, *, bucket: str) -> None:
        self._client = client
        self._auth = auth
        self._bucket = bucket

    def _object_url(self, path: str) -> str:
        return f"/storage/v1/object/{self._bucket}/{quote(path)}"

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        await self._auth.ensure_fresh()
        headers = {**self._auth.headers(), **kwargs.pop("headers", {})}
        try:
            resp = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"storage {method} failed: {e!r}") from e
        raise_for_status(resp)
        return resp

    async def upload(self, path: str, data: bytes, *, content_type: str) -> str:
        await self._send(
            "POST",
            self._object_url(path),
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "false"},
        )
        return path

    async def signed_url(self, path: str, ttl_seconds: int) -> str:
        resp = await self._send(
            "POST",
            f"/storage/v1/object/sign/{self._bucket}/{quote(path)}",
            json={"expiresIn": int(ttl_seconds)},
        )
        signed = str(json_body(resp).get("signedURL") or "")
        if not signed:
            raise BackendError(f"no signed URL returned for {path}")
        if signed.startswith("http"):
            return signed
        return f"{str(self._client.base_url).rstrip('/')}/storage/v1{signed}"

    async def remove(self, paths: Sequence[str]) -> None:
        if not paths:
            return
        await self._send("DELETE", f"/storage/v1/object/{self._bucket}", json={"prefixes": list(paths)})


class PollingSubscription:
    """
    Polls one table and reports rows that were not there on the previous poll.

    The first poll only records a baseline. Later polls emit INSERT events for
    rows newer than the last seen created_at (ties resolved by id).
    """

    def __init__(
        self,
        tables: RestTableStore,
        table: str,
        *,
        filters: Mapping[str, Any] | None,
        callback: ChangeCallback,
        interval_seconds: float,
        window: int = 50,
    ) -> None:
        self._tables = tables
        self._table = table
        self._filters = dict(filters or {})
        self._callback = callback
        self._interval = float(interval_seconds)
        self._window = window
        self._watermark: float | None = None
        self._seen: set[str] = set()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"poll-{table}")

    async def poll_once(self) -> int:
        rows = await self._tables.select(
            self._table,
            filters=self._filters,
            order_by="created_at",
            descending=True,
            limit=self._window,
        )
        if self._watermark is None:
            self._seen = {str(r["id"]) for r in rows}
            self._watermark = max((r.get("created_at") or 0.0 for r in rows), default=0.0)
            return 0

        fresh = [
            r
            for r in reversed(rows)
            if str(r["id"]) not in self._seen and (r.get("created_at") or 0.0) >= self._watermark
        ]
        # Only the current window can hold unseen rows at or above the watermark.
        self._seen = {str(r["id"]) for r in rows}
        for row in fresh:
            self._watermark = max(self._watermark, row.get("created_at") or 0.0)
            try:
                self._callback(ChangeEvent(table=self._table, event="INSERT", new=row, old=None))
            except Exception:
                logger.exception("Realtime callback failed table=%s", self._table)
        return len(fresh)

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Realtime poll failed table=%s: %r", self._table, e)
            await asyncio.sleep(self._interval)

    def unsubscribe(self) -> None:
        self._task.cancel()


class PollingRealtimeFeed:
    def __init__(self, tables: RestTableStore, *, interval_seconds: float = 15.0) -> None:
        self._tables = tables
        self._interval = float(interval_seconds)
        self._subs: list[PollingSubscription] = []

    def subscribe(
        self,
        table: str,
        *,
        filters: Mapping[str, Any] | None,
        callback: ChangeCallback,
    ) -> PollingSubscription:
        sub = PollingSubscription(
            self._tables,
            table,
            filters=filters,
            callback=callback,
            interval_seconds=self._interval,
        )
        self._subs.append(sub)
        return sub

    def close(self) -> None:
        for sub in self._subs:
            sub.unsubscribe()
        self._subs.clear()


class RestBackend:
    """Hosted backend: one shared HTTP client for auth, tables, storage and realtime."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        session_path: str | Path | None = None,
        bucket: str = "task-attachments",
        timeout: float = 30.0,
        poll_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url or not api_key:
            raise ValueError("base_url and api_key are required")
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)
        self.auth = RestAuth(
            self._client,
            api_key,
            session_path=Path(session_path) if session_path is not None else None,
        )
        self.tables = RestTableStore(self._client, self.auth)
        self.storage = RestObjectStorage(self._client, self.auth, bucket=bucket)
        self.realtime = PollingRealtimeFeed(self.tables, interval_seconds=poll_seconds)
        logger.info("RestBackend ready url=%s bucket=%s", base_url, bucket)

    async def close(self) -> None:
        self.realtime.close()
        await self._client.aclose()
