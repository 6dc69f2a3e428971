# src/taskpilot/backend/object_storage.py

from __future__ import annotations

import contextlib
import hashlib
import hmac
import logging
import os
import time
from collections.abc import Sequence
from pathlib import Path, PurePosixPath
from urllib.parse import parse_qs, quote, unquote, urlsplit

from ..sync.errors import BackendError

logger = logging.getLogger(__name__)


class LocalObjectStorage:
    """
    Filesystem-backed object store with expiring signed URLs.

    Objects live under root/<path>. URLs look like
    <base_url>/<path>?expires=<unix>&token=<hmac-sha256(path:expires)>
    and are checked with verify_signed_url(); nothing is ever public.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        signing_key: str | bytes,
        base_url: str = "taskpilot://objects",
    ) -> None:
        if not signing_key:
            raise ValueError("signing_key is required")
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._key = signing_key.encode("utf-8") if isinstance(signing_key, str) else bytes(signing_key)
        self._base_url = base_url.rstrip("/")

    # ---- helpers ----

    def _resolve(self, path: str) -> Path:
        # Checked on the raw segments: PurePosixPath would silently collapse "." and "//".
        segments = (path or "").split("/")
        if not path or PurePosixPath(path).is_absolute() or any(s in ("", ".", "..") for s in segments):
            raise BackendError(f"invalid object path: {path!r}", status=400)
        return self._root.joinpath(*segments)

    def _sign(self, path: str, expires: int) -> str:
        msg = f"{path}:{expires}".encode()
        return hmac.new(self._key, msg, hashlib.sha256).hexdigest()

    # ---- ObjectStorage ----

    async def upload(self, path: str, data: bytes, *, content_type: str) -> str:
        target = self._resolve(path)
        if target.exists():
            raise BackendError(f"object already exists: {path}", status=409)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp.unlink()
            raise BackendError(f"upload failed: {path}") from e
        logger.debug("Stored object path=%s type=%s size=%d", path, content_type, len(data))
        return path

    async def signed_url(self, path: str, ttl_seconds: int) -> str:
        if not self._resolve(path).is_file():
            raise BackendError(f"object not found: {path}", status=404)
        expires = int(time.time()) + max(1, int(ttl_seconds))
        token = self._sign(path, expires)
        return f"{self._base_url}/{quote(path)}?expires={expires}&token={token}"

    async def remove(self, paths: Sequence[str]) -> None:
        for path in paths:
            try:
                self._resolve(path).unlink(missing_ok=True)
            except OSError as e:
                raise BackendError(f"remove failed: {path}") from e

    # ---- serving side ----

    def verify_signed_url(self, url: str, *, now_ts: float | None = None) -> str | None:
        """Return the object path if `url` carries a valid, unexpired signature."""
        parts = urlsplit(url)
        prefix = urlsplit(self._base_url)
        if (parts.scheme, parts.netloc) != (prefix.scheme, prefix.netloc):
            return None
        path = unquote(parts.path[len(prefix.path):].lstrip("/"))
        query = parse_qs(parts.query)
        try:
            expires = int(query["expires"][0])
            token = query["token"][0]
        except (KeyError, IndexError, ValueError):
            return None

        if now_ts is None:
            now_ts = time.time()
        if expires < now_ts:
            return None
        if not hmac.compare_digest(token, self._sign(path, expires)):
            return None
        return path

    def read(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except FileNotFoundError as e:
            raise BackendError(f"object not found: {path}", status=404) from e
