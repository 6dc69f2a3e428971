# src/taskpilot/sync/attachments.py

from __future__ import annotations

import logging
import time
from pathlib import PurePosixPath

from ..core.ports import AuthBackend, Notifier, ObjectStorage, TableStore
from ..models import Attachment
from ..store.local_store import LocalStore
from .base import SyncBase
from .errors import BackendError, TaskPilotError, ValidationError
from .validation import MAX_UPLOAD_BYTES, validate_upload

logger = logging.getLogger(__name__)


def object_path(user_id: str, task_id: str, file_name: str, *, now_ts: float | None = None) -> str:
    """
    Durable object key: <user_id>/<task_id>/<millis>.<ext>

    The user-facing file name lives in the attachments row; the key only keeps
    the extension so it never carries arbitrary user text.
    """
    if now_ts is None:
        now_ts = time.time()
    ext = PurePosixPath(file_name).suffix.lstrip(".").lower() or "bin"
    return f"{user_id}/{task_id}/{int(now_ts * 1000)}.{ext}"


class AttachmentSync(SyncBase):
    """
    File attachments.

    Rows store the object path only; display URLs are short-lived signed URLs
    minted on each view load (never persisted).
    """

    def __init__(
        self,
        *,
        store: LocalStore,
        tables: TableStore,
        auth: AuthBackend,
        notifier: Notifier,
        storage: ObjectStorage,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
        signed_url_ttl_seconds: int = 3600,
    ) -> None:
        super().__init__(store=store, tables=tables, auth=auth, notifier=notifier)
        self._storage = storage
        self._max_bytes = int(max_upload_bytes)
        self._ttl = max(1, int(signed_url_ttl_seconds))

    async def upload(
        self,
        task_id: str,
        *,
        file_name: str,
        content_type: str,
        data: bytes,
    ) -> Attachment | None:
        try:
            validate_upload(
                file_name=file_name,
                content_type=content_type,
                size=len(data),
                max_bytes=self._max_bytes,
            )
            if self._store.get_task(task_id) is None:
                raise ValidationError("task_id", "Task not found")
        except ValidationError as e:
            self._invalid(e)
            return None

        try:
            path = object_path(self._user_id(), task_id, file_name)
            await self._call("upload", "storage", self._storage.upload(path, data, content_type=content_type))
        except TaskPilotError as e:
            self._fail("Failed to upload file", e)
            return None

        try:
            row = {
                "user_id": self._user_id(),
                "task_id": task_id,
                "file_name": file_name,
                "file_type": content_type,
                "storage_path": path,
                "file_size": len(data),
            }
            rows = await self._call("insert", "attachments", self._tables.insert("attachments", [row]))
            if not rows:
                raise BackendError("insert returned no rows")
        except TaskPilotError as e:
            await self._remove_objects([path])
            self._fail("Failed to upload file", e)
            return None

        attachment = self._store.apply_attachment_added(Attachment.from_row(rows[0]))
        logger.info("Attachment uploaded id=%s task_id=%s size=%d", attachment.id, task_id, len(data))
        self._notifier.info("File uploaded")
        return attachment

    async def delete(self, attachment: Attachment) -> bool:
        try:
            await self._call(
                "delete", "attachments", self._tables.delete("attachments", filters={"id": attachment.id})
            )
        except TaskPilotError as e:
            self._fail("Failed to delete file", e)
            return False

        await self._remove_objects([attachment.storage_path])
        self._store.apply_attachment_removed(attachment.task_id, attachment.id)
        self._notifier.info("File deleted")
        return True

    async def signed_url(self, attachment: Attachment) -> str | None:
        try:
            return await self._call("sign", "storage", self._storage.signed_url(attachment.storage_path, self._ttl))
        except TaskPilotError:
            logger.warning("Failed to sign url attachment_id=%s", attachment.id, exc_info=True)
            return None

    async def signed_urls(self, task_id: str) -> dict[str, str]:
        """attachment id -> freshly signed URL, for every attachment of the task."""
        out: dict[str, str] = {}
        for attachment in self._store.attachments_for(task_id):
            url = await self.signed_url(attachment)
            if url:
                out[attachment.id] = url
        return out

    async def _remove_objects(self, paths: list[str]) -> None:
        try:
            await self._storage.remove(paths)
        except Exception:
            # Best-effort: the row is already gone (or was never written).
            logger.warning("Failed to remove stored objects %s", paths, exc_info=True)
