# src/taskpilot/core/session.py

from __future__ import annotations

import asyncio
import logging

from ..scheduler.reminder_scheduler import ReminderScheduler
from ..store.local_store import LocalStore
from ..sync.attachments import AttachmentSync
from ..sync.errors import BackendError, TaskPilotError, ValidationError
from ..sync.notifications import NotificationSync
from ..sync.tasks import TaskSync
from ..sync.validation import MAX_UPLOAD_BYTES
from .ports import AuthSession, Backend, Notifier

logger = logging.getLogger(__name__)

PASSWORD_MIN_LENGTH = 6

# Backend wording -> what the user sees.
_AUTH_MESSAGES = {
    "Invalid login credentials": "Invalid email or password",
    "already registered": "This email is already registered",
}


def _friendly(error: BaseException) -> str:
    text = str(error)
    for needle, message in _AUTH_MESSAGES.items():
        if needle in text:
            return message
    return text or "An unexpected error occurred"


def check_credentials(email: str, password: str) -> None:
    if not (email or "").strip() or not password:
        raise ValidationError("email", "Please fill in all fields")
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError("password", f"Password must be at least {PASSWORD_MIN_LENGTH} characters")


class AppSession:
    """
    Everything one signed-in user needs, wired to one backend.

    Lifecycle:
    - sign_in / sign_up (or restore) -> load collections, attach realtime, start scheduler
    - sign_out -> stop scheduler, detach realtime, clear store, end the auth session
    - close -> sign-out side effects without ending the auth session, then release the backend
    """

    def __init__(self, *, backend: Backend, notifier: Notifier, settings=None) -> None:
        self.settings = settings
        self.backend = backend
        self.notifier = notifier
        self.store = LocalStore()

        common = dict(store=self.store, tables=backend.tables, auth=backend.auth, notifier=notifier)
        self.tasks = TaskSync(**common, storage=backend.storage)
        self.attachments = AttachmentSync(
            **common,
            storage=backend.storage,
            max_upload_bytes=getattr(settings, "max_upload_bytes", MAX_UPLOAD_BYTES),
            signed_url_ttl_seconds=getattr(settings, "signed_url_ttl_seconds", 3600),
        )
        self.notifications = NotificationSync(
            **common,
            realtime=backend.realtime,
            notifications_limit=getattr(settings, "notifications_limit", 50),
        )
        self.scheduler = ReminderScheduler(
            self.notifications,
            interval_seconds=getattr(settings, "reminder_interval_seconds", 60.0),
        )
        self._active = False
        self._started_for: str | None = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def user(self) -> AuthSession | None:
        return self.backend.auth.current_session()

    # ---- lifecycle ----

    async def _start(self) -> None:
        user_id = self.user.user_id if self.user else None
        if self._active:
            if user_id == self._started_for:
                return
            # Another account signed in over a live session: drop the previous user's rows.
            logger.info("Switching user %s -> %s", self._started_for, user_id)
            await self._stop()

        await asyncio.gather(self.tasks.load(), self.notifications.load())
        self.notifications.attach_realtime()
        self.scheduler.start()
        self._active = True
        self._started_for = user_id
        logger.info("Session started user_id=%s tasks=%d", user_id, len(self.store.tasks))

    async def _stop(self) -> None:
        await self.scheduler.stop()
        self.notifications.detach_realtime()
        self.store.clear()
        self._active = False
        self._started_for = None

    async def sign_up(self, email: str, password: str) -> AuthSession | None:
        try:
            check_credentials(email, password)
            session = await self.backend.auth.sign_up(email.strip(), password)
        except TaskPilotError as e:
            logger.info("Sign-up rejected: %s", e)
            self.notifier.error(_friendly(e))
            return None

        if self.backend.auth.current_session() is None:
            self.notifier.info("Check your email to confirm your account")
            return session
        await self._start()
        self.notifier.info("Account created successfully!")
        return session

    async def sign_in(self, email: str, password: str) -> AuthSession | None:
        try:
            check_credentials(email, password)
            session = await self.backend.auth.sign_in(email.strip(), password)
        except TaskPilotError as e:
            logger.info("Sign-in rejected: %s", e)
            self.notifier.error(_friendly(e))
            return None

        await self._start()
        self.notifier.info("Welcome back!")
        return session

    async def restore(self) -> bool:
        """Resume a persisted backend session, if there is one."""
        if self.backend.auth.current_session() is None:
            return False
        await self._start()
        return True

    async def sign_out(self) -> None:
        await self._stop()
        try:
            await self.backend.auth.sign_out()
        except BackendError as e:
            logger.warning("Remote sign-out failed (local session dropped): %r", e)

    async def request_password_reset(self, email: str) -> bool:
        if not (email or "").strip():
            self.notifier.error("Please enter your email")
            return False
        try:
            await self.backend.auth.request_password_reset(email.strip())
        except TaskPilotError as e:
            logger.warning("Password reset request failed: %r", e)
            self.notifier.error(_friendly(e))
            return False
        self.notifier.info("Check your email for a password reset link")
        return True

    async def close(self) -> None:
        if self._active:
            await self._stop()
        await self.backend.close()
