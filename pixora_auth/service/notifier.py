from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Optional, Set

from pixora_auth.logging import get_logger
from pixora_auth.service.email import EmailService

logger = get_logger(__name__)


class Notifier:
    """Fire-and-forget boundary in front of :class:`EmailService`.

    Each notification is scheduled as its own task that runs the blocking
    SMTP call in a worker thread. Failures are logged and never reach the
    caller, and nothing here waits on delivery.
    """

    def __init__(self, email: EmailService) -> None:
        self.email = email
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _dispatch(
        self, kind: str, send: Callable[..., bool], *args: Any, **kwargs: Any
    ) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called outside an event loop (CLI scripts); deliver inline.
            self._deliver_sync(kind, send, *args, **kwargs)
            return None
        task = loop.create_task(self._deliver(kind, send, *args, **kwargs))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(
        self, kind: str, send: Callable[..., bool], *args: Any, **kwargs: Any
    ) -> bool:
        try:
            delivered = await asyncio.to_thread(send, *args, **kwargs)
        except Exception as exc:
            logger.error(
                "notification_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not delivered:
            logger.error("notification_not_delivered", kind=kind)
        return bool(delivered)

    def _deliver_sync(
        self, kind: str, send: Callable[..., bool], *args: Any, **kwargs: Any
    ) -> bool:
        try:
            delivered = send(*args, **kwargs)
        except Exception as exc:
            logger.error(
                "notification_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not delivered:
            logger.error("notification_not_delivered", kind=kind)
        return bool(delivered)

    def welcome(self, to_email: str, first_name: str, token: str) -> Optional[asyncio.Task]:
        return self._dispatch("welcome", self.email.send_welcome_email, to_email, first_name, token)

    def email_verification(
        self, to_email: str, first_name: str, token: str
    ) -> Optional[asyncio.Task]:
        return self._dispatch(
            "email_verification", self.email.send_email_verification, to_email, first_name, token
        )

    def password_reset(self, to_email: str, first_name: str, token: str) -> Optional[asyncio.Task]:
        return self._dispatch(
            "password_reset", self.email.send_password_reset, to_email, first_name, token
        )

    def password_changed(self, to_email: str, first_name: str) -> Optional[asyncio.Task]:
        return self._dispatch(
            "password_changed", self.email.send_password_changed, to_email, first_name
        )

    def login_alert(
        self,
        to_email: str,
        first_name: str,
        *,
        ip_addr: Optional[str],
        device: str,
        login_time: datetime,
    ) -> Optional[asyncio.Task]:
        return self._dispatch(
            "login_alert",
            self.email.send_login_alert,
            to_email,
            first_name,
            ip_addr=ip_addr,
            device=device,
            login_time=login_time,
        )

    def two_factor_enabled(self, to_email: str, first_name: str) -> Optional[asyncio.Task]:
        return self._dispatch(
            "two_factor_enabled", self.email.send_mfa_setup_confirmation, to_email, first_name
        )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding notifications, e.g. on shutdown."""
        if not self._pending:
            return
        pending = list(self._pending)
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning("notifications_abandoned", count=len(still_pending))
