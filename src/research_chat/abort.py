"""Cancellation tokens and coordination of local and remote aborts."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging
import time

from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

NotifyAbort = Callable[[str], Awaitable[None]]


class CancelToken:
    """One-shot cancellation signal shared by the reader and the controller."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Set the token. Returns False if it was already set."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


class AbortCoordinator:
    """Own the cancel token for the in-flight exchange.

    ``cancel()`` stops the local network operation synchronously, then notifies
    the backend in a tracked background task. The caller never waits on the
    remote acknowledgement.
    """

    NOTIFY_TASK_NAME = "abort_notify"

    def __init__(
        self,
        notify_abort: NotifyAbort | None = None,
        *,
        task_manager: TaskManager | None = None,
        cooldown_seconds: float = 1.0,
        notify_timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._notify_abort = notify_abort
        self.task_manager = task_manager or TaskManager()
        self.cooldown_seconds = max(0.0, cooldown_seconds)
        self.notify_timeout_seconds = max(0.1, notify_timeout_seconds)
        self._clock = clock
        self._token: CancelToken | None = None
        self._last_cancel_at: float | None = None

    @property
    def active_token(self) -> CancelToken | None:
        return self._token

    def begin(self) -> CancelToken:
        """Issue the token for a new exchange, replacing a finished one."""
        if self._token is not None and not self._token.cancelled:
            LOGGER.warning(
                "abort.begin.replaced_live_token",
                extra={"event": "abort.begin.replaced_live_token"},
            )
            self._token.cancel("superseded")
        self._token = CancelToken()
        self._last_cancel_at = None
        return self._token

    def finish(self, token: CancelToken) -> None:
        """Release ``token`` if it is still the current one."""
        if self._token is token:
            self._token = None

    def in_cooldown(self) -> bool:
        if self._last_cancel_at is None:
            return False
        return self._clock() - self._last_cancel_at < self.cooldown_seconds

    def cancel(self, session_id: str | None = None) -> bool:
        """Stop the active exchange and notify the backend.

        Returns True if the exchange was stopped or the notification was sent
        again. Repeat calls for the same exchange re-send the notification at
        most once per cooldown window; a new exchange always notifies.
        """
        token = self._token
        if token is None:
            return False
        stopped = token.cancel("stopped by user")
        if stopped:
            LOGGER.info(
                "abort.local",
                extra={"event": "abort.local", "session_id": session_id},
            )

        if self.in_cooldown():
            LOGGER.debug("abort.cooldown", extra={"event": "abort.cooldown"})
            return stopped
        self._last_cancel_at = self._clock()
        if session_id and self._notify_abort is not None:
            self._schedule_notify(self._notify_abort, session_id)
        return True

    def _schedule_notify(self, notify_abort: NotifyAbort, session_id: str) -> None:
        try:
            self.task_manager.spawn(
                self._notify(notify_abort, session_id), name=self.NOTIFY_TASK_NAME
            )
        except RuntimeError:
            LOGGER.warning(
                "abort.notify.no_loop",
                extra={"event": "abort.notify.no_loop", "session_id": session_id},
            )

    async def _notify(self, notify_abort: NotifyAbort, session_id: str) -> None:
        try:
            await asyncio.wait_for(
                notify_abort(session_id), timeout=self.notify_timeout_seconds
            )
            LOGGER.info(
                "abort.remote.ok",
                extra={"event": "abort.remote.ok", "session_id": session_id},
            )
        except asyncio.TimeoutError:
            LOGGER.warning(
                "abort.remote.timeout",
                extra={"event": "abort.remote.timeout", "session_id": session_id},
            )
        except Exception as exc:  # noqa: BLE001 - remote abort is best effort.
            LOGGER.warning(
                "abort.remote.failed",
                extra={
                    "event": "abort.remote.failed",
                    "session_id": session_id,
                    "error": str(exc),
                },
            )

    async def aclose(self) -> None:
        """Cancel any outstanding remote notification."""
        await self.task_manager.cancel_all()
