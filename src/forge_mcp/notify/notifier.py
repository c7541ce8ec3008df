"""Delivery of session notifications through an injected channel."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import TYPE_CHECKING, Protocol, Sequence

from .formatting import NotificationButton

if TYPE_CHECKING:
    from ..sessions.registry import SessionRegistry

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    """Outbound chat channel. Both calls return the message id, or None if unknown."""

    async def send(self, text: str, actions: Sequence[NotificationButton] = ()) -> str | None:
        ...

    async def edit(
        self, message_id: str, text: str, actions: Sequence[NotificationButton] = ()
    ) -> str | None:
        ...


class LoggingChannel:
    """Channel that writes notifications to the application log."""

    def __init__(self, logger_name: str = "forge_mcp.notifications") -> None:
        self._logger = logging.getLogger(logger_name)
        self._ids = itertools.count(1)

    async def send(self, text: str, actions: Sequence[NotificationButton] = ()) -> str | None:
        message_id = f"log-{next(self._ids)}"
        self._logger.info(
            text,
            extra={"message_id": message_id, "actions": [button.callback_data for button in actions]},
        )
        return message_id

    async def edit(
        self, message_id: str, text: str, actions: Sequence[NotificationButton] = ()
    ) -> str | None:
        self._logger.info(
            text,
            extra={"message_id": message_id, "actions": [button.callback_data for button in actions]},
        )
        return message_id


class SessionNotifier:
    """Send-or-edit status updates, one chat message per session.

    Delivery is fire-and-forget: failures are logged and reported through the
    boolean return value, never raised to the session machinery.
    """

    def __init__(self, channel: NotificationChannel, registry: SessionRegistry) -> None:
        self._channel = channel
        self._registry = registry
        self._pending: set[asyncio.Task] = set()

    @property
    def channel(self) -> NotificationChannel:
        return self._channel

    async def update(
        self, session_id: str, text: str, actions: Sequence[NotificationButton] = ()
    ) -> bool:
        """Edit the session's previous message in place, or send a new one."""

        try:
            message_id = self._registry.message_for(session_id)
            new_id: str | None = None
            if message_id is not None:
                try:
                    new_id = await self._channel.edit(message_id, text, actions)
                except Exception as exc:  # noqa: BLE001 - channel errors are not ours
                    logger.debug(
                        "Notification edit failed, sending a new message",
                        extra={"session_id": session_id, "error": str(exc)},
                    )
                    message_id = None
            if message_id is None:
                new_id = await self._channel.send(text, actions)
            if new_id is not None:
                self._registry.set_message(session_id, new_id)
            return True
        except Exception as exc:  # noqa: BLE001 - notification delivery is best effort
            logger.warning(
                "Notification delivery failed",
                extra={"session_id": session_id, "error": str(exc)},
            )
            return False

    async def post(self, text: str, actions: Sequence[NotificationButton] = ()) -> bool:
        """Send a standalone message that is not tracked for later edits."""

        try:
            await self._channel.send(text, actions)
            return True
        except Exception as exc:  # noqa: BLE001 - notification delivery is best effort
            logger.warning("Notification delivery failed", extra={"error": str(exc)})
            return False

    def post_nowait(
        self,
        session_id: str | None,
        text: str,
        actions: Sequence[NotificationButton] = (),
    ) -> asyncio.Task:
        """Schedule delivery without waiting; ``session_id=None`` sends a standalone message."""

        coro = self.update(session_id, text, actions) if session_id else self.post(text, actions)
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled deliveries."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = ["LoggingChannel", "NotificationChannel", "SessionNotifier"]
