"""Process-wide table of live agent sessions."""

from __future__ import annotations

import asyncio
import atexit
import inspect
import logging
import threading
from typing import Any, Awaitable, Callable, Protocol

from .models import SessionAlreadyActiveError

logger = logging.getLogger(__name__)


class SessionHandle(Protocol):
    """The parts of a live agent session the registry relies on."""

    @property
    def exited(self) -> bool:
        ...

    async def kill(self) -> None:
        ...

    def terminate_now(self) -> None:
        ...


TimerCallback = Callable[[], "Awaitable[Any] | None"]


class SessionRegistry:
    """Maps session ids to live process handles.

    A reserved id with no handle attached yet (spawn in progress, or an
    autonomous flow between phases) still counts as live. Lookups drop entries
    whose process has exited; held reservations fall back to the bare
    reservation instead, so a multi-phase flow keeps its id between processes.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: dict[str, SessionHandle | None] = {}
        self._held: set[str] = set()
        self._messages: dict[str, str] = {}
        self._message_sessions: dict[str, str] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._hook_installed = False

    def _prune(self, session_id: str) -> None:
        handle = self._entries.get(session_id)
        if handle is not None and handle.exited:
            if session_id in self._held:
                self._entries[session_id] = None
            else:
                del self._entries[session_id]

    def reserve(self, session_id: str, *, hold: bool = False) -> None:
        """Claim ``session_id`` before spawning; raises if it is already live.

        With ``hold`` the id stays reserved after attached processes exit,
        until it is released.
        """

        with self._lock:
            self._prune(session_id)
            if session_id in self._entries:
                raise SessionAlreadyActiveError(f"Session {session_id} is already active")
            self._entries[session_id] = None
            if hold:
                self._held.add(session_id)

    def attach(self, session_id: str, handle: SessionHandle) -> None:
        with self._lock:
            self._prune(session_id)
            current = self._entries.get(session_id)
            if current is not None and current is not handle:
                raise SessionAlreadyActiveError(f"Session {session_id} already has a live process")
            self._entries[session_id] = handle

    def detach(self, session_id: str) -> None:
        """Drop the handle but keep the id reserved."""

        with self._lock:
            if session_id in self._entries:
                self._entries[session_id] = None

    def release(self, session_id: str) -> SessionHandle | None:
        with self._lock:
            self._held.discard(session_id)
            return self._entries.pop(session_id, None)

    def get(self, session_id: str) -> SessionHandle | None:
        with self._lock:
            self._prune(session_id)
            return self._entries.get(session_id)

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            self._prune(session_id)
            return session_id in self._entries

    def active(self) -> dict[str, SessionHandle]:
        """Return the live handles, pruning exited ones."""

        with self._lock:
            for session_id in list(self._entries):
                self._prune(session_id)
            return {key: handle for key, handle in self._entries.items() if handle is not None}

    def __len__(self) -> int:
        with self._lock:
            for session_id in list(self._entries):
                self._prune(session_id)
            return len(self._entries)

    def message_for(self, session_id: str) -> str | None:
        with self._lock:
            return self._messages.get(session_id)

    def set_message(self, session_id: str, message_id: str) -> None:
        with self._lock:
            previous = self._messages.get(session_id)
            if previous is not None:
                self._message_sessions.pop(previous, None)
            self._messages[session_id] = message_id
            self._message_sessions[message_id] = session_id

    def session_for_message(self, message_id: str) -> str | None:
        with self._lock:
            return self._message_sessions.get(message_id)

    def schedule(self, session_id: str, delay_seconds: float, callback: TimerCallback) -> None:
        """Run ``callback`` after ``delay_seconds``; replaces any timer for the session.

        Coroutine results are scheduled as tasks. Must be called from the event loop.
        """

        loop = asyncio.get_running_loop()

        def _fire() -> None:
            with self._lock:
                self._timers.pop(session_id, None)
            outcome = callback()
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        with self._lock:
            self.cancel_timer(session_id)
            self._timers[session_id] = loop.call_later(delay_seconds, _fire)

    def cancel_timer(self, session_id: str) -> bool:
        with self._lock:
            timer = self._timers.pop(session_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def has_timer(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._timers

    def _cancel_all_timers(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def terminate_all(self) -> int:
        """Send SIGTERM to every live process without awaiting exit."""

        self._cancel_all_timers()
        handles = self.active()
        for session_id, handle in handles.items():
            logger.info("Terminating session on shutdown", extra={"session_id": session_id})
            handle.terminate_now()
        return len(handles)

    async def shutdown(self) -> None:
        """Kill every live process, escalating to SIGKILL where needed."""

        self._cancel_all_timers()
        handles = self.active()
        if handles:
            await asyncio.gather(*(handle.kill() for handle in handles.values()), return_exceptions=True)

    def install_shutdown_hook(self) -> None:
        with self._lock:
            if self._hook_installed:
                return
            atexit.register(self.terminate_all)
            self._hook_installed = True


__all__ = ["SessionHandle", "SessionRegistry"]
