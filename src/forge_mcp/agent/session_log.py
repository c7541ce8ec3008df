"""Append-only per-session log files."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)


class SessionLog:
    """Timestamped audit trail for one session, independent of the event stream."""

    def __init__(
        self,
        log_dir: Path,
        session_id: str,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(log_dir) / f"{session_id}.log"
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def path(self) -> Path:
        return self._path

    def info(self, message: str) -> None:
        self.write("info", message)

    def error(self, message: str) -> None:
        self.write("error", message)

    def write(self, level: str, message: str) -> None:
        """Append one line. Failures are logged and otherwise ignored."""

        line = f"[{self._clock().isoformat()}] [{level}] {message}\n"
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line)
        except OSError as exc:
            logger.debug("Session log write failed", extra={"path": str(self._path), "error": str(exc)})

    def read_lines(self, after: int = 0) -> tuple[list[str], int]:
        """Return the lines after offset ``after`` and the total line count."""

        if not self._path.exists():
            return [], 0
        lines = [line for line in self._path.read_text(encoding="utf-8").splitlines() if line]
        return lines[max(after, 0):], len(lines)


__all__ = ["SessionLog"]
