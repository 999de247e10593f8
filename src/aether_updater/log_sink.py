"""Append-only log buffer for update attempts.

Entries are appended synchronously by the orchestrator and the command
executor. While an attempt runs, a single background task mirrors the
latest snapshot of the buffer to the audit record so that status pollers
see live progress. Appends that arrive while a write is in flight are
coalesced into the next write, so the final write always carries the
complete buffer.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from aether_updater.logging import get_logger
from aether_updater.models import LogEntry, LogKind

log = get_logger("aether_updater.log_sink")

LogMirror = Callable[[list[LogEntry]], Awaitable[None]]


class LogSink:
    """Ordered buffer of ``LogEntry`` values with optional live mirroring."""

    def __init__(self) -> None:
        self._entries: list[LogEntry] = []
        self._mirror: LogMirror | None = None
        self._pending = False
        self._task: asyncio.Task[None] | None = None

    @property
    def entries(self) -> list[LogEntry]:
        """Return a copy of the entries in append order."""
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def reset(self) -> None:
        """Clear the buffer at the start of a new attempt."""
        self._entries = []

    # ------------------------------------------------------------------
    # Appending
    # ------------------------------------------------------------------

    def add(self, kind: LogKind, message: str) -> LogEntry:
        entry = LogEntry(kind=kind, message=message)
        self._entries.append(entry)
        log.debug("update_log", kind=kind.value, message=message)
        self._schedule_mirror()
        return entry

    def info(self, message: str) -> LogEntry:
        return self.add(LogKind.INFO, message)

    def warning(self, message: str) -> LogEntry:
        return self.add(LogKind.WARNING, message)

    def success(self, message: str) -> LogEntry:
        return self.add(LogKind.SUCCESS, message)

    def error(self, message: str) -> LogEntry:
        return self.add(LogKind.ERROR, message)

    # ------------------------------------------------------------------
    # Mirroring
    # ------------------------------------------------------------------

    def attach(self, mirror: LogMirror) -> None:
        """Start mirroring every append through *mirror*."""
        self._mirror = mirror
        if self._entries:
            self._schedule_mirror()

    async def detach(self) -> None:
        """Flush pending writes and stop mirroring."""
        await self.flush()
        self._mirror = None

    async def flush(self) -> None:
        """Wait until the mirror has seen every entry appended so far."""
        if self._task is not None:
            await self._task
            self._task = None

    def _schedule_mirror(self) -> None:
        if self._mirror is None:
            return
        self._pending = True
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._task = loop.create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending and self._mirror is not None:
            self._pending = False
            snapshot = list(self._entries)
            try:
                await self._mirror(snapshot)
            except Exception as exc:
                log.warning("update_log_mirror_failed", error=str(exc), entries=len(snapshot))
