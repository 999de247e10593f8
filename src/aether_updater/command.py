"""Command execution on the host or inside the sandbox runner container.

Commands are argument vectors, never shell strings. A sandbox executor
prefixes every command with ``docker exec <runner>`` so git and compose run
inside the runner rather than in the controller's own process.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass

from aether_updater.errors import CommandError, CommandTimeoutError, OutputTooLargeError
from aether_updater.log_sink import LogSink
from aether_updater.logging import get_logger
from aether_updater.models import LogKind

log = get_logger("aether_updater.command")

DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
_READ_CHUNK = 4096


@dataclass(frozen=True)
class CommandOutput:
    """Captured output of a successful command."""

    stdout: str
    stderr: str
    returncode: int = 0


class _OutputBudget:
    """Shared byte budget for stdout and stderr of one command."""

    def __init__(self, limit: int, argv: Sequence[str]) -> None:
        self._limit = limit
        self._argv = argv
        self.used = 0

    def consume(self, size: int) -> None:
        self.used += size
        if self.used > self._limit:
            raise OutputTooLargeError(
                f"Command output exceeded {self._limit} bytes",
                argv=self._argv,
            )


class CommandExecutor:
    """Run commands with a timeout and an output ceiling, streaming lines to a sink.

    ``target`` is the name of the sandbox container; ``None`` runs commands
    directly on the host in ``cwd``.
    """

    def __init__(
        self,
        sink: LogSink,
        target: str | None = None,
        *,
        workdir: str | None = None,
        cwd: str | None = None,
        default_timeout: float = 60.0,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ) -> None:
        self._sink = sink
        self._target = target
        self._workdir = workdir
        self._cwd = cwd
        self._default_timeout = default_timeout
        self._max_output_bytes = max_output_bytes

    @property
    def target(self) -> str | None:
        return self._target

    def build_argv(self, argv: Sequence[str]) -> list[str]:
        """Return the full argument vector, including the sandbox prefix."""
        if self._target is None:
            return list(argv)
        prefix = ["docker", "exec"]
        if self._workdir:
            prefix += ["-w", self._workdir]
        return [*prefix, self._target, *argv]

    async def run(self, argv: Sequence[str], timeout: float | None = None) -> CommandOutput:
        """Run *argv* and return its output.

        Raises ``CommandTimeoutError`` when the timeout elapses,
        ``OutputTooLargeError`` when the captured output exceeds the ceiling,
        and ``CommandError`` on a non-zero exit status.
        """
        timeout = timeout if timeout is not None else self._default_timeout
        full_argv = self.build_argv(argv)
        log.debug("update_cmd_start", argv=full_argv, timeout=timeout)

        try:
            proc = await asyncio.create_subprocess_exec(
                *full_argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
            )
        except OSError as exc:
            log.warning("update_cmd_error", argv=full_argv, error=str(exc))
            raise CommandError(f"Failed to start {full_argv[0]}: {exc}", argv=full_argv) from exc

        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []
        budget = _OutputBudget(self._max_output_bytes, full_argv)
        readers = [
            asyncio.create_task(self._pump(proc.stdout, stdout_chunks, LogKind.INFO, budget)),
            asyncio.create_task(self._pump(proc.stderr, stderr_chunks, LogKind.WARNING, budget)),
        ]

        try:
            returncode = await asyncio.wait_for(self._wait(proc, readers), timeout=timeout)
        except TimeoutError:
            await self._abort(proc, readers)
            log.warning("update_cmd_timeout", argv=full_argv, timeout=timeout)
            raise CommandTimeoutError(
                f"Command timed out after {timeout:g}s: {' '.join(argv)}",
                argv=full_argv,
            ) from None
        except OutputTooLargeError:
            await self._abort(proc, readers)
            log.warning("update_cmd_output_too_large", argv=full_argv, used=budget.used)
            raise

        stdout = b"".join(stdout_chunks).decode(errors="replace").strip()
        stderr = b"".join(stderr_chunks).decode(errors="replace").strip()

        if returncode != 0:
            log.warning(
                "update_cmd_failed",
                argv=full_argv,
                returncode=returncode,
                stderr=stderr[:500],
            )
            raise CommandError(
                stderr or f"Command exited with status {returncode}",
                argv=full_argv,
                returncode=returncode,
                stderr=stderr,
            )

        return CommandOutput(stdout=stdout, stderr=stderr, returncode=returncode)

    async def _wait(
        self,
        proc: asyncio.subprocess.Process,
        readers: list[asyncio.Task[None]],
    ) -> int:
        await asyncio.gather(*readers)
        return await proc.wait()

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        chunks: list[bytes],
        kind: LogKind,
        budget: _OutputBudget,
    ) -> None:
        """Read *stream* in chunks, forwarding complete lines to the sink."""
        if stream is None:
            return
        pending = b""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            budget.consume(len(chunk))
            chunks.append(chunk)
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for line in lines:
                self._emit(line, kind)
        if pending:
            self._emit(pending, kind)

    def _emit(self, raw: bytes, kind: LogKind) -> None:
        text = raw.decode(errors="replace").strip()
        if text:
            self._sink.add(kind, text)

    @staticmethod
    async def _abort(
        proc: asyncio.subprocess.Process,
        readers: list[asyncio.Task[None]],
    ) -> None:
        """Kill the process and reap its reader tasks."""
        for task in readers:
            task.cancel()
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()
        await asyncio.gather(*readers, return_exceptions=True)
