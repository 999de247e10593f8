"""Container lifecycle helpers over the docker compose CLI.

Two spellings of the compose CLI exist in the wild: the ``docker compose``
plugin and the legacy ``docker-compose`` binary. ``ComposeCli`` probes once
per executor and sticks with whichever answered.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from aether_updater.command import CommandExecutor, CommandOutput
from aether_updater.errors import CommandError, ComposeUnavailableError, RunnerUnavailableError
from aether_updater.log_sink import LogSink
from aether_updater.logging import get_logger
from aether_updater.retry import Sleep

log = get_logger("aether_updater.compose")

PLUGIN_SPELLING = ("docker", "compose")
LEGACY_SPELLING = ("docker-compose",)

_PROBES: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (PLUGIN_SPELLING, ("version",)),
    (LEGACY_SPELLING, ("--version",)),
)
_PROBE_TIMEOUT = 5.0


class ComposeCli:
    """Compose command builder bound to one executor (host or sandbox)."""

    def __init__(self, executor: CommandExecutor, compose_file: str | None = None) -> None:
        self._executor = executor
        self._compose_file = compose_file
        self._spelling: tuple[str, ...] | None = None
        self._probe_lock = asyncio.Lock()

    @property
    def executor(self) -> CommandExecutor:
        return self._executor

    async def spelling(self) -> tuple[str, ...]:
        """Return the compose CLI prefix, probing on first use."""
        if self._spelling is not None:
            return self._spelling
        async with self._probe_lock:
            if self._spelling is None:
                self._spelling = await self._probe()
        return self._spelling

    async def _probe(self) -> tuple[str, ...]:
        for spelling, version_args in _PROBES:
            try:
                await self._executor.run([*spelling, *version_args], timeout=_PROBE_TIMEOUT)
            except CommandError:
                continue
            log.debug("compose_cli_detected", spelling=" ".join(spelling))
            return spelling
        raise ComposeUnavailableError("Neither 'docker compose' nor 'docker-compose' is available")

    async def command(self, *args: str) -> list[str]:
        """Build a full compose argument vector for *args*."""
        argv = list(await self.spelling())
        if self._compose_file:
            argv += ["-f", self._compose_file]
        return [*argv, *args]

    async def run(self, *args: str, timeout: float | None = None) -> CommandOutput:
        return await self._executor.run(await self.command(*args), timeout=timeout)


class ContainerLifecycle:
    """Lifecycle operations for the sandbox runner and the deployment unit.

    The runner is managed from the host (it cannot start itself); the
    deployment unit is built and swapped from inside the runner.
    """

    def __init__(
        self,
        host: ComposeCli,
        sandbox: ComposeCli,
        sink: LogSink,
        *,
        runner_service: str = "update-runner",
        runner_profile: str | None = "update",
        settle_seconds: float = 3.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._host = host
        self._sandbox = sandbox
        self._sink = sink
        self._runner_service = runner_service
        self._runner_profile = runner_profile
        self._settle_seconds = settle_seconds
        self._sleep = sleep

    @property
    def sandbox(self) -> ComposeCli:
        return self._sandbox

    # ------------------------------------------------------------------
    # Runner container (host side)
    # ------------------------------------------------------------------

    async def is_running(self, name: str) -> bool:
        """Check whether a container with exactly this name is running on the host."""
        try:
            output = await self._host.executor.run(
                ["docker", "ps", "--filter", f"name={name}", "--format", "{{.Names}}"],
                timeout=10,
            )
        except CommandError:
            return False
        return name in {line.strip() for line in output.stdout.splitlines()}

    async def ensure_running(self, name: str, timeout: float = 30.0) -> None:
        """Start the runner through compose if it is not running, then re-verify.

        Raises ``RunnerUnavailableError`` when it still is not running.
        """
        if await self.is_running(name):
            return

        self._sink.info("Starting update runner container...")
        args: list[str] = []
        if self._runner_profile:
            args += ["--profile", self._runner_profile]
        args += ["up", "-d", self._runner_service]
        try:
            await self._host.run(*args, timeout=timeout)
        except (CommandError, ComposeUnavailableError) as exc:
            self._sink.error(f"Failed to start update runner: {exc}")
            raise RunnerUnavailableError(str(exc)) from exc

        await self._sleep(self._settle_seconds)
        if not await self.is_running(name):
            self._sink.error("Update runner container failed to start")
            raise RunnerUnavailableError(f"Container {name} is not running after start")
        self._sink.success("Update runner container started")

    # ------------------------------------------------------------------
    # Deployment unit (sandbox side)
    # ------------------------------------------------------------------

    async def build(self, unit: str, timeout: float | None = None) -> CommandOutput:
        return await self._sandbox.run("build", unit, timeout=timeout)

    async def bring_up(
        self,
        unit: str,
        *flags: str,
        timeout: float | None = None,
    ) -> CommandOutput:
        """``up -d`` the unit; *flags* default to ``--no-deps``."""
        flags = flags or ("--no-deps",)
        return await self._sandbox.run("up", "-d", *flags, unit, timeout=timeout)

    async def status(self, unit: str, timeout: float = 10.0) -> str:
        output = await self._sandbox.run("ps", unit, "--format", "{{.Status}}", timeout=timeout)
        return output.stdout

    async def exec(
        self,
        unit: str,
        argv: Sequence[str],
        timeout: float | None = None,
    ) -> CommandOutput:
        """Run *argv* inside the running unit without a TTY."""
        return await self._sandbox.run("exec", "-T", unit, *argv, timeout=timeout)

    @staticmethod
    def is_healthy(status_text: str) -> bool:
        """Interpret ``ps --format {{.Status}}`` output: up and not flagged unhealthy."""
        return "Up" in status_text and "unhealthy" not in status_text
