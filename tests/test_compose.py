"""Tests for aether_updater.compose: CLI spelling detection and container lifecycle."""

from __future__ import annotations

import pytest
from conftest import FakeCommandExecutor, RecordingSleep

from aether_updater.compose import ComposeCli, ContainerLifecycle
from aether_updater.errors import CommandError, ComposeUnavailableError, RunnerUnavailableError
from aether_updater.log_sink import LogSink

# ---------------------------------------------------------------------------
# TestComposeCli
# ---------------------------------------------------------------------------


class TestComposeCli:
    """Tests for compose spelling detection and command building."""

    async def test_prefers_plugin_spelling(self) -> None:
        executor = FakeCommandExecutor()
        cli = ComposeCli(executor)  # type: ignore[arg-type]

        assert await cli.spelling() == ("docker", "compose")
        assert executor.calls == [["docker", "compose", "version"]]

    async def test_falls_back_to_legacy_binary(self) -> None:
        executor = FakeCommandExecutor()
        executor.on("docker", "compose", "version", returns=CommandError("unknown command"))
        cli = ComposeCli(executor)  # type: ignore[arg-type]

        assert await cli.spelling() == ("docker-compose",)
        assert await cli.command("ps") == ["docker-compose", "ps"]

    async def test_neither_spelling_available(self) -> None:
        executor = FakeCommandExecutor()
        executor.on("docker", returns=CommandError("not found"))
        executor.on("docker-compose", returns=CommandError("not found"))
        cli = ComposeCli(executor)  # type: ignore[arg-type]

        with pytest.raises(ComposeUnavailableError):
            await cli.spelling()

    async def test_probe_is_memoized(self) -> None:
        executor = FakeCommandExecutor()
        cli = ComposeCli(executor)  # type: ignore[arg-type]

        await cli.command("build", "web")
        await cli.command("up", "-d", "web")

        assert len(executor.called("docker", "compose", "version")) == 1

    async def test_compose_file_flag(self) -> None:
        executor = FakeCommandExecutor()
        cli = ComposeCli(executor, compose_file="deploy/compose.yml")  # type: ignore[arg-type]

        assert await cli.command("build", "web") == [
            "docker",
            "compose",
            "-f",
            "deploy/compose.yml",
            "build",
            "web",
        ]


# ---------------------------------------------------------------------------
# TestContainerLifecycle
# ---------------------------------------------------------------------------


def _lifecycle(host: FakeCommandExecutor, sandbox: FakeCommandExecutor | None = None):
    sink = LogSink()
    sleep = RecordingSleep()
    lifecycle = ContainerLifecycle(
        host=ComposeCli(host),  # type: ignore[arg-type]
        sandbox=ComposeCli(sandbox or FakeCommandExecutor()),  # type: ignore[arg-type]
        sink=sink,
        sleep=sleep,
    )
    return lifecycle, sink, sleep


class TestRunnerContainer:
    """Tests for is_running() and ensure_running()."""

    async def test_is_running_matches_exact_name(self) -> None:
        host = FakeCommandExecutor()
        host.on("docker", "ps", returns="aether-update-runner-old\nother")
        lifecycle, _, _ = _lifecycle(host)

        assert await lifecycle.is_running("aether-update-runner") is False

    async def test_is_running_false_on_docker_error(self) -> None:
        host = FakeCommandExecutor()
        host.on("docker", "ps", returns=CommandError("daemon not running"))
        lifecycle, _, _ = _lifecycle(host)

        assert await lifecycle.is_running("aether-update-runner") is False

    async def test_ensure_running_noop_when_up(self) -> None:
        host = FakeCommandExecutor()
        host.on("docker", "ps", returns="aether-update-runner")
        lifecycle, sink, _ = _lifecycle(host)

        await lifecycle.ensure_running("aether-update-runner")

        assert host.called("docker", "compose") == []
        assert len(sink) == 0

    async def test_ensure_running_starts_and_settles(self) -> None:
        host = FakeCommandExecutor()
        host.on("docker", "ps", returns=["", "aether-update-runner"])
        lifecycle, sink, sleep = _lifecycle(host)

        await lifecycle.ensure_running("aether-update-runner")

        assert host.called("docker", "compose", "--profile", "update", "up", "-d", "update-runner")
        assert sleep.delays == [3.0]
        assert [e.message for e in sink.entries] == [
            "Starting update runner container...",
            "Update runner container started",
        ]

    async def test_ensure_running_raises_when_still_down(self) -> None:
        host = FakeCommandExecutor()
        host.on("docker", "ps", returns="")
        lifecycle, sink, _ = _lifecycle(host)

        with pytest.raises(RunnerUnavailableError):
            await lifecycle.ensure_running("aether-update-runner")
        assert sink.entries[-1].message == "Update runner container failed to start"

    async def test_ensure_running_raises_when_compose_fails(self) -> None:
        host = FakeCommandExecutor()
        host.on("docker", "ps", returns="")
        host.on("docker", "compose", "--profile", returns=CommandError("no such service"))
        lifecycle, _, _ = _lifecycle(host)

        with pytest.raises(RunnerUnavailableError, match="no such service"):
            await lifecycle.ensure_running("aether-update-runner")


class TestDeploymentUnit:
    """Tests for build/bring_up/status/exec on the deployment unit."""

    async def test_bring_up_defaults_to_no_deps(self) -> None:
        sandbox = FakeCommandExecutor()
        lifecycle, _, _ = _lifecycle(FakeCommandExecutor(), sandbox)

        await lifecycle.bring_up("aether-dashboard")

        assert sandbox.calls[-1] == [
            "docker", "compose", "up", "-d", "--no-deps", "aether-dashboard"
        ]

    async def test_bring_up_with_build(self) -> None:
        sandbox = FakeCommandExecutor()
        lifecycle, _, _ = _lifecycle(FakeCommandExecutor(), sandbox)

        await lifecycle.bring_up("aether-dashboard", "--build")

        assert sandbox.calls[-1] == ["docker", "compose", "up", "-d", "--build", "aether-dashboard"]

    async def test_exec_without_tty(self) -> None:
        sandbox = FakeCommandExecutor()
        lifecycle, _, _ = _lifecycle(FakeCommandExecutor(), sandbox)

        await lifecycle.exec("aether-dashboard", ["npm", "run", "migrate"])

        assert sandbox.calls[-1] == [
            "docker",
            "compose",
            "exec",
            "-T",
            "aether-dashboard",
            "npm",
            "run",
            "migrate",
        ]

    async def test_status_returns_stdout(self) -> None:
        sandbox = FakeCommandExecutor()
        sandbox.on("docker", "compose", "ps", returns="Up 10 seconds")
        lifecycle, _, _ = _lifecycle(FakeCommandExecutor(), sandbox)

        assert await lifecycle.status("aether-dashboard") == "Up 10 seconds"

    @pytest.mark.parametrize(
        ("status_text", "expected"),
        [
            ("Up 5 seconds", True),
            ("Up 2 minutes (healthy)", True),
            ("Up 1 second (health: starting)", True),
            ("Up 30 seconds (unhealthy)", False),
            ("Exited (1) 3 seconds ago", False),
            ("", False),
        ],
    )
    def test_is_healthy(self, status_text, expected) -> None:
        assert ContainerLifecycle.is_healthy(status_text) is expected
