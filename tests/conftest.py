"""Shared fixtures for the updater test suite."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import pytest

from aether_updater.audit import InMemoryAuditRecorder
from aether_updater.command import CommandOutput
from aether_updater.compose import ComposeCli, ContainerLifecycle
from aether_updater.config import Settings
from aether_updater.log_sink import LogSink
from aether_updater.orchestrator import UpdateOrchestrator

OLD_SHA = "abc1234567890abc1234567890abc1234567890a"
NEW_SHA = "def4567890123def4567890123def4567890123d"
RUNNER = "aether-update-runner"


class FakeCommandExecutor:
    """Scripted stand-in for ``CommandExecutor``.

    Rules match on an argv prefix; the most recently added rule wins.
    Each rule holds a sequence of responses consumed in order, with the
    last one repeating. A response is a stdout string, a ``CommandOutput``,
    an exception instance to raise, or an async callable taking the argv.
    """

    def __init__(self, target: str | None = None) -> None:
        self.target = target
        self.calls: list[list[str]] = []
        self._rules: list[tuple[tuple[str, ...], list[Any]]] = []

    def on(self, *prefix: str, returns: Any = "") -> None:
        responses = list(returns) if isinstance(returns, list) else [returns]
        self._rules.insert(0, (prefix, responses))

    def called(self, *prefix: str) -> list[list[str]]:
        return [argv for argv in self.calls if tuple(argv[: len(prefix)]) == prefix]

    async def run(self, argv: Sequence[str], timeout: float | None = None) -> CommandOutput:
        argv = list(argv)
        self.calls.append(argv)
        await asyncio.sleep(0)
        for prefix, responses in self._rules:
            if tuple(argv[: len(prefix)]) != prefix:
                continue
            item = responses.pop(0) if len(responses) > 1 else responses[0]
            if isinstance(item, BaseException):
                raise item
            if callable(item):
                item = await item(argv)
            if isinstance(item, CommandOutput):
                return item
            return CommandOutput(stdout=str(item), stderr="")
        return CommandOutput(stdout="", stderr="")


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@dataclass
class Harness:
    """An orchestrator wired to fakes, plus handles to inspect them."""

    orchestrator: UpdateOrchestrator
    recorder: InMemoryAuditRecorder
    sink: LogSink
    host: FakeCommandExecutor
    sandbox: FakeCommandExecutor
    sleep: RecordingSleep
    settings: Settings = field(repr=False)

    def messages(self) -> list[str]:
        return [entry.message for entry in self.sink.entries]


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the environment's .env file."""
    values: dict[str, Any] = {"_env_file": None, "enable_system_update": True}
    values.update(overrides)
    return Settings(**values)


def build_harness(settings: Settings) -> Harness:
    """Wire an orchestrator whose environment is healthy and has one new commit."""
    sink = LogSink()
    recorder = InMemoryAuditRecorder()
    sleep = RecordingSleep()

    host = FakeCommandExecutor()
    host.on("docker", "ps", returns=RUNNER)

    sandbox = FakeCommandExecutor(target=RUNNER)
    sandbox.on("git", "--version", returns="git version 2.43.0")
    sandbox.on("git", "rev-parse", "--is-inside-work-tree", returns="true")
    sandbox.on("git", "rev-parse", "HEAD", returns=[OLD_SHA, NEW_SHA])
    sandbox.on("git", "status", "--porcelain", returns="")
    sandbox.on("docker", "compose", "ps", returns="Up 5 seconds (healthy)")

    lifecycle = ContainerLifecycle(
        host=ComposeCli(host),  # type: ignore[arg-type]
        sandbox=ComposeCli(sandbox),  # type: ignore[arg-type]
        sink=sink,
        sleep=sleep,
    )
    orchestrator = UpdateOrchestrator(
        settings=settings,
        recorder=recorder,
        sink=sink,
        sandbox=sandbox,  # type: ignore[arg-type]
        lifecycle=lifecycle,
        sleep=sleep,
    )
    return Harness(
        orchestrator=orchestrator,
        recorder=recorder,
        sink=sink,
        host=host,
        sandbox=sandbox,
        sleep=sleep,
        settings=settings,
    )


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def harness(settings: Settings) -> Harness:
    return build_harness(settings)
