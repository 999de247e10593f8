"""Update orchestrator: pull, rebuild, migrate, validate, roll back on failure.

Lifecycle of one attempt:
1. Ensure the sandbox runner container is up
2. Validate prerequisites (git, compose, checkout, feature flag)
3. Capture the current commit as the rollback target
4. Stash local changes and pull with retry/backoff; stop if already up to date
5. Build the new image while the old container keeps serving, swap, wait for health
6. Run schema migrations inside the new container
7. Verify final health
Any failure after step 3 resets the checkout to the captured commit and
rebuilds from it; stashed local changes are reapplied after the reset.
A failed rollback is left for an operator.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

from aether_updater.command import CommandExecutor
from aether_updater.compose import ComposeCli, ContainerLifecycle
from aether_updater.errors import (
    CommandError,
    ComposeUnavailableError,
    PreconditionError,
    RetryExhaustedError,
    RollbackError,
    RunnerUnavailableError,
    StepError,
    UpdaterError,
)
from aether_updater.health_checker import HealthCheckConfig, check_service_health
from aether_updater.log_sink import LogMirror, LogSink
from aether_updater.logging import get_logger
from aether_updater.models import (
    AuditStatus,
    LogEntry,
    PipelineState,
    UpdateAttempt,
    UpdateOutcome,
    UpdateResult,
    short_sha,
    utcnow,
)
from aether_updater.retry import PollResult, Sleep, poll_until, retry_with_backoff

if TYPE_CHECKING:
    from aether_updater.audit import AuditRecorder
    from aether_updater.config import Settings

log = get_logger("aether_updater.orchestrator")

DISABLED_MESSAGE = "System updates are disabled. Set ENABLE_SYSTEM_UPDATE=true to enable."
IN_PROGRESS_MESSAGE = "Update already in progress"
INCONSISTENT_STATE_MESSAGE = (
    "System may be in inconsistent state. Manual intervention may be required."
)

_OUTCOME_STATUS: dict[UpdateOutcome, AuditStatus] = {
    UpdateOutcome.COMPLETED: AuditStatus.COMPLETED,
    UpdateOutcome.UP_TO_DATE: AuditStatus.COMPLETED,
    UpdateOutcome.ROLLED_BACK: AuditStatus.ROLLED_BACK,
    UpdateOutcome.FAILED: AuditStatus.FAILED,
}


class UpdateOrchestrator:
    """Runs one update attempt at a time and exposes its live status.

    ``perform_update`` blocks for the whole attempt; ``get_status`` is safe
    to poll from other tasks while it runs.
    """

    def __init__(
        self,
        settings: Settings,
        recorder: AuditRecorder,
        sink: LogSink,
        sandbox: CommandExecutor,
        lifecycle: ContainerLifecycle,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._recorder = recorder
        self._sink = sink
        self._sandbox = sandbox
        self._lifecycle = lifecycle
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._state = PipelineState.IDLE
        self._attempt: UpdateAttempt | None = None

    # ------------------------------------------------------------------
    # Public status surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    @property
    def updates_enabled(self) -> bool:
        return bool(self._settings.enable_system_update)

    @property
    def logs(self) -> list[LogEntry]:
        return self._sink.entries

    def get_status(self) -> dict[str, Any]:
        """Return a non-blocking snapshot for status pollers."""
        return {
            "in_progress": self.in_progress,
            "logs": [entry.to_dict() for entry in self._sink.entries],
            "can_update": self.updates_enabled,
            "state": self._state.value,
            "audit_id": self._attempt.audit_id if self._attempt else None,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def perform_update(self, initiated_by: str) -> UpdateResult:
        """Run one full update attempt, rolling back on failure."""
        if self._lock.locked():
            log.info("update_rejected_in_progress", initiated_by=initiated_by)
            return UpdateResult.rejected(UpdateOutcome.ALREADY_IN_PROGRESS, IN_PROGRESS_MESSAGE)

        if not self.updates_enabled:
            log.info("update_rejected_disabled", initiated_by=initiated_by)
            return UpdateResult.rejected(UpdateOutcome.DISABLED, DISABLED_MESSAGE)

        async with self._lock:
            return await self._run_attempt(initiated_by)

    async def _run_attempt(self, initiated_by: str) -> UpdateResult:
        attempt = UpdateAttempt()
        self._attempt = attempt
        self._sink.reset()
        result = UpdateResult(
            success=False,
            outcome=UpdateOutcome.FAILED,
            started_at=attempt.started_at.isoformat(),
        )
        log.info("update_started", initiated_by=initiated_by)

        try:
            attempt.audit_id = await self._recorder.create(initiated_by)
            result.audit_id = attempt.audit_id
            self._sink.attach(self._mirror_logs(attempt.audit_id))
            self._sink.info("Starting system update...")

            self._state = PipelineState.VALIDATING
            await self._ensure_runner()
            await self._validate_prerequisites()
            result.steps_completed.append("validate")

            attempt.previous_commit = await self._current_commit()
            result.previous_commit = attempt.previous_commit
            self._sink.info(f"Current commit: {short_sha(attempt.previous_commit)}")
            await self._safe_record_update(
                attempt.audit_id, previous_commit=attempt.previous_commit
            )

            self._state = PipelineState.PULLING
            if not await self._pull_latest_code(attempt):
                attempt.new_commit = attempt.previous_commit
                result.steps_completed.append("pull")
                self._complete(result, attempt, UpdateOutcome.UP_TO_DATE, "Already up to date")
                return result
            result.new_commit = attempt.new_commit
            result.steps_completed.append("pull")
            await self._safe_record_update(attempt.audit_id, new_commit=attempt.new_commit)

            self._state = PipelineState.REBUILDING
            await self._rebuild_and_swap()
            result.steps_completed.append("rebuild")

            self._state = PipelineState.MIGRATING
            await self._run_migrations()
            result.steps_completed.append("migrate")

            self._state = PipelineState.VERIFYING_HEALTH
            await self._verify_health()
            result.steps_completed.append("verify_health")

            self._sink.success("Update completed successfully!")
            self._complete(result, attempt, UpdateOutcome.COMPLETED, "Update completed")
            log.info(
                "update_success",
                previous=short_sha(attempt.previous_commit),
                new=short_sha(attempt.new_commit),
            )
            return result

        except UpdaterError as exc:
            await self._handle_failure(result, attempt, exc)
            return result
        except Exception as exc:
            log.exception("update_unexpected_error")
            await self._handle_failure(result, attempt, exc, unexpected=True)
            return result
        finally:
            elapsed = time.monotonic() - attempt.started_monotonic
            result.duration_seconds = round(elapsed, 2)
            result.completed_at = utcnow().isoformat()
            await self._finalize(result, attempt, elapsed)
            result.logs = self._sink.entries

    def _complete(
        self,
        result: UpdateResult,
        attempt: UpdateAttempt,
        outcome: UpdateOutcome,
        message: str,
    ) -> None:
        result.success = True
        result.outcome = outcome
        result.message = message
        result.previous_commit = attempt.previous_commit
        result.new_commit = attempt.new_commit
        self._state = (
            PipelineState.UP_TO_DATE
            if outcome is UpdateOutcome.UP_TO_DATE
            else PipelineState.COMPLETED
        )

    # ------------------------------------------------------------------
    # Failure branch
    # ------------------------------------------------------------------

    async def _handle_failure(
        self,
        result: UpdateResult,
        attempt: UpdateAttempt,
        exc: BaseException,
        *,
        unexpected: bool = False,
    ) -> None:
        error = f"Unexpected error: {exc}" if unexpected else str(exc)
        self._state = PipelineState.FAILED
        result.success = False
        result.outcome = UpdateOutcome.FAILED
        result.error = error
        if isinstance(exc, StepError) and exc.inconsistent_state:
            result.inconsistent_state = True

        self._sink.error(f"Update failed: {error}")
        log.warning(
            "update_failed",
            error=error,
            step=getattr(exc, "step", None),
            previous=short_sha(attempt.previous_commit),
        )

        if attempt.audit_id is not None:
            attempt.failure_recorded = await self._safe_record_update(
                attempt.audit_id, status=AuditStatus.FAILED, error_message=error
            )

        if attempt.previous_commit is None:
            # Nothing was mutated before the rollback target existed.
            return

        self._sink.warning("Attempting rollback...")
        self._state = PipelineState.ROLLING_BACK
        try:
            await self.rollback(attempt.previous_commit)
        except RollbackError as rollback_exc:
            self._state = PipelineState.FAILED
            result.manual_intervention_required = True
            result.error = f"{error}; rollback failed: {rollback_exc}; manual intervention required"
            self._sink.error(f"Rollback failed: {rollback_exc}")
            self._sink.error("Manual intervention required")
            if attempt.stashed:
                self._sink.warning("Local changes kept in git stash")
            log.error(
                "update_rollback_failed",
                error=str(rollback_exc),
                target=short_sha(attempt.previous_commit),
            )
            return

        if attempt.stashed:
            await self._restore_stash()

        self._state = PipelineState.ROLLED_BACK
        result.outcome = UpdateOutcome.ROLLED_BACK

    async def rollback(self, commit: str) -> None:
        """Reset the checkout to *commit* and force a rebuild from it.

        Raises ``RollbackError`` if either step fails.
        """
        if not commit:
            self._sink.error("Cannot rollback: no previous commit saved")
            raise RollbackError("no previous commit saved")

        self._sink.warning(f"Rolling back to commit {short_sha(commit)}...")
        log.info("update_rolling_back", target=short_sha(commit))
        try:
            await self._sandbox.run(["git", "reset", "--hard", commit], timeout=30)
            await self._lifecycle.bring_up(
                self._settings.deployment_service,
                "--build",
                timeout=self._settings.rollback_timeout_seconds,
            )
        except (CommandError, ComposeUnavailableError) as exc:
            raise RollbackError(str(exc)) from exc

        self._sink.success("Rollback completed")
        log.info("update_rollback_complete", target=short_sha(commit))

    # ------------------------------------------------------------------
    # Audit plumbing
    # ------------------------------------------------------------------

    def _mirror_logs(self, audit_id: int) -> LogMirror:
        async def mirror(entries: list[LogEntry]) -> None:
            await self._recorder.update(audit_id, logs=entries)

        return mirror

    async def _safe_record_update(self, audit_id: int, **fields: Any) -> bool:
        try:
            await self._recorder.update(audit_id, **fields)
        except Exception as exc:
            log.warning("update_audit_write_failed", audit_id=audit_id, error=str(exc))
            return False
        return True

    async def _finalize(self, result: UpdateResult, attempt: UpdateAttempt, elapsed: float) -> None:
        """Close the audit record exactly once with the final status and logs."""
        await self._sink.detach()
        if attempt.audit_id is None:
            return
        status = _OUTCOME_STATUS[result.outcome]
        if status is AuditStatus.ROLLED_BACK and not attempt.failure_recorded:
            # rolled_back is only reachable from failed
            await self._safe_record_update(
                attempt.audit_id, status=AuditStatus.FAILED, error_message=result.error
            )
        fields: dict[str, Any] = {
            "status": status,
            "logs": self._sink.entries,
            "completed_at": utcnow(),
            "duration_seconds": int(elapsed),
        }
        if attempt.previous_commit is not None:
            fields["previous_commit"] = attempt.previous_commit
        if result.success:
            fields["new_commit"] = attempt.new_commit
        if result.error is not None:
            fields["error_message"] = result.error
        if result.manual_intervention_required:
            fields["manual_intervention_required"] = True
        await self._safe_record_update(attempt.audit_id, **fields)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _ensure_runner(self) -> None:
        try:
            await self._lifecycle.ensure_running(self._settings.runner_container)
        except RunnerUnavailableError as exc:
            raise PreconditionError(
                "Update runner container is not available. "
                "Please ensure Docker Compose is accessible."
            ) from exc

    async def _validate_prerequisites(self) -> None:
        self._sink.info("Validating prerequisites...")

        try:
            await self._sandbox.run(["git", "--version"], timeout=5)
        except CommandError as exc:
            raise PreconditionError("Git is not available in update runner container") from exc
        self._sink.success("Git is available")

        try:
            await self._lifecycle.sandbox.spelling()
        except ComposeUnavailableError as exc:
            raise PreconditionError(
                "Docker Compose is not available in update runner container"
            ) from exc
        self._sink.success("Docker Compose is available")

        try:
            output = await self._sandbox.run(
                ["git", "rev-parse", "--is-inside-work-tree"], timeout=5
            )
        except CommandError as exc:
            raise PreconditionError("Project directory is not a valid git repository") from exc
        if output.stdout.strip() != "true":
            raise PreconditionError("Project directory is not a valid git repository")
        self._sink.success("Git repository detected")

        if not self.updates_enabled:
            raise PreconditionError(DISABLED_MESSAGE)

        self._sink.success("All prerequisites validated")

    async def _current_commit(self) -> str:
        try:
            output = await self._sandbox.run(["git", "rev-parse", "HEAD"], timeout=10)
        except CommandError as exc:
            raise PreconditionError(f"Failed to get current commit: {exc}") from exc
        commit = output.stdout.strip()
        if not commit:
            raise PreconditionError("Failed to get current commit: empty output")
        return commit

    async def _pull_latest_code(self, attempt: UpdateAttempt) -> bool:
        """Pull with retries. Returns False when HEAD did not move."""
        settings = self._settings
        self._sink.info("Pulling latest code...")
        attempt.stashed = await self._stash_local_changes()

        def on_retry(number: int, attempts: int, delay: float, error: BaseException) -> None:
            self._sink.info(f"Retry attempt {number}/{attempts} (waiting {delay:g}s)...")
            log.info("update_pull_retry", attempt=number, delay=delay, error=str(error))

        try:
            await retry_with_backoff(
                self._pull_once,
                attempts=settings.pull_max_attempts,
                base_delay=settings.pull_backoff_base_seconds,
                retry_on=(CommandError,),
                on_retry=on_retry,
                sleep=self._sleep,
            )
        except RetryExhaustedError as exc:
            raise StepError(
                "pull",
                f"Git pull failed after {exc.attempts} attempts: {exc.last_error}",
            ) from exc

        try:
            new_commit = await self._current_commit()
        except PreconditionError as exc:
            raise StepError("pull", str(exc)) from exc

        if new_commit == attempt.previous_commit:
            self._sink.info("Already up to date")
            self._state = PipelineState.UP_TO_DATE
            return False

        attempt.new_commit = new_commit
        self._sink.success(f"Code pulled successfully. New commit: {short_sha(new_commit)}")
        return True

    async def _pull_once(self) -> None:
        settings = self._settings
        await self._sandbox.run(
            ["git", "pull", "--rebase", settings.git_remote, settings.git_branch],
            timeout=60,
        )
        await self._sandbox.run(["git", "fsck", "--no-progress"], timeout=30)

    async def _stash_local_changes(self) -> bool:
        try:
            output = await self._sandbox.run(["git", "status", "--porcelain"], timeout=10)
        except CommandError as exc:
            self._sink.warning(f"Could not inspect working tree: {exc}")
            return False
        if not output.stdout.strip():
            return False

        self._sink.warning("Uncommitted changes detected. Stashing...")
        try:
            await self._sandbox.run(
                ["git", "stash", "push", "-m", "Auto-stash before update"], timeout=30
            )
        except CommandError as exc:
            raise StepError("pull", f"Failed to stash local changes: {exc}") from exc
        return True

    async def _restore_stash(self) -> None:
        try:
            await self._sandbox.run(["git", "stash", "pop"], timeout=10)
        except CommandError as exc:
            self._sink.warning(f"Could not restore stashed changes: {exc}")
            return
        self._sink.info("Stashed changes restored")

    async def _rebuild_and_swap(self) -> None:
        settings = self._settings
        unit = settings.deployment_service
        self._sink.info("Rebuilding Docker containers...")
        try:
            self._sink.info("Building new container (old container still running)...")
            await self._lifecycle.build(unit, timeout=settings.build_timeout_seconds)

            self._sink.info("Starting new container...")
            await self._lifecycle.bring_up(unit, timeout=settings.up_timeout_seconds)
        except (CommandError, ComposeUnavailableError) as exc:
            self._sink.error(f"Container rebuild failed: {exc}")
            self._sink.info("Old container should still be running")
            raise StepError("rebuild", f"Container rebuild failed: {exc}") from exc

        self._sink.info("Waiting for container to be healthy...")
        poll = await self._wait_for_health()
        if not poll.ok:
            self._sink.error("Container health check timeout")
            self._sink.info("Old container should still be running")
            raise StepError("rebuild", "Container health check timeout")

        self._sink.success("Container is healthy")
        self._sink.success("Containers rebuilt successfully")

    async def _wait_for_health(self) -> PollResult[str]:
        settings = self._settings
        return await poll_until(
            self._probe_status,
            self._lifecycle.is_healthy,
            timeout=settings.health_timeout_seconds,
            interval=settings.health_poll_interval_seconds,
            sleep=self._sleep,
        )

    async def _probe_status(self) -> str:
        try:
            return await self._lifecycle.status(self._settings.deployment_service)
        except (CommandError, ComposeUnavailableError) as exc:
            log.debug("update_status_probe_failed", error=str(exc))
            return ""

    async def _run_migrations(self) -> None:
        settings = self._settings
        self._sink.info("Running database migrations...")
        self._sink.info("Waiting for containers to be ready...")
        await self._sleep(settings.migration_settle_seconds)

        try:
            await self._lifecycle.exec(
                settings.deployment_service,
                settings.migration_command,
                timeout=settings.migration_timeout_seconds,
            )
        except (CommandError, ComposeUnavailableError) as exc:
            self._sink.error(f"Migration failed: {exc}")
            self._sink.warning(INCONSISTENT_STATE_MESSAGE)
            raise StepError(
                "migrate", f"Migration failed: {exc}", inconsistent_state=True
            ) from exc

        self._sink.success("Migrations completed successfully")

    async def _verify_health(self) -> None:
        settings = self._settings
        self._sink.info("Verifying system health...")

        status = await self._probe_status()
        if not self._lifecycle.is_healthy(status):
            self._sink.error(f"Health check failed: container status is '{status or 'unknown'}'")
            raise StepError("verify_health", "Container is not healthy")

        if settings.health_url:
            healthy = await check_service_health(
                settings.health_url,
                HealthCheckConfig(
                    retries=3,
                    delay_seconds=settings.health_poll_interval_seconds,
                ),
                sleep=self._sleep,
            )
            if not healthy:
                self._sink.error(f"Health endpoint {settings.health_url} did not return 200")
                raise StepError("verify_health", "Health endpoint check failed")

        self._sink.success("System health check passed")


def create_orchestrator(
    settings: Settings,
    recorder: AuditRecorder,
    sleep: Sleep = asyncio.sleep,
) -> UpdateOrchestrator:
    """Wire executors, compose helpers and the log sink from *settings*."""
    sink = LogSink()
    host = CommandExecutor(
        sink,
        cwd=settings.project_root,
        default_timeout=settings.command_timeout_seconds,
        max_output_bytes=settings.max_output_bytes,
    )
    sandbox = CommandExecutor(
        sink,
        target=settings.runner_container,
        workdir=settings.runner_workdir,
        default_timeout=settings.command_timeout_seconds,
        max_output_bytes=settings.max_output_bytes,
    )
    lifecycle = ContainerLifecycle(
        host=ComposeCli(host, settings.compose_file),
        sandbox=ComposeCli(sandbox, settings.compose_file),
        sink=sink,
        runner_service=settings.runner_service,
        runner_profile=settings.runner_profile,
        settle_seconds=settings.runner_settle_seconds,
        sleep=sleep,
    )
    return UpdateOrchestrator(
        settings=settings,
        recorder=recorder,
        sink=sink,
        sandbox=sandbox,
        lifecycle=lifecycle,
        sleep=sleep,
    )
