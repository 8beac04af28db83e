"""High-level apply/rollback orchestration for unbound-ctl."""

from __future__ import annotations

import fcntl
import json
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator

from jinja2 import TemplateError

from .atomic import atomic_remove, atomic_write, sweep_temp_files
from .config import AppConfig
from .descriptor import DescriptorRepository
from .exporter import apply_result_to_dict
from .gateway import ProcessGateway
from .models import (
    ApplyInProgressError,
    ApplyResult,
    ApplyState,
    CommandError,
    CommandOutput,
    DescriptorError,
    FailureKind,
    ParameterError,
    RecoveryRequiredError,
    SnapshotError,
    SnapshotInfo,
    SnapshotNotFoundError,
    StepFailure,
    UpstreamConfiguration,
)
from .renderer import render_managed_config
from .selftest import Prober, ResolutionProber, SelfTestReport
from .snapshots import SnapshotStore
from .unbound import ResolverService

LOG = logging.getLogger("unbound_ctl")
AUDIT_LOG = logging.getLogger("unbound_ctl.audit")

MANAGED_CONFIG = "managed_config"
UPSTREAM_DESCRIPTOR = "upstream_descriptor"

Mutation = Callable[[], StepFailure | None]

_UNEXPECTED_KIND = {
    ApplyState.WRITING: FailureKind.IO,
    ApplyState.VALIDATING: FailureKind.VALIDATION,
    ApplyState.RELOADING: FailureKind.RELOAD,
    ApplyState.SELF_TESTING: FailureKind.SELF_TEST,
}


class UpstreamController:
    """Coordinates snapshot, write, validation, reload and self-test.

    Only one apply runs at a time. A second request while one is in flight
    is rejected with :class:`ApplyInProgressError` before any snapshot is
    taken. Once writing has started the attempt always runs to a terminal
    state: committed, rolled back, or fatal.
    """

    def __init__(
        self,
        config: AppConfig,
        resolver: ResolverService,
        snapshots: SnapshotStore,
        descriptors: DescriptorRepository,
        prober: Prober,
    ):
        """Store collaborators for subsequent runs."""
        self.config = config
        self.resolver = resolver
        self.snapshots = snapshots
        self.descriptors = descriptors
        self.prober = prober
        self.last_self_test: SelfTestReport | None = None
        self._lock = threading.Lock()
        self._state = ApplyState.IDLE

    @property
    def state(self) -> ApplyState:
        """Return the current (or last terminal) state."""
        return self._state

    def apply_in_progress(self) -> bool:
        """Return True while an attempt holds the apply lock."""
        return self._lock.locked()

    def recovery_required(self) -> bool:
        """Return True when a fatal attempt is awaiting an operator."""
        return self.config.recovery_marker_path.exists()

    def get_current_configuration(self) -> UpstreamConfiguration:
        """Return the last applied configuration."""
        return self.descriptors.load()

    def list_snapshots(self) -> list[SnapshotInfo]:
        """Return stored snapshots, newest first."""
        return self.snapshots.list_snapshots()

    def preview(self, configuration: UpstreamConfiguration) -> str:
        """Render the managed configuration without touching disk."""
        return render_managed_config(configuration, self.config.templates_dir)

    def current_managed_text(self) -> str:
        """Return the deployed managed configuration, or an empty string."""
        try:
            return self.config.managed_config_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def apply(self, configuration: UpstreamConfiguration, run_self_test: bool = True) -> ApplyResult:
        """Deploy ``configuration``, rolling back on any failed step."""
        with self._exclusive():
            if self.recovery_required():
                raise RecoveryRequiredError(
                    "A previous apply ended fatally; roll back to a snapshot or acknowledge recovery first."
                )
            LOG.info("Applying %s configuration", configuration.mode.value)
            result = self._execute(lambda: self._generate_and_write(configuration), run_self_test)
            return self._finish(result)

    def rollback_to(self, snapshot_id: str, run_self_test: bool = False) -> ApplyResult:
        """Restore a stored snapshot and reload the resolver.

        The current state is captured first, so a failed manual rollback is
        itself rolled back. Success clears a pending recovery marker.
        """
        with self._exclusive():
            if not self.snapshots.exists(snapshot_id):
                raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")
            LOG.info("Rolling back to %s on operator request", snapshot_id)
            result = self._execute(lambda: self._restore_snapshot(snapshot_id), run_self_test)
            if result.success:
                self._clear_recovery_marker()
            return self._finish(result)

    def acknowledge_recovery(self) -> bool:
        """Clear the fatal latch after manual repair. Returns True if one was set."""
        with self._exclusive():
            if not self.recovery_required():
                return False
            self._clear_recovery_marker()
            LOG.warning("Recovery acknowledged by operator")
            return True

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold the in-process lock and the cross-process lock file."""
        if not self._lock.acquire(blocking=False):
            LOG.warning("Apply rejected: another apply is in progress")
            raise ApplyInProgressError("An apply is already in progress.")
        handle = None
        try:
            self.config.state_dir.mkdir(parents=True, exist_ok=True)
            handle = open(self.config.state_dir / "apply.lock", "a")
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise ApplyInProgressError("An apply is already in progress in another process.") from exc
            yield
        finally:
            if handle is not None:
                handle.close()
            self._lock.release()

    def _transition(self, state: ApplyState) -> None:
        """Record and log a state change."""
        LOG.info("Apply state %s -> %s", self._state.value, state.value)
        self._state = state

    def _execute(self, mutate: Mutation, run_self_test: bool) -> ApplyResult:
        """Run the state machine around a mutation of the durable files."""
        for path in (self.config.managed_config_path, self.config.descriptor_path):
            try:
                sweep_temp_files(path.parent, path.name)
            except OSError as exc:
                LOG.warning("Could not sweep temporary files next to %s: %s", path, exc)

        self._transition(ApplyState.SNAPSHOTTING)
        try:
            snapshot = self.snapshots.capture([MANAGED_CONFIG, UPSTREAM_DESCRIPTOR])
        except SnapshotError as exc:
            LOG.error("Snapshot failed; nothing was changed: %s", exc)
            self._transition(ApplyState.ABORTED)
            return ApplyResult(
                success=False,
                snapshot_id=None,
                error=StepFailure(FailureKind.IO, ApplyState.SNAPSHOTTING, str(exc)),
                final_state=ApplyState.ABORTED,
            )

        result = ApplyResult(success=False, snapshot_id=snapshot.id)
        try:
            failure = mutate()
            if failure is not None and failure.step is ApplyState.GENERATING:
                LOG.error("Generation failed; nothing was changed: %s", failure.message)
                self._transition(ApplyState.ABORTED)
                result.error = failure
                result.final_state = ApplyState.ABORTED
                return result
            if failure is None:
                self._transition(ApplyState.VALIDATING)
                failure = self._run_step(ApplyState.VALIDATING, FailureKind.VALIDATION, self.resolver.validate)
                result.validation_passed = failure is None
            if failure is None:
                self._transition(ApplyState.RELOADING)
                failure = self._run_step(ApplyState.RELOADING, FailureKind.RELOAD, self.resolver.reload)
                result.reload_passed = failure is None
            if failure is None and run_self_test:
                self._transition(ApplyState.SELF_TESTING)
                failure = self._self_test()
                result.self_test_passed = failure is None
        except Exception as exc:  # noqa: BLE001
            step = self._state
            LOG.exception("Unexpected error during %s", step.value)
            failure = StepFailure(_UNEXPECTED_KIND.get(step, FailureKind.IO), step, f"Unexpected error: {exc}")

        if failure is not None:
            return self._roll_back(result, failure)

        self._transition(ApplyState.COMMITTED)
        result.success = True
        result.final_state = ApplyState.COMMITTED
        if self.config.flush_cache_after_apply:
            result.cache_flushed = self._flush_cache()
        return result

    def _generate_and_write(self, configuration: UpstreamConfiguration) -> StepFailure | None:
        """Render ``configuration`` and write the managed file and descriptor."""
        self._transition(ApplyState.GENERATING)
        try:
            text = render_managed_config(configuration, self.config.templates_dir)
        except (DescriptorError, TemplateError) as exc:
            return StepFailure(FailureKind.VALIDATION, ApplyState.GENERATING, f"Cannot generate configuration: {exc}")

        self._transition(ApplyState.WRITING)
        written = atomic_write(self.config.managed_config_path, text)
        if not written.success:
            return StepFailure(
                FailureKind.IO,
                ApplyState.WRITING,
                f"Writing {written.path} failed: {written.error}",
            )
        saved = self.descriptors.save(configuration)
        if not saved.success:
            return StepFailure(FailureKind.IO, ApplyState.WRITING, f"Writing {saved.path} failed: {saved.error}")
        LOG.info("Wrote managed configuration to %s", self.config.managed_config_path)
        return None

    def _restore_snapshot(self, snapshot_id: str) -> StepFailure | None:
        """Restore ``snapshot_id`` as the mutation of a manual rollback."""
        self._transition(ApplyState.WRITING)
        restored = self.snapshots.restore(snapshot_id)
        self.descriptors.invalidate()
        if not restored.success:
            return StepFailure(
                FailureKind.IO,
                ApplyState.WRITING,
                f"Restoring {snapshot_id} failed: {restored.describe()}",
            )
        return None

    def _run_step(
        self,
        step: ApplyState,
        kind: FailureKind,
        action: Callable[[], CommandOutput],
    ) -> StepFailure | None:
        """Run an external command; a non-zero exit becomes a ``kind`` failure."""
        try:
            output = action()
        except (CommandError, ParameterError) as exc:
            return StepFailure(FailureKind.COMMAND, step, str(exc))
        if not output.ok:
            detail = output.stderr.strip() or output.stdout.strip() or "no output"
            return StepFailure(kind, step, f"{step.value} exited with {output.exit_code}: {detail}")
        return None

    def _self_test(self) -> StepFailure | None:
        """Run the self-test against the configuration just written."""
        report = self.prober.run(self.descriptors.load())
        self.last_self_test = report
        for warning in report.warnings():
            LOG.warning("Upstream %s check for %s failed: %s", warning.check, warning.target, warning.error)
        if report.passed:
            return None
        return StepFailure(FailureKind.SELF_TEST, ApplyState.SELF_TESTING, f"Self-test failed: {report.summary()}")

    def _roll_back(self, result: ApplyResult, failure: StepFailure) -> ApplyResult:
        """Restore the attempt's snapshot and reload the restored configuration."""
        self._transition(ApplyState.ROLLING_BACK)
        LOG.warning(
            "Rolling back to %s after %s failure at %s: %s",
            result.snapshot_id,
            failure.kind.value,
            failure.step.value,
            failure.message,
        )
        try:
            restored = self.snapshots.restore(result.snapshot_id)
        except Exception as exc:  # noqa: BLE001
            LOG.exception("Unexpected error restoring %s", result.snapshot_id)
            self.descriptors.invalidate()
            return self._fatal(
                result,
                StepFailure(
                    FailureKind.ROLLBACK,
                    ApplyState.ROLLING_BACK,
                    f"Restore of {result.snapshot_id} failed: {exc}",
                    cause=failure,
                ),
            )
        self.descriptors.invalidate()
        if not restored.success:
            return self._fatal(
                result,
                StepFailure(
                    FailureKind.ROLLBACK,
                    ApplyState.ROLLING_BACK,
                    f"Restore of {result.snapshot_id} failed: {restored.describe()}",
                    cause=failure,
                ),
            )
        try:
            reload_failure = self._run_step(ApplyState.ROLLING_BACK, FailureKind.RELOAD, self.resolver.reload)
        except Exception as exc:  # noqa: BLE001
            LOG.exception("Unexpected error reloading restored configuration")
            reload_failure = StepFailure(FailureKind.RELOAD, ApplyState.ROLLING_BACK, f"Unexpected error: {exc}")
        if reload_failure is not None:
            return self._fatal(
                result,
                StepFailure(
                    FailureKind.ROLLBACK,
                    ApplyState.ROLLING_BACK,
                    f"Reload of restored configuration failed: {reload_failure.message}",
                    cause=failure,
                ),
            )
        self._transition(ApplyState.ROLLED_BACK)
        result.rolled_back = True
        result.error = failure
        result.final_state = ApplyState.ROLLED_BACK
        return result

    def _fatal(self, result: ApplyResult, failure: StepFailure) -> ApplyResult:
        """Mark ``result`` as needing manual recovery."""
        self._transition(ApplyState.FATAL)
        LOG.error("Rollback failed, manual recovery required: %s", failure.describe())
        result.fatal = True
        result.rolled_back = False
        result.error = failure
        result.final_state = ApplyState.FATAL
        return result

    def _flush_cache(self) -> bool:
        """Flush the resolver cache; failures are logged only."""
        failure = self._run_step(ApplyState.COMMITTED, FailureKind.COMMAND, self.resolver.flush_cache)
        if failure is not None:
            LOG.warning("Cache flush after apply failed: %s", failure.message)
            return False
        LOG.info("Flushed resolver cache after apply")
        return True

    def _finish(self, result: ApplyResult) -> ApplyResult:
        """Audit the finished attempt and latch recovery after a fatal one."""
        payload = json.dumps(apply_result_to_dict(result), sort_keys=True)
        AUDIT_LOG.info("apply_result %s", payload)
        if result.fatal:
            marker = atomic_write(self.config.recovery_marker_path, payload + "\n", mode=0o600)
            if not marker.success:
                LOG.error("Could not record recovery marker: %s", marker.error)
        return result

    def _clear_recovery_marker(self) -> None:
        """Remove the recovery latch file."""
        removed = atomic_remove(self.config.recovery_marker_path)
        if not removed.success:
            LOG.error("Could not clear recovery marker: %s", removed.error)


def configure_logging(level: str) -> None:
    """Configure logging output."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_controller(config: AppConfig, prober: Prober | None = None) -> UpstreamController:
    """Wire the default collaborators for ``config``."""
    resolver = ResolverService(ProcessGateway(config), config)
    snapshots = SnapshotStore(
        config.snapshot_dir,
        {
            MANAGED_CONFIG: config.managed_config_path,
            UPSTREAM_DESCRIPTOR: config.descriptor_path,
        },
    )
    return UpstreamController(
        config=config,
        resolver=resolver,
        snapshots=snapshots,
        descriptors=DescriptorRepository(config.descriptor_path),
        prober=prober or ResolutionProber.from_config(config),
    )
