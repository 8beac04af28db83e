from __future__ import annotations

import json
import threading
from dataclasses import replace

import pytest

from conftest import FakeProber, FakeRunner, doh_configuration, dot_configuration, failed, make_controller
from unbound_ctl import controller as controller_module
from unbound_ctl.exporter import apply_result_to_dict
from unbound_ctl.gateway import CommandId
from unbound_ctl.models import (
    ApplyInProgressError,
    ApplyOutcome,
    ApplyState,
    CommandError,
    FailureKind,
    RecoveryRequiredError,
    RestoreResult,
    SnapshotError,
    SnapshotNotFoundError,
    UpstreamConfiguration,
    WriteResult,
)
from unbound_ctl.renderer import render_managed_config


def _managed(app_config) -> str:
    return app_config.managed_config_path.read_text(encoding="utf-8")


def test_successful_apply_commits(controller, app_config, runner, prober):
    desired = dot_configuration("1.1.1.1", "9.9.9.9")

    result = controller.apply(desired)

    assert result.success
    assert result.outcome is ApplyOutcome.APPLIED
    assert result.final_state is ApplyState.COMMITTED
    assert result.validation_passed is True
    assert result.reload_passed is True
    assert result.self_test_passed is True
    assert not result.rolled_back and not result.fatal
    assert result.error is None
    assert result.cache_flushed is None
    assert _managed(app_config) == render_managed_config(desired)
    assert controller.get_current_configuration() == desired
    assert [command for command, _ in runner.calls] == [CommandId.VALIDATE_CONFIG, CommandId.RELOAD_SERVICE]
    assert prober.calls == 1
    assert controller.state is ApplyState.COMMITTED
    assert [info.id for info in controller.list_snapshots()] == [result.snapshot_id]


def test_skipped_self_test_is_reported_as_not_run(app_config, runner):
    prober = FakeProber(False)
    controller = make_controller(app_config, runner, prober)

    result = controller.apply(dot_configuration("1.1.1.1"), run_self_test=False)

    assert result.success
    assert result.self_test_passed is None
    assert prober.calls == 0


def test_validation_failure_restores_and_reloads_previous_files(controller, app_config, runner):
    first = dot_configuration("1.1.1.1")
    assert controller.apply(first).success
    reloaded: list[str] = []
    runner.hooks[CommandId.RELOAD_SERVICE] = lambda: reloaded.append(_managed(app_config))
    before_managed = app_config.managed_config_path.read_bytes()
    before_descriptor = app_config.descriptor_path.read_bytes()
    runner.script(CommandId.VALIDATE_CONFIG, failed("syntax error in line 3"))

    result = controller.apply(doh_configuration())

    assert not result.success
    assert result.outcome is ApplyOutcome.ROLLED_BACK
    assert result.rolled_back
    assert result.validation_passed is False
    assert result.reload_passed is None
    assert result.self_test_passed is None
    assert result.error.kind is FailureKind.VALIDATION
    assert "syntax error in line 3" in result.error.message
    assert app_config.managed_config_path.read_bytes() == before_managed
    assert app_config.descriptor_path.read_bytes() == before_descriptor
    assert controller.get_current_configuration() == first
    assert runner.count(CommandId.RELOAD_SERVICE) == 2
    assert reloaded == [render_managed_config(first)]


def test_reload_failure_reloads_restored_content(controller, app_config, runner):
    first = dot_configuration("1.1.1.1")
    assert controller.apply(first, run_self_test=False).success
    reloaded: list[str] = []
    runner.hooks[CommandId.RELOAD_SERVICE] = lambda: reloaded.append(_managed(app_config))
    runner.script(CommandId.RELOAD_SERVICE, failed("reload failed"))

    result = controller.apply(dot_configuration("8.8.8.8"), run_self_test=False)

    assert result.outcome is ApplyOutcome.ROLLED_BACK
    assert result.validation_passed is True
    assert result.reload_passed is False
    assert result.error.kind is FailureKind.RELOAD
    assert result.error.step is ApplyState.RELOADING
    assert "8.8.8.8" in reloaded[0]
    assert reloaded[-1] == render_managed_config(first)
    assert _managed(app_config) == render_managed_config(first)
    assert controller.state is ApplyState.ROLLED_BACK


def test_self_test_failure_rolls_back(app_config, runner):
    prober = FakeProber(True, False)
    controller = make_controller(app_config, runner, prober)
    first = dot_configuration("1.1.1.1")
    assert controller.apply(first).success

    result = controller.apply(dot_configuration("192.0.2.1"))

    assert result.outcome is ApplyOutcome.ROLLED_BACK
    assert result.self_test_passed is False
    assert result.error.kind is FailureKind.SELF_TEST
    assert "example.com" in result.error.message
    assert runner.count(CommandId.RELOAD_SERVICE) == 3
    assert controller.get_current_configuration() == first
    assert not controller.last_self_test.passed


def test_first_apply_rollback_removes_created_files(controller, app_config, runner):
    runner.script(CommandId.VALIDATE_CONFIG, failed())

    result = controller.apply(dot_configuration("1.1.1.1"))

    assert result.rolled_back
    assert not app_config.managed_config_path.exists()
    assert not app_config.descriptor_path.exists()
    assert controller.get_current_configuration() == UpstreamConfiguration()


def test_command_error_is_a_command_failure(controller, runner):
    runner.script(CommandId.VALIDATE_CONFIG, CommandError("validate-config", "timed out after 10s"))

    result = controller.apply(dot_configuration("1.1.1.1"))

    assert result.rolled_back
    assert result.error.kind is FailureKind.COMMAND
    assert result.error.step is ApplyState.VALIDATING


def test_write_failure_rolls_back_and_reloads(controller, app_config, runner, monkeypatch):
    app_config.managed_config_path.parent.mkdir(parents=True)
    app_config.managed_config_path.write_text("# previous\n", encoding="utf-8")

    def refuse(path, content, mode=0o644):
        return WriteResult(success=False, path=path, error="read-only file system")

    monkeypatch.setattr(controller_module, "atomic_write", refuse)

    result = controller.apply(dot_configuration("1.1.1.1"))

    assert result.outcome is ApplyOutcome.ROLLED_BACK
    assert result.error.kind is FailureKind.IO
    assert result.error.step is ApplyState.WRITING
    assert [command for command, _ in runner.calls] == [CommandId.RELOAD_SERVICE]
    assert _managed(app_config) == "# previous\n"


def test_generation_failure_aborts_before_writing(controller, app_config, runner):
    invalid = replace(doh_configuration(), https_proxy=None)

    result = controller.apply(invalid)

    assert result.outcome is ApplyOutcome.ABORTED
    assert result.error.kind is FailureKind.VALIDATION
    assert result.error.step is ApplyState.GENERATING
    assert not app_config.managed_config_path.exists()
    assert runner.calls == []


def test_snapshot_failure_aborts_without_changes(controller, app_config, runner, monkeypatch):
    def broken_capture(names=None):
        raise SnapshotError("snapshot directory is read-only")

    monkeypatch.setattr(controller.snapshots, "capture", broken_capture)

    result = controller.apply(dot_configuration("1.1.1.1"))

    assert result.outcome is ApplyOutcome.ABORTED
    assert result.snapshot_id is None
    assert result.error.step is ApplyState.SNAPSHOTTING
    assert not app_config.managed_config_path.exists()
    assert runner.calls == []


def test_failed_reload_during_rollback_is_fatal_and_latches(controller, app_config, runner):
    assert controller.apply(dot_configuration("1.1.1.1")).success
    runner.script(CommandId.RELOAD_SERVICE, failed("reload failed"), failed("still failing"))

    result = controller.apply(dot_configuration("8.8.8.8"))

    assert result.outcome is ApplyOutcome.FATAL
    assert result.fatal
    assert not result.rolled_back
    assert result.final_state is ApplyState.FATAL
    assert result.error.kind is FailureKind.ROLLBACK
    assert result.error.cause.kind is FailureKind.RELOAD
    assert controller.recovery_required()
    marker = json.loads(app_config.recovery_marker_path.read_text(encoding="utf-8"))
    assert marker["outcome"] == "fatal"

    with pytest.raises(RecoveryRequiredError):
        controller.apply(dot_configuration("9.9.9.9"))

    assert controller.acknowledge_recovery()
    assert not controller.recovery_required()
    assert not controller.acknowledge_recovery()
    assert controller.apply(dot_configuration("9.9.9.9")).success


def test_failed_restore_is_fatal(controller, app_config, runner, monkeypatch):
    runner.script(CommandId.VALIDATE_CONFIG, failed())

    def broken_restore(snapshot_id):
        return RestoreResult(snapshot_id=snapshot_id, failed={"managed_config": "permission denied"})

    monkeypatch.setattr(controller.snapshots, "restore", broken_restore)

    result = controller.apply(dot_configuration("1.1.1.1"))

    assert result.outcome is ApplyOutcome.FATAL
    assert result.error.cause.kind is FailureKind.VALIDATION
    assert "permission denied" in result.error.message
    assert controller.recovery_required()


def test_concurrent_apply_is_rejected_before_snapshot(controller, runner):
    entered = threading.Event()
    release = threading.Event()

    def block():
        entered.set()
        release.wait(5)

    runner.hooks[CommandId.VALIDATE_CONFIG] = block
    outcome = {}

    def first_apply():
        outcome["result"] = controller.apply(dot_configuration("1.1.1.1"), run_self_test=False)

    worker = threading.Thread(target=first_apply)
    worker.start()
    try:
        assert entered.wait(5)
        assert controller.apply_in_progress()
        with pytest.raises(ApplyInProgressError):
            controller.apply(dot_configuration("8.8.8.8"), run_self_test=False)
        assert len(controller.list_snapshots()) == 1
    finally:
        release.set()
        worker.join(5)

    assert outcome["result"].success
    assert not controller.apply_in_progress()
    assert "1.1.1.1" in controller.current_managed_text()


def test_flush_after_apply_when_enabled(app_config, runner, prober):
    controller = make_controller(replace(app_config, flush_cache_after_apply=True), runner, prober)

    result = controller.apply(dot_configuration("1.1.1.1"))

    assert result.cache_flushed is True
    assert runner.count(CommandId.FLUSH_CACHE) == 1


def test_failed_flush_does_not_undo_a_committed_apply(app_config, runner, prober):
    controller = make_controller(replace(app_config, flush_cache_after_apply=True), runner, prober)
    runner.script(CommandId.FLUSH_CACHE, failed("flush refused"))

    result = controller.apply(dot_configuration("1.1.1.1"))

    assert result.success
    assert result.cache_flushed is False
    assert not result.rolled_back


def test_manual_rollback_restores_earlier_state(controller, app_config, runner):
    first = dot_configuration("1.1.1.1")
    assert controller.apply(first).success
    second = controller.apply(dot_configuration("8.8.8.8"))
    assert second.success

    result = controller.rollback_to(second.snapshot_id)

    assert result.success
    assert result.self_test_passed is None
    assert _managed(app_config) == render_managed_config(first)
    assert controller.get_current_configuration() == first
    assert runner.count(CommandId.RELOAD_SERVICE) == 3
    assert len(controller.list_snapshots()) == 3


def test_manual_rollback_clears_recovery_latch(controller, app_config, runner):
    first = dot_configuration("1.1.1.1")
    assert controller.apply(first).success
    runner.script(CommandId.RELOAD_SERVICE, failed(), failed())
    fatal = controller.apply(dot_configuration("8.8.8.8"))
    assert fatal.fatal

    result = controller.rollback_to(fatal.snapshot_id)

    assert result.success
    assert not controller.recovery_required()
    assert controller.get_current_configuration() == first


def test_manual_rollback_to_unknown_snapshot(controller):
    with pytest.raises(SnapshotNotFoundError):
        controller.rollback_to("snapshot-20990101T000000000000Z")


def test_stray_temp_files_are_swept_before_apply(controller, app_config):
    app_config.managed_config_path.parent.mkdir(parents=True)
    stray = app_config.managed_config_path.parent / f".{app_config.managed_config_path.name}.crash.tmp"
    stray.write_text("partial", encoding="utf-8")

    assert controller.apply(dot_configuration("1.1.1.1")).success
    assert not stray.exists()


def test_apply_result_serialisation(controller, runner):
    runner.script(CommandId.VALIDATE_CONFIG, failed("bad"))

    data = apply_result_to_dict(controller.apply(dot_configuration("1.1.1.1")))

    assert data["outcome"] == "rolled_back"
    assert data["final_state"] == "rolled_back"
    assert data["error"]["kind"] == "validation"
    assert data["error"]["cause"] is None


def test_preview_does_not_touch_disk(controller, app_config):
    text = controller.preview(dot_configuration("1.1.1.1"))

    assert "1.1.1.1@853" in text
    assert not app_config.managed_config_path.exists()
    assert controller.current_managed_text() == ""


def test_second_runner_instance_cannot_share_lock(app_config, runner, prober):
    first = make_controller(app_config, runner, prober)
    second = make_controller(app_config, FakeRunner(), prober)
    entered = threading.Event()
    release = threading.Event()

    def block():
        entered.set()
        release.wait(5)

    runner.hooks[CommandId.VALIDATE_CONFIG] = block
    worker = threading.Thread(target=lambda: first.apply(dot_configuration("1.1.1.1"), run_self_test=False))
    worker.start()
    try:
        assert entered.wait(5)
        with pytest.raises(ApplyInProgressError):
            second.apply(dot_configuration("8.8.8.8"), run_self_test=False)
    finally:
        release.set()
        worker.join(5)


def test_unexpected_error_during_rollback_reload_is_fatal(controller, app_config, runner):
    assert controller.apply(dot_configuration("1.1.1.1")).success
    runner.script(
        CommandId.RELOAD_SERVICE,
        failed("reload failed"),
        UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"),
    )

    result = controller.apply(dot_configuration("8.8.8.8"))

    assert result.outcome is ApplyOutcome.FATAL
    assert result.error.kind is FailureKind.ROLLBACK
    assert result.error.cause.kind is FailureKind.RELOAD
    assert "invalid start byte" in result.error.message
    assert controller.state is ApplyState.FATAL
    assert controller.recovery_required()
    assert not controller.apply_in_progress()


def test_unexpected_error_during_restore_is_fatal(controller, runner, monkeypatch):
    runner.script(CommandId.VALIDATE_CONFIG, failed())

    def exploding_restore(snapshot_id):
        raise ValueError("manifest is not valid JSON")

    monkeypatch.setattr(controller.snapshots, "restore", exploding_restore)

    result = controller.apply(dot_configuration("1.1.1.1"))

    assert result.outcome is ApplyOutcome.FATAL
    assert "manifest is not valid JSON" in result.error.message
    assert result.error.cause.kind is FailureKind.VALIDATION
    assert runner.count(CommandId.RELOAD_SERVICE) == 0
    assert controller.recovery_required()


def test_dot_without_enabled_providers_aborts(controller, app_config, runner):
    desired = replace(dot_configuration("1.1.1.1"), tls_providers=[])

    result = controller.apply(desired)

    assert result.outcome is ApplyOutcome.ABORTED
    assert result.error.step is ApplyState.GENERATING
    assert "at least one enabled TLS provider" in result.error.message
    assert not app_config.managed_config_path.exists()
    assert runner.calls == []


def test_self_test_receives_the_written_configuration(controller, prober):
    desired = dot_configuration("1.1.1.1")

    assert controller.apply(desired).success

    assert prober.configurations == [desired]
