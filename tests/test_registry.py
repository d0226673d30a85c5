"""
Test Suite for the Operation Registry
=====================================

Producer API: lifecycle state machine, progress conventions, snapshot
persistence, broadcast side effects and retention.
"""

import threading

import pytest

from opstatus.core.models import EventAction, OperationStatus
from opstatus.core.registry import OperationRegistry
from opstatus.core.snapshot_store import SnapshotStore


class RecordingPublisher:
    """Stands in for the broadcast publisher and records every event."""

    def __init__(self):
        self.events = []
        self.closed = False

    def publish(self, event):
        self.events.append(event)
        return 1

    def close(self):
        self.closed = True


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def tracked(config, publisher, clock):
    """Registry with a recording publisher and a fake clock."""
    registry = OperationRegistry(config, publisher=publisher, clock=clock)
    registry.start()
    yield registry
    registry.stop()


def reload_snapshot(config):
    return SnapshotStore(config.state_file).load()


class TestOperationLifecycle:

    def test_start_operation_creates_idle_record(self, tracked, clock, config):
        operation = tracked.start_operation("fx_1", "firefox", "Firefox")

        assert operation.status is OperationStatus.IDLE
        assert operation.current_phase.name == "Ready"
        assert operation.overall_progress == 0.0
        assert operation.start_time == pytest.approx(clock.now)
        assert "fx_1" in reload_snapshot(config).operations

    def test_download_then_complete_scenario(self, tracked, config):
        tracked.start_operation("fx_1", "Firefox Install", "Firefox")
        assert tracked.update_operation("fx_1", OperationStatus.DOWNLOADING, "Downloading", None, 0.4)

        state = reload_snapshot(config)
        assert state.operations["fx_1"].status is OperationStatus.DOWNLOADING
        assert state.operations["fx_1"].overall_progress == pytest.approx(0.4)

        assert tracked.complete_operation("fx_1")

        done = reload_snapshot(config).operations["fx_1"]
        assert done.status is OperationStatus.COMPLETED
        assert done.overall_progress == 1.0
        assert done.current_phase.progress == 1.0

    def test_restart_same_id_discards_previous_run(self, tracked, clock, config):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_operation("fx_1", OperationStatus.DOWNLOADING, "Downloading", None, 0.2)
        tracked.fail_operation("fx_1", "network down")

        clock.advance(1.0)
        fresh = tracked.start_operation("fx_1", "firefox", "Firefox")

        reloaded = reload_snapshot(config).operations["fx_1"]
        assert reloaded == fresh
        assert reloaded.error_message is None
        assert reloaded.status is OperationStatus.IDLE
        assert reloaded.overall_progress == 0.0

    def test_update_after_completion_is_rejected(self, tracked, config, publisher):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.complete_operation("fx_1")
        before = reload_snapshot(config)
        events_before = len(publisher.events)

        assert not tracked.update_operation("fx_1", OperationStatus.UPLOADING, "Uploading", None, 0.9)
        assert not tracked.fail_operation("fx_1", "late failure")

        after = reload_snapshot(config)
        assert after.operations == before.operations
        assert after.last_update == before.last_update
        assert len(publisher.events) == events_before

    def test_unknown_operation_is_a_noop(self, tracked, publisher):
        events_before = len(publisher.events)
        assert not tracked.update_operation("ghost", OperationStatus.PROCESSING, "Processing")
        assert not tracked.update_download_progress("ghost", 1, 2)
        assert not tracked.remove_operation("ghost")
        assert len(publisher.events) == events_before

    def test_transition_into_idle_rejected(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_operation("fx_1", OperationStatus.DOWNLOADING, "Downloading")
        assert not tracked.update_operation("fx_1", OperationStatus.IDLE, "Ready")
        assert tracked.get_operation("fx_1").status is OperationStatus.DOWNLOADING

    def test_idle_may_complete_directly(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        assert tracked.complete_operation("fx_1")

    def test_status_accepts_plain_strings(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        assert tracked.update_operation("fx_1", "processing", "Processing")
        assert tracked.get_operation("fx_1").status is OperationStatus.PROCESSING

    def test_unknown_status_string_rejected(self, tracked, publisher):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        events_before = len(publisher.events)

        assert not tracked.update_operation("fx_1", "exploding", "Exploding")
        assert tracked.get_operation("fx_1").status is OperationStatus.IDLE
        assert len(publisher.events) == events_before

    def test_fail_records_message(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.fail_operation("fx_1", "Signature invalid")

        operation = tracked.get_operation("fx_1")
        assert operation.status is OperationStatus.ERROR
        assert operation.error_message == "Signature invalid"
        assert operation.current_phase.name == "Error"

    def test_fail_without_message(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.fail_operation("fx_1", "")
        assert tracked.get_operation("fx_1").error_message == "Unknown error"

    def test_error_message_ignored_for_other_statuses(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_operation("fx_1", OperationStatus.PROCESSING, "Processing", error_message="nope")
        assert tracked.get_operation("fx_1").error_message is None

    def test_cancel(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_download_progress("fx_1", 10, 100)
        tracked.cancel_operation("fx_1")

        operation = tracked.get_operation("fx_1")
        assert operation.status is OperationStatus.CANCELLED
        assert operation.current_phase.name == "Cancelled"

    def test_eta_cleared_on_terminal(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_operation("fx_1", OperationStatus.UPLOADING, "Uploading", estimated_time_remaining=30.0)
        assert tracked.get_operation("fx_1").estimated_time_remaining == 30.0
        tracked.complete_operation("fx_1")
        assert tracked.get_operation("fx_1").estimated_time_remaining is None


class TestProgressConvention:

    def test_overall_progress_never_decreases(self, tracked, config):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        observed = []
        for value in (0.1, 0.3, 0.2, 0.25, 0.6, 0.5):
            tracked.update_operation("fx_1", OperationStatus.PROCESSING, "Processing", None, value)
            observed.append(reload_snapshot(config).operations["fx_1"].overall_progress)

        assert observed == sorted(observed)
        assert observed[-1] == pytest.approx(0.6)

    def test_overall_progress_clamped(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_operation("fx_1", OperationStatus.PROCESSING, "Processing", None, 7.5)
        assert tracked.get_operation("fx_1").overall_progress == 1.0

    def test_phase_progress_resets_on_new_phase(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_download_progress("fx_1", 100, 100)
        assert tracked.get_operation("fx_1").current_phase.progress == 1.0

        tracked.update_operation("fx_1", OperationStatus.PROCESSING, "Processing")
        phase = tracked.get_operation("fx_1").current_phase
        assert phase.name == "Processing"
        assert phase.progress == 0.0

    def test_phase_progress_monotonic_within_phase(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_download_progress("fx_1", 60, 100)
        tracked.update_download_progress("fx_1", 40, 100)
        assert tracked.get_operation("fx_1").current_phase.progress == pytest.approx(0.6)

    def test_download_band(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_download_progress("fx_1", 50, 100, "https://cdn.example.com/firefox.dmg")

        operation = tracked.get_operation("fx_1")
        assert operation.status is OperationStatus.DOWNLOADING
        assert operation.current_phase.progress == pytest.approx(0.5)
        assert operation.overall_progress == pytest.approx(0.15)
        assert operation.current_phase.detail == "Downloading from cdn.example.com"

    def test_processing_band(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_processing_progress("fx_1", "Signing", 0.5)

        operation = tracked.get_operation("fx_1")
        assert operation.current_phase.detail == "Signing"
        assert operation.overall_progress == pytest.approx(0.5)

    def test_upload_band(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_upload_progress("fx_1", 1, 2)
        assert tracked.get_operation("fx_1").overall_progress == pytest.approx(0.85)

    @pytest.mark.parametrize("total", [0, -1])
    def test_indeterminate_total_keeps_progress(self, tracked, total):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_download_progress("fx_1", 30, 100)
        before = tracked.get_operation("fx_1")

        assert tracked.update_download_progress("fx_1", 999, total)

        after = tracked.get_operation("fx_1")
        assert after.overall_progress == before.overall_progress
        assert after.current_phase.progress == before.current_phase.progress

    def test_indeterminate_upload_total(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        assert tracked.update_upload_progress("fx_1", 10, 0)
        operation = tracked.get_operation("fx_1")
        assert operation.status is OperationStatus.UPLOADING
        assert operation.overall_progress == 0.0


class TestPersistenceAndBroadcast:

    def test_start_writes_fresh_snapshot(self, config, publisher):
        first = OperationRegistry(config, publisher=publisher)
        first.start()
        first.start_operation("fx_1", "firefox", "Firefox")
        first.stop()

        second = OperationRegistry(config, publisher=publisher)
        second.start()
        try:
            state = reload_snapshot(config)
            assert state.operations == {}
            assert state.producer_id == second.producer_id
            assert publisher.events[-1].action is EventAction.CLEANUP
        finally:
            second.stop()

    def test_start_on_empty_previous_snapshot_does_not_publish_cleanup(self, config, publisher):
        registry = OperationRegistry(config, publisher=publisher)
        registry.start()
        registry.stop()
        assert publisher.events == []

    def test_snapshot_last_update_strictly_increases(self, tracked, config, clock):
        stamps = []
        tracked.start_operation("fx_1", "firefox", "Firefox")
        stamps.append(reload_snapshot(config).last_update)
        for _ in range(3):
            # Clock does not move between updates
            tracked.update_download_progress("fx_1", 1, 10)
            stamps.append(reload_snapshot(config).last_update)
        assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))

    def test_snapshot_records_producer_identity(self, tracked, config):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        state = reload_snapshot(config)
        assert state.producer_id == tracked.producer_id
        assert state.producer_pid is not None
        assert state.producer_version.startswith("opstatus/")

    def test_each_mutation_broadcasts_one_delta(self, tracked, publisher):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        tracked.update_download_progress("fx_1", 5, 10)
        tracked.complete_operation("fx_1")

        actions = [(event.operation_id, event.action) for event in publisher.events]
        assert actions == [("fx_1", EventAction.UPDATE)] * 3
        assert publisher.events[-1].status is OperationStatus.COMPLETED
        assert publisher.events[1].phase_name == "Downloading"
        assert publisher.events[1].start_time == publisher.events[0].start_time

    def test_remove_publishes_removal(self, tracked, publisher, config):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        assert tracked.remove_operation("fx_1")

        assert publisher.events[-1].action is EventAction.REMOVED
        assert publisher.events[-1].last_update == reload_snapshot(config).last_update
        assert "fx_1" not in reload_snapshot(config).operations
        assert tracked.get_operation("fx_1") is None

    def test_write_failure_does_not_raise(self, tracked, config, monkeypatch):
        def broken_save(state):
            raise OSError("read-only file system")

        monkeypatch.setattr(tracked.store, "save", broken_save)

        operation = tracked.start_operation("fx_1", "firefox", "Firefox")
        assert tracked.update_download_progress("fx_1", 1, 2)

        assert operation.operation_id == "fx_1"
        assert tracked.get_operation("fx_1").status is OperationStatus.DOWNLOADING
        assert tracked.write_failures == 2

    def test_publish_failure_does_not_raise(self, config):
        class ExplodingPublisher(RecordingPublisher):
            def publish(self, event):
                raise RuntimeError("socket gone")

        registry = OperationRegistry(config, publisher=ExplodingPublisher())
        registry.start_operation("fx_1", "firefox", "Firefox")
        assert registry.complete_operation("fx_1")

    def test_works_without_start(self, config, publisher):
        config.ensure_producer_directories()
        registry = OperationRegistry(config, publisher=publisher)
        registry.start_operation("fx_1", "firefox", "Firefox")
        assert "fx_1" in reload_snapshot(config).operations

    def test_stop_closes_publisher_and_is_idempotent(self, config, publisher):
        registry = OperationRegistry(config, publisher=publisher)
        registry.start()
        registry.stop()
        registry.stop()
        assert publisher.closed
        assert not registry.is_running

    def test_concurrent_updates_keep_snapshot_consistent(self, tracked, config):
        ids = [f"app_{index}" for index in range(8)]
        for operation_id in ids:
            tracked.start_operation(operation_id, operation_id, operation_id)

        def worker(operation_id):
            for step in range(1, 21):
                tracked.update_download_progress(operation_id, step, 20)
            tracked.complete_operation(operation_id)

        threads = [threading.Thread(target=worker, args=(operation_id,)) for operation_id in ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        state = reload_snapshot(config)
        assert set(state.operations) == set(ids)
        assert all(op.status is OperationStatus.COMPLETED for op in state.operations.values())
        assert tracked.get_active_operation_count() == 0


class TestRetention:

    def test_ttls_per_status(self, tracked, clock, config, publisher):
        for operation_id in ("done", "failed", "cancelled", "running"):
            tracked.start_operation(operation_id, operation_id, operation_id)
        tracked.complete_operation("done")
        tracked.fail_operation("failed", "x")
        tracked.cancel_operation("cancelled")
        tracked.update_download_progress("running", 1, 10)

        clock.advance(config.completed_ttl + 1)
        assert tracked.cleanup_stale_operations() == 1
        assert tracked.get_operation("done") is None
        assert publisher.events[-1].action is EventAction.REMOVED
        assert publisher.events[-1].operation_id == "done"

        clock.advance(config.cancelled_ttl)
        assert tracked.cleanup_stale_operations() == 1
        assert tracked.get_operation("cancelled") is None

        clock.advance(config.error_ttl)
        assert tracked.cleanup_stale_operations() == 1
        assert tracked.get_operation("failed") is None

        clock.advance(config.max_age)
        assert tracked.cleanup_stale_operations() == 1
        assert tracked.get_all_operations() == {}
        assert reload_snapshot(config).operations == {}

    def test_nothing_to_clean(self, tracked):
        tracked.start_operation("fx_1", "firefox", "Firefox")
        assert tracked.cleanup_stale_operations() == 0

    def test_clear_error_operations(self, tracked, publisher):
        tracked.start_operation("a", "a", "A")
        tracked.start_operation("b", "b", "B")
        tracked.start_operation("c", "c", "C")
        tracked.fail_operation("a", "x")
        tracked.fail_operation("b", "y")

        assert tracked.clear_error_operations() == 2
        assert set(tracked.get_all_operations()) == {"c"}
        removed = {event.operation_id for event in publisher.events if event.action is EventAction.REMOVED}
        assert removed == {"a", "b"}

    def test_sweeper_thread_runs(self, config, publisher, clock):
        config.sweep_interval = 0.05
        registry = OperationRegistry(config, publisher=publisher, clock=clock)
        registry.start()
        try:
            registry.start_operation("fx_1", "firefox", "Firefox")
            registry.complete_operation("fx_1")
            clock.advance(config.completed_ttl + 1)

            deadline = threading.Event()
            for _ in range(100):
                if registry.get_operation("fx_1") is None:
                    break
                deadline.wait(0.02)
            assert registry.get_operation("fx_1") is None
        finally:
            registry.stop()
