"""
Unit Tests for ActiveTaskTracker

Test coverage for:
- Track / session binding / completion
- Interrupted records after a restart
- Resumability depends on an external session id
"""

import json

import pytest

from orchestrator.active_task_tracker import ActiveTaskTracker
from orchestrator.persistence import JsonFileStore

from tests.conftest import CONV, OTHER_CONV


class TestTracking:
    """Record lifecycle within one process."""

    def test_track_and_complete(self, tracker):
        record = tracker.track(CONV, "refactor auth", "/srv/app", "complex")
        assert record.id.startswith("task-")
        assert tracker.get(record.id) is record
        assert not record.resumable

        tracker.complete(record.id)
        assert tracker.get(record.id) is None
        assert tracker.get_all() == []

    def test_update_session_id(self, tracker):
        record = tracker.track(CONV, "t", "/srv/app")
        assert tracker.update_session_id(record.id, "sess-9") is True
        assert tracker.update_session_id(record.id, "sess-9") is False
        assert tracker.get(record.id).resumable

    def test_update_unknown_task(self, tracker):
        assert tracker.update_session_id("task-nope", "sess-1") is False

    def test_complete_unknown_is_noop(self, tracker):
        tracker.complete("task-nope")

    def test_for_conversation(self, tracker):
        tracker.track(CONV, "a", "/srv")
        tracker.track(OTHER_CONV, "b", "/srv")
        assert [r.task for r in tracker.get_for_conversation(CONV)] == ["a"]

    def test_new_records_are_not_interrupted(self, tracker):
        tracker.track(CONV, "a", "/srv")
        assert tracker.get_interrupted() == []
        assert not tracker.has_interrupted()


class TestRestart:
    """Records surviving on disk are interrupted tasks."""

    def test_surviving_records_are_interrupted(self, tmp_path):
        path = tmp_path / "active-tasks.json"
        before = ActiveTaskTracker(JsonFileStore(path))
        finished = before.track(CONV, "finished", "/srv")
        running = before.track(CONV, "running", "/srv")
        before.update_session_id(running.id, "sess-42")
        before.complete(finished.id)

        after = ActiveTaskTracker(JsonFileStore(path))
        assert after.load() == 1
        interrupted = after.get_interrupted(CONV)
        assert [r.task for r in interrupted] == ["running"]
        assert interrupted[0].external_session_id == "sess-42"
        assert interrupted[0].resumable
        assert after.has_interrupted()

    def test_removal_after_restart(self, tmp_path):
        path = tmp_path / "active-tasks.json"
        before = ActiveTaskTracker(JsonFileStore(path))
        record = before.track(CONV, "running", "/srv")

        after = ActiveTaskTracker(JsonFileStore(path))
        after.load()
        after.complete(record.id)
        assert not after.has_interrupted()
        assert json.loads(path.read_text()) == []

    def test_interrupted_filtered_by_conversation(self, tmp_path):
        path = tmp_path / "active-tasks.json"
        before = ActiveTaskTracker(JsonFileStore(path))
        before.track(CONV, "mine", "/srv")
        before.track(OTHER_CONV, "theirs", "/srv")

        after = ActiveTaskTracker(JsonFileStore(path))
        after.load()
        assert [r.task for r in after.get_interrupted(OTHER_CONV)] == ["theirs"]
        assert len(after.get_interrupted()) == 2

    def test_clear_all(self, tmp_path):
        path = tmp_path / "active-tasks.json"
        before = ActiveTaskTracker(JsonFileStore(path))
        before.track(CONV, "a", "/srv")
        before.track(CONV, "b", "/srv")

        after = ActiveTaskTracker(JsonFileStore(path))
        after.load()
        assert after.clear_all() == 2
        assert after.get_all() == []
        assert not after.has_interrupted()


class TestFailedWrites:
    """A write that fails leaves memory matching what is on disk."""

    def test_failed_track_records_nothing(self, tracker, tracker_store):
        tracker_store.fail = True

        with pytest.raises(OSError):
            tracker.track(CONV, "a", "/srv")

        assert tracker.get_all() == []
        assert tracker_store.load([]) == []

    def test_failed_session_update_keeps_old_record(self, tracker, tracker_store):
        record = tracker.track(CONV, "a", "/srv")
        tracker_store.fail = True

        with pytest.raises(OSError):
            tracker.update_session_id(record.id, "sess-1")

        assert not tracker.get(record.id).resumable
        assert tracker_store.load([])[0]["external_session_id"] is None

    def test_failed_complete_keeps_record(self, tracker, tracker_store):
        record = tracker.track(CONV, "a", "/srv")
        tracker_store.fail = True

        with pytest.raises(OSError):
            tracker.complete(record.id)

        assert tracker.get(record.id) is not None
