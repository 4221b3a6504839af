"""
Unit tests for the versioned state store.
"""

from concurrent.futures import ThreadPoolExecutor

import joblib
import pytest

from keystone.errors import StateEntryNotFoundError, StateFormatError, VersionConflictError
from keystone.forge import StateManager
from keystone.models import STATE_FORMAT_VERSION, StateEntry


def make_entry(resource_id="thing.a", provider_id="thing-1", **attributes):
    return StateEntry(
        resource_id=resource_id,
        resource_type=resource_id.split(".")[0],
        provider_id=provider_id,
        attributes=attributes,
        outputs={"id": provider_id},
    )


class TestStateManager:
    """Test load, get and commit operations."""

    def test_empty_state(self, state_manager):
        assert state_manager.load() == {}
        assert not state_manager.state_file.exists()

    def test_commit_create_sets_version(self, state_manager):
        stored = state_manager.commit_apply("thing.a", make_entry(size=1), expected_version=0)

        assert stored.version == 1
        assert state_manager.get("thing.a").attributes == {"size": 1}
        assert state_manager.snapshot.serial == 1

    def test_commit_update_increments_version(self, state_manager):
        state_manager.commit_apply("thing.a", make_entry(size=1), expected_version=0)
        stored = state_manager.commit_apply("thing.a", make_entry(size=2), expected_version=1)

        assert stored.version == 2
        assert state_manager.get("thing.a").attributes == {"size": 2}

    def test_commit_none_removes_entry(self, state_manager):
        state_manager.commit_apply("thing.a", make_entry(), expected_version=0)
        assert state_manager.commit_apply("thing.a", None, expected_version=1) is None

        with pytest.raises(StateEntryNotFoundError):
            state_manager.get("thing.a")

    def test_stale_version_conflicts_without_corruption(self, state_manager):
        """Test a commit with a stale version fails and leaves the entry untouched."""
        state_manager.commit_apply("thing.a", make_entry(size=1), expected_version=0)
        state_manager.commit_apply("thing.a", make_entry(size=2), expected_version=1)

        with pytest.raises(VersionConflictError) as exc_info:
            state_manager.commit_apply("thing.a", make_entry(size=99), expected_version=1)

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        entry = state_manager.get("thing.a")
        assert entry.attributes == {"size": 2}
        assert entry.version == 2

    def test_create_conflicts_with_existing_entry(self, state_manager):
        state_manager.commit_apply("thing.a", make_entry(), expected_version=0)
        with pytest.raises(VersionConflictError):
            state_manager.commit_apply("thing.a", make_entry(), expected_version=0)

    def test_returned_entries_are_copies(self, state_manager):
        state_manager.commit_apply("thing.a", make_entry(size=1), expected_version=0)

        state_manager.load()["thing.a"].attributes["size"] = 5
        state_manager.get("thing.a").attributes["size"] = 6

        assert state_manager.get("thing.a").attributes == {"size": 1}


class TestStatePersistence:
    """Test state survives process restarts."""

    def test_reload_from_disk(self, temp_dir):
        state_file = temp_dir / "state.joblib"
        StateManager(state_file).commit_apply("thing.a", make_entry(size=1), expected_version=0)

        reopened = StateManager(state_file)
        entry = reopened.get("thing.a")
        assert entry.version == 1
        assert entry.attributes == {"size": 1}

    def test_file_layout(self, state_manager):
        state_manager.commit_apply("thing.a", make_entry(), expected_version=0)

        data = joblib.load(state_manager.state_file)
        assert data["format_version"] == STATE_FORMAT_VERSION
        assert "thing.a" in data["state"]["resources"]

    def test_conflict_across_instances(self, temp_dir):
        """Test a second writer's commit is seen by the version check."""
        state_file = temp_dir / "state.joblib"
        first = StateManager(state_file)
        second = StateManager(state_file)

        first.commit_apply("thing.a", make_entry(size=1), expected_version=0)
        with pytest.raises(VersionConflictError):
            second.commit_apply("thing.a", make_entry(size=2), expected_version=0)

    def test_interleaved_writers_keep_every_commit(self, temp_dir):
        """Test two stores committing different ids at once lose no write."""
        state_file = temp_dir / "state.joblib"
        stores = [StateManager(state_file), StateManager(state_file)]
        resource_ids = [f"thing.r{index}" for index in range(40)]

        def commit(index):
            resource_id = resource_ids[index]
            stores[index % 2].commit_apply(resource_id, make_entry(resource_id), expected_version=0)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(commit, range(len(resource_ids))))

        reopened = StateManager(state_file)
        assert sorted(reopened.load()) == sorted(resource_ids)
        assert reopened.snapshot.serial == len(resource_ids)
        assert reopened.lock_file.exists()

    def test_version_reads_other_writers(self, temp_dir):
        state_file = temp_dir / "state.joblib"
        reader = StateManager(state_file)
        assert reader.version("thing.a") == 0

        StateManager(state_file).commit_apply("thing.a", make_entry(), expected_version=0)
        assert reader.version("thing.a") == 1

    def test_newer_format_version_rejected(self, temp_dir):
        state_file = temp_dir / "state.joblib"
        joblib.dump({"format_version": STATE_FORMAT_VERSION + 1, "state": {}}, state_file)

        with pytest.raises(StateFormatError, match="format version"):
            StateManager(state_file)

    def test_garbage_file_rejected(self, temp_dir):
        state_file = temp_dir / "state.joblib"
        state_file.write_bytes(b"definitely not a pickle")

        with pytest.raises(StateFormatError):
            StateManager(state_file)

    def test_outputs_persisted(self, temp_dir):
        state_file = temp_dir / "state.joblib"
        StateManager(state_file).set_outputs({"url": "https://example"})
        assert StateManager(state_file).snapshot.outputs == {"url": "https://example"}

    def test_sensitive_output_names_persisted(self, temp_dir):
        state_file = temp_dir / "state.joblib"
        StateManager(state_file).set_outputs({"url": "u", "token": "t"}, sensitive=["token", "gone"])
        assert StateManager(state_file).snapshot.sensitive_outputs == ["token"]


class TestStateBackups:
    """Test backup and restore."""

    def test_no_backup_without_state(self, state_manager):
        assert state_manager.create_backup() == ""

    def test_backup_and_restore(self, state_manager):
        state_manager.commit_apply("thing.a", make_entry(size=1), expected_version=0)
        backup = state_manager.create_backup()

        state_manager.commit_apply("thing.a", None, expected_version=1)
        state_manager.restore_from_backup(backup)

        assert state_manager.get("thing.a").attributes == {"size": 1}
