"""Tests for the local state store."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from structlog.testing import capture_logs

from ec2_reconciler.models import InstanceRecord, InstanceStatus
from ec2_reconciler.state_store import StateStore


def _entry(name: str, instance_id: str, status: str = "running") -> dict:
    return {
        "Name": name,
        "InstanceId": instance_id,
        "Status": status,
        "InstanceType": "t3.micro",
        "AMI_ID": "ami-1",
        "KeyName": "ssh-key",
        "SubnetId": "subnet-1",
        "SecurityGroupIds": ["sg-1"],
    }


class TestLoad:
    """Tests for StateStore.load."""

    def test_missing_file_initializes_empty_state(self, state_path: Path) -> None:
        """Test a missing file is created with an empty instances list."""
        store = StateStore(state_path)

        records = store.load()

        assert records == []
        assert json.loads(state_path.read_text()) == {"instances": []}

    @pytest.mark.parametrize(
        "content",
        [
            "",
            "not json {",
            "[]",
            '{"instances": {}}',
            '{"other": []}',
        ],
    )
    def test_corrupt_file_self_heals(self, state_path: Path, write_state, content: str) -> None:
        """Test unusable content resets to an empty state without raising."""
        write_state(content)
        store = StateStore(state_path)

        records = store.load()

        assert records == []
        assert json.loads(state_path.read_text()) == {"instances": []}

    def test_load_preserves_order(self, state_path: Path, write_state) -> None:
        """Test records load in file order."""
        write_state({"instances": [_entry("b", "i-2"), _entry("a", "i-1")]})
        store = StateStore(state_path)

        records = store.load()

        assert [r.name for r in records] == ["b", "a"]
        assert records[0].status == InstanceStatus.RUNNING

    def test_malformed_entries_are_skipped(self, state_path: Path, write_state) -> None:
        """Test entries without a name are skipped."""
        write_state({"instances": [_entry("a", "i-1"), {"InstanceId": "i-2"}, "junk"]})
        store = StateStore(state_path)

        records = store.load()

        assert [r.name for r in records] == ["a"]

    @pytest.mark.parametrize("groups", [5, True, {"id": "sg-1"}])
    def test_wrongly_typed_fields_are_skipped(
        self, state_path: Path, write_state, groups: object
    ) -> None:
        """Test an entry with a wrongly typed field is skipped, not raised."""
        bad = {"Name": "b", "InstanceId": "i-2", "SecurityGroupIds": groups}
        write_state({"instances": [_entry("a", "i-1"), bad]})
        store = StateStore(state_path)

        with capture_logs() as logs:
            records = store.load()

        assert [r.name for r in records] == ["a"]
        assert store.find_by_id("i-2") is None
        assert any(log["event"] == "Skipping malformed state entry" for log in logs)

    def test_duplicate_names_first_match_wins(self, state_path: Path, write_state) -> None:
        """Test lookups by name return the first of duplicated names."""
        write_state({"instances": [_entry("web", "i-1"), _entry("web", "i-2")]})
        store = StateStore(state_path)

        store.load()

        assert len(store) == 2
        assert store.find_by_name("web").instance_id == "i-1"
        assert store.find_by_id("i-2").name == "web"


class TestSave:
    """Tests for StateStore.save."""

    def test_save_writes_state_file_format(
        self, store: StateStore, state_path: Path, running_record: InstanceRecord
    ) -> None:
        """Test saved content uses the instances list format."""
        store.upsert(running_record)
        store.save()

        data = json.loads(state_path.read_text())
        assert data["instances"] == [running_record.to_dict()]

    def test_save_with_records_replaces_collection(
        self, store: StateStore, running_record: InstanceRecord
    ) -> None:
        """Test passing records replaces the in-memory collection."""
        store.save([running_record])

        assert store.find_by_name("web") is running_record
        reloaded = StateStore(store.path)
        assert [r.instance_id for r in reloaded.load()] == ["i-0abc123"]

    def test_unknown_keys_round_trip(self, state_path: Path, write_state) -> None:
        """Test unknown top-level and entry keys are written back."""
        entry = _entry("web", "i-1")
        entry["Owner"] = "ops"
        write_state({"version": 2, "instances": [entry]})
        store = StateStore(state_path)
        store.load()

        store.save()

        data = json.loads(state_path.read_text())
        assert data["version"] == 2
        assert data["instances"][0]["Owner"] == "ops"

    def test_crash_before_rename_keeps_previous_file(
        self, store: StateStore, state_path: Path, running_record: InstanceRecord
    ) -> None:
        """Test a failure between temp write and rename leaves the old file intact."""
        store.save([running_record])
        before = state_path.read_text()

        store.remove("i-0abc123")
        with patch("ec2_reconciler.state_store.os.replace", side_effect=OSError("crash")):
            with pytest.raises(OSError, match="crash"):
                store.save()

        assert state_path.read_text() == before
        assert json.loads(before)["instances"][0]["InstanceId"] == "i-0abc123"
        leftovers = [p for p in state_path.parent.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        """Test saving into a directory that does not exist yet."""
        store = StateStore(tmp_path / "nested" / "state.json")

        store.load()

        assert (tmp_path / "nested" / "state.json").exists()


class TestCollection:
    """Tests for in-memory lookups and edits."""

    def test_find_by_name_and_id(self, store: StateStore, running_record: InstanceRecord) -> None:
        """Test both indexes find the record."""
        store.upsert(running_record)

        assert store.find_by_name("web") is running_record
        assert store.find_by_id("i-0abc123") is running_record
        assert store.find_by_name("missing") is None
        assert store.find_by_id("") is None

    def test_upsert_replaces_same_name_in_place(self, store: StateStore) -> None:
        """Test upserting an existing name keeps its position."""
        store.upsert(InstanceRecord(name="a", instance_id="i-1"))
        store.upsert(InstanceRecord(name="b", instance_id="i-2"))

        store.upsert(InstanceRecord(name="a", instance_id="i-3"))

        assert [(r.name, r.instance_id) for r in store] == [("a", "i-3"), ("b", "i-2")]
        assert store.find_by_id("i-1") is None

    def test_upsert_appends_new_name(self, store: StateStore) -> None:
        """Test a new name is appended."""
        store.upsert(InstanceRecord(name="a", instance_id="i-1"))
        store.upsert(InstanceRecord(name="b", instance_id="i-2"))

        assert [r.name for r in store] == ["a", "b"]

    def test_remove(self, store: StateStore, running_record: InstanceRecord) -> None:
        """Test removing by id returns the record and clears the indexes."""
        store.upsert(running_record)

        removed = store.remove("i-0abc123")

        assert removed is running_record
        assert len(store) == 0
        assert store.find_by_name("web") is None

    def test_remove_unknown_id(self, store: StateStore) -> None:
        """Test removing an untracked id is a no-op."""
        assert store.remove("i-missing") is None

    def test_edits_are_not_persisted_until_save(
        self, store: StateStore, state_path: Path, running_record: InstanceRecord
    ) -> None:
        """Test upsert and remove do not touch the file."""
        store.upsert(running_record)

        assert json.loads(state_path.read_text()) == {"instances": []}
