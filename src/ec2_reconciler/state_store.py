"""Local state file tracking provisioned instances.

The state file is the only durable artifact. It records what we believe
exists so that re-runs can adopt instead of duplicating:

    {"instances": [{"Name": "web", "InstanceId": "i-0abc", "Status": "running", ...}]}

Writes go through a temp file in the same directory followed by
``os.replace``, so an interrupted save leaves the previous file intact.
There is no locking: one operator and one process per state file.
"""

import json
import os
import tempfile
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

import structlog

from .models import InstanceRecord

logger = structlog.get_logger()


class StateStore:
    """Ordered collection of InstanceRecords backed by a JSON file."""

    def __init__(self, path: Path | str) -> None:
        """Initialize the store.

        Args:
            path: Location of the state file; nothing is read until load()
        """
        self.path = Path(path)
        self._records: list[InstanceRecord] = []
        self._extra: dict[str, Any] = {}
        self._by_name: dict[str, InstanceRecord] = {}
        self._by_id: dict[str, InstanceRecord] = {}

    def __iter__(self) -> Iterator[InstanceRecord]:
        return iter(list(self._records))

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> list[InstanceRecord]:
        """Snapshot of all records in insertion order."""
        return list(self._records)

    def load(self) -> list[InstanceRecord]:
        """Read the state file, initializing it if absent or corrupt.

        Never raises: anything unreadable self-heals to an empty store.
        """
        data = self._read()
        if data is None:
            logger.info("Initializing fresh state file", path=str(self.path))
            self._records = []
            self._extra = {}
            self._reindex()
            self.save()
            return self.records

        records = []
        for entry in data["instances"]:
            if not isinstance(entry, dict) or not entry.get("Name"):
                logger.warning("Skipping malformed state entry", path=str(self.path), entry=entry)
                continue
            try:
                records.append(InstanceRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "Skipping malformed state entry",
                    path=str(self.path),
                    entry=entry,
                    error=str(e),
                )

        self._records = records
        self._extra = {key: value for key, value in data.items() if key != "instances"}
        self._reindex()
        for record in records:
            if self._by_name[record.name] is not record:
                logger.warning(
                    "Duplicate instance name in state, first entry wins",
                    name=record.name,
                    instance_id=record.instance_id,
                )
        logger.debug("Loaded state", path=str(self.path), instances=len(records))
        return self.records

    def _read(self) -> dict[str, Any] | None:
        """Return the parsed state document, or None if it is unusable."""
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("State file unreadable, resetting", path=str(self.path), error=str(e))
            return None

        if not text.strip():
            return None

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("State file is not valid JSON, resetting", path=str(self.path), error=str(e))
            return None

        if not isinstance(data, dict) or not isinstance(data.get("instances"), list):
            logger.warning("State file has no instances list, resetting", path=str(self.path))
            return None
        return data

    def save(self, records: Iterable[InstanceRecord] | None = None) -> None:
        """Atomically replace the state file with the current records.

        Args:
            records: If given, replaces the in-memory collection before writing
        """
        if records is not None:
            self._records = list(records)
            self._reindex()

        document = dict(self._extra)
        document["instances"] = [record.to_dict() for record in self._records]

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(document, f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug("State saved", path=str(self.path), instances=len(self._records))

    def find_by_name(self, name: str) -> InstanceRecord | None:
        """Return the first record with this logical name."""
        return self._by_name.get(name)

    def find_by_id(self, instance_id: str) -> InstanceRecord | None:
        """Return the record tracking this provider id."""
        if not instance_id:
            return None
        return self._by_id.get(instance_id)

    def upsert(self, record: InstanceRecord) -> None:
        """Insert a record, replacing one with the same name or id in place."""
        existing = self._by_name.get(record.name) or self.find_by_id(record.instance_id)
        if existing is None:
            self._records.append(record)
        else:
            index = next(i for i, r in enumerate(self._records) if r is existing)
            self._records[index] = record
        self._reindex()

    def remove(self, instance_id: str) -> InstanceRecord | None:
        """Remove the record tracking this provider id.

        Returns:
            The removed record, or None if nothing tracked that id
        """
        record = self.find_by_id(instance_id)
        if record is None:
            return None
        self._records = [r for r in self._records if r is not record]
        self._reindex()
        return record

    def _reindex(self) -> None:
        """Rebuild the name and id indexes; the first duplicate name wins."""
        self._by_name = {}
        self._by_id = {}
        for record in self._records:
            self._by_name.setdefault(record.name, record)
            if record.instance_id:
                self._by_id.setdefault(record.instance_id, record)
