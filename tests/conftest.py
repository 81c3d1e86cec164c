"""Pytest fixtures for EC2 Reconciler tests."""

import json
import os
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import structlog
from botocore.exceptions import ClientError

from ec2_reconciler.config import Settings
from ec2_reconciler.ec2_client import EC2Client
from ec2_reconciler.models import InstanceRecord, InstanceSpec, InstanceStatus
from ec2_reconciler.state_store import StateStore


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep host EC2STATE_* variables and .env files out of the tests."""
    for key in list(os.environ):
        if key.startswith("EC2STATE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    """Undo logging configuration done by CLI invocations."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    """Path for a state file that does not exist yet."""
    return tmp_path / "ec2_state.json"


@pytest.fixture
def settings(state_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        state_file=state_path,
        aws_region="ap-south-1",
        poll_interval_seconds=0.0,
        terminate_poll_interval_seconds=0.0,
    )


@pytest.fixture
def store(state_path: Path) -> StateStore:
    """Create a loaded, empty state store."""
    store = StateStore(state_path)
    store.load()
    return store


@pytest.fixture
def mock_provider() -> MagicMock:
    """Create a mock EC2 client."""
    return MagicMock(spec=EC2Client)


@pytest.fixture
def instance_spec() -> InstanceSpec:
    """Create a complete instance spec."""
    return InstanceSpec(
        name="web",
        ami_id="ami-0a716d3f3b16d290c",
        instance_type="t3.micro",
        key_name="ssh-key",
        subnet_id="subnet-0a7550ee1ba1eb834",
        security_group_ids=["sg-0032b3d4efe1cf61f"],
    )


@pytest.fixture
def running_record(instance_spec: InstanceSpec) -> InstanceRecord:
    """Create a record for a running instance."""
    return InstanceRecord.from_spec(instance_spec, "i-0abc123", status=InstanceStatus.RUNNING)


@pytest.fixture
def write_state(state_path: Path):
    """Write raw state file content."""

    def _write(data: object) -> Path:
        if isinstance(data, str):
            state_path.write_text(data)
        else:
            state_path.write_text(json.dumps(data))
        return state_path

    return _write


@pytest.fixture
def client_error():
    """Build a botocore ClientError with the given code."""

    def _build(code: str, message: str = "boom", operation: str = "DescribeInstances") -> ClientError:
        return ClientError({"Error": {"Code": code, "Message": message}}, operation)

    return _build
