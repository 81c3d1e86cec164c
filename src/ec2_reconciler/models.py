"""Data models for EC2 Reconciler."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ConfigError

# Returned by EC2Client.describe_type when the live type cannot be read
UNREACHABLE = "unreachable"


class InstanceStatus(Enum):
    """Last observed lifecycle state, as recorded in the state file."""

    PENDING = "pending"
    RUNNING = "running"
    TERMINATED = "terminated"


class ProviderState(Enum):
    """Live instance state as reported by EC2."""

    PENDING = "pending"
    RUNNING = "running"
    STOPPED = "stopped"
    TERMINATED = "terminated"
    UNKNOWN = "unknown"

    @classmethod
    def from_ec2(cls, name: str | None) -> "ProviderState":
        """Map an EC2 ``State.Name`` onto a provider state."""
        return _EC2_STATE_NAMES.get(name or "", cls.UNKNOWN)


_EC2_STATE_NAMES = {
    "pending": ProviderState.PENDING,
    "running": ProviderState.RUNNING,
    "stopping": ProviderState.STOPPED,
    "stopped": ProviderState.STOPPED,
    # shutting-down cannot be reversed, so it counts as gone
    "shutting-down": ProviderState.TERMINATED,
    "terminated": ProviderState.TERMINATED,
}


@dataclass
class InstanceSpec:
    """Desired configuration for one logically named instance."""

    name: str
    ami_id: str
    instance_type: str
    key_name: str
    subnet_id: str
    security_group_ids: list[str] = field(default_factory=list)

    def validate(self) -> None:
        """Check every required parameter is present.

        Raises:
            ConfigError: If any field is empty
        """
        missing = [
            label
            for label, value in (
                ("name", self.name),
                ("ami_id", self.ami_id),
                ("instance_type", self.instance_type),
                ("key_name", self.key_name),
                ("subnet_id", self.subnet_id),
            )
            if not value
        ]
        if not self.security_group_ids:
            missing.append("security_group_ids")
        if missing:
            raise ConfigError(f"Missing required instance parameter(s): {', '.join(missing)}")

    def to_run_instances_params(self) -> dict[str, Any]:
        """Build the ``run_instances`` request for this spec."""
        return {
            "ImageId": self.ami_id,
            "InstanceType": self.instance_type,
            "KeyName": self.key_name,
            "SubnetId": self.subnet_id,
            "SecurityGroupIds": list(self.security_group_ids),
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [{"Key": "Name", "Value": self.name}],
                }
            ],
        }


# State file keys, in the order they are written
_RECORD_KEYS = (
    "Name",
    "InstanceId",
    "Status",
    "InstanceType",
    "AMI_ID",
    "KeyName",
    "SubnetId",
    "SecurityGroupIds",
)


@dataclass
class InstanceRecord:
    """One tracked instance in the state file."""

    name: str
    instance_id: str = ""
    status: InstanceStatus = InstanceStatus.PENDING
    instance_type: str = ""
    ami_id: str = ""
    key_name: str = ""
    subnet_id: str = ""
    security_group_ids: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_spec(
        cls,
        spec: InstanceSpec,
        instance_id: str,
        status: InstanceStatus = InstanceStatus.PENDING,
    ) -> "InstanceRecord":
        """Create a record for a freshly created instance."""
        return cls(
            name=spec.name,
            instance_id=instance_id,
            status=status,
            instance_type=spec.instance_type,
            ami_id=spec.ami_id,
            key_name=spec.key_name,
            subnet_id=spec.subnet_id,
            security_group_ids=list(spec.security_group_ids),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InstanceRecord":
        """Create from a state file entry.

        Unknown keys are kept in ``extra``. An unrecognised status reads as
        pending so the next provider query can correct it.

        Raises:
            KeyError: If ``Name`` is missing
            ValueError: If ``SecurityGroupIds`` is neither a list nor a string
        """
        try:
            status = InstanceStatus(data.get("Status", "pending"))
        except ValueError:
            status = InstanceStatus.PENDING

        groups = data.get("SecurityGroupIds") or []
        if isinstance(groups, str):
            groups = [groups]
        elif not isinstance(groups, list):
            raise ValueError(f"SecurityGroupIds must be a list, got {type(groups).__name__}")

        return cls(
            name=str(data["Name"]),
            instance_id=str(data.get("InstanceId") or ""),
            status=status,
            instance_type=str(data.get("InstanceType") or ""),
            ami_id=str(data.get("AMI_ID") or ""),
            key_name=str(data.get("KeyName") or ""),
            subnet_id=str(data.get("SubnetId") or ""),
            security_group_ids=[str(group) for group in groups],
            extra={key: value for key, value in data.items() if key not in _RECORD_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a state file entry."""
        result: dict[str, Any] = {
            "Name": self.name,
            "InstanceId": self.instance_id,
            "Status": self.status.value,
            "InstanceType": self.instance_type,
            "AMI_ID": self.ami_id,
            "KeyName": self.key_name,
            "SubnetId": self.subnet_id,
            "SecurityGroupIds": list(self.security_group_ids),
        }
        result.update(self.extra)
        return result

    def format_line(self) -> str:
        """Format as ``name -> id (status)`` for listing."""
        return f"{self.name} -> {self.instance_id} ({self.status.value})"


@dataclass(frozen=True)
class DriftWarning:
    """A recorded attribute that differs from the live instance.

    Reported only; the record is never changed to match.
    """

    name: str
    instance_id: str
    desired: str
    actual: str
    attribute: str = "instance_type"

    @property
    def message(self) -> str:
        """Human readable description of the drift."""
        return (
            f"Drift detected on {self.name} ({self.instance_id}): "
            f"{self.attribute} desired={self.desired}, actual={self.actual}"
        )
