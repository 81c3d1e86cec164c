"""EC2 client wrapper for EC2 Reconciler."""

from typing import Any

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import ConfigError, ProviderError, ProvisionError
from .models import UNREACHABLE, InstanceSpec, ProviderState

logger = structlog.get_logger()

NOT_FOUND_CODES = {"InvalidInstanceID.NotFound"}

# States listed by list_all_ids; anything shutting down is already gone
LIVE_STATE_NAMES = ["pending", "running", "stopping", "stopped"]


def _provider_error(operation: str, e: ClientError | BotoCoreError) -> ProviderError:
    """Convert a botocore exception into a ProviderError."""
    if isinstance(e, ClientError):
        error = e.response.get("Error", {})
        return ProviderError(
            error.get("Message", str(e)),
            operation=operation,
            code=error.get("Code"),
        )
    return ProviderError(str(e), operation=operation)


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


class EC2Client:
    """Wrapper for the EC2 instance operations the reconciler needs."""

    def __init__(self, settings: Settings, session: boto3.session.Session | None = None) -> None:
        """Initialize EC2 client.

        Args:
            settings: Application settings (region and profile)
            session: Pre-built boto3 session, mainly for tests
        """
        self.settings = settings
        try:
            if session is None:
                session = boto3.session.Session(
                    profile_name=settings.aws_profile,
                    region_name=settings.aws_region,
                )
            self.ec2 = session.client("ec2")
        except BotoCoreError as e:
            # Unknown profile, no region configured
            raise ConfigError(f"Cannot create EC2 client: {e}") from e

    def create_instance(self, spec: InstanceSpec) -> str:
        """Launch one instance for the spec and return its id.

        Raises:
            ProviderError: If EC2 rejects the request
            ProvisionError: If the response carries no instance id
        """
        try:
            response = self.ec2.run_instances(**spec.to_run_instances_params())
        except (ClientError, BotoCoreError) as e:
            raise _provider_error("RunInstances", e) from e

        instances = response.get("Instances") or []
        instance_id = instances[0].get("InstanceId") if instances else None
        if not instance_id:
            raise ProvisionError(f"EC2 returned no instance id for '{spec.name}'")

        logger.info("Instance created", name=spec.name, instance_id=instance_id)
        return str(instance_id)

    def _describe_instance(self, instance_id: str) -> dict[str, Any] | None:
        """Return the EC2 description of one instance, or None if it does not exist."""
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return None
            raise _provider_error("DescribeInstances", e) from e
        except BotoCoreError as e:
            raise _provider_error("DescribeInstances", e) from e

        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return dict(instance)
        return None

    def describe_state(self, instance_id: str) -> ProviderState:
        """Get the live state of an instance.

        A missing instance reads as terminated.
        """
        instance = self._describe_instance(instance_id)
        if instance is None:
            return ProviderState.TERMINATED
        return ProviderState.from_ec2(instance.get("State", {}).get("Name"))

    def describe_type(self, instance_id: str) -> str:
        """Get the live instance type, or UNREACHABLE if it cannot be read."""
        try:
            instance = self._describe_instance(instance_id)
        except ProviderError as e:
            logger.warning("Failed to read instance type", instance_id=instance_id, error=str(e))
            return UNREACHABLE
        if instance is None or not instance.get("InstanceType"):
            return UNREACHABLE
        return str(instance["InstanceType"])

    def get_public_ip(self, instance_id: str) -> str | None:
        """Get the public IPv4 address of an instance, if it has one."""
        instance = self._describe_instance(instance_id)
        if instance is None:
            return None
        return instance.get("PublicIpAddress")

    def terminate(self, instance_id: str) -> None:
        """Request termination; an already-gone instance is not an error."""
        try:
            self.ec2.terminate_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                logger.info("Instance already gone", instance_id=instance_id)
                return
            raise _provider_error("TerminateInstances", e) from e
        except BotoCoreError as e:
            raise _provider_error("TerminateInstances", e) from e
        logger.info("Termination requested", instance_id=instance_id)

    def list_all_ids(self) -> set[str]:
        """Get ids of every live instance visible to the credentials."""
        ids: set[str] = set()
        try:
            paginator = self.ec2.get_paginator("describe_instances")
            pages = paginator.paginate(
                Filters=[{"Name": "instance-state-name", "Values": LIVE_STATE_NAMES}]
            )
            for page in pages:
                for reservation in page.get("Reservations", []):
                    for instance in reservation.get("Instances", []):
                        ids.add(instance["InstanceId"])
        except (ClientError, BotoCoreError) as e:
            raise _provider_error("DescribeInstances", e) from e
        return ids

    def authorize_ingress(self, group_id: str, port: int, cidr: str = "0.0.0.0/0") -> bool:
        """Allow inbound TCP traffic on a port.

        Returns:
            True if a rule was added, False if it already existed
        """
        try:
            self.ec2.authorize_security_group_ingress(
                GroupId=group_id,
                IpPermissions=[
                    {
                        "IpProtocol": "tcp",
                        "FromPort": port,
                        "ToPort": port,
                        "IpRanges": [{"CidrIp": cidr}],
                    }
                ],
            )
        except ClientError as e:
            if _error_code(e) == "InvalidPermission.Duplicate":
                logger.info("Ingress rule already present", group_id=group_id, port=port, cidr=cidr)
                return False
            raise _provider_error("AuthorizeSecurityGroupIngress", e) from e
        except BotoCoreError as e:
            raise _provider_error("AuthorizeSecurityGroupIngress", e) from e
        logger.info("Ingress rule added", group_id=group_id, port=port, cidr=cidr)
        return True
