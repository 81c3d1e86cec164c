"""Reconcile the local state file against live EC2 state."""

import structlog

from .ec2_client import EC2Client
from .models import UNREACHABLE, DriftWarning, InstanceRecord, ProviderState
from .state_store import StateStore

logger = structlog.get_logger()


class Reconciler:
    """Prunes stale records and flags drifted ones."""

    def __init__(self, provider: EC2Client, store: StateStore) -> None:
        """Initialize reconciler."""
        self.provider = provider
        self.store = store

    def sync(self) -> list[InstanceRecord]:
        """Drop records whose instance no longer exists.

        Run once per session before any create or delete decision, so stale
        records never satisfy an idempotency check.

        Returns:
            The records that were removed
        """
        live_ids = self.provider.list_all_ids()
        stale = [
            record
            for record in self.store
            if record.instance_id and record.instance_id not in live_ids
        ]
        for record in stale:
            self.store.remove(record.instance_id)
            logger.info(
                "Removing stale instance from state",
                name=record.name,
                instance_id=record.instance_id,
            )
        self.store.save()
        logger.info("State synced", live=len(live_ids), tracked=len(self.store), removed=len(stale))
        return stale

    def check_drift(self) -> list[DriftWarning]:
        """Compare each tracked instance's type with its live type.

        Terminated instances are removed instead of reported. Drift is only
        reported; records are never changed to match.
        """
        findings: list[DriftWarning] = []
        removed = False

        for record in self.store:
            if not record.instance_id:
                continue

            state = self.provider.describe_state(record.instance_id)
            if state is ProviderState.TERMINATED:
                logger.info(
                    "Instance terminated manually, removing from state",
                    name=record.name,
                    instance_id=record.instance_id,
                )
                self.store.remove(record.instance_id)
                removed = True
                continue

            actual = self.provider.describe_type(record.instance_id)
            if actual == UNREACHABLE:
                logger.warning(
                    "Could not read live instance type, skipping drift check",
                    name=record.name,
                    instance_id=record.instance_id,
                )
                continue

            if actual != record.instance_type:
                finding = DriftWarning(
                    name=record.name,
                    instance_id=record.instance_id,
                    desired=record.instance_type,
                    actual=actual,
                )
                logger.warning(
                    "Drift detected",
                    name=record.name,
                    instance_id=record.instance_id,
                    desired=record.instance_type,
                    actual=actual,
                )
                findings.append(finding)

        if removed:
            self.store.save()
        return findings
