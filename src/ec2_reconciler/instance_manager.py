"""Idempotent create, wait and delete workflows for tracked instances."""

import threading
import time

import structlog

from .ec2_client import EC2Client
from .errors import ProviderError, WaitCancelledError, WaitTimeoutError
from .models import UNREACHABLE, InstanceRecord, InstanceSpec, InstanceStatus, ProviderState
from .state_store import StateStore

logger = structlog.get_logger()


class InstanceManager:
    """Creates, adopts and deletes instances, keeping the state file current.

    Every step persists its own completed sub-state: a new record is saved
    before waiting, and removal is saved only after termination is
    confirmed. Nothing is rolled back on failure.
    """

    def __init__(
        self,
        provider: EC2Client,
        store: StateStore,
        poll_interval: float = 10.0,
        terminate_poll_interval: float = 5.0,
        timeout: float | None = None,
    ) -> None:
        """Initialize instance manager.

        Args:
            provider: EC2 client
            store: Loaded state store shared with the reconciler
            poll_interval: Seconds between polls while waiting for running
            terminate_poll_interval: Seconds between polls while waiting for termination
            timeout: Default deadline for wait loops; None waits forever
        """
        self.provider = provider
        self.store = store
        self.poll_interval = poll_interval
        self.terminate_poll_interval = terminate_poll_interval
        self.timeout = timeout

    def create_or_adopt(
        self,
        spec: InstanceSpec,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> InstanceRecord:
        """Ensure exactly one running instance exists for ``spec.name``.

        A tracked, still-live instance is adopted rather than recreated, even
        if its type has drifted. A tracked instance that has terminated is
        dropped and replaced.

        Raises:
            ConfigError: If the spec is incomplete (before any provider call)
            ProviderError: If EC2 rejects a request
            ProvisionError: If EC2 returns no instance id
            WaitTimeoutError: If the instance is not running before the deadline
        """
        spec.validate()

        existing = self.store.find_by_name(spec.name)
        if existing is not None and existing.instance_id:
            instance_id = existing.instance_id
            state = self.provider.describe_state(instance_id)

            if state is ProviderState.TERMINATED:
                logger.info(
                    "Previous instance was terminated, removing from state",
                    name=spec.name,
                    instance_id=instance_id,
                )
                self.store.remove(instance_id)
                self.store.save()
            else:
                actual = self.provider.describe_type(instance_id)
                if actual != UNREACHABLE and actual != spec.instance_type:
                    logger.warning(
                        "Instance exists but type differs, consider modifying or recreating",
                        name=spec.name,
                        instance_id=instance_id,
                        desired=spec.instance_type,
                        actual=actual,
                    )
                logger.info(
                    "Instance already exists, skipping creation",
                    name=spec.name,
                    instance_id=instance_id,
                    state=state.value,
                )
                record = self.wait_until_running(instance_id, timeout=timeout, cancel=cancel)
                return record or existing

        instance_id = self.provider.create_instance(spec)
        record = InstanceRecord.from_spec(spec, instance_id, status=InstanceStatus.PENDING)
        self.store.upsert(record)
        self.store.save()

        return self.wait_until_running(instance_id, timeout=timeout, cancel=cancel) or record

    def wait_until_running(
        self,
        instance_id: str,
        poll_interval: float | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> InstanceRecord | None:
        """Block until the instance is running, then record it.

        Returns:
            The updated record, or None if the instance is not tracked

        Raises:
            ProviderError: If the instance terminates while waiting
            WaitTimeoutError: If the deadline passes first
            WaitCancelledError: If ``cancel`` is set
        """
        logger.info("Waiting for instance to be running", instance_id=instance_id)
        self._wait_for(
            instance_id,
            ProviderState.RUNNING,
            self.poll_interval if poll_interval is None else poll_interval,
            timeout,
            cancel,
        )
        logger.info("Instance is now running", instance_id=instance_id)

        record = self.store.find_by_id(instance_id)
        if record is not None:
            record.status = InstanceStatus.RUNNING
            self.store.save()
        return record

    def delete(
        self,
        name: str,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> bool:
        """Terminate the named instance and drop it from state.

        Deleting something that is not tracked is a successful no-op.

        Returns:
            True if an instance was terminated, False if the name was not found
        """
        record = self.store.find_by_name(name)
        if record is None or not record.instance_id:
            logger.info("No instance found in state", name=name)
            return False

        instance_id = record.instance_id
        logger.info("Terminating instance", name=name, instance_id=instance_id)
        self.provider.terminate(instance_id)
        self._wait_for(
            instance_id,
            ProviderState.TERMINATED,
            self.terminate_poll_interval,
            timeout,
            cancel,
        )

        self.store.remove(instance_id)
        self.store.save()
        logger.info("Instance terminated", name=name, instance_id=instance_id)
        return True

    def _wait_for(
        self,
        instance_id: str,
        target: ProviderState,
        interval: float,
        timeout: float | None,
        cancel: threading.Event | None,
    ) -> None:
        """Poll describe_state until it reports ``target``.

        A set ``cancel`` token stops the loop before the next poll and
        interrupts the sleep between polls.
        """
        if timeout is None:
            timeout = self.timeout
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            if cancel is not None and cancel.is_set():
                raise WaitCancelledError(instance_id, target.value)

            state = self.provider.describe_state(instance_id)
            if state is target:
                return
            if target is ProviderState.RUNNING and state is ProviderState.TERMINATED:
                raise ProviderError(
                    f"Instance {instance_id} terminated while waiting for it to run",
                    operation="DescribeInstances",
                )
            if deadline is not None and time.monotonic() >= deadline:
                raise WaitTimeoutError(instance_id, target.value, timeout or 0)

            logger.debug(
                "Instance not ready yet",
                instance_id=instance_id,
                state=state.value,
                target=target.value,
            )
            if cancel is None:
                time.sleep(interval)
            elif cancel.wait(interval):
                raise WaitCancelledError(instance_id, target.value)
