"""Exception types for EC2 Reconciler."""


class ReconcilerError(Exception):
    """Base class for all errors raised by ec2_reconciler."""


class ConfigError(ReconcilerError):
    """A required parameter is missing or invalid.

    Raised before any provider call is made.
    """


class ProviderError(ReconcilerError):
    """The provider rejected a request.

    Attributes:
        operation: Provider operation that failed (e.g. ``RunInstances``)
        code: Provider error code, if one was returned
        msg: Provider's error message
    """

    def __init__(self, msg: str, operation: str | None = None, code: str | None = None) -> None:
        super().__init__(msg)
        self.msg = msg
        self.operation = operation
        self.code = code

    def __str__(self) -> str:
        if self.operation and self.code:
            return f"{self.operation} failed ({self.code}): {self.msg}"
        if self.operation:
            return f"{self.operation} failed: {self.msg}"
        return self.msg


class ProvisionError(ReconcilerError):
    """Creation was acknowledged but no usable instance id came back."""


class WaitTimeoutError(ReconcilerError, TimeoutError):
    """A wait loop exceeded its deadline."""

    def __init__(self, instance_id: str, target: str, timeout: float) -> None:
        super().__init__(
            f"Instance {instance_id} did not reach '{target}' within {timeout:g}s"
        )
        self.instance_id = instance_id
        self.target = target
        self.timeout = timeout


class WaitCancelledError(ReconcilerError):
    """A wait loop was cancelled through its cancel token."""

    def __init__(self, instance_id: str, target: str) -> None:
        super().__init__(f"Wait for instance {instance_id} to reach '{target}' was cancelled")
        self.instance_id = instance_id
        self.target = target
