"""Single-instance EC2 provisioning with a local, reconciled state file."""

__version__ = "0.1.0"
