"""Configuration management for EC2 Reconciler."""

from pathlib import Path

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="EC2STATE_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    # State settings
    state_file: Path = Field(
        default=Path("ec2_state.json"), description="Local state file tracking instances"
    )

    # AWS settings
    aws_region: str | None = Field(default=None, description="AWS region for the EC2 client")
    aws_profile: str | None = Field(default=None, description="AWS credentials profile")

    # Wait loop settings
    poll_interval_seconds: float = Field(
        default=10.0, description="Sleep between polls while waiting for running"
    )
    terminate_poll_interval_seconds: float = Field(
        default=5.0, description="Sleep between polls while waiting for termination"
    )
    wait_timeout_seconds: float | None = Field(
        default=None, description="Upper bound on wait loops; unset means wait forever"
    )

    # Default instance parameters
    ami_id: str | None = Field(default=None, description="AMI used for new instances")
    instance_type: str = Field(default="t3.micro", description="EC2 instance type")
    key_name: str | None = Field(default=None, description="EC2 key pair name")
    subnet_id: str | None = Field(default=None, description="Subnet to launch into")
    security_group_ids: str = Field(
        default="", description="Comma-separated security group ids"
    )
    instance_name: str | None = Field(default=None, description="Logical instance name")

    # Logging settings
    log_level: str = Field(default="INFO", description="Minimum log level")
    log_json: bool = Field(default=False, description="Render logs as JSON lines")

    @property
    def security_group_list(self) -> list[str]:
        """Security group ids as an ordered list, blanks dropped."""
        return parse_security_group_ids(self.security_group_ids)


def parse_security_group_ids(raw: str | None) -> list[str]:
    """Split a comma-separated id string, e.g. ``"sg-1, sg-2,"`` -> ``["sg-1", "sg-2"]``."""
    if not raw:
        return []
    return [group.strip() for group in raw.split(",") if group.strip()]


def get_settings() -> Settings:
    """Get application settings.

    Raises:
        ConfigError: If an EC2STATE_* variable or .env entry is invalid
    """
    try:
        return Settings()
    except ValidationError as e:
        problems = "; ".join(
            f"EC2STATE_{'.'.join(str(part) for part in error['loc']).upper()}: {error['msg']}"
            for error in e.errors()
        )
        raise ConfigError(f"Invalid settings: {problems}") from e
