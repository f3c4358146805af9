"""
Configuration module for the GxP e-log.

Provides centralized configuration management for persistence, identity,
electronic signatures and the audit trail.
"""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union, get_args, get_origin

import pytz
import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_SUBMIT_REASONS = [
    "I am the author of this entry",
    "I am responsible for this entry",
    "I have verified the recorded data",
]

DEFAULT_APPROVE_REASONS = [
    "I am approving this entry",
    "I have reviewed this entry",
    "I have verified the recorded data",
]


class ChecksumAlgorithm(str, Enum):
    """Supported checksum algorithms for audit record integrity."""

    SHA256 = "sha256"
    SHA512 = "sha512"


class ELogConfig(BaseModel):
    """Central configuration for the electronic logbook.

    Configuration can be loaded from environment variables, a JSON or YAML
    file, or set programmatically.

    Configuration Sources (in order of precedence):
        1. Programmatic settings (highest priority)
        2. Environment variables (ELOG_ prefix)
        3. Configuration files (JSON or YAML)
        4. Default values (lowest priority)

    Example:
        >>> config = ELogConfig(
        ...     application_name="Fill-Finish Line 3",
        ...     database_url="postgresql://elog@db/elog",
        ... )

        Loading from environment:

        >>> import os
        >>> os.environ['ELOG_DATABASE_URL'] = 'sqlite:///./elog.db'
        >>> config = ELogConfig.from_env()

    Note:
        The signing reasons and approver roles are part of the validated
        state of the system. Changing them in production requires change
        control.
    """

    # General settings
    application_name: str = Field(
        "GxP E-Log", description="Name of the application for audit trails"
    )
    environment: str = Field(
        "production", description="Environment (development, staging, production)"
    )
    timezone: str = Field(
        "UTC", description="Site timezone used for PM due-date calculations"
    )
    log_level: str = Field("INFO", description="Logging level for the CLI")

    # Persistence
    database_url: str = Field(
        "sqlite:///./elog.db", description="SQLAlchemy database URL"
    )
    echo_sql: bool = Field(False, description="Echo SQL statements")

    # Identity
    password_scheme: str = Field(
        "pbkdf2_sha256", description="passlib hashing scheme for passwords"
    )
    password_min_length: int = Field(8, description="Minimum password length", ge=4)
    seed_admin: bool = Field(
        True, description="Create the default Admin account on first start"
    )
    seed_admin_username: str = Field("admin", description="Default Admin username")
    seed_admin_password: str = Field("admin", description="Default Admin password")
    user_admin_roles: List[str] = Field(
        default_factory=lambda: ["Admin"],
        description="Roles allowed to create and update users",
    )

    # Electronic signatures
    approver_roles: List[str] = Field(
        default_factory=lambda: ["QA", "Admin"],
        description="Roles allowed to approve log entries",
    )
    submit_reasons: List[str] = Field(
        default_factory=lambda: list(DEFAULT_SUBMIT_REASONS),
        description="Canonical signing reasons for submission",
    )
    approve_reasons: List[str] = Field(
        default_factory=lambda: list(DEFAULT_APPROVE_REASONS),
        description="Canonical signing reasons for approval",
    )

    # Log entries
    log_id_prefix: str = Field("LOG", description="Prefix of log entry business keys")

    # Audit trail
    audit_default_limit: int = Field(
        100, description="Default number of audit records returned", gt=0
    )
    audit_max_limit: int = Field(
        1000, description="Maximum number of audit records returned", gt=0
    )
    checksum_algorithm: ChecksumAlgorithm = Field(
        ChecksumAlgorithm.SHA256, description="Algorithm for audit record checksums"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid."""
        valid_environments = {"development", "staging", "production", "validation"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Environment must be one of: {', '.join(sorted(valid_environments))}"
            )
        return v.lower()

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Ensure the timezone is a known IANA name."""
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(
                f"Log level must be one of: {', '.join(sorted(valid_levels))}"
            )
        return v.upper()

    @field_validator("submit_reasons", "approve_reasons")
    @classmethod
    def validate_reasons(cls, v: List[str]) -> List[str]:
        """Signing reasons must be non-empty, distinct strings."""
        cleaned = [reason.strip() for reason in v if reason and reason.strip()]
        if not cleaned:
            raise ValueError("At least one canonical signing reason is required")
        return list(dict.fromkeys(cleaned))

    @field_validator("approver_roles", "user_admin_roles")
    @classmethod
    def validate_roles(cls, v: List[str]) -> List[str]:
        from .access_control import Role

        valid_roles = {role.value for role in Role}
        unknown = [role for role in v if role not in valid_roles]
        if unknown:
            raise ValueError(f"Unknown roles: {', '.join(unknown)}")
        if not v:
            raise ValueError("At least one role is required")
        return v

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_env(cls, prefix: str = "ELOG_") -> "ELogConfig":
        """
        Load configuration from environment variables.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Configuration instance
        """
        config_dict: Dict[str, Any] = {}

        for field_name, field_info in cls.model_fields.items():
            env_var = f"{prefix}{field_name.upper()}"
            if env_var not in os.environ:
                continue
            value = os.environ[env_var]

            field_type = field_info.annotation

            # Handle Optional types
            if get_origin(field_type) is Union:
                args = get_args(field_type)
                field_type = next((arg for arg in args if arg is not type(None)), str)

            if field_type is bool:
                config_dict[field_name] = value.lower() in ("true", "1", "yes", "on")
            elif get_origin(field_type) is list:
                config_dict[field_name] = [
                    item.strip() for item in value.split(",") if item.strip()
                ]
            else:
                # pydantic coerces ints and enums from strings
                config_dict[field_name] = value

        return cls.model_validate(config_dict)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ELogConfig":
        """
        Load configuration from a JSON or YAML file.

        Args:
            path: Path to a ``.json``, ``.yaml`` or ``.yml`` file

        Returns:
            Configuration instance
        """
        file_path = Path(path)
        text = file_path.read_text(encoding="utf-8")

        if file_path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)

        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {file_path} must contain a mapping")

        return cls.model_validate(data)


# Global configuration instance
_config: Optional[ELogConfig] = None


def get_config() -> ELogConfig:
    """
    Get the global configuration instance.

    Returns:
        Global configuration
    """
    global _config

    if _config is None:
        _config = ELogConfig.from_env()

    return _config


def set_config(config: Optional[ELogConfig]) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Configuration to set, or None to reload from the environment
    """
    global _config
    _config = config


def configure(**kwargs: Any) -> ELogConfig:
    """
    Configure the e-log with keyword arguments.

    Args:
        **kwargs: Configuration parameters

    Returns:
        Updated configuration
    """
    global _config

    if _config is None:
        _config = ELogConfig(**kwargs)
    else:
        config_dict = _config.to_dict()
        config_dict.update(kwargs)
        _config = ELogConfig(**config_dict)

    return _config
