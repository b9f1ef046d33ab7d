"""Configuration management for the Splurge Field Cipher system."""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from splurge_field_cipher.exceptions import ConfigurationError
from splurge_field_cipher.gate import ConflictPolicy


class FailureTolerance(str, Enum):
    """When a sweep with per-record failures may still commit the new key."""

    STRICT = "strict"  # commit only when every record migrated
    BEST_EFFORT = "best_effort"  # commit unless cancelled; failed records keep the old stamp


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class FieldCipherConfig:
    """Configuration for FieldCipher instances."""

    encryption_enabled: bool = True
    entity_scan_scope: Optional[str] = None  # required only by rotation

    # Gate settings
    maintenance_block_timeout: Optional[float] = None  # seconds, None waits indefinitely
    drain_timeout: Optional[float] = None  # seconds, None waits indefinitely
    rotation_conflict_policy: ConflictPolicy = ConflictPolicy.REJECT

    # Rotation settings
    rotation_failure_tolerance: FailureTolerance = FailureTolerance.STRICT

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        try:
            self.rotation_failure_tolerance = FailureTolerance(self.rotation_failure_tolerance)
        except ValueError as e:
            raise ConfigurationError(f"Invalid rotation_failure_tolerance: {e}") from e
        try:
            self.rotation_conflict_policy = ConflictPolicy(self.rotation_conflict_policy)
        except ValueError as e:
            raise ConfigurationError(f"Invalid rotation_conflict_policy: {e}") from e

        if self.maintenance_block_timeout is not None and self.maintenance_block_timeout < 0:
            raise ConfigurationError("maintenance_block_timeout must be non-negative")
        if self.drain_timeout is not None and self.drain_timeout < 0:
            raise ConfigurationError("drain_timeout must be non-negative")
        if self.entity_scan_scope is not None and not self.entity_scan_scope.strip():
            raise ConfigurationError("entity_scan_scope cannot be blank")

    def require_scan_scope(self) -> str:
        """Return the scan scope or fail when rotation has nothing to enumerate.

        Raises:
            ConfigurationError: If entity_scan_scope is not configured
        """
        if self.entity_scan_scope is None:
            raise ConfigurationError("entity_scan_scope is required for key rotation")
        return self.entity_scan_scope

    @classmethod
    def from_environment(
        cls,
        *,
        prefix: str = "SFC_",
        environ: Optional[Mapping[str, str]] = None
    ) -> "FieldCipherConfig":
        """Build configuration from environment variables.

        Reads ``<prefix>ENCRYPTION_ENABLED``, ``<prefix>ENTITY_SCAN_SCOPE``,
        ``<prefix>MAINTENANCE_BLOCK_TIMEOUT``, ``<prefix>DRAIN_TIMEOUT``,
        ``<prefix>ROTATION_FAILURE_TOLERANCE`` and
        ``<prefix>ROTATION_CONFLICT_POLICY``. Unset variables keep defaults.

        Raises:
            ConfigurationError: If a variable cannot be parsed
        """
        env = os.environ if environ is None else environ
        kwargs = {}

        enabled = env.get(f"{prefix}ENCRYPTION_ENABLED")
        if enabled is not None:
            kwargs["encryption_enabled"] = _parse_bool(f"{prefix}ENCRYPTION_ENABLED", enabled)

        scope = env.get(f"{prefix}ENTITY_SCAN_SCOPE")
        if scope is not None:
            kwargs["entity_scan_scope"] = scope

        for name in ("maintenance_block_timeout", "drain_timeout"):
            raw = env.get(f"{prefix}{name.upper()}")
            if raw is not None:
                kwargs[name] = _parse_seconds(f"{prefix}{name.upper()}", raw)

        tolerance = env.get(f"{prefix}ROTATION_FAILURE_TOLERANCE")
        if tolerance is not None:
            kwargs["rotation_failure_tolerance"] = tolerance.strip().lower()

        policy = env.get(f"{prefix}ROTATION_CONFLICT_POLICY")
        if policy is not None:
            kwargs["rotation_conflict_policy"] = policy.strip().lower()

        return cls(**kwargs)


def _parse_bool(name: str, value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _parse_seconds(name: str, value: str) -> Optional[float]:
    if value.strip().lower() in ("", "none"):
        return None
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number of seconds, got {value!r}") from e


# Default configuration instance
DEFAULT_CONFIG = FieldCipherConfig()
