"""Per-operation wait and retry policies.

Defaults come from EngineConfig. An optional YAML file can override them
per operation, for example:

    adopt:
      timeoutSeconds: 300
      pendingStates: [ADOPTING, PENDING, PROVISIONING, UPGRADING, HEARTBEAT_MISSED]
    forget:
      notFoundGrace: 5
      convergedStates: [PENDING]
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .config import MAX_POLICIES_FILE_SIZE_BYTES, MAX_WAIT_TIMEOUT_SECONDS
from .states import DeviceState

if TYPE_CHECKING:
    from .config import EngineConfig

logger = logging.getLogger(__name__)


class PolicyLoadError(Exception):
    """Raised when a policies file cannot be loaded or fails validation."""

    pass


# =============================================================================
# Models
# =============================================================================


class OperationPolicy(BaseModel):
    """Wait and retry settings for one operation kind."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    timeout_seconds: Annotated[
        float, Field(gt=0, le=MAX_WAIT_TIMEOUT_SECONDS, alias="timeoutSeconds")
    ]
    pending_states: list[str] = Field(default_factory=list, alias="pendingStates")
    converged_states: list[str] = Field(default_factory=list, alias="convergedStates")
    poll_interval_seconds: Annotated[float, Field(gt=0, le=60, alias="pollIntervalSeconds")] = 3.0
    not_found_grace: Annotated[int, Field(ge=0, le=100, alias="notFoundGrace")] = 30
    retry_budget_seconds: Annotated[float, Field(ge=0, alias="retryBudgetSeconds")] = 60.0
    retry_backoff_seconds: Annotated[float, Field(ge=0, alias="retryBackoffSeconds")] = 2.0

    @field_validator("pending_states", "converged_states")
    @classmethod
    def validate_state_names(cls, v: list[str]) -> list[str]:
        names = [name.strip().upper() for name in v]
        unknown = [name for name in names if name not in DeviceState.__members__]
        if unknown:
            valid = sorted(DeviceState.__members__)
            raise ValueError(f"unknown device states {unknown}, valid states are {valid}")
        return names

    @model_validator(mode="after")
    def validate_converged_not_pending(self) -> OperationPolicy:
        overlap = sorted(set(self.pending_states) & set(self.converged_states))
        if overlap:
            raise ValueError(f"states {overlap} cannot be both pending and converged")
        return self

    @property
    def pending(self) -> frozenset[DeviceState]:
        return frozenset(DeviceState[name] for name in self.pending_states)

    @property
    def converged(self) -> frozenset[DeviceState]:
        return frozenset(DeviceState[name] for name in self.converged_states)


class TransitionPolicies(BaseModel):
    """Policies for every operation the orchestrator supports."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    adopt: OperationPolicy
    update: OperationPolicy
    forget: OperationPolicy

    @field_validator("adopt", "update")
    @classmethod
    def validate_connected_not_pending(cls, v: OperationPolicy) -> OperationPolicy:
        # CONNECTED is the target of adopt and update
        if "CONNECTED" in v.pending_states:
            raise ValueError("CONNECTED is the target state and cannot be listed as pending")
        return v

    @field_validator("forget")
    @classmethod
    def validate_absence_confirmable(cls, v: OperationPolicy) -> OperationPolicy:
        # Absence is confirmed after max(grace, 1) consecutive not-found reads
        needed = max(v.not_found_grace, 1) * v.poll_interval_seconds
        if needed >= v.timeout_seconds:
            raise ValueError(
                f"notFoundGrace x pollIntervalSeconds ({needed:g}s) must be less than "
                f"timeoutSeconds ({v.timeout_seconds:g}s)"
            )
        return v

    def for_operation(self, name: str) -> OperationPolicy:
        """Get the policy for an operation by its name (adopt, update, forget)."""
        try:
            return getattr(self, name)
        except AttributeError as e:
            raise ValueError(f"No policy for operation '{name}'") from e

    @classmethod
    def from_config(cls, config: EngineConfig) -> TransitionPolicies:
        """Build the default policies from engine configuration."""
        common: dict[str, Any] = {
            "poll_interval_seconds": config.poll_interval_seconds,
            "not_found_grace": config.not_found_grace,
            "retry_budget_seconds": config.mutate_retry_budget_seconds,
            "retry_backoff_seconds": config.retry_backoff_seconds,
        }
        return cls(
            adopt=OperationPolicy(
                timeout_seconds=config.adopt_timeout_seconds,
                pending_states=["ADOPTING", "PENDING", "PROVISIONING", "UPGRADING"],
                **common,
            ),
            update=OperationPolicy(
                timeout_seconds=config.update_timeout_seconds,
                pending_states=["ADOPTING", "PROVISIONING"],
                **common,
            ),
            forget=OperationPolicy(
                timeout_seconds=config.forget_timeout_seconds,
                pending_states=["CONNECTED", "DELETING"],
                # A forgotten device may come back as pending adoption
                converged_states=["PENDING"],
                **{**common, "not_found_grace": config.forget_absence_grace},
            ),
        )


# =============================================================================
# Loading
# =============================================================================


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_policies(config: EngineConfig, path: Path | None = None) -> TransitionPolicies:
    """Load policies, applying YAML overrides on top of the config defaults.

    Args:
        config: Engine configuration providing the defaults.
        path: Policies YAML file. Defaults to config.policies_file.

    Returns:
        Validated TransitionPolicies.

    Raises:
        PolicyLoadError: If the file cannot be read or fails validation.
    """
    defaults = TransitionPolicies.from_config(config)
    policies_path = path or config.policies_file
    if policies_path is None:
        return defaults

    if not policies_path.exists():
        raise PolicyLoadError(f"Policies file not found: {policies_path}")

    # Check file size before reading
    try:
        file_size = policies_path.stat().st_size
    except OSError as e:
        raise PolicyLoadError(f"Failed to stat policies file {policies_path}: {e}") from e

    if file_size > MAX_POLICIES_FILE_SIZE_BYTES:
        raise PolicyLoadError(
            f"Policies file exceeds maximum size of {MAX_POLICIES_FILE_SIZE_BYTES} bytes: "
            f"{policies_path}"
        )

    try:
        content = policies_path.read_text(encoding="utf-8")
    except OSError as e:
        raise PolicyLoadError(f"Failed to read policies file {policies_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise PolicyLoadError(f"Invalid YAML in {policies_path}: {e}") from e

    if raw_data is None:
        return defaults
    if not isinstance(raw_data, dict):
        raise PolicyLoadError(f"Policies file must contain a YAML mapping: {policies_path}")

    base = defaults.model_dump(by_alias=True)
    try:
        policies = TransitionPolicies.model_validate(_merge(base, raw_data))
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise PolicyLoadError(f"Validation failed for {policies_path}:\n{error_list}") from e

    logger.info("Loaded transition policies from %s", policies_path)
    return policies
