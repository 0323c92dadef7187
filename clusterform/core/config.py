from enum import Enum
from typing import Any

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from clusterform.core.errors import ConfigurationError
from clusterform.core.retry import RetryPolicy

TOTAL_SLOTS_DEFAULT = 16384


class ExcessReplicaPolicy(Enum):
    """What to do with replica candidates beyond the per-master target."""

    PENDING = "pending"
    OVERPROVISION = "overprovision"


class OrchestratorSettings(BaseSettings):
    """Settings for one orchestration run."""

    model_config = SettingsConfigDict(
        env_prefix="CLUSTERFORM_", env_file=".env", extra="ignore"
    )

    total_slots: int = Field(
        TOTAL_SLOTS_DEFAULT,
        gt=0,
        description="Size of the fixed keyspace; immutable for a cluster's lifetime.",
    )
    min_masters: int = Field(
        1, ge=1, description="Fewest reachable masters a run may plan with."
    )
    target_masters: int | None = Field(
        None,
        ge=1,
        description="Masters to promote unassigned nodes up to (defaults to min_masters).",
    )
    replicas_per_master_target: int = Field(
        0, ge=0, description="Desired replicas per master."
    )
    excess_replica_policy: ExcessReplicaPolicy = Field(
        ExcessReplicaPolicy.PENDING,
        description="Leave surplus replica candidates pending or overprovision them.",
    )
    probe_timeout: float = Field(
        2.0, gt=0, description="Seconds allowed for a single node probe."
    )
    converge_timeout: float = Field(
        30.0, gt=0, description="Seconds allowed for pushes plus convergence polling."
    )
    run_timeout: float = Field(
        60.0, gt=0, description="Deadline for the whole run, all phases included."
    )
    poll_interval: float = Field(
        0.25, gt=0, description="Seconds between convergence polls."
    )
    max_concurrency: int = Field(
        16, ge=1, description="Concurrent probes/pushes against node control planes."
    )
    push_max_attempts: int = Field(
        4, ge=1, description="Attempts per node for a topology push."
    )
    discovery_max_attempts: int = Field(
        3, ge=1, description="Attempts for a registry listing."
    )
    retry_initial_delay: float = Field(0.1, ge=0)
    retry_max_delay: float = Field(2.0, ge=0)
    retry_backoff_multiplier: float = Field(2.0, ge=1.0)
    retry_jitter: float = Field(0.1, ge=0.0, lt=1.0)
    expected_epoch: int | None = Field(
        None,
        ge=0,
        description="Epoch the trigger observed; a higher probed epoch aborts the run.",
    )
    log_level: str = Field("INFO", description="loguru level for the CLI.")

    @model_validator(mode="after")
    def _check_master_bounds(self) -> "OrchestratorSettings":
        if self.target_masters is not None and self.target_masters < self.min_masters:
            raise ValueError("target_masters must be >= min_masters")
        if self.min_masters > self.total_slots:
            raise ValueError("min_masters cannot exceed total_slots")
        return self

    @property
    def desired_masters(self) -> int:
        return self.target_masters or self.min_masters

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.push_max_attempts,
            initial_delay_seconds=self.retry_initial_delay,
            max_delay_seconds=self.retry_max_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
            jitter_factor=self.retry_jitter,
        )

    def discovery_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.discovery_max_attempts,
            initial_delay_seconds=self.retry_initial_delay,
            max_delay_seconds=self.retry_max_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
            jitter_factor=self.retry_jitter,
        )


def load_settings(**overrides: Any) -> OrchestratorSettings:
    """Settings from the environment, ``.env`` and ``overrides``.

    Raises:
        ConfigurationError: when the merged values fail validation.
    """
    try:
        return OrchestratorSettings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
            for error in e.errors()
        )
        raise ConfigurationError(f"invalid settings: {problems}") from e
