"""Models for the freshness configuration store"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from freshwatch.models.freshness import RefreshPriority


class FreshnessSettings(BaseModel):
    """Typed view over the freshness_config key/value table"""

    model_config = {"validate_assignment": True, "extra": "forbid"}

    default_refresh_interval_hours: int = Field(
        default=24,
        ge=1,
        le=8760,
        description="Default refresh interval in hours",
        json_schema_extra={"category": "scheduling"},
    )
    max_concurrent_refreshes: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Maximum concurrent refresh operations",
        json_schema_extra={"category": "performance"},
    )
    batch_size_limit: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum batch size for bulk operations",
        json_schema_extra={"category": "performance"},
    )
    staleness_threshold_hours: int = Field(
        default=48,
        ge=1,
        le=8760,
        description="Hours after which content is considered stale",
        json_schema_extra={"category": "freshness"},
    )
    expiry_threshold_hours: int = Field(
        default=168,
        ge=1,
        le=17520,
        description="Hours after which content is considered expired (7 days)",
        json_schema_extra={"category": "freshness"},
    )
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Maximum attempts for failed refreshes",
        json_schema_extra={"category": "reliability"},
    )
    retry_backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Backoff multiplier for retry delays",
        json_schema_extra={"category": "reliability"},
    )
    change_detection_sensitivity: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sensitivity threshold for change detection (0-1)",
        json_schema_extra={"category": "detection"},
    )
    enable_auto_refresh: bool = Field(
        default=True,
        description="Enable automatic refresh scheduling",
        json_schema_extra={"category": "scheduling"},
    )
    enable_batch_processing: bool = Field(
        default=True,
        description="Enable batch processing for efficiency",
        json_schema_extra={"category": "performance"},
    )
    priority_weights: dict[str, float] = Field(
        default_factory=lambda: {"low": 0.5, "normal": 1.0, "high": 1.5, "critical": 2.0},
        description="Priority weights for scheduling",
        json_schema_extra={"category": "scheduling"},
    )

    @field_validator("priority_weights")
    @classmethod
    def validate_priority_weights(cls, v: dict[str, float]) -> dict[str, float]:
        """Require a positive weight for every priority level"""
        expected = {p.value for p in RefreshPriority}
        missing = expected - set(v)
        if missing:
            raise ValueError(f"Missing priority weights: {sorted(missing)}")
        unknown = set(v) - expected
        if unknown:
            raise ValueError(f"Unknown priorities: {sorted(unknown)}")
        if any(weight <= 0 for weight in v.values()):
            raise ValueError("Priority weights must be positive")
        return v

    def weight_for(self, priority: RefreshPriority | str) -> float:
        """Scheduling weight for a priority level"""
        return self.priority_weights[RefreshPriority(priority).value]


class ConfigEntry(BaseModel):
    """One stored configuration row"""

    config_key: str
    config_value: Any
    config_type: str = Field(description="string, number, boolean, object or array")
    description: str | None = None
    category: str = "general"
    is_system: bool = False
    validation_schema: dict[str, Any] | None = None
    updated_at: datetime
