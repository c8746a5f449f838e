"""
Configuration schema and validation for the capital ledger.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class CapitalConfig(BaseModel):
    """Boot-time capital configuration schema."""

    default_capital_usd: float = Field(
        default=10000.0,
        gt=0,
        description="Starting capital when none is supplied and no prior run exists",
    )


class LedgerConfig(BaseModel):
    """Portfolio ledger configuration schema."""

    invariant_tolerance_usd: float = Field(
        default=0.01, gt=0, le=1.0, description="Tolerance for invariant checks"
    )
    dev_mode: bool = Field(
        default=False,
        description="Raise on invariant violations instead of logging them",
    )
    verbose_logging: bool = Field(default=False, description="Log every update")
    tiers: list[str] = Field(
        default_factory=lambda: ["A", "B", "C", "D"],
        description="Closed set of position tiers",
    )

    @field_validator("tiers")
    @classmethod
    def validate_tiers(cls, v):
        """Validate the tier set is non-empty and unique."""
        if not v:
            raise ValueError("At least one tier must be configured")
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate tiers configured: {v}")
        return v


class EpochConfig(BaseModel):
    """Run epoch configuration schema."""

    phantom_equity_epsilon_usd: float = Field(
        default=1.0, ge=0, description="Slack allowed by the phantom equity check"
    )


class ReconciliationConfig(BaseModel):
    """Startup and PnL reconciliation configuration schema."""

    grace_period_sec: float = Field(
        default=300.0,
        ge=0,
        description="Window after startup reconciliation during which drift is not corrected",
    )
    drift_threshold_usd: float = Field(
        default=0.01, ge=0, description="Realized PnL drift that triggers correction"
    )
    audit_interval_sec: float = Field(
        default=300.0, gt=0, description="Cadence of the periodic PnL audit"
    )


class DatabaseConfig(BaseModel):
    """Database configuration schema."""

    path: str = Field(
        default="data/capital_ledger.db", description="SQLite database path"
    )


class LoggingConfig(BaseModel):
    """Logging configuration schema."""

    level: str = Field(default="INFO", description="Log level")
    file: Optional[str] = Field(default=None, description="Log file path")
    rotation: str = Field(default="1 day", description="Log rotation period")
    retention: str = Field(default="1 week", description="Log retention period")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class LedgerAppConfig(BaseModel):
    """Main configuration schema."""

    capital: CapitalConfig = Field(default_factory=CapitalConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    epoch: EpochConfig = Field(default_factory=EpochConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def validate_config_consistency(self):
        """Validate overall configuration consistency."""
        if self.reconciliation.drift_threshold_usd < self.ledger.invariant_tolerance_usd:
            raise ValueError(
                "reconciliation.drift_threshold_usd must not be tighter than "
                "ledger.invariant_tolerance_usd"
            )
        return self

    model_config = {
        "validate_assignment": True,
        "extra": "allow",
    }


def validate_config_dict(config_dict: dict[str, Any]) -> LedgerAppConfig:
    """
    Validate a configuration dictionary against the schema.

    Args:
        config_dict: Configuration dictionary to validate

    Returns:
        Validated configuration object

    Raises:
        ValueError: If configuration is invalid
    """
    try:
        return LedgerAppConfig(**config_dict)
    except Exception as e:
        if hasattr(e, "errors"):
            error_messages = []
            for error in e.errors():
                field_path = " -> ".join(str(x) for x in error["loc"])
                error_messages.append(f"  • {field_path}: {error['msg']}")

            raise ValueError(
                "Configuration validation failed:\n" + "\n".join(error_messages)
            ) from e
        raise ValueError(f"Configuration validation failed: {e}") from e

