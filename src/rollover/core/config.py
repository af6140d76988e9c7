"""Configuration management for Rollover."""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Coordinator and service configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="ROLLOVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service (remote agent)
    host: str = Field("0.0.0.0", description="Service bind host")
    port: int = Field(8800, ge=1, le=65535, description="Service bind port")
    activation_modules_dir: Path = Field(
        Path("/usr/libexec/rollover/activation-scripts"),
        description="Directory holding one executable per activation type",
    )
    lock_manager: Optional[str] = Field(None, description="Process invoked by the lock method")
    unlock_manager: Optional[str] = Field(None, description="Process invoked by the unlock method")
    profiles_dir: Path = Field(
        Path("/nix/var/nix/profiles/rollover"),
        description="Directory holding the target's deployment profiles",
    )
    tmp_dir: Path = Field(Path("/tmp"), description="Scratch directory for exported closures")
    signal_wait_seconds: float = Field(
        30.0,
        gt=0,
        description="How long one signal poll blocks before answering 'pending'",
    )
    signal_retention_seconds: float = Field(
        3600.0,
        gt=0,
        description="How long an emitted signal waits for a collector before it is dropped",
    )
    metrics_enabled: bool = Field(True)

    # Coordinator
    client_interface: str = Field("http", description="Name of the registered RPC transport")
    target_property: str = Field(
        "hostname",
        description="Target property holding the address of its service",
    )
    request_timeout_seconds: float = Field(60.0, gt=0)
    transition_timeout_seconds: Optional[float] = Field(
        None,
        description="Deadline for a whole transition; unset means no deadline",
    )
    mapping_equality: str = Field(
        "identity",
        description="Predicate deciding whether a mapping is unchanged between manifests",
    )

    # Observability
    log_level: str = Field("INFO")
    log_format: str = Field("json")

    @field_validator("mapping_equality")
    @classmethod
    def validate_mapping_equality(cls, v: str) -> str:
        if v not in ("identity", "strict"):
            raise ValueError(f"mapping_equality must be 'identity' or 'strict', got: {v}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError(f"log_format must be 'json' or 'console', got: {v}")
        return v

    @field_validator("transition_timeout_seconds")
    @classmethod
    def validate_transition_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("transition_timeout_seconds must be positive")
        return v
