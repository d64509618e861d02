"""Pydantic configuration models for upnpigd.

Provides validated configuration sections for discovery, control calls
and logging.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator

from upnpigd.ssdp import UPNP_IGD_DEVICE_TYPE


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DiscoveryConfig(BaseModel):
    """SSDP discovery configuration."""

    timeout_ms: int = Field(
        default=1000,
        gt=0,
        le=60000,
        description="SSDP listening window in milliseconds",
    )
    search_target: str = Field(
        default=UPNP_IGD_DEVICE_TYPE,
        description="ST header sent with M-SEARCH",
    )
    search_all_fallback: bool = Field(
        default=False,
        description="Search again with ssdp:all when the IGD search finds nothing",
    )
    source_address: str | None = Field(
        default=None,
        description="Local IPv4 address to send M-SEARCH from (None for any)",
    )
    reuse_incoming_port: bool = Field(
        default=True,
        description="Send from the SSDP port so replies reach firewalled hosts",
    )
    max_responses: int | None = Field(
        default=None,
        ge=1,
        description="Stop listening after this many devices answered (None waits the full window)",
    )
    autodiscover: bool = Field(
        default=True,
        description="Start discovery when a control point is entered",
    )

    @field_validator("source_address")
    @classmethod
    def _empty_source_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class ControlConfig(BaseModel):
    """SOAP control configuration."""

    http_timeout: float = Field(
        default=5.0,
        gt=0.0,
        le=120.0,
        description="Timeout for each HTTP request to the gateway in seconds",
    )
    default_description: str = Field(
        default="upnpigd",
        description="Port mapping description used when none is given",
    )


class ObservabilityConfig(BaseModel):
    """Logging configuration."""

    log_level: LogLevel = Field(
        default=LogLevel.WARNING,
        description="Log level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path",
    )
    structured_logging: bool = Field(
        default=False,
        description="Emit JSON log lines",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Tag log records with a correlation ID",
    )


class Config(BaseModel):
    """Main configuration model."""

    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    control: ControlConfig = Field(default_factory=ControlConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
