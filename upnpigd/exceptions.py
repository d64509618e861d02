"""Exception hierarchy for upnpigd.

Every failure raised by the package derives from :class:`IGDError`, so
callers can catch the whole family at once or branch on the concrete kind
to decide between re-validating arguments, re-discovering, or giving up.
"""

from __future__ import annotations

from typing import Any


class IGDError(Exception):
    """Base exception for all upnpigd errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize IGD error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class InvalidArgumentError(IGDError, ValueError):
    """Local argument validation failed, raised before any network I/O."""


class ConfigurationError(IGDError):
    """Configuration validation errors."""


class NotDiscoveredError(IGDError):
    """Operation attempted before a gateway was discovered."""


class DiscoveryError(IGDError):
    """Discovery completed without a usable gateway."""


class NoDeviceFoundError(DiscoveryError):
    """No SSDP response with a device location arrived within the window."""


class NoValidIGDError(DiscoveryError):
    """Devices answered but none exposes the required WAN services."""


class TransportError(IGDError):
    """Network or HTTP level failure talking to the gateway."""


class SoapFault(IGDError):
    """The gateway rejected a SOAP action with a UPnP error code."""

    def __init__(
        self,
        code: int,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize SOAP fault.

        Args:
            code: UPnP error code from the fault's ``errorCode`` element
            message: Human readable text from the error catalog
            details: Extra context (action name, gateway description)

        """
        super().__init__(message, details)
        self.code = code


class StatisticUnavailableError(IGDError):
    """A statistics query returned a negative or malformed value."""
