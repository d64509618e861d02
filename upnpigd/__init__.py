"""upnpigd - UPnP Internet Gateway Device client.

Discovers the NAT gateway over SSDP, reads its public address and link
statistics, and manages port mappings through SOAP control calls.
"""

from __future__ import annotations

from upnpigd.control_point import ControlPoint, StatusInfo
from upnpigd.description import ControlSession
from upnpigd.error_catalog import describe
from upnpigd.exceptions import (
    ConfigurationError,
    DiscoveryError,
    IGDError,
    InvalidArgumentError,
    NoDeviceFoundError,
    NotDiscoveredError,
    NoValidIGDError,
    SoapFault,
    StatisticUnavailableError,
    TransportError,
)
from upnpigd.port_mapping import PortMapping, Protocol
from upnpigd.ssdp import GatewayDevice

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "ControlPoint",
    "ControlSession",
    "DiscoveryError",
    "GatewayDevice",
    "IGDError",
    "InvalidArgumentError",
    "NoDeviceFoundError",
    "NoValidIGDError",
    "NotDiscoveredError",
    "PortMapping",
    "Protocol",
    "SoapFault",
    "StatisticUnavailableError",
    "StatusInfo",
    "TransportError",
    "describe",
]
