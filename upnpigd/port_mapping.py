"""Port mapping value types and argument validation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from upnpigd.exceptions import InvalidArgumentError

MIN_PORT = 1
MAX_PORT = 65535


class Protocol(str, Enum):
    """Transport protocols a port mapping can forward."""

    TCP = "TCP"
    UDP = "UDP"


@dataclass(frozen=True)
class PortMapping:
    """Snapshot of a port mapping as reported by the gateway.

    Not linked to the router rule: deleting the rule does not invalidate
    snapshots that were already returned.
    """

    external_port: int
    internal_port: int
    protocol: str
    internal_client: str
    description: str = ""
    enabled: bool = True
    remote_host: str = ""
    lease_duration: int = 0

    def __str__(self) -> str:
        return (
            f"{self.external_port}->{self.internal_client}:{self.internal_port} "
            f"{self.protocol} for {self.lease_duration} -- {self.description}"
        )


def validate_port(port: Any, name: str = "port") -> int:
    """Check that ``port`` is an integer in [1, 65535].

    Raises:
        InvalidArgumentError: If the value is not an int or is out of range

    """
    # bool is an int subclass but never a meaningful port
    if isinstance(port, bool) or not isinstance(port, int):
        msg = f"{name} must be an integer between {MIN_PORT} and {MAX_PORT}"
        raise InvalidArgumentError(msg, {name: port})
    if not MIN_PORT <= port <= MAX_PORT:
        msg = f"{name} must be an integer between {MIN_PORT} and {MAX_PORT}"
        raise InvalidArgumentError(msg, {name: port})
    return port


def validate_protocol(protocol: Any) -> str:
    """Check that ``protocol`` is exactly ``"TCP"`` or ``"UDP"``.

    Returns:
        The protocol as a plain string

    """
    if isinstance(protocol, Protocol):
        return protocol.value
    if protocol not in (Protocol.TCP.value, Protocol.UDP.value):
        msg = f"Unknown protocol {protocol!r}, only TCP and UDP are valid"
        raise InvalidArgumentError(msg, {"protocol": protocol})
    return str(protocol)


def parse_enabled(value: str) -> bool:
    """Interpret a UPnP boolean (``1``/``0``/``true``/``yes``)."""
    return value.strip().lower() in {"1", "true", "yes"}


def mapping_from_response(
    response: dict[str, str],
    *,
    external_port: int | None = None,
    protocol: str | None = None,
) -> PortMapping:
    """Build a :class:`PortMapping` from a port mapping entry response.

    ``GetSpecificPortMappingEntry`` does not echo the external port and
    protocol back, so callers pass them in.

    Raises:
        ValueError: If ports are missing, non-numeric or out of range, or
            the protocol is neither TCP nor UDP

    """
    ext = (
        external_port
        if external_port is not None
        else int(response.get("NewExternalPort", "").strip())
    )
    internal = int(response.get("NewInternalPort", "").strip())
    for value in (ext, internal):
        if not MIN_PORT <= value <= MAX_PORT:
            msg = f"Port out of range in gateway response: {value}"
            raise ValueError(msg)

    proto = protocol if protocol is not None else response.get("NewProtocol", "")
    proto = proto.strip().upper()
    if proto not in (Protocol.TCP.value, Protocol.UDP.value):
        msg = f"Unknown protocol in gateway response: {proto!r}"
        raise ValueError(msg)

    try:
        lease = int(response.get("NewLeaseDuration", "0").strip() or "0")
    except ValueError:
        lease = 0

    return PortMapping(
        external_port=ext,
        internal_port=internal,
        protocol=proto,
        internal_client=response.get("NewInternalClient", "").strip(),
        description=response.get("NewPortMappingDescription", "").strip(),
        enabled=parse_enabled(response.get("NewEnabled", "1")),
        remote_host=response.get("NewRemoteHost", "").strip(),
        lease_duration=lease,
    )
