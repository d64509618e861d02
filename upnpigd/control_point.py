"""UPnP IGD control point.

Ties discovery, description validation and SOAP control together behind a
small async API::

    async with ControlPoint() as cp:
        print(await cp.external_ip())
        await cp.add_port_mapping(8080, 80, "TCP", "web")

Discovery runs as a single background task. Every other operation joins
that task before running, and a new discovery waits for operations already
in flight to finish, so discovery and operations never overlap.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from upnpigd.config import get_config
from upnpigd.description import fetch_and_validate
from upnpigd.exceptions import (
    InvalidArgumentError,
    NotDiscoveredError,
    SoapFault,
    StatisticUnavailableError,
    TransportError,
)
from upnpigd.logging_config import LoggingContext
from upnpigd.port_mapping import (
    PortMapping,
    mapping_from_response,
    validate_port,
    validate_protocol,
)
from upnpigd.soap import invoke
from upnpigd.ssdp import SSDP_MULTICAST_IP, SSDP_MULTICAST_PORT, discover_gateways

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import AsyncIterator
    from types import TracebackType

    from upnpigd.description import ControlSession
    from upnpigd.models import Config

logger = logging.getLogger(__name__)

_CONNECTION_FIELDS = ("service_type", "control_url")
_CIF_FIELDS = ("service_type_cif", "control_url_cif")


@dataclass(frozen=True)
class StatusInfo:
    """Result of ``GetStatusInfo``."""

    connection_status: str
    last_connection_error: str
    uptime: int


def _check_timeout(timeout_ms: Any) -> int:
    if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int) or timeout_ms <= 0:
        msg = "Max wait time must be a positive number of milliseconds"
        raise InvalidArgumentError(msg, {"timeout_ms": timeout_ms})
    return timeout_ms


class ControlPoint:
    """Async UPnP IGD control point.

    The control point is either unbound (no gateway yet) or bound to exactly
    one :class:`ControlSession`. A session is never modified; re-discovery
    drops it and installs a new one.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        multicast_address: tuple[str, int] = (SSDP_MULTICAST_IP, SSDP_MULTICAST_PORT),
    ) -> None:
        """Initialize control point.

        Args:
            config: Configuration (the global configuration when None)
            multicast_address: Where M-SEARCH requests are sent. A router's
                unicast address works too for hosts where multicast is filtered.

        """
        self.config = config or get_config()
        self.multicast_address = multicast_address
        self.logger = logging.getLogger(__name__)
        self._session: ControlSession | None = None
        self._discovery_task: asyncio.Task[ControlSession] | None = None
        self._last_discovery_error: BaseException | None = None
        self._active_operations = 0
        self._operations_idle = asyncio.Event()
        self._operations_idle.set()

    async def __aenter__(self) -> ControlPoint:
        if self.config.discovery.autodiscover:
            self.start_discovery()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    @property
    def session(self) -> ControlSession | None:
        """The current session, or None while unbound."""
        return self._session

    @property
    def is_bound(self) -> bool:
        return self._session is not None

    @property
    def lan_ip(self) -> str | None:
        """Local address as seen from the gateway's side of the LAN."""
        return self._session.lan_ip if self._session else None

    @property
    def discovery_in_progress(self) -> bool:
        return self._discovery_task is not None and not self._discovery_task.done()

    # Discovery

    def start_discovery(self, timeout_ms: int | None = None) -> asyncio.Task[ControlSession]:
        """Start discovery in the background.

        If discovery is already running the in-flight task is returned
        instead of starting a second one. The new discovery first waits for
        operations already running on the current session, then releases
        that session. Operations issued meanwhile join the discovery.

        Args:
            timeout_ms: SSDP listening window (defaults to the configured one)

        Returns:
            The discovery task

        """
        task = self._discovery_task
        if task is not None and not task.done():
            self.logger.debug("Discovery already in progress, joining it")
            return task

        timeout = _check_timeout(
            self.config.discovery.timeout_ms if timeout_ms is None else timeout_ms
        )
        self._last_discovery_error = None
        task = asyncio.create_task(
            self._run_discovery(timeout), name="upnpigd-discovery"
        )
        task.add_done_callback(self._on_discovery_done)
        self._discovery_task = task
        return task

    async def discover(
        self, timeout_ms: int | None = None, *, force: bool = False
    ) -> ControlSession:
        """Discover a gateway and bind to it.

        Args:
            timeout_ms: SSDP listening window (defaults to the configured one)
            force: Re-discover even if already bound

        Returns:
            The bound session

        Raises:
            InvalidArgumentError: If ``timeout_ms`` is not positive
            NoDeviceFoundError: If nothing answered the M-SEARCH
            NoValidIGDError: If no answering device is a usable IGD

        """
        if timeout_ms is not None:
            _check_timeout(timeout_ms)
        if not self.discovery_in_progress and self._session is not None and not force:
            return self._session
        return await self._join(self.start_discovery(timeout_ms))

    def cancel_discovery(self) -> bool:
        """Cancel an in-flight discovery.

        Returns:
            True if a running discovery was cancelled

        """
        task = self._discovery_task
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def aclose(self) -> None:
        """Cancel discovery and release the session."""
        task = self._discovery_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])
        self._discovery_task = None
        self._session = None

    async def _run_discovery(self, timeout_ms: int) -> ControlSession:
        if not self._operations_idle.is_set():
            self.logger.debug(
                "Waiting for %d running operation(s) before discovery",
                self._active_operations,
            )
            await self._operations_idle.wait()
        self._session = None

        cfg = self.config.discovery
        with LoggingContext("gateway discovery", self.logger, timeout_ms=timeout_ms):
            devices = await discover_gateways(
                timeout_ms,
                cfg.search_target,
                cfg.source_address,
                cfg.reuse_incoming_port,
                search_all_fallback=cfg.search_all_fallback,
                max_responses=cfg.max_responses,
                multicast_address=self.multicast_address,
            )
            session = await fetch_and_validate(
                [device.location for device in devices],
                timeout=self.config.control.http_timeout,
            )
        self._session = session
        return session

    def _on_discovery_done(self, task: asyncio.Task[ControlSession]) -> None:
        if task.cancelled():
            self.logger.debug("Discovery cancelled")
            return
        exc = task.exception()
        if exc is not None:
            self._last_discovery_error = exc
            self.logger.debug("Discovery failed: %s", exc)

    async def _join(self, task: asyncio.Task[ControlSession]) -> ControlSession:
        try:
            # shield: a cancelled waiter must not cancel the shared discovery
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and (current is None or not current.cancelling()):
                msg = "Discovery was cancelled"
                raise NotDiscoveredError(msg) from None
            raise

    async def _require_session(self) -> ControlSession:
        task = self._discovery_task
        if task is not None and not task.done():
            await self._join(task)
        if self._session is None:
            msg = "No Internet Gateway Device discovered"
            details = (
                {"last_error": str(self._last_discovery_error)}
                if self._last_discovery_error
                else None
            )
            raise NotDiscoveredError(msg, details)
        return self._session

    @asynccontextmanager
    async def _operation(self) -> AsyncIterator[ControlSession]:
        """Hold the current session for the duration of one operation."""
        session = await self._require_session()
        self._active_operations += 1
        self._operations_idle.clear()
        try:
            yield session
        finally:
            self._active_operations -= 1
            if self._active_operations == 0:
                self._operations_idle.set()

    # SOAP helpers

    async def _invoke(
        self,
        session: ControlSession,
        action: str,
        parameters: dict[str, Any] | None = None,
        *,
        cif: bool = False,
    ) -> dict[str, str]:
        service_field, control_field = _CIF_FIELDS if cif else _CONNECTION_FIELDS
        return await invoke(
            session,
            service_field,
            control_field,
            action,
            parameters,
            timeout=self.config.control.http_timeout,
        )

    async def _call(
        self,
        action: str,
        parameters: dict[str, Any] | None = None,
        *,
        cif: bool = False,
    ) -> dict[str, str]:
        async with self._operation() as session:
            return await self._invoke(session, action, parameters, cif=cif)

    async def _statistic(self, action: str, field: str) -> int:
        response = await self._call(action, cif=True)
        raw = response.get(field, "").strip()
        try:
            value = int(raw)
        except ValueError as e:
            msg = f"{action} returned a malformed value"
            raise StatisticUnavailableError(msg, {field: raw}) from e
        if value < 0:
            msg = f"{action} returned a negative value"
            raise StatisticUnavailableError(msg, {field: raw})
        return value

    # Connection information

    async def external_ip(self) -> str:
        """Return the gateway's public IP address."""
        response = await self._call("GetExternalIPAddress")
        external_ip = response.get("NewExternalIPAddress", "").strip()
        if not external_ip:
            msg = "No external IP in GetExternalIPAddress response"
            raise TransportError(msg)
        return external_ip

    async def router_ip(self) -> str:
        """Return the gateway's LAN host, taken from the session's URL base."""
        async with self._operation() as session:
            url_base = session.url_base
        if "//" not in url_base:
            url_base = f"//{url_base}"
        return urlsplit(url_base).hostname or ""

    async def status(self) -> StatusInfo:
        """Return connection status, last connection error and uptime (s)."""
        response = await self._call("GetStatusInfo")
        raw_uptime = response.get("NewUptime", "").strip()
        try:
            uptime = int(raw_uptime)
        except ValueError as e:
            msg = "Malformed uptime in GetStatusInfo response"
            raise TransportError(msg, {"NewUptime": raw_uptime}) from e
        if uptime < 0:
            msg = "Negative uptime in GetStatusInfo response"
            raise TransportError(msg, {"NewUptime": raw_uptime})
        return StatusInfo(
            connection_status=response.get("NewConnectionStatus", "").strip(),
            last_connection_error=response.get("NewLastConnectionError", "").strip(),
            uptime=uptime,
        )

    async def connection_type(self) -> str:
        response = await self._call("GetConnectionTypeInfo")
        return response.get("NewConnectionType", "").strip()

    # Link statistics (WANCommonInterfaceConfig)

    async def total_bytes_sent(self) -> int:
        return await self._statistic("GetTotalBytesSent", "NewTotalBytesSent")

    async def total_bytes_received(self) -> int:
        return await self._statistic("GetTotalBytesReceived", "NewTotalBytesReceived")

    async def total_packets_sent(self) -> int:
        return await self._statistic("GetTotalPacketsSent", "NewTotalPacketsSent")

    async def total_packets_received(self) -> int:
        return await self._statistic(
            "GetTotalPacketsReceived", "NewTotalPacketsReceived"
        )

    async def max_link_bitrates(self) -> tuple[int, int]:
        """Return the (downstream, upstream) layer 1 bitrates in bits/s."""
        action = "GetCommonLinkProperties"
        response = await self._call(action, cif=True)
        raw_down = response.get("NewLayer1DownstreamMaxBitRate", "").strip()
        raw_up = response.get("NewLayer1UpstreamMaxBitRate", "").strip()
        try:
            down, up = int(raw_down), int(raw_up)
        except ValueError as e:
            msg = f"{action} returned malformed bitrates"
            raise StatisticUnavailableError(msg, {"down": raw_down, "up": raw_up}) from e
        if down < 0 or up < 0:
            msg = f"{action} returned negative bitrates"
            raise StatisticUnavailableError(msg, {"down": raw_down, "up": raw_up})
        return down, up

    # Port mappings

    async def list_port_mappings(self) -> list[PortMapping]:
        """Return every port mapping the gateway reports.

        ``GetGenericPortMappingEntry`` is called with index 0, 1, ... until it
        fails. The protocol signals "no more entries" with the same kind of
        error as a genuine failure, so any failure ends the list.
        """
        mappings: list[PortMapping] = []
        index = 0
        async with self._operation() as session:
            while True:
                try:
                    response = await self._invoke(
                        session,
                        "GetGenericPortMappingEntry",
                        {"NewPortMappingIndex": index},
                    )
                    mapping = mapping_from_response(response)
                except (SoapFault, TransportError) as e:
                    self.logger.debug(
                        "Port mapping enumeration ended at index %d: %s", index, e
                    )
                    break
                except ValueError as e:
                    self.logger.debug(
                        "Malformed port mapping entry at index %d: %s", index, e
                    )
                    break
                mappings.append(mapping)
                index += 1
        return mappings

    async def get_port_mapping(self, external_port: int, protocol: str) -> PortMapping:
        """Return the mapping for an external port and protocol.

        Raises:
            InvalidArgumentError: If the port or protocol is invalid
            SoapFault: If the gateway has no such mapping (usually 714)

        """
        port = validate_port(external_port, "external_port")
        proto = validate_protocol(protocol)
        response = await self._call(
            "GetSpecificPortMappingEntry",
            {
                "NewRemoteHost": "",
                "NewExternalPort": port,
                "NewProtocol": proto,
            },
        )
        try:
            return mapping_from_response(response, external_port=port, protocol=proto)
        except ValueError as e:
            msg = "Malformed GetSpecificPortMappingEntry response"
            raise TransportError(msg, {"response": response}) from e

    async def add_port_mapping(
        self,
        external_port: int,
        internal_port: int,
        protocol: str,
        description: str | None = None,
        internal_client: str | None = None,
        *,
        remote_host: str = "",
        lease_duration: int = 0,
    ) -> PortMapping:
        """Add a port mapping on the gateway.

        Whether an existing mapping for the same port and protocol is
        replaced or rejected is up to the gateway; a rejection surfaces as
        a :class:`SoapFault` (typically 718).

        Args:
            external_port: Port opened on the public side
            internal_port: Port on the internal client
            protocol: "TCP" or "UDP"
            description: Mapping description (configured default when None)
            internal_client: Internal address (this host's LAN address when None)
            remote_host: Remote host filter (empty for any)
            lease_duration: Lease in seconds (0 for permanent)

        Returns:
            The mapping that was requested

        """
        ext = validate_port(external_port, "external_port")
        internal = validate_port(internal_port, "internal_port")
        proto = validate_protocol(protocol)
        if (
            isinstance(lease_duration, bool)
            or not isinstance(lease_duration, int)
            or lease_duration < 0
        ):
            msg = "lease_duration must be a non-negative integer"
            raise InvalidArgumentError(msg, {"lease_duration": lease_duration})

        desc = self.config.control.default_description if description is None else description
        async with self._operation() as session:
            client = internal_client or session.lan_ip
            await self._invoke(
                session,
                "AddPortMapping",
                {
                    "NewRemoteHost": remote_host,
                    "NewExternalPort": ext,
                    "NewProtocol": proto,
                    "NewInternalPort": internal,
                    "NewInternalClient": client,
                    "NewEnabled": 1,
                    "NewPortMappingDescription": desc,
                    "NewLeaseDuration": lease_duration,
                },
            )
        self.logger.info(
            "Mapped %s port %d -> %s:%d (lease: %d s)",
            proto,
            ext,
            client,
            internal,
            lease_duration,
        )
        return PortMapping(
            external_port=ext,
            internal_port=internal,
            protocol=proto,
            internal_client=client,
            description=desc,
            enabled=True,
            remote_host=remote_host,
            lease_duration=lease_duration,
        )

    async def delete_port_mapping(self, external_port: int, protocol: str) -> None:
        """Delete the mapping for an external port and protocol.

        Gateway faults (e.g. 714 for a missing mapping) are raised as-is.
        """
        port = validate_port(external_port, "external_port")
        proto = validate_protocol(protocol)
        await self._call(
            "DeletePortMapping",
            {
                "NewRemoteHost": "",
                "NewExternalPort": port,
                "NewProtocol": proto,
            },
        )
        self.logger.info("Deleted %s port mapping for port %d", proto, port)
