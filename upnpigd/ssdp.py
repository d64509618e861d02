"""SSDP multicast discovery of Internet Gateway Devices."""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from urllib.parse import urlsplit

from upnpigd.exceptions import InvalidArgumentError, NoDeviceFoundError, TransportError

logger = logging.getLogger(__name__)

# SSDP constants
SSDP_MULTICAST_IP = "239.255.255.250"
SSDP_MULTICAST_PORT = 1900
SSDP_MULTICAST_TTL = 2
SSDP_RECV_BUFFER = 4096
SSDP_ALL = "ssdp:all"

UPNP_IGD_DEVICE_TYPE = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"


@dataclass(frozen=True)
class GatewayDevice:
    """A device that answered an M-SEARCH."""

    location: str
    search_target: str = ""
    usn: str = ""
    server: str = ""


def build_msearch_request(search_target: str | None = None, mx: int = 1) -> bytes:
    """Build SSDP M-SEARCH request (UPnP Device Architecture 1.1).

    Args:
        search_target: ST (Search Target) header value. If None, uses
            UPNP_IGD_DEVICE_TYPE.
        mx: Maximum seconds a device may delay its answer

    Returns:
        M-SEARCH request bytes

    """
    if search_target is None:
        search_target = UPNP_IGD_DEVICE_TYPE

    msg = (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_MULTICAST_IP}:{SSDP_MULTICAST_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"MX: {mx}\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    )
    return msg.encode("utf-8")


def parse_ssdp_response(response: bytes) -> dict[str, str]:
    """Parse SSDP response headers.

    Args:
        response: SSDP response bytes

    Returns:
        Dictionary of header fields, keys lowercased

    """
    headers: dict[str, str] = {}
    lines = response.decode("utf-8", errors="ignore").split("\r\n")
    for line in lines[1:]:  # Skip status line
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return headers


def parse_gateway_device(response: bytes) -> GatewayDevice | None:
    """Turn an M-SEARCH answer into a :class:`GatewayDevice`.

    Returns:
        None for anything that is not a 200 reply with an HTTP ``LOCATION``

    """
    status_line = response.split(b"\r\n", 1)[0].decode("utf-8", errors="ignore")
    parts = status_line.split()
    if len(parts) < 2 or not parts[0].upper().startswith("HTTP/") or parts[1] != "200":
        return None

    headers = parse_ssdp_response(response)
    location = headers.get("location", "")
    split = urlsplit(location)
    if split.scheme not in ("http", "https") or not split.hostname:
        return None

    return GatewayDevice(
        location=location,
        search_target=headers.get("st", ""),
        usn=headers.get("usn", ""),
        server=headers.get("server", ""),
    )


def _open_ssdp_socket(
    source_address: str | None, reuse_incoming_port: bool
) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, SSDP_MULTICAST_TTL)
        if source_address:
            sock.setsockopt(
                socket.IPPROTO_IP,
                socket.IP_MULTICAST_IF,
                socket.inet_aton(source_address),
            )
        # Some firewalls only pass replies addressed to the SSDP port itself
        port = SSDP_MULTICAST_PORT if reuse_incoming_port else 0
        sock.bind((source_address or "0.0.0.0", port))  # nosec B104
        sock.setblocking(False)
    except OSError as e:
        sock.close()
        msg = f"Could not open SSDP socket: {e}"
        raise TransportError(
            msg,
            {"source_address": source_address, "reuse_incoming_port": reuse_incoming_port},
        ) from e
    return sock


async def _search(
    search_target: str,
    timeout_ms: int,
    source_address: str | None,
    reuse_incoming_port: bool,
    max_responses: int | None,
    multicast_address: tuple[str, int],
) -> list[GatewayDevice]:
    loop = asyncio.get_running_loop()
    devices: list[GatewayDevice] = []
    seen_locations: set[str] = set()

    sock = _open_ssdp_socket(source_address, reuse_incoming_port)
    try:
        request = build_msearch_request(search_target, mx=max(1, timeout_ms // 1000))
        try:
            await loop.sock_sendto(sock, request, multicast_address)
        except OSError as e:
            msg = f"Failed to send M-SEARCH request: {e}"
            raise TransportError(msg, {"search_target": search_target}) from e
        logger.debug(
            "Sent M-SEARCH (ST=%s) to %s:%d, listening for %d ms",
            search_target,
            multicast_address[0],
            multicast_address[1],
            timeout_ms,
        )

        # Routers may answer several times, so the whole window is used
        deadline = loop.time() + timeout_ms / 1000
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                data, addr = await asyncio.wait_for(
                    loop.sock_recvfrom(sock, SSDP_RECV_BUFFER), timeout=remaining
                )
            except asyncio.TimeoutError:
                break
            except OSError as e:
                logger.debug("Error receiving SSDP response, ending search: %s", e)
                break

            device = parse_gateway_device(data)
            if device is None:
                logger.debug("Discarding malformed SSDP response from %s", addr[0])
                continue
            if device.location in seen_locations:
                continue
            seen_locations.add(device.location)
            devices.append(device)
            logger.debug(
                "SSDP response from %s: ST=%s, Location=%s",
                addr[0],
                device.search_target or "(empty)",
                device.location,
            )
            if max_responses is not None and len(devices) >= max_responses:
                break
    finally:
        sock.close()

    return devices


async def discover_gateways(
    timeout_ms: int = 1000,
    search_target: str | None = None,
    source_address: str | None = None,
    reuse_incoming_port: bool = False,
    *,
    search_all_fallback: bool = False,
    max_responses: int | None = None,
    multicast_address: tuple[str, int] = (SSDP_MULTICAST_IP, SSDP_MULTICAST_PORT),
) -> list[GatewayDevice]:
    """Discover UPnP devices via SSDP.

    Args:
        timeout_ms: Length of the listening window in milliseconds
        search_target: ST header; defaults to the InternetGatewayDevice type
        source_address: Local address to send from and receive on
        reuse_incoming_port: Send from the SSDP port so replies come back to it
        search_all_fallback: Repeat the search with ``ssdp:all`` if nothing answered
        max_responses: Stop listening once this many devices answered
        multicast_address: Destination of the M-SEARCH datagram

    Returns:
        Devices in response arrival order, duplicates removed

    Raises:
        InvalidArgumentError: If ``timeout_ms`` or ``max_responses`` is not positive
        NoDeviceFoundError: If no device answered within the window
        TransportError: If the socket could not be opened or used

    """
    if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int) or timeout_ms <= 0:
        msg = "Max wait time must be a positive number of milliseconds"
        raise InvalidArgumentError(msg, {"timeout_ms": timeout_ms})
    if max_responses is not None and max_responses < 1:
        msg = "max_responses must be at least 1"
        raise InvalidArgumentError(msg, {"max_responses": max_responses})

    targets = [search_target or UPNP_IGD_DEVICE_TYPE]
    if search_all_fallback and targets[0] != SSDP_ALL:
        targets.append(SSDP_ALL)

    for target in targets:
        devices = await _search(
            target,
            timeout_ms,
            source_address,
            reuse_incoming_port,
            max_responses,
            multicast_address,
        )
        if devices:
            logger.info("SSDP discovery found %d device(s)", len(devices))
            return devices
        logger.debug("No SSDP responses for ST=%s within %d ms", target, timeout_ms)

    msg = "No UPnP device found"
    raise NoDeviceFoundError(msg, {"timeout_ms": timeout_ms, "search_targets": targets})
