"""UPnP device description retrieval and IGD validation."""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urljoin, urlsplit

import aiohttp
import defusedxml.ElementTree as ET  # noqa: N817
from defusedxml import DefusedXmlException

from upnpigd.exceptions import IGDError, NoValidIGDError, TransportError
from upnpigd.soap import DEFAULT_HTTP_TIMEOUT, find_first, local_name

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable
    from xml.etree.ElementTree import Element

logger = logging.getLogger(__name__)

WAN_IP_CONNECTION = "WANIPConnection"
WAN_PPP_CONNECTION = "WANPPPConnection"
WAN_COMMON_INTERFACE_CONFIG = "WANCommonInterfaceConfig"


@dataclass(frozen=True)
class ControlSession:
    """Validated connection state for one Internet Gateway Device."""

    control_url: str
    control_url_cif: str
    service_type: str
    service_type_cif: str
    lan_ip: str
    url_base: str
    location: str = ""


@dataclass(frozen=True)
class ParsedDescription:
    """Service endpoints extracted from a device description document."""

    url_base: str
    service_type: str
    control_url: str
    service_type_cif: str
    control_url_cif: str


def _child_text(element: Element, name: str) -> str:
    for child in element:
        if local_name(child.tag) == name:
            return (child.text or "").strip()
    return ""


def parse_device_description(xml_text: str, location: str) -> ParsedDescription:
    """Extract the connection and CIF services from a description document.

    Services may sit in any nested ``<device>``; IGDs usually keep them two
    levels down (WANDevice -> WANConnectionDevice).

    Args:
        xml_text: Device description XML
        location: URL the description was fetched from

    Raises:
        NoValidIGDError: If the XML is malformed or a required service is missing

    """
    try:
        root = ET.fromstring(xml_text)  # noqa: S314
    except (ET.ParseError, DefusedXmlException) as e:
        msg = f"Failed to parse device description XML: {e}"
        raise NoValidIGDError(msg, {"location": location}) from e

    url_base_elem = find_first(root, "URLBase")
    declared_base = (url_base_elem.text or "").strip() if url_base_elem is not None else ""
    split = urlsplit(location)
    url_base = declared_base or f"{split.scheme}://{split.netloc}"
    join_base = declared_base or location

    ip_conn: tuple[str, str] | None = None
    ppp_conn: tuple[str, str] | None = None
    cif: tuple[str, str] | None = None

    for service in root.iter():
        if local_name(service.tag) != "service":
            continue
        service_type = _child_text(service, "serviceType")
        control_url = _child_text(service, "controlURL")
        if not service_type or not control_url:
            continue
        entry = (service_type, urljoin(join_base, control_url))
        if WAN_IP_CONNECTION in service_type and ip_conn is None:
            ip_conn = entry
        elif WAN_PPP_CONNECTION in service_type and ppp_conn is None:
            ppp_conn = entry
        elif WAN_COMMON_INTERFACE_CONFIG in service_type and cif is None:
            cif = entry

    connection = ip_conn or ppp_conn
    if connection is None:
        msg = "No WANIPConnection or WANPPPConnection service in device description"
        raise NoValidIGDError(msg, {"location": location})
    if cif is None:
        msg = "No WANCommonInterfaceConfig service in device description"
        raise NoValidIGDError(msg, {"location": location})

    return ParsedDescription(
        url_base=url_base,
        service_type=connection[0],
        control_url=connection[1],
        service_type_cif=cif[0],
        control_url_cif=cif[1],
    )


def resolve_lan_ip(host: str, port: int = 80) -> str:
    """Return the local address the network stack uses to reach ``host``.

    Connecting a UDP socket only selects a route; nothing is sent.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect((host, port))
            return sock.getsockname()[0]
    except OSError as e:
        msg = f"Could not determine local address toward {host}: {e}"
        raise TransportError(msg) from e


async def fetch_description(
    location: str, *, timeout: float = DEFAULT_HTTP_TIMEOUT
) -> str:
    """Fetch a device description document.

    Raises:
        TransportError: On network errors, timeouts or non-200 responses

    """
    try:
        async with aiohttp.ClientSession() as session, session.get(
            location, timeout=aiohttp.ClientTimeout(total=timeout)
        ) as response:
            if response.status != 200:
                msg = f"Failed to fetch device description: HTTP {response.status}"
                raise TransportError(msg, {"location": location})
            return await response.text(errors="replace")
    except asyncio.TimeoutError as e:
        msg = f"Timeout fetching device description after {timeout:.1f}s"
        raise TransportError(msg, {"location": location}) from e
    except aiohttp.ClientError as e:
        msg = f"Network error fetching device description: {e}"
        raise TransportError(msg, {"location": location}) from e


async def fetch_and_validate(
    locations: Iterable[str], *, timeout: float = DEFAULT_HTTP_TIMEOUT
) -> ControlSession:
    """Pick the first location describing a usable Internet Gateway Device.

    Args:
        locations: Device description URLs, in response arrival order
        timeout: Per-request HTTP timeout in seconds

    Returns:
        ControlSession for the first valid gateway

    Raises:
        NoValidIGDError: If no candidate exposes both required services

    """
    failures: dict[str, str] = {}
    for location in locations:
        try:
            xml_text = await fetch_description(location, timeout=timeout)
            parsed = parse_device_description(xml_text, location)
            split = urlsplit(location)
            host = split.hostname or ""
            lan_ip = resolve_lan_ip(host, split.port or 80)
        except IGDError as e:
            failures[location] = e.message
            logger.debug("Rejected IGD candidate %s: %s", location, e.message)
            continue

        logger.info(
            "Using IGD at %s (service: %s, LAN address: %s)",
            location,
            parsed.service_type,
            lan_ip,
        )
        return ControlSession(
            control_url=parsed.control_url,
            control_url_cif=parsed.control_url_cif,
            service_type=parsed.service_type,
            service_type_cif=parsed.service_type_cif,
            lan_ip=lan_ip,
            url_base=parsed.url_base,
            location=location,
        )

    msg = "No valid IGD found"
    raise NoValidIGDError(msg, {"candidates": failures} if failures else None)
