"""SOAP 1.1 action invocation against UPnP control URLs."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any
from xml.sax.saxutils import escape

import aiohttp
import defusedxml.ElementTree as ET  # noqa: N817
from defusedxml import DefusedXmlException

from upnpigd.error_catalog import describe
from upnpigd.exceptions import SoapFault, TransportError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable, Mapping
    from xml.etree.ElementTree import Element

    from upnpigd.description import ControlSession

logger = logging.getLogger(__name__)

SOAP_ENVELOPE_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP_ENCODING_NS = "http://schemas.xmlsoap.org/soap/encoding/"
DEFAULT_HTTP_TIMEOUT = 5.0
# Used when a fault carries no numeric errorCode
UNKNOWN_ERROR_CODE = -1


def local_name(tag: str) -> str:
    """Strip an ElementTree ``{namespace}`` prefix from a tag."""
    return tag.rsplit("}", 1)[-1]


def find_first(element: Element, name: str) -> Element | None:
    """Find the first element (self included) whose local name is ``name``."""
    for candidate in element.iter():
        if local_name(candidate.tag) == name:
            return candidate
    return None


def build_soap_action(
    action_name: str,
    service_type: str,
    parameters: Mapping[str, Any] | Iterable[tuple[str, Any]],
) -> str:
    """Build SOAP action request body.

    Arguments are emitted in the order given. Gateways are supposed to be
    order tolerant, but several only parse them positionally.

    Args:
        action_name: SOAP action name (e.g., "AddPortMapping")
        service_type: UPnP service type, used as the action namespace
        parameters: Action arguments as a mapping or ordered pairs

    Returns:
        SOAP request XML string

    """
    items = parameters.items() if hasattr(parameters, "items") else parameters
    param_xml = "".join(
        f"<{key}>{escape(str(value))}</{key}>" for key, value in items
    )

    return (
        '<?xml version="1.0"?>\r\n'
        f'<s:Envelope xmlns:s="{SOAP_ENVELOPE_NS}" '
        f's:encodingStyle="{SOAP_ENCODING_NS}">'
        "<s:Body>"
        f'<u:{action_name} xmlns:u="{escape(service_type)}">'
        f"{param_xml}"
        f"</u:{action_name}>"
        "</s:Body>"
        "</s:Envelope>\r\n"
    )


def _fault_to_exception(fault: Element, action_name: str) -> SoapFault:
    code_elem = find_first(fault, "errorCode")
    desc_elem = find_first(fault, "errorDescription")

    code = UNKNOWN_ERROR_CODE
    if code_elem is not None and code_elem.text:
        try:
            code = int(code_elem.text.strip())
        except ValueError:
            logger.debug("Non-numeric UPnP errorCode %r", code_elem.text)

    details: dict[str, Any] = {"action": action_name}
    if desc_elem is not None and desc_elem.text and desc_elem.text.strip():
        details["description"] = desc_elem.text.strip()
    return SoapFault(code, describe(code), details)


def parse_soap_response(
    action_name: str,
    response_xml: str,
    http_status: int = 200,
) -> dict[str, str]:
    """Parse a SOAP response body.

    Returns:
        The ``<action>Response`` children as a name -> text mapping

    Raises:
        SoapFault: If the body carries a SOAP Fault
        TransportError: If the body is not usable XML or has no response element

    """
    try:
        root = ET.fromstring(response_xml)  # noqa: S314
    except (ET.ParseError, DefusedXmlException) as e:
        msg = f"Malformed SOAP response to {action_name} (HTTP {http_status})"
        raise TransportError(msg, {"error": str(e)}) from e

    # Some gateways send faults with HTTP 200, most with HTTP 500
    fault = find_first(root, "Fault")
    if fault is not None:
        exc = _fault_to_exception(fault, action_name)
        logger.debug(
            "SOAP fault for %s (HTTP %d): %s", action_name, http_status, exc.message
        )
        raise exc

    if http_status != 200:
        msg = f"{action_name} failed: HTTP {http_status}"
        raise TransportError(msg, {"status": http_status})

    response_elem = find_first(root, f"{action_name}Response")
    if response_elem is None:
        msg = f"No {action_name}Response element in SOAP response"
        raise TransportError(msg)

    return {local_name(child.tag): child.text or "" for child in response_elem}


async def send_soap_action(
    control_url: str,
    action_name: str,
    service_type: str,
    parameters: Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None,
    *,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> dict[str, str]:
    """Send SOAP action request and parse response.

    Args:
        control_url: Control URL for the service
        action_name: SOAP action name
        service_type: UPnP service type
        parameters: Action parameters, in wire order
        timeout: Total timeout for the HTTP call in seconds

    Returns:
        Dictionary of response parameters

    Raises:
        SoapFault: If the gateway rejected the action
        TransportError: If the gateway could not be reached or answered garbage

    """
    soap_body = build_soap_action(action_name, service_type, parameters or {})
    headers = {
        "Content-Type": 'text/xml; charset="utf-8"',
        "SOAPAction": f'"{service_type}#{action_name}"',
    }

    logger.debug("SOAP %s -> %s", action_name, control_url)
    try:
        async with aiohttp.ClientSession() as session, session.post(
            control_url,
            data=soap_body.encode("utf-8"),
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            response_xml = await resp.text(errors="replace")
            http_status = resp.status
    except asyncio.TimeoutError as e:
        msg = f"Timeout after {timeout:.1f}s calling {action_name}"
        raise TransportError(msg, {"control_url": control_url}) from e
    except aiohttp.ClientError as e:
        msg = f"Network error calling {action_name}: {e}"
        raise TransportError(msg, {"control_url": control_url}) from e

    return parse_soap_response(action_name, response_xml, http_status)


async def invoke(
    session: ControlSession,
    service_type_field: str,
    control_url_field: str,
    action_name: str,
    parameters: Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None,
    *,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> dict[str, str]:
    """Invoke an action on one of the session's services.

    ``service_type_field`` and ``control_url_field`` name the session
    attributes to use, e.g. ``("service_type_cif", "control_url_cif")`` for
    the WANCommonInterfaceConfig service.
    """
    return await send_soap_action(
        getattr(session, control_url_field),
        action_name,
        getattr(session, service_type_field),
        parameters,
        timeout=timeout,
    )
