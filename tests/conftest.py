"""Pytest configuration and shared fixtures for upnpigd tests.

Besides the usual housekeeping this provides an in-process fake Internet
Gateway Device (device description + SOAP control over aiohttp.web) and a
loopback SSDP responder, so discovery and control can be exercised end to
end without a router.
"""

from __future__ import annotations

import asyncio
import logging
import os
import xml.etree.ElementTree as StdET
from typing import Any

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

WAN_IP_SERVICE = "urn:schemas-upnp-org:service:WANIPConnection:1"
WAN_CIF_SERVICE = "urn:schemas-upnp-org:service:WANCommonInterfaceConfig:1"
IGD_DEVICE = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("unit", "marks tests as unit tests"),
        ("integration", "marks tests as integration tests"),
        ("network", "marks tests that use sockets or HTTP"),
        ("cli", "marks tests as CLI tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep UPNPIGD_* variables from the developer's shell out of tests."""
    for name in list(os.environ):
        if name.startswith("UPNPIGD_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


# Fake gateway


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def description_xml(url_base: str | None = None, *, include_cif: bool = True) -> str:
    """Device description of a typical single-WAN IGD."""
    url_base_xml = f"<URLBase>{url_base}</URLBase>" if url_base else ""
    cif_xml = (
        f"""
        <serviceList>
          <service>
            <serviceType>{WAN_CIF_SERVICE}</serviceType>
            <serviceId>urn:upnp-org:serviceId:WANCommonIFC1</serviceId>
            <controlURL>/ctl/CmnIfCfg</controlURL>
            <eventSubURL>/evt/CmnIfCfg</eventSubURL>
            <SCPDURL>/WANCfg.xml</SCPDURL>
          </service>
        </serviceList>"""
        if include_cif
        else ""
    )
    return f"""<?xml version="1.0"?>
<root xmlns="urn:schemas-upnp-org:device-1-0">
  <specVersion><major>1</major><minor>0</minor></specVersion>
  {url_base_xml}
  <device>
    <deviceType>{IGD_DEVICE}</deviceType>
    <friendlyName>Fake Router</friendlyName>
    <serviceList>
      <service>
        <serviceType>urn:schemas-upnp-org:service:Layer3Forwarding:1</serviceType>
        <serviceId>urn:upnp-org:serviceId:L3Forwarding1</serviceId>
        <controlURL>/ctl/L3F</controlURL>
      </service>
    </serviceList>
    <deviceList>
      <device>
        <deviceType>urn:schemas-upnp-org:device:WANDevice:1</deviceType>{cif_xml}
        <deviceList>
          <device>
            <deviceType>urn:schemas-upnp-org:device:WANConnectionDevice:1</deviceType>
            <serviceList>
              <service>
                <serviceType>{WAN_IP_SERVICE}</serviceType>
                <serviceId>urn:upnp-org:serviceId:WANIPConn1</serviceId>
                <controlURL>ctl/IPConn</controlURL>
                <eventSubURL>/evt/IPConn</eventSubURL>
                <SCPDURL>/WANIPCn.xml</SCPDURL>
              </service>
            </serviceList>
          </device>
        </deviceList>
      </device>
    </deviceList>
  </device>
</root>
"""


def soap_response(action: str, service_type: str, values: dict[str, Any]) -> str:
    body = "".join(f"<{k}>{v}</{k}>" for k, v in values.items())
    return (
        '<?xml version="1.0"?>'
        '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/" '
        's:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
        f'<s:Body><u:{action}Response xmlns:u="{service_type}">{body}'
        f"</u:{action}Response></s:Body></s:Envelope>"
    )


def soap_fault(code: int, description: str) -> str:
    return (
        '<?xml version="1.0"?>'
        '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/" '
        's:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
        "<s:Body><s:Fault><faultcode>s:Client</faultcode>"
        "<faultstring>UPnPError</faultstring><detail>"
        '<UPnPError xmlns="urn:schemas-upnp-org:control-1-0">'
        f"<errorCode>{code}</errorCode>"
        f"<errorDescription>{description}</errorDescription>"
        "</UPnPError></detail></s:Fault></s:Body></s:Envelope>"
    )


class FakeGateway:
    """Minimal IGD speaking just enough UPnP for the control point."""

    def __init__(self, *, with_url_base: bool = True, include_cif: bool = True) -> None:
        self.with_url_base = with_url_base
        self.include_cif = include_cif
        self.external_ip = "203.0.113.7"
        self.uptime = "3600"
        self.statistics = {
            "NewTotalBytesSent": "1000",
            "NewTotalBytesReceived": "2000",
            "NewTotalPacketsSent": "30",
            "NewTotalPacketsReceived": "40",
        }
        self.mappings: dict[tuple[int, str], dict[str, str]] = {}
        self.calls: list[tuple[str, str, dict[str, str]]] = []
        self.description_fetches = 0
        self._server: TestServer | None = None

    @property
    def location(self) -> str:
        assert self._server is not None
        return str(self._server.make_url("/rootDesc.xml"))

    @property
    def url_base(self) -> str:
        assert self._server is not None
        return str(self._server.make_url("/")).rstrip("/")

    def actions(self) -> list[str]:
        return [action for _, action, _ in self.calls]

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/rootDesc.xml", self._description)
        app.router.add_post("/ctl/IPConn", self._control)
        app.router.add_post("/ctl/CmnIfCfg", self._control)
        self._server = TestServer(app, host="127.0.0.1")
        await self._server.start_server()

    async def close(self) -> None:
        if self._server is not None:
            await self._server.close()

    async def _description(self, request: web.Request) -> web.Response:
        self.description_fetches += 1
        text = description_xml(
            self.url_base if self.with_url_base else None,
            include_cif=self.include_cif,
        )
        return web.Response(text=text, content_type="text/xml")

    async def _control(self, request: web.Request) -> web.Response:
        soap_action = request.headers.get("SOAPAction", "")
        root = StdET.fromstring(await request.text())
        body = next(e for e in root if _local(e.tag) == "Body")
        action_elem = body[0]
        action = _local(action_elem.tag)
        args = {_local(child.tag): child.text or "" for child in action_elem}
        self.calls.append((soap_action, action, args))

        service_type = soap_action.strip('"').split("#", 1)[0]
        try:
            values = self._dispatch(action, args)
        except _Fault as fault:
            return web.Response(
                text=soap_fault(fault.code, fault.description),
                status=500,
                content_type="text/xml",
            )
        return web.Response(
            text=soap_response(action, service_type, values), content_type="text/xml"
        )

    def _dispatch(self, action: str, args: dict[str, str]) -> dict[str, Any]:
        if action == "GetExternalIPAddress":
            return {"NewExternalIPAddress": self.external_ip}
        if action == "GetStatusInfo":
            return {
                "NewConnectionStatus": "Connected",
                "NewLastConnectionError": "ERROR_NONE",
                "NewUptime": self.uptime,
            }
        if action == "GetConnectionTypeInfo":
            return {
                "NewConnectionType": "IP_Routed",
                "NewPossibleConnectionTypes": "IP_Routed",
            }
        if action.startswith("GetTotal"):
            field = "New" + action[len("Get"):]
            return {field: self.statistics[field]}
        if action == "GetCommonLinkProperties":
            return {
                "NewWANAccessType": "Ethernet",
                "NewLayer1UpstreamMaxBitRate": "1000000",
                "NewLayer1DownstreamMaxBitRate": "8000000",
                "NewPhysicalLinkStatus": "Up",
            }
        if action == "AddPortMapping":
            key = (int(args["NewExternalPort"]), args["NewProtocol"])
            existing = self.mappings.get(key)
            if existing and existing["NewInternalClient"] != args["NewInternalClient"]:
                raise _Fault(718, "ConflictInMappingEntry")
            self.mappings[key] = dict(args)
            return {}
        if action == "GetSpecificPortMappingEntry":
            key = (int(args["NewExternalPort"]), args["NewProtocol"])
            if key not in self.mappings:
                raise _Fault(714, "NoSuchEntryInArray")
            entry = self.mappings[key]
            return {
                "NewInternalPort": entry["NewInternalPort"],
                "NewInternalClient": entry["NewInternalClient"],
                "NewEnabled": entry["NewEnabled"],
                "NewPortMappingDescription": entry["NewPortMappingDescription"],
                "NewLeaseDuration": entry["NewLeaseDuration"],
            }
        if action == "GetGenericPortMappingEntry":
            index = int(args["NewPortMappingIndex"])
            entries = list(self.mappings.values())
            if index >= len(entries):
                raise _Fault(713, "SpecifiedArrayIndexInvalid")
            return dict(entries[index])
        if action == "DeletePortMapping":
            key = (int(args["NewExternalPort"]), args["NewProtocol"])
            if key not in self.mappings:
                raise _Fault(714, "NoSuchEntryInArray")
            del self.mappings[key]
            return {}
        raise _Fault(401, "Invalid Action")


class _Fault(Exception):
    def __init__(self, code: int, description: str) -> None:
        super().__init__(description)
        self.code = code
        self.description = description


@pytest_asyncio.fixture
async def fake_gateway():
    """Running fake gateway on a loopback port."""
    gateway = FakeGateway()
    await gateway.start()
    yield gateway
    await gateway.close()


class SSDPResponder(asyncio.DatagramProtocol):
    """Answers every datagram with canned SSDP responses."""

    def __init__(self, responses: list[bytes]) -> None:
        self.responses = responses
        self.requests: list[bytes] = []
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        self.requests.append(data)
        for response in self.responses:
            self.transport.sendto(response, addr)


def ssdp_reply(location: str, st: str = IGD_DEVICE) -> bytes:
    return (
        "HTTP/1.1 200 OK\r\n"
        "CACHE-CONTROL: max-age=120\r\n"
        f"ST: {st}\r\n"
        f"USN: uuid:fake-router::{st}\r\n"
        "EXT:\r\n"
        "SERVER: Fake/1.0 UPnP/1.1 FakeIGD/1.0\r\n"
        f"LOCATION: {location}\r\n"
        "\r\n"
    ).encode()


@pytest_asyncio.fixture
async def ssdp_responder():
    """Factory starting loopback SSDP responders; returns (protocol, address)."""
    loop = asyncio.get_running_loop()
    transports: list[asyncio.DatagramTransport] = []

    async def _start(responses: list[bytes]) -> tuple[SSDPResponder, tuple[str, int]]:
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: SSDPResponder(responses), local_addr=("127.0.0.1", 0)
        )
        transports.append(transport)
        return protocol, transport.get_extra_info("sockname")[:2]

    yield _start

    for transport in transports:
        transport.close()


@pytest.fixture
def make_ssdp_reply():
    """SSDP 200 reply builder."""
    return ssdp_reply


@pytest.fixture
def make_description():
    """Device description XML builder."""
    return description_xml


@pytest_asyncio.fixture
async def gateway_factory():
    """Factory for fake gateways with non-default options."""
    gateways: list[FakeGateway] = []

    async def _start(**kwargs: Any) -> FakeGateway:
        gateway = FakeGateway(**kwargs)
        await gateway.start()
        gateways.append(gateway)
        return gateway

    yield _start

    for gateway in gateways:
        await gateway.close()
