"""Tests for SOAP request building, response parsing and transport."""

from __future__ import annotations

import asyncio
import xml.etree.ElementTree as StdET

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from upnpigd.exceptions import SoapFault, TransportError
from upnpigd.soap import (
    UNKNOWN_ERROR_CODE,
    build_soap_action,
    local_name,
    parse_soap_response,
    send_soap_action,
)

pytestmark = [pytest.mark.unit]

WANIP = "urn:schemas-upnp-org:service:WANIPConnection:1"

FAULT_XML = """<?xml version="1.0"?>
<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/">
  <s:Body>
    <s:Fault>
      <faultcode>s:Client</faultcode>
      <faultstring>UPnPError</faultstring>
      <detail>
        <UPnPError xmlns="urn:schemas-upnp-org:control-1-0">
          <errorCode>{code}</errorCode>
          <errorDescription>ConflictInMappingEntry</errorDescription>
        </UPnPError>
      </detail>
    </s:Fault>
  </s:Body>
</s:Envelope>"""


class TestBuildSoapAction:
    """Tests for build_soap_action()."""

    def test_envelope_structure(self):
        body = build_soap_action("GetExternalIPAddress", WANIP, {})
        root = StdET.fromstring(body.strip())

        assert local_name(root.tag) == "Envelope"
        action = root[0][0]
        assert action.tag == f"{{{WANIP}}}GetExternalIPAddress"
        assert list(action) == []

    def test_argument_order_preserved(self):
        params = [
            ("NewRemoteHost", ""),
            ("NewExternalPort", 8080),
            ("NewProtocol", "TCP"),
            ("NewInternalPort", 80),
        ]
        root = StdET.fromstring(build_soap_action("AddPortMapping", WANIP, params).strip())
        action = root[0][0]

        assert [local_name(child.tag) for child in action] == [name for name, _ in params]
        assert [child.text or "" for child in action] == ["", "8080", "TCP", "80"]

    def test_values_are_escaped(self):
        body = build_soap_action(
            "AddPortMapping", WANIP, {"NewPortMappingDescription": "a<b & c>"}
        )
        root = StdET.fromstring(body.strip())
        assert root[0][0][0].text == "a<b & c>"


class TestParseSoapResponse:
    """Tests for parse_soap_response()."""

    def test_success(self):
        xml = (
            '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body>'
            f'<u:GetStatusInfoResponse xmlns:u="{WANIP}">'
            "<NewConnectionStatus>Connected</NewConnectionStatus>"
            "<NewLastConnectionError></NewLastConnectionError>"
            "<NewUptime>42</NewUptime>"
            "</u:GetStatusInfoResponse></s:Body></s:Envelope>"
        )

        assert parse_soap_response("GetStatusInfo", xml) == {
            "NewConnectionStatus": "Connected",
            "NewLastConnectionError": "",
            "NewUptime": "42",
        }

    def test_fault_maps_error_code(self):
        with pytest.raises(SoapFault) as exc_info:
            parse_soap_response("AddPortMapping", FAULT_XML.format(code=718), 500)

        fault = exc_info.value
        assert fault.code == 718
        assert fault.message.startswith("718 ConflictInMappingEntry")
        assert fault.details["action"] == "AddPortMapping"
        assert fault.details["description"] == "ConflictInMappingEntry"

    def test_fault_with_http_200(self):
        """Faults are detected regardless of the HTTP status."""
        with pytest.raises(SoapFault) as exc_info:
            parse_soap_response("DeletePortMapping", FAULT_XML.format(code=714), 200)
        assert exc_info.value.code == 714

    def test_unknown_fault_code(self):
        with pytest.raises(SoapFault) as exc_info:
            parse_soap_response("X", FAULT_XML.format(code=899), 500)
        assert exc_info.value.message == "Unknown Error: 899"

    def test_fault_without_numeric_code(self):
        with pytest.raises(SoapFault) as exc_info:
            parse_soap_response("X", FAULT_XML.format(code="oops"), 500)
        assert exc_info.value.code == UNKNOWN_ERROR_CODE

    def test_non_200_without_fault(self):
        xml = '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body/></s:Envelope>'
        with pytest.raises(TransportError) as exc_info:
            parse_soap_response("GetStatusInfo", xml, 503)
        assert exc_info.value.details == {"status": 503}

    def test_missing_response_element(self):
        xml = '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body/></s:Envelope>'
        with pytest.raises(TransportError, match="No GetStatusInfoResponse"):
            parse_soap_response("GetStatusInfo", xml)

    def test_malformed_xml(self):
        with pytest.raises(TransportError, match="Malformed SOAP response"):
            parse_soap_response("GetStatusInfo", "<not xml")

    def test_entity_expansion_rejected(self):
        xml = (
            '<?xml version="1.0"?><!DOCTYPE x [<!ENTITY a "aaaa">]>'
            "<x>&a;</x>"
        )
        with pytest.raises(TransportError):
            parse_soap_response("GetStatusInfo", xml)


class TestSendSoapAction:
    """Tests for send_soap_action() against the fake gateway."""

    pytestmark = [pytest.mark.network]

    @pytest.mark.asyncio
    async def test_headers_and_result(self, fake_gateway):
        result = await send_soap_action(
            f"{fake_gateway.url_base}/ctl/IPConn", "GetExternalIPAddress", WANIP
        )

        assert result == {"NewExternalIPAddress": "203.0.113.7"}
        soap_action, action, args = fake_gateway.calls[-1]
        assert soap_action == f'"{WANIP}#GetExternalIPAddress"'
        assert action == "GetExternalIPAddress"
        assert args == {}

    @pytest.mark.asyncio
    async def test_fault_over_http_500(self, fake_gateway):
        with pytest.raises(SoapFault) as exc_info:
            await send_soap_action(
                f"{fake_gateway.url_base}/ctl/IPConn",
                "DeletePortMapping",
                WANIP,
                {"NewRemoteHost": "", "NewExternalPort": 9, "NewProtocol": "TCP"},
            )
        assert exc_info.value.code == 714

    @pytest.mark.asyncio
    async def test_connection_refused(self, unused_tcp_port):
        with pytest.raises(TransportError, match="Network error"):
            await send_soap_action(
                f"http://127.0.0.1:{unused_tcp_port}/ctl", "GetStatusInfo", WANIP
            )

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(request):
            await asyncio.sleep(1)
            return web.Response(text="")

        app = web.Application()
        app.router.add_post("/ctl", slow)
        server = TestServer(app, host="127.0.0.1")
        await server.start_server()
        try:
            with pytest.raises(TransportError, match="Timeout"):
                await send_soap_action(
                    str(server.make_url("/ctl")), "GetStatusInfo", WANIP, timeout=0.2
                )
        finally:
            await server.close()
