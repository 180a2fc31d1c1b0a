"""Integration-style tests for the FastAPI layer using a fake datagram endpoint."""
from __future__ import annotations

import asyncio
import functools
import unittest
from typing import Any, List, Tuple
from unittest.mock import patch

import httpx
from fastapi.testclient import TestClient

import konnect.api as api_module
from konnect.models import ConnectionEvent, ConnectionEventKind, ConnectionRecord, ConnectionState
from konnect.scanner import ConsoleScanner

JTAG_REPLY = b"\x03\x04jtag"


class _FakeTransport:
    def __init__(self, protocol: Any) -> None:
        self.protocol = protocol
        self.sent: List[Tuple[bytes, Any]] = []
        self.closed = False

    def sendto(self, data: bytes, addr: Any) -> None:
        self.sent.append((data, addr))

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.protocol.connection_lost(None)


async def _fake_endpoint(protocol_factory, local_addr):
    protocol = protocol_factory()
    transport = _FakeTransport(protocol)
    protocol.connection_made(transport)
    return transport, protocol


async def _broken_endpoint(protocol_factory, local_addr):
    raise OSError("Permission denied")


def _scanner_factory(endpoint_factory=_fake_endpoint):
    return functools.partial(
        ConsoleScanner,
        host_resolver=lambda _probe: ("192.168.1.20", 50000),
        endpoint_factory=endpoint_factory,
    )


class ApiSimulationTest(unittest.TestCase):
    def setUp(self) -> None:
        api_module._scanner = None
        api_module._scanner_lock = asyncio.Lock()
        self.patcher = patch("konnect.api.ConsoleScanner", _scanner_factory())
        self.patcher.start()
        self.client = TestClient(api_module.app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self.patcher.stop()
        api_module._scanner = None

    def _start(self, **params: Any) -> dict:
        response = self.client.post("/scanner/start", params=params)
        self.assertEqual(response.status_code, 200)
        return response.json()

    def test_health_endpoint_returns_ok(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "ok")
        self.assertIn("time", payload)

    def test_status_is_idle_before_start(self) -> None:
        response = self.client.get("/scanner/status")
        self.assertEqual(response.json(), {"status": "idle"})
        self.assertEqual(self.client.get("/connections").json(), [])

    def test_start_and_stop_flow(self) -> None:
        data = self._start(scan_frequency=0.5, disconnect_timeout=2.0, remove_on_disconnect=True)

        self.assertEqual(data["status"], "started")
        self.assertEqual(data["subnets"], ["192.168.1.255", "192.168.137.255"])
        self.assertEqual(data["config"]["scan_frequency"], 0.5)
        self.assertEqual(data["config"]["disconnect_timeout"], 2.0)
        self.assertTrue(data["config"]["remove_on_disconnect"])

        self.assertEqual(self._start()["status"], "already-running")
        self.assertEqual(self.client.get("/scanner/status").json()["status"], "running")

        stop_response = self.client.post("/scanner/stop")
        self.assertEqual(stop_response.json(), {"status": "stopped"})
        self.assertEqual(self.client.post("/scanner/stop").json(), {"status": "idle"})
        self.assertEqual(self.client.get("/scanner/status").json()["status"], "stopped")

    def test_start_rejects_invalid_configuration(self) -> None:
        response = self.client.post("/scanner/start", params={"bridged_subnet": "not-a-subnet"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("Invalid scanner configuration", response.json()["detail"])

        response = self.client.post("/scanner/start", params={"scan_frequency": 0})
        self.assertEqual(response.status_code, 422)

    def test_start_reports_socket_failure(self) -> None:
        with patch("konnect.api.ConsoleScanner", _scanner_factory(_broken_endpoint)):
            response = self.client.post("/scanner/start")
        self.assertEqual(response.status_code, 503)

    def test_connections_listing_lookup_and_purge(self) -> None:
        self._start()
        scanner = api_module._scanner
        scanner.process_response(JTAG_REPLY, ("192.168.1.50", 730))
        scanner.process_response(JTAG_REPLY, ("192.168.137.12", 730))

        listing = self.client.get("/connections").json()
        self.assertEqual([item["address"] for item in listing], ["192.168.1.50", "192.168.137.12"])
        self.assertEqual(listing[1]["connection_type"], "bridged")
        self.assertEqual(listing[0]["state"], "online")

        detail = self.client.get("/connections/192.168.1.50")
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.json()["name"], "jtag")
        self.assertEqual(self.client.get("/connections/10.9.9.9").status_code, 404)

        self.assertEqual(self.client.get("/connections", params={"state": "offline"}).json(), [])
        self.assertEqual(self.client.get("/connections", params={"state": "bogus"}).status_code, 400)

        self.assertEqual(self.client.post("/connections/purge").json(), {"purged": 0})
        scanner.registry.update_state("192.168.1.50", ConnectionState.OFFLINE)
        self.assertEqual(self.client.post("/connections/purge").json(), {"purged": 1})
        self.assertEqual(len(self.client.get("/connections").json()), 1)

        history = self.client.get("/events/history", params={"limit": 10}).json()
        self.assertEqual([item["event"] for item in history][-2:], ["updated", "removed"])

    def test_restart_keeps_roster(self) -> None:
        self._start()
        api_module._scanner.process_response(JTAG_REPLY, ("192.168.1.50", 730))
        self.client.post("/scanner/stop")

        self._start()

        self.assertEqual(len(self.client.get("/connections").json()), 1)

    def test_events_websocket_streams_published_events(self) -> None:
        record = ConnectionRecord.discovered("192.168.1.50", "jtag")
        with self.client.websocket_connect("/events") as ws:
            api_module._hub.publish(ConnectionEvent(ConnectionEventKind.ADDED, record))
            message = ws.receive_json()

        self.assertEqual(message["event"], "added")
        self.assertEqual(message["connection"]["address"], "192.168.1.50")
        self.assertEqual(message["connection"]["state"], "online")


class ApiConcurrentStartTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        api_module._scanner = None
        api_module._scanner_lock = asyncio.Lock()
        self.transports: List[_FakeTransport] = []

        async def _slow_endpoint(protocol_factory, local_addr):
            await asyncio.sleep(0.05)
            transport, protocol = await _fake_endpoint(protocol_factory, local_addr)
            self.transports.append(transport)
            return transport, protocol

        self.patcher = patch("konnect.api.ConsoleScanner", _scanner_factory(_slow_endpoint))
        self.patcher.start()

    async def asyncTearDown(self) -> None:
        if api_module._scanner is not None:
            await api_module._scanner.stop()
        self.patcher.stop()
        api_module._scanner = None

    async def test_concurrent_starts_open_a_single_scanner(self) -> None:
        transport = httpx.ASGITransport(app=api_module.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://konnect") as client:
            first, second = await asyncio.gather(
                client.post("/scanner/start"),
                client.post("/scanner/start"),
            )
            statuses = sorted(response.json()["status"] for response in (first, second))
            stop_response = await client.post("/scanner/stop")

        self.assertEqual([first.status_code, second.status_code], [200, 200])
        self.assertEqual(statuses, ["already-running", "started"])
        self.assertEqual(stop_response.json(), {"status": "stopped"})
        self.assertEqual(len(self.transports), 1)
        self.assertEqual([t.closed for t in self.transports], [True])


if __name__ == "__main__":
    unittest.main()
