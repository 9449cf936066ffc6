"""
Tests for discovery/service.py: broadcast addresses, the device table,
eviction and the UDP lifecycle.
"""

import asyncio
import json
import socket
from types import SimpleNamespace

import pytest

from fileway.discovery import service as discovery_module
from fileway.discovery.service import DiscoveryService, get_broadcast_addresses
from fileway.events import EventType


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    def __init__(self):
        self.sent = []

    def sendto(self, data, addr):
        self.sent.append((data, addr))

    def close(self):
        pass


def presence(device_id="A1", email="a@x", name="Laptop A", **overrides) -> bytes:
    payload = {
        "type": "presence",
        "deviceId": device_id,
        "deviceName": name,
        "email": email,
        "timestamp": 1700000000000,
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


def make_service(clock=None, **kwargs) -> DiscoveryService:
    service = DiscoveryService(clock=clock or FakeClock(), **kwargs)
    service._device_id = "SELF"
    return service


def iface(address, netmask, family=socket.AF_INET):
    return SimpleNamespace(family=family, address=address, netmask=netmask)


# ---------------------------------------------------------------------------
# get_broadcast_addresses
# ---------------------------------------------------------------------------


class TestBroadcastAddresses:
    def test_computes_directed_broadcast_per_interface(self, monkeypatch):
        monkeypatch.setattr(discovery_module.psutil, "net_if_addrs", lambda: {
            "eth0": [iface("192.168.1.23", "255.255.255.0")],
            "wlan0": [iface("10.0.5.7", "255.255.252.0")],
        })
        assert get_broadcast_addresses() == ["192.168.1.255", "10.0.7.255"]

    def test_skips_loopback_ipv6_and_missing_netmask(self, monkeypatch):
        monkeypatch.setattr(discovery_module.psutil, "net_if_addrs", lambda: {
            "lo": [iface("127.0.0.1", "255.0.0.0")],
            "eth0": [
                iface("fe80::1", "ffff:ffff:ffff:ffff::", family=socket.AF_INET6),
                iface("172.16.4.2", None),
                iface("172.16.4.2", "255.255.0.0"),
            ],
        })
        assert get_broadcast_addresses() == ["172.16.255.255"]

    def test_deduplicates_shared_subnets(self, monkeypatch):
        monkeypatch.setattr(discovery_module.psutil, "net_if_addrs", lambda: {
            "eth0": [iface("192.168.1.23", "255.255.255.0")],
            "eth1": [iface("192.168.1.50", "255.255.255.0")],
        })
        assert get_broadcast_addresses() == ["192.168.1.255"]

    def test_falls_back_to_limited_broadcast(self, monkeypatch):
        monkeypatch.setattr(discovery_module.psutil, "net_if_addrs", lambda: {
            "lo": [iface("127.0.0.1", "255.0.0.0")],
        })
        assert get_broadcast_addresses() == ["255.255.255.255"]


# ---------------------------------------------------------------------------
# Receiving presence messages
# ---------------------------------------------------------------------------


class TestHandleDatagram:
    def test_new_device_is_listed(self):
        service = make_service()
        service.handle_datagram(presence(), ("192.168.1.20", 41234))

        devices = service.get_device_list()
        assert len(devices) == 1
        assert devices[0].device_id == "A1"
        assert devices[0].email == "a@x"
        assert devices[0].device_name == "Laptop A"
        assert devices[0].ip == "192.168.1.20"

    def test_new_device_emits_found_then_list(self):
        service = make_service()
        service.handle_datagram(presence(), ("192.168.1.20", 41234))

        events = service.events.drain()
        assert [e.type for e in events] == [
            EventType.DEVICE_FOUND,
            EventType.DEVICE_LIST_CHANGED,
        ]
        assert events[0].data["device_id"] == "A1"
        assert [d["device_id"] for d in events[1].data["devices"]] == ["A1"]

    def test_repeated_presence_upserts_single_record(self):
        clock = FakeClock()
        service = make_service(clock)
        for i in range(5):
            clock.advance(1)
            service.handle_datagram(presence(), (f"192.168.1.{20 + i}", 41234))

        devices = service.get_device_list()
        assert len(devices) == 1
        assert devices[0].ip == "192.168.1.24"
        assert devices[0].last_seen == clock.now

        types = [e.type for e in service.events.drain()]
        assert types.count(EventType.DEVICE_FOUND) == 1
        assert types.count(EventType.DEVICE_LIST_CHANGED) == 5

    def test_name_change_overwrites_record(self):
        service = make_service()
        service.handle_datagram(presence(name="Old"), ("192.168.1.20", 41234))
        service.handle_datagram(presence(name="New"), ("192.168.1.20", 41234))
        assert service.find_by_id("A1").device_name == "New"

    def test_own_presence_is_ignored(self):
        service = make_service()
        service.handle_datagram(presence(device_id="SELF"), ("192.168.1.2", 41234))
        assert service.get_device_list() == []
        assert service.events.drain() == []

    @pytest.mark.parametrize("payload", [
        b"not json at all",
        b"\xff\xfe\x00",
        b"[1, 2, 3]",
        presence(type="goodbye"),
        json.dumps({"type": "presence", "deviceName": "x", "email": "a@x"}).encode(),
        json.dumps({"deviceId": "A1", "deviceName": "x", "email": "a@x"}).encode(),
    ])
    def test_noise_is_discarded(self, payload):
        service = make_service()
        service.handle_datagram(payload, ("192.168.1.20", 41234))
        assert service.get_device_list() == []
        assert service.events.drain() == []


# ---------------------------------------------------------------------------
# Eviction
# ---------------------------------------------------------------------------


class TestSweep:
    def test_device_survives_until_timeout_passes(self):
        clock = FakeClock()
        service = make_service(clock, device_timeout=10)
        service.handle_datagram(presence(), ("192.168.1.20", 41234))
        service.events.drain()

        clock.advance(10)
        assert service.sweep() == []
        assert len(service.get_device_list()) == 1

    def test_stale_device_is_lost_once(self):
        clock = FakeClock()
        service = make_service(clock, device_timeout=10)
        service.handle_datagram(presence(), ("192.168.1.20", 41234))
        service.handle_datagram(presence(device_id="B2", email="b@x"), ("192.168.1.21", 41234))
        service.events.drain()

        clock.advance(6)
        service.handle_datagram(presence(device_id="B2", email="b@x"), ("192.168.1.21", 41234))
        service.events.drain()

        clock.advance(5)
        lost = service.sweep()
        assert [d.device_id for d in lost] == ["A1"]
        assert [d.device_id for d in service.get_device_list()] == ["B2"]

        events = service.events.drain()
        assert [e.type for e in events] == [
            EventType.DEVICE_LOST,
            EventType.DEVICE_LIST_CHANGED,
        ]
        assert events[0].data["device_id"] == "A1"

        assert service.sweep() == []
        assert service.events.drain() == []

    def test_reannounce_after_eviction_is_a_new_device(self):
        clock = FakeClock()
        service = make_service(clock, device_timeout=10)
        service.handle_datagram(presence(), ("192.168.1.20", 41234))
        clock.advance(11)
        service.sweep()
        service.events.drain()

        service.handle_datagram(presence(), ("192.168.1.20", 41234))
        types = [e.type for e in service.events.drain()]
        assert types[0] == EventType.DEVICE_FOUND


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


class TestLookups:
    def test_find_by_email_and_id(self):
        service = make_service()
        service.handle_datagram(presence(), ("192.168.1.20", 41234))
        service.handle_datagram(presence(device_id="B2", email="b@x"), ("192.168.1.21", 41234))

        assert service.find_by_email("b@x").device_id == "B2"
        assert service.find_by_id("A1").email == "a@x"
        assert service.find_by_email("nobody@x") is None
        assert service.find_by_id("missing") is None

    def test_snapshots_are_copies(self):
        service = make_service()
        service.handle_datagram(presence(), ("192.168.1.20", 41234))

        snapshot = service.get_device_list()
        snapshot[0].ip = "10.9.9.9"
        snapshot.clear()

        assert service.find_by_id("A1").ip == "192.168.1.20"


# ---------------------------------------------------------------------------
# Broadcasting
# ---------------------------------------------------------------------------


class TestBroadcastPresence:
    @pytest.fixture
    def service(self, monkeypatch):
        monkeypatch.setattr(
            discovery_module, "get_broadcast_addresses",
            lambda: ["192.168.1.255", "10.0.7.255"],
        )
        service = make_service(port=41234)
        service._device_name = "My Laptop"
        service._transport = FakeTransport()
        return service

    def test_no_email_means_no_broadcast(self, service):
        assert service.broadcast_presence() == []
        assert service._transport.sent == []

    def test_sends_to_every_broadcast_address(self, service):
        service.update_identity(email="me@x")
        assert service.broadcast_presence() == ["192.168.1.255", "10.0.7.255"]

        sent = service._transport.sent
        assert [addr for _, addr in sent] == [("192.168.1.255", 41234), ("10.0.7.255", 41234)]
        payload = json.loads(sent[0][0])
        assert payload["type"] == "presence"
        assert payload["deviceId"] == "SELF"
        assert payload["deviceName"] == "My Laptop"
        assert payload["email"] == "me@x"
        assert isinstance(payload["timestamp"], int)

    def test_identity_change_applies_to_next_broadcast(self, service):
        service.update_identity(email="me@x")
        service.broadcast_presence()
        service.update_identity(name="Renamed")
        service.broadcast_presence()

        last = json.loads(service._transport.sent[-1][0])
        assert last["deviceName"] == "Renamed"
        assert last["email"] == "me@x"


# ---------------------------------------------------------------------------
# Lifecycle over a real UDP socket
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_start_receive_stop(self):
        async def scenario():
            service = DiscoveryService(port=0, sweep_interval=60)
            await service.start("SELF", "Me", None)
            transport = service._transport
            await service.start("SELF", "Me", None)
            assert service._transport is transport
            assert service.is_running

            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.sendto(presence(), ("127.0.0.1", service.port))
                for _ in range(200):
                    if service.get_device_list():
                        break
                    await asyncio.sleep(0.01)
            finally:
                sock.close()

            devices = service.get_device_list()
            await service.stop()
            await service.stop()
            return service, devices

        service, devices = asyncio.run(scenario())
        assert [(d.device_id, d.email) for d in devices] == [("A1", "a@x")]
        assert not service.is_running
        assert service.get_device_list() == []
