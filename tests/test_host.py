"""
Tests for host.py: starting, stopping and wiring the core services.
"""

import asyncio
import json

import pytest

from fileway.discovery.service import DiscoveryService
from fileway.host import ServiceHost
from fileway.store import ProfileStore
from fileway.transfer.service import TransferService


def make_host(tmp_path) -> ServiceHost:
    store = ProfileStore(tmp_path / "config")
    return ServiceHost(
        store=store,
        discovery=DiscoveryService(port=0, broadcast_interval=60, sweep_interval=60),
        transfer=TransferService(port=0, host="127.0.0.1", receive_path=str(tmp_path / "inbox")),
    )


def test_start_requires_email(tmp_path):
    host = make_host(tmp_path)
    with pytest.raises(ValueError):
        asyncio.run(host.start())
    assert not host.is_running


def test_start_and_stop(tmp_path):
    host = make_host(tmp_path)

    async def scenario():
        await host.start("me@x")
        running = (host.discovery.is_running, host.transfer.is_running)
        identity = (host.discovery.email, host.transfer.email)
        await host.stop()
        return running, identity

    running, identity = asyncio.run(scenario())
    assert running == (True, True)
    assert identity == ("me@x", "me@x")
    assert not host.is_running
    assert host.store.profile.email == "me@x"
    assert (tmp_path / "inbox").is_dir()


def test_logout_stops_services_and_forgets_email(tmp_path):
    host = make_host(tmp_path)

    async def scenario():
        await host.start("me@x")
        await host.logout()

    asyncio.run(scenario())
    assert not host.is_running
    assert not host.store.is_logged_in()


def test_events_reach_websocket_clients(tmp_path):
    host = make_host(tmp_path)

    class Client:
        def __init__(self):
            self.messages = []

        async def accept(self):
            pass

        async def send_text(self, message):
            self.messages.append(json.loads(message))

    async def scenario():
        client = Client()
        await host.ws_manager.connect(client)
        await host.start("me@x")
        payload = json.dumps({
            "type": "presence",
            "deviceId": "PEER",
            "deviceName": "Peer",
            "email": "peer@x",
        }).encode()
        host.discovery.handle_datagram(payload, ("192.168.1.9", 41234))
        for _ in range(100):
            if client.messages:
                break
            await asyncio.sleep(0.01)
        await host.stop()
        return client.messages

    messages = asyncio.run(scenario())
    assert messages[0]["event"] == "device_found"
    assert messages[0]["data"]["email"] == "peer@x"


def test_update_identity_and_receive_path(tmp_path):
    host = make_host(tmp_path)
    host.update_identity(device_name="Desk", email="new@x")
    host.set_receive_path(str(tmp_path / "elsewhere"))

    assert host.discovery.device_name == "Desk"
    assert host.discovery.email == "new@x"
    assert host.transfer.get_receive_path() == str(tmp_path / "elsewhere")

    profile = ProfileStore(tmp_path / "config").profile
    assert profile.device_name == "Desk"
    assert profile.receive_path == str(tmp_path / "elsewhere")


def test_send_to_unknown_device(tmp_path):
    host = make_host(tmp_path)
    with pytest.raises(LookupError):
        asyncio.run(host.send_to_device("missing", str(tmp_path)))


def test_send_to_discovered_device(tmp_path):
    content = b"hello over the lan"
    src = tmp_path / "note.txt"
    src.write_bytes(content)
    host = make_host(tmp_path)
    receiver = TransferService(port=0, host="127.0.0.1", receive_path=str(tmp_path / "peer"))

    async def scenario():
        await receiver.start_server("peer@x")
        host.transfer.peer_port = receiver.port
        host.store.set_email("me@x")
        host.discovery.handle_datagram(json.dumps({
            "type": "presence",
            "deviceId": "PEER",
            "deviceName": "Peer",
            "email": "peer@x",
        }).encode(), ("127.0.0.1", 41234))

        send_task = asyncio.create_task(host.send_to_device("PEER", str(src)))
        while True:
            event = await asyncio.wait_for(receiver.events.get(), 10)
            if event.type.value == "transfer_offered":
                break
        await receiver.accept_transfer(event.data["transfer_id"])
        result = await asyncio.wait_for(send_task, 10)
        while event.type.value != "transfer_completed":
            event = await asyncio.wait_for(receiver.events.get(), 10)
        await receiver.stop_server()
        return result, event

    result, completed = asyncio.run(scenario())
    assert result.accepted
    assert completed.data["file_path"] == str(tmp_path / "peer" / "note.txt")
    assert (tmp_path / "peer" / "note.txt").read_bytes() == content
