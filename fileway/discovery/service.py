"""
UDP-based LAN discovery service.

Broadcasts a periodic presence message and listens for presence messages
from other Fileway instances on the same LAN, keeping a table of devices
seen within the last ``DEVICE_TIMEOUT`` seconds.

The device table is only ever touched by synchronous code running on the
event loop, so the loop itself serializes every read and write.
"""

import asyncio
import ipaddress
import logging
import socket
import time
from typing import Callable

import psutil
from pydantic import ValidationError

from fileway.config import (
    BROADCAST_INTERVAL,
    DEVICE_TIMEOUT,
    DISCOVERY_PORT,
    LIMITED_BROADCAST,
    SWEEP_INTERVAL,
)
from fileway.discovery.models import DeviceRecord, PresenceMessage
from fileway.events import EventChannel, EventType

logger = logging.getLogger(__name__)


def get_broadcast_addresses() -> list[str]:
    """Broadcast address (ip | ~netmask) of every non-loopback IPv4 interface."""
    addresses = []
    for iface, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family != socket.AF_INET or not addr.netmask:
                continue
            try:
                ip = ipaddress.IPv4Address(addr.address)
                mask = ipaddress.IPv4Address(addr.netmask)
            except ValueError:
                logger.debug(f"Skipping unparsable address on {iface}: {addr.address}")
                continue
            if ip.is_loopback:
                continue
            broadcast = int(ip) | (~int(mask) & 0xFFFFFFFF)
            addresses.append(str(ipaddress.IPv4Address(broadcast)))

    # Several interfaces on one subnet share a broadcast address
    addresses = list(dict.fromkeys(addresses))
    return addresses or [LIMITED_BROADCAST]


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving presence messages."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.service.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class DiscoveryService:
    """Manages LAN device discovery via UDP broadcast."""

    def __init__(
        self,
        port: int = DISCOVERY_PORT,
        broadcast_interval: float = BROADCAST_INTERVAL,
        sweep_interval: float = SWEEP_INTERVAL,
        device_timeout: float = DEVICE_TIMEOUT,
        events: EventChannel | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.port = port
        self.broadcast_interval = broadcast_interval
        self.sweep_interval = sweep_interval
        self.device_timeout = device_timeout
        self.events = events if events is not None else EventChannel()
        self._clock = clock

        self._devices: dict[str, DeviceRecord] = {}
        self._broadcast_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._transport: asyncio.DatagramTransport | None = None

        self._device_id: str | None = None
        self._device_name = ""
        self._email: str | None = None

    @property
    def is_running(self) -> bool:
        return self._transport is not None

    @property
    def device_id(self) -> str | None:
        return self._device_id

    @property
    def device_name(self) -> str:
        return self._device_name

    @property
    def email(self) -> str | None:
        return self._email

    async def start(self, device_id: str, device_name: str, email: str | None) -> None:
        """Bind the discovery socket and start the broadcast and sweep loops."""
        if self.is_running:
            return

        self._device_id = device_id
        self._device_name = device_name
        self._email = email

        loop = asyncio.get_running_loop()

        # SO_REUSEADDR must be set before binding so several instances
        # on one host can share the discovery port
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError:
                    pass
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            sock.bind(("0.0.0.0", self.port))
        except OSError:
            sock.close()
            raise

        transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self),
            sock=sock,
        )
        self._transport = transport
        self.port = sock.getsockname()[1]

        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Discovery service started on UDP port {self.port}")

    async def stop(self) -> None:
        """Stop both loops, close the socket and forget every device."""
        tasks = [t for t in (self._broadcast_task, self._sweep_task) if t]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._broadcast_task = None
        self._sweep_task = None

        if self._transport:
            self._transport.close()
            self._transport = None
            logger.info("Discovery service stopped")

        self._devices.clear()

    def update_identity(self, name: str | None = None, email: str | None = None) -> None:
        """Change the identity announced from the next broadcast on."""
        if name is not None:
            self._device_name = name
        if email is not None:
            self._email = email

    # --- Device table ---

    def get_device_list(self) -> list[DeviceRecord]:
        """Snapshot of every known device."""
        return [device.model_copy() for device in self._devices.values()]

    def find_by_email(self, email: str) -> DeviceRecord | None:
        for device in self._devices.values():
            if device.email == email:
                return device.model_copy()
        return None

    def find_by_id(self, device_id: str) -> DeviceRecord | None:
        device = self._devices.get(device_id)
        return device.model_copy() if device else None

    def handle_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        """Upsert the sender of a presence message, ignoring noise and ourselves."""
        try:
            message = PresenceMessage.model_validate_json(data)
        except (ValidationError, ValueError) as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return

        if message.device_id == self._device_id:
            return

        record = DeviceRecord(
            device_id=message.device_id,
            device_name=message.device_name,
            email=message.email,
            ip=addr[0],
            last_seen=self._clock(),
        )
        is_new = record.device_id not in self._devices
        self._devices[record.device_id] = record

        if is_new:
            logger.info(f"Discovered device: {record.device_name} <{record.email}> ({record.ip})")
            self.events.publish(EventType.DEVICE_FOUND, record.model_dump())
        self._publish_device_list()

    def sweep(self) -> list[DeviceRecord]:
        """Evict every device not heard from within the timeout."""
        now = self._clock()
        stale = [
            device for device in self._devices.values()
            if now - device.last_seen > self.device_timeout
        ]
        for device in stale:
            del self._devices[device.device_id]
            logger.info(f"Device lost: {device.device_name} ({device.ip})")
            self.events.publish(EventType.DEVICE_LOST, device.model_dump())

        if stale:
            self._publish_device_list()
        return stale

    def _publish_device_list(self) -> None:
        self.events.publish(
            EventType.DEVICE_LIST_CHANGED,
            {"devices": [d.model_dump() for d in self._devices.values()]},
        )

    # --- Broadcasting ---

    def broadcast_presence(self) -> list[str]:
        """Send one presence message to every broadcast address.

        Returns the addresses written to; nothing is sent until an email
        is known.
        """
        if not self._transport or not self._email:
            return []

        message = PresenceMessage(
            type="presence",
            device_id=self._device_id,
            device_name=self._device_name,
            email=self._email,
            timestamp=int(time.time() * 1000),
        )
        data = message.to_bytes()

        addresses = get_broadcast_addresses()
        for address in addresses:
            # Send errors are reported through error_received
            self._transport.sendto(data, (address, self.port))
        return addresses

    async def _broadcast_loop(self) -> None:
        """Announce ourselves now and then every broadcast interval."""
        while True:
            try:
                self.broadcast_presence()
            except Exception as e:
                logger.warning(f"Broadcast failed: {e}")

            await asyncio.sleep(self.broadcast_interval)

    async def _sweep_loop(self) -> None:
        """Remove stale devices periodically."""
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.warning(f"Device sweep failed: {e}")
