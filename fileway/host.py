"""
Service host: wires the profile, the discovery and transfer services and
the WebSocket event fan-out together.

The services only start once a user email is known; signing out stops
them again.
"""

import asyncio
import logging

from fileway.api.websocket import ConnectionManager
from fileway.discovery.service import DiscoveryService
from fileway.store import ProfileStore
from fileway.transfer.errors import TransferError
from fileway.transfer.models import SendResult
from fileway.transfer.service import TransferService

logger = logging.getLogger(__name__)


class ServiceHost:
    """Owns one instance of each core service on behalf of the UI."""

    def __init__(
        self,
        store: ProfileStore | None = None,
        discovery: DiscoveryService | None = None,
        transfer: TransferService | None = None,
        ws_manager: ConnectionManager | None = None,
    ) -> None:
        self.store = store or ProfileStore()
        self.discovery = discovery or DiscoveryService()
        self.transfer = transfer or TransferService(
            receive_path=self.store.profile.receive_path
        )
        self.ws_manager = ws_manager or ConnectionManager()
        self._pumps: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return self.discovery.is_running or self.transfer.is_running

    async def start(self, email: str | None = None) -> None:
        """Start both services for the signed-in user."""
        if email:
            self.store.set_email(email)
        profile = self.store.profile
        if not profile.email:
            raise ValueError("Cannot start services without a signed-in email")

        if not self._pumps:
            self._pumps = [
                asyncio.create_task(self.ws_manager.pump(self.discovery.events)),
                asyncio.create_task(self.ws_manager.pump(self.transfer.events)),
            ]

        await self.discovery.start(profile.device_id, profile.device_name, profile.email)
        try:
            await self.transfer.start_server(profile.email)
        except TransferError:
            await self.stop()
            raise

        logger.info(
            f"Services running for {profile.email} "
            f"(discovery UDP {self.discovery.port}, transfer TCP {self.transfer.port})"
        )

    async def stop(self) -> None:
        await self.transfer.stop_server()
        await self.discovery.stop()

        for task in self._pumps:
            task.cancel()
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)
        self._pumps = []

    async def logout(self) -> None:
        await self.stop()
        self.store.logout()

    def update_identity(self, device_name: str | None = None, email: str | None = None) -> None:
        """Persist identity changes and announce them from the next broadcast on."""
        if device_name is not None:
            self.store.set_device_name(device_name)
        if email is not None:
            self.store.set_email(email)
        self.discovery.update_identity(name=device_name, email=email)

    def set_receive_path(self, path: str) -> None:
        self.transfer.set_receive_path(path)
        self.store.set_receive_path(path)

    async def send_to_device(self, device_id: str, file_path: str) -> SendResult:
        """Send a file to a discovered device."""
        device = self.discovery.find_by_id(device_id)
        if device is None:
            raise LookupError(f"Unknown device {device_id}")
        return await self.transfer.send_file(device.ip, file_path, self.store.profile.email or "")
